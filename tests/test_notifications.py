import json
import smtplib
from types import SimpleNamespace

import pika
import pytest

import notification_worker
from services import notifications
from services.notifications import QueueNotificationSender


class FakeChannel:
    def __init__(self):
        self.acked = []
        self.nacked = []

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue):
        self.nacked.append((delivery_tag, requeue))


class SharedSession:
    """Hands the worker the test session without letting it close it."""

    def __init__(self, db):
        self.query = db.query

    def close(self):
        pass


@pytest.fixture()
def worker_db(db_session, monkeypatch):
    monkeypatch.setattr(notification_worker, "SessionLocal", lambda: SharedSession(db_session))
    return db_session


def _message(user_id, template="subscription-expired", **data):
    return json.dumps({"user_id": user_id, "template": template, "data": data}).encode()


def test_queue_sender_reports_broker_failure(monkeypatch):
    def down(message):
        raise pika.exceptions.AMQPConnectionError("broker down")

    monkeypatch.setattr(notifications, "publish_notification", down)
    assert QueueNotificationSender().send(1, "subscription-expired", {}) is False


def test_queue_sender_publishes(monkeypatch):
    published = []
    monkeypatch.setattr(notifications, "publish_notification", published.append)

    assert QueueNotificationSender().send(7, "subscription-expiring-soon", {"days_left": 2}) is True
    assert published == [{"user_id": 7, "template": "subscription-expiring-soon", "data": {"days_left": 2}}]


def test_render_uses_first_name_and_dates(user):
    subject, body = notification_worker.render(
        "subscription-expiring-soon",
        {"plan": "Pro", "current_period_end": "2025-03-04T12:00:00", "days_left": 3},
        user,
    )
    assert "renews soon" in subject
    assert "Hi Ama" in body
    assert "2025-03-04 (3 day(s) left)" in body


def test_worker_sends_and_acks(worker_db, user, monkeypatch):
    sent = []
    monkeypatch.setattr(notification_worker, "send_email", lambda to, subject, body: sent.append((to, subject)))
    ch = FakeChannel()

    notification_worker.process_message(ch, SimpleNamespace(delivery_tag=1), None, _message(user.id, plan="Pro"))

    assert ch.acked == [1]
    assert sent == [("trader@example.com", "Your Trading Academy subscription has expired")]


def test_worker_drops_malformed_and_unknown(worker_db, user):
    ch = FakeChannel()
    notification_worker.process_message(ch, SimpleNamespace(delivery_tag=1), None, b"{not json")
    notification_worker.process_message(ch, SimpleNamespace(delivery_tag=2), None, _message(987654))
    notification_worker.process_message(ch, SimpleNamespace(delivery_tag=3), None, _message(user.id, template="nope"))
    assert ch.acked == [1, 2, 3]
    assert ch.nacked == []


def test_worker_requeues_on_smtp_error(worker_db, user, monkeypatch):
    def broken(to, subject, body):
        raise smtplib.SMTPServerDisconnected("gone")

    monkeypatch.setattr(notification_worker, "send_email", broken)
    ch = FakeChannel()

    notification_worker.process_message(ch, SimpleNamespace(delivery_tag=5), None, _message(user.id))

    assert ch.nacked == [(5, True)]
