from datetime import timedelta

from conftest import NOW, RecordingNotifier
from models.orm_user import UserEntity
from services import scheduler, subscription_service
from services.scheduler import run_expiration_sweep, run_reminder_sweep, run_scheduled_tasks


def _other_user(db, name):
    u = UserEntity(username=name, email=f"{name}@example.com", password_hash="x", is_admin=False, is_active=True)
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def test_expiration_sweep_expires_and_notifies(db_session, user, plans, make_subscription, notifier):
    lapsed = make_subscription(user, plans["pro"], status="active", end=NOW - timedelta(hours=1))
    current = make_subscription(
        _other_user(db_session, "still_paid"), plans["pro"], status="active", end=NOW + timedelta(days=10)
    )

    report = run_expiration_sweep(db_session, notifier, now=NOW)

    assert (report.candidates, report.processed, report.failed) == (1, 1, 0)
    db_session.refresh(lapsed)
    db_session.refresh(current)
    assert lapsed.status == "expired"
    assert current.status == "active"
    assert [(uid, tpl) for uid, tpl, _ in notifier.sent] == [(user.id, "subscription-expired")]


def test_expiration_sweep_is_idempotent(db_session, user, plans, make_subscription, notifier):
    make_subscription(user, plans["pro"], status="active", end=NOW - timedelta(hours=1))

    first = run_expiration_sweep(db_session, notifier, now=NOW)
    second = run_expiration_sweep(db_session, notifier, now=NOW)

    assert first.processed == 1
    assert second.candidates == 0 and second.processed == 0
    assert len(notifier.sent) == 1


def test_one_failing_item_does_not_stop_the_sweep(db_session, user, plans, make_subscription, monkeypatch):
    bad = make_subscription(user, plans["pro"], status="active", end=NOW - timedelta(days=2))
    good = make_subscription(
        _other_user(db_session, "good"), plans["pro"], status="active", end=NOW - timedelta(days=1)
    )
    real_expire = subscription_service.expire

    def flaky_expire(db, sub_id, now=None):
        if sub_id == bad.id:
            raise RuntimeError("database hiccup")
        return real_expire(db, sub_id, now=now)

    monkeypatch.setattr(scheduler.subscription_service, "expire", flaky_expire)

    report = run_expiration_sweep(db_session, None, now=NOW)

    assert report.candidates == 2
    assert report.processed == 1
    assert report.failed == 1
    assert "database hiccup" in report.errors[0]
    db_session.refresh(good)
    assert good.status == "expired"


def test_notification_failure_does_not_undo_expiry(db_session, user, plans, make_subscription):
    class Broken:
        def send(self, user_id, template, data):
            raise ConnectionError("queue down")

    sub = make_subscription(user, plans["pro"], status="active", end=NOW - timedelta(hours=1))
    report = run_expiration_sweep(db_session, Broken(), now=NOW)

    assert report.processed == 1 and report.failed == 0
    db_session.refresh(sub)
    assert sub.status == "expired"


def test_reminder_sent_once_per_period(db_session, user, plans, make_subscription, notifier):
    sub = make_subscription(user, plans["pro"], status="active", end=NOW + timedelta(days=2))
    make_subscription(
        _other_user(db_session, "far_out"), plans["pro"], status="active", end=NOW + timedelta(days=20)
    )

    first = run_reminder_sweep(db_session, notifier, now=NOW)
    second = run_reminder_sweep(db_session, notifier, now=NOW + timedelta(hours=6))

    assert first.processed == 1
    assert second.candidates == 0
    assert len(notifier.sent) == 1
    uid, template, data = notifier.sent[0]
    assert (uid, template) == (user.id, "subscription-expiring-soon")
    assert data["days_left"] == 2
    db_session.refresh(sub)
    assert sub.reminder_sent_for == sub.current_period_end


def test_reminder_not_marked_when_delivery_fails(db_session, user, plans, make_subscription):
    sub = make_subscription(user, plans["pro"], status="active", end=NOW + timedelta(days=1))

    report = run_reminder_sweep(db_session, RecordingNotifier(fail_for={user.id}), now=NOW)

    assert report.failed == 1
    db_session.refresh(sub)
    assert sub.reminder_sent_for is None


def test_renewal_makes_a_new_reminder_due(db_session, user, plans, make_subscription, notifier):
    sub = make_subscription(user, plans["pro"], status="active", end=NOW + timedelta(days=1))
    run_reminder_sweep(db_session, notifier, now=NOW)

    subscription_service.activate(db_session, sub.id, 30, now=NOW)
    later = NOW + timedelta(days=28)
    report = run_reminder_sweep(db_session, notifier, now=later)

    assert report.processed == 1
    assert len(notifier.sent) == 2


def test_run_scheduled_tasks_runs_both_sweeps(db_session, user, plans, make_subscription, notifier):
    make_subscription(user, plans["pro"], status="active", end=NOW - timedelta(hours=1))
    reports = run_scheduled_tasks(db_session, notifier, now=NOW)
    assert [r.task for r in reports] == ["expiration", "reminders"]
    assert reports[0].processed == 1


def test_superseded_subscription_gets_no_reminder_or_expiry_notice(db_session, user, plans, make_subscription, notifier):
    old = make_subscription(user, plans["pro"], status="active", end=NOW + timedelta(days=2))
    new = subscription_service.create_manual_subscription(db_session, user.id, plans["elite"], now=NOW)

    reminders = run_reminder_sweep(db_session, notifier, now=NOW)
    expiry = run_expiration_sweep(db_session, notifier, now=NOW + timedelta(days=3))

    assert reminders.candidates == 0
    assert expiry.candidates == 0
    assert notifier.sent == []
    db_session.refresh(old)
    db_session.refresh(new)
    assert (old.status, new.status) == ("cancelled", "active")
