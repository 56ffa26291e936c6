from decimal import Decimal

from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity
from services import subscription_service
from services.exceptions import ConcurrentUpdate


def test_non_admin_is_forbidden(client, plans):
    assert client.get("/api/admin/plans").status_code == 403
    assert client.get("/api/admin/settings/discord").status_code == 403


def test_plan_crud(admin_client, db_session, plans):
    r = admin_client.post("/api/admin/plans", json={
        "name": "mentor",
        "display_name": "Mentorship",
        "price": "99.00",
        "billing_cycle": "monthly",
        "features": {"one_on_one_sessions": 2},
    })
    assert r.status_code == 201, r.text
    plan_id = r.json()["id"]

    dup = admin_client.post("/api/admin/plans", json={"name": "mentor", "display_name": "Again", "price": "1.00"})
    assert dup.status_code == 400

    r = admin_client.put(f"/api/admin/plans/{plan_id}", json={"price": "89.00", "is_active": False})
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["price"]) == Decimal("89.00")
    assert r.json()["is_active"] is False

    listed = [p["name"] for p in admin_client.get("/api/admin/plans").json()["plans"]]
    assert "mentor" in listed

    r = admin_client.delete(f"/api/admin/plans/{plan_id}")
    assert r.json() == {"id": plan_id, "deleted": True, "deactivated": False}
    assert db_session.query(SubscriptionPlanEntity).filter(SubscriptionPlanEntity.id == plan_id).first() is None


def test_plan_in_use_is_deactivated_not_deleted(admin_client, db_session, user, plans, make_subscription):
    make_subscription(user, plans["pro"], status="expired")

    r = admin_client.delete(f"/api/admin/plans/{plans['pro'].id}")

    assert r.status_code == 200
    assert r.json()["deactivated"] is True
    db_session.refresh(plans["pro"])
    assert plans["pro"].is_active is False


def test_missing_plan_is_404(admin_client, plans):
    assert admin_client.put("/api/admin/plans/9999", json={"price": "1.00"}).status_code == 404
    assert admin_client.delete("/api/admin/plans/9999").status_code == 404


def test_ensure_free_plan_creates_then_reports_existing(admin_client, db_session):
    r = admin_client.post("/api/admin/plans/free")
    assert r.status_code == 200, r.text
    assert r.json()["created"] is True
    assert r.json()["plan"]["name"] == "free"
    assert Decimal(r.json()["plan"]["price"]) == 0

    again = admin_client.post("/api/admin/plans/free")
    assert again.json()["created"] is False
    assert db_session.query(SubscriptionPlanEntity).filter(SubscriptionPlanEntity.name == "free").count() == 1


def test_manual_subscription(admin_client, db_session, user, plans, make_subscription):
    old = make_subscription(user, plans["pro"], status="expired")

    r = admin_client.post("/api/admin/subscriptions", json={
        "user_id": user.id, "plan_id": plans["elite"].id, "period_days": 90,
    })

    assert r.status_code == 201, r.text
    body = r.json()
    assert body["id"] != old.id
    assert body["user_id"] == user.id
    assert body["status"] == "active"
    assert body["plan"]["name"] == "elite"

    listed = admin_client.get("/api/admin/subscriptions", params={"user_id": user.id}).json()["subscriptions"]
    assert [s["id"] for s in listed] == [body["id"], old.id]
    expired = admin_client.get("/api/admin/subscriptions", params={"status": "expired"}).json()["subscriptions"]
    assert [s["id"] for s in expired] == [old.id]


def test_manual_subscription_unknown_user_or_plan(admin_client, user, plans):
    r = admin_client.post("/api/admin/subscriptions", json={"user_id": 4242, "plan_id": plans["pro"].id})
    assert r.status_code == 404
    r = admin_client.post("/api/admin/subscriptions", json={"user_id": user.id, "plan_id": 4242})
    assert r.status_code == 404


def test_admin_cancel_and_activate(admin_client, db_session, user, plans, make_subscription):
    sub = make_subscription(user, plans["pro"], status="past_due")

    r = admin_client.post(f"/api/admin/subscriptions/{sub.id}/activate", json={"reference": "bank-ref-77"})
    assert r.status_code == 200, r.text
    assert r.json()["outcome"] == "applied"
    assert r.json()["subscription"]["status"] == "active"
    row = db_session.query(UserSubscriptionHistoryEntity).filter(
        UserSubscriptionHistoryEntity.subscription_id == sub.id
    ).one()
    assert row.transaction_id == "manual:bank-ref-77"
    assert row.payment_method == "manual"

    replay = admin_client.post(f"/api/admin/subscriptions/{sub.id}/activate", json={"reference": "bank-ref-77"})
    assert replay.json()["outcome"] == "already_processed"

    r = admin_client.post(f"/api/admin/subscriptions/{sub.id}/cancel", json={"reason": "chargeback"})
    assert r.status_code == 200
    assert r.json()["subscription"]["status"] == "cancelled"

    r = admin_client.post(f"/api/admin/subscriptions/{sub.id}/activate", json={})
    assert r.status_code == 409


def test_admin_cancel_unknown_subscription(admin_client, plans):
    assert admin_client.post("/api/admin/subscriptions/4242/cancel", json={}).status_code == 404


def test_discord_settings(admin_client):
    r = admin_client.get("/api/admin/settings/discord")
    assert r.status_code == 200
    assert r.json()["is_active"] is True

    r = admin_client.put("/api/admin/settings/discord", json={"invite_code": "traders2025", "is_active": False})
    assert r.status_code == 200, r.text
    assert r.json()["invite_code"] == "traders2025"
    assert r.json()["is_active"] is False
    assert r.json()["server_name"] == "Trading Academy Community"

    assert admin_client.get("/api/admin/settings/discord").json()["invite_code"] == "traders2025"


def test_manual_subscription_replaces_active_one(admin_client, db_session, user, plans, make_subscription):
    old = make_subscription(user, plans["pro"], status="active")

    r = admin_client.post("/api/admin/subscriptions", json={"user_id": user.id, "plan_id": plans["elite"].id})

    assert r.status_code == 201, r.text
    active = admin_client.get("/api/admin/subscriptions", params={"user_id": user.id, "status": "active"}).json()
    assert [s["id"] for s in active["subscriptions"]] == [r.json()["id"]]
    db_session.refresh(old)
    assert old.status == "cancelled"


def test_admin_activate_lost_to_concurrent_writer_is_409(admin_client, user, plans, make_subscription, monkeypatch):
    sub = make_subscription(user, plans["pro"], status="past_due")

    def busy(db, subscription_id, period_length_days, payment=None, now=None):
        raise ConcurrentUpdate(f"Subscription {subscription_id} changed concurrently")

    monkeypatch.setattr(subscription_service, "activate", busy)
    r = admin_client.post(f"/api/admin/subscriptions/{sub.id}/activate", json={"reference": "bank-ref-88"})

    assert r.status_code == 409
    assert "concurrently" in r.json()["detail"]
