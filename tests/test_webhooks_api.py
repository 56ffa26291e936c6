import hashlib
import hmac
import json
import time
from datetime import timedelta

from core.base_classes import utcnow
from models.orm_pending_signup import PendingSignupEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity

FLW_SECRET = "flw-webhook-secret"
NP_SECRET = "np-ipn-secret"
STRIPE_SECRET = "whsec_test_secret"


def _flw(client, payload, secret=FLW_SECRET):
    body = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post("/api/webhooks/flutterwave", content=body, headers={"verif-hash": sig})


def _np(client, payload, secret=NP_SECRET):
    body = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return client.post("/api/webhooks/nowpayments", content=body, headers={"x-nowpayments-sig": sig})


def _stripe(client, payload, secret=STRIPE_SECRET):
    body = json.dumps(payload)
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/api/webhooks/stripe",
        content=body.encode(),
        headers={"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"},
    )


def _flw_charge(sub_id, txn_id=5551, status="successful", event="charge.completed"):
    return {
        "event": event,
        "data": {
            "id": txn_id,
            "tx_ref": f"sub_{sub_id}_abc12345",
            "flw_ref": "FLW-MOCK-1",
            "amount": 29.99,
            "currency": "USD",
            "status": status,
            "payment_type": "mobilemoneygh",
            "meta": {"subscription_id": sub_id},
        },
    }


def _trial(make_subscription, user, plan):
    now = utcnow()
    return make_subscription(user, plan, status="trialing", start=now, end=now, created_at=now)


def _history_count(db, sub_id):
    return db.query(UserSubscriptionHistoryEntity).filter(UserSubscriptionHistoryEntity.subscription_id == sub_id).count()


def test_flutterwave_success_activates_and_replay_is_ignored(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])

    r = _flw(public_client, _flw_charge(sub.id))
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True}
    db_session.refresh(sub)
    assert sub.status == "active"
    end = sub.current_period_end
    assert end - sub.current_period_start == timedelta(days=30)

    r = _flw(public_client, _flw_charge(sub.id))
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.current_period_end == end
    assert _history_count(db_session, sub.id) == 1

    row = db_session.query(UserSubscriptionHistoryEntity).one()
    assert row.transaction_id == "flutterwave:5551"
    assert row.payment_method == "flutterwave_mobilemoneygh"


def test_flutterwave_bad_or_missing_signature_is_rejected(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])

    r = _flw(public_client, _flw_charge(sub.id), secret="wrong-secret")
    assert r.status_code == 401

    body = json.dumps(_flw_charge(sub.id)).encode()
    r = public_client.post("/api/webhooks/flutterwave", content=body)
    assert r.status_code == 401

    db_session.refresh(sub)
    assert sub.status == "trialing"
    assert _history_count(db_session, sub.id) == 0


def test_flutterwave_failed_charge_marks_past_due(public_client, db_session, user, plans, make_subscription):
    now = utcnow()
    sub = make_subscription(user, plans["pro"], status="active", start=now - timedelta(days=29), end=now + timedelta(days=1))

    r = _flw(public_client, _flw_charge(sub.id, txn_id=777, status="failed", event="charge.failed"))

    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "past_due"


def test_unknown_subscription_is_acknowledged(public_client, db_session, plans):
    r = _flw(public_client, _flw_charge(99999))
    assert r.status_code == 200
    assert db_session.query(UserSubscriptionHistoryEntity).count() == 0


def test_event_needing_no_action_is_acknowledged(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])
    r = _flw(public_client, _flw_charge(sub.id, status="pending"))
    assert r.status_code == 200
    db_session.refresh(sub)
    assert sub.status == "trialing"


def test_signed_garbage_is_bad_request(public_client):
    body = b"not json"
    sig = hmac.new(FLW_SECRET.encode(), body, hashlib.sha256).hexdigest()
    r = public_client.post("/api/webhooks/flutterwave", content=body, headers={"verif-hash": sig})
    assert r.status_code == 400


def test_nowpayments_finished_activates_and_expired_fails(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])
    ipn = {
        "payment_id": 4242,
        "payment_status": "finished",
        "order_id": f"sub_{sub.id}_deadbeef",
        "price_amount": 29.99,
        "price_currency": "usd",
        "pay_currency": "btc",
    }

    r = _np(public_client, ipn)
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "active"

    r = _np(public_client, {**ipn, "payment_id": 4243, "payment_status": "expired"})
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "past_due"


def test_nowpayments_intermediate_status_is_ignored(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])
    r = _np(public_client, {"payment_id": 1, "payment_status": "confirming", "order_id": f"sub_{sub.id}_x1234567"})
    assert r.status_code == 200
    db_session.refresh(sub)
    assert sub.status == "trialing"


def test_nowpayments_bad_signature(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])
    r = _np(public_client, {"payment_id": 1, "payment_status": "finished", "order_id": str(sub.id)}, secret="nope")
    assert r.status_code == 401


def _stripe_event(sub_id, event_type="payment_intent.succeeded", event_id="evt_1", pi_id="pi_123"):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": pi_id,
                "object": "payment_intent",
                "amount": 2999,
                "amount_received": 2999 if event_type == "payment_intent.succeeded" else 0,
                "currency": "usd",
                "status": "succeeded" if event_type == "payment_intent.succeeded" else "requires_payment_method",
                "metadata": {"subscription_id": str(sub_id)},
            }
        },
    }


def test_stripe_payment_intent_succeeded(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["elite"])

    r = _stripe(public_client, _stripe_event(sub.id))
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "active"
    assert sub.current_period_end - sub.current_period_start == timedelta(days=365)

    # same PaymentIntent delivered under a new event id
    r = _stripe(public_client, _stripe_event(sub.id, event_id="evt_2"))
    assert r.status_code == 200
    assert _history_count(db_session, sub.id) == 1


def test_stripe_failure_then_success_on_same_intent(public_client, db_session, user, plans, make_subscription):
    now = utcnow()
    sub = make_subscription(user, plans["pro"], status="active", start=now - timedelta(days=29), end=now + timedelta(hours=2))

    r = _stripe(public_client, _stripe_event(sub.id, "payment_intent.payment_failed", event_id="evt_f1"))
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "past_due"

    r = _stripe(public_client, _stripe_event(sub.id, event_id="evt_s1"))
    assert r.status_code == 200, r.text
    db_session.refresh(sub)
    assert sub.status == "active"


def test_stripe_bad_signature_is_400(public_client, db_session, user, plans, make_subscription):
    sub = _trial(make_subscription, user, plans["pro"])
    r = _stripe(public_client, _stripe_event(sub.id), secret="whsec_wrong")
    assert r.status_code == 400
    db_session.refresh(sub)
    assert sub.status == "trialing"


def test_unknown_provider_is_404(public_client):
    r = public_client.post("/api/webhooks/paypal", content=b"{}")
    assert r.status_code == 404


def _choose_plan(db, user, plan):
    pending = PendingSignupEntity(user_id=user.id, plan_id=plan.id)
    db.add(pending)
    db.commit()
    db.refresh(pending)
    return pending


def test_stripe_payment_for_new_plan_replaces_current_subscription(public_client, db_session, user, plans, make_subscription):
    now = utcnow()
    old = make_subscription(user, plans["pro"], status="active", start=now - timedelta(days=3), end=now + timedelta(days=27))
    pending = _choose_plan(db_session, user, plans["elite"])
    event = _stripe_event(None, pi_id="pi_elite")
    event["data"]["object"]["amount"] = event["data"]["object"]["amount_received"] = 29900
    event["data"]["object"]["metadata"] = {"order_ref": f"chg_{pending.id}_abc12345"}

    r = _stripe(public_client, event)
    assert r.status_code == 200, r.text
    r = _stripe(public_client, {**event, "id": "evt_again"})
    assert r.status_code == 200

    subs = db_session.query(UserSubscriptionEntity).filter(UserSubscriptionEntity.user_id == user.id).all()
    assert sorted((s.plan_id, s.status) for s in subs) == sorted([
        (plans["pro"].id, "cancelled"), (plans["elite"].id, "active"),
    ])
    new = next(s for s in subs if s.id != old.id)
    assert _history_count(db_session, new.id) == 1
    assert _history_count(db_session, old.id) == 1


def test_failed_payment_for_new_plan_changes_nothing(public_client, db_session, user, plans, make_subscription):
    now = utcnow()
    current = make_subscription(user, plans["pro"], status="active", start=now - timedelta(days=3), end=now + timedelta(days=27))
    pending = _choose_plan(db_session, user, plans["elite"])
    charge = _flw_charge(None, status="failed", event="charge.failed")
    charge["data"]["tx_ref"] = f"chg_{pending.id}_abc12345"
    charge["data"]["meta"] = {}

    r = _flw(public_client, charge)

    assert r.status_code == 200, r.text
    db_session.refresh(current)
    db_session.refresh(pending)
    assert current.status == "active"
    assert pending.subscription_id is None
    assert db_session.query(UserSubscriptionEntity).filter(UserSubscriptionEntity.user_id == user.id).count() == 1
