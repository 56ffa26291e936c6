import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["APP_ENV"] = "test"
os.environ["SCHEDULER_API_KEY"] = "test-scheduler-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["FLUTTERWAVE_SECRET_KEY"] = "FLWSECK_TEST-dummy"
os.environ["FLUTTERWAVE_WEBHOOK_SECRET"] = "flw-webhook-secret"
os.environ["NOWPAYMENTS_API_KEY"] = "np-api-key"
os.environ["NOWPAYMENTS_IPN_SECRET_KEY"] = "np-ipn-secret"
os.environ["REMINDER_WINDOW_DAYS"] = "3"
os.environ["GRACE_PERIOD_DAYS"] = "0"
os.environ["TRIAL_DAYS"] = "0"

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base

import models  # noqa: F401  registers every table on Base.metadata

from main import app
from api.deps import get_db, get_current_user, get_notifier
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_user import UserEntity

NOW = datetime(2025, 3, 1, 12, 0, 0)


class RecordingNotifier:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, user_id, template, data):
        if user_id in self.fail_for:
            return False
        self.sent.append((user_id, template, data))
        return True


@pytest.fixture(scope="session")
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # let SQLAlchemy, not pysqlite, drive BEGIN/SAVEPOINT; sqlite only enforces foreign keys when asked
    @event.listens_for(eng, "connect")
    def _no_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=eng)
    return eng


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()

    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def plans(db_session):
    free = SubscriptionPlanEntity(
        name="free", display_name="Free", price=Decimal("0"), currency="USD",
        billing_cycle="monthly", features={"max_courses": 3}, is_active=True,
    )
    pro = SubscriptionPlanEntity(
        name="pro", display_name="Pro", price=Decimal("29.99"), currency="USD",
        billing_cycle="monthly", features={"max_courses": None}, is_active=True,
    )
    elite = SubscriptionPlanEntity(
        name="elite", display_name="Elite", price=Decimal("299.00"), currency="USD",
        billing_cycle="yearly", features={"one_on_one_sessions": 4}, is_active=True,
    )
    db_session.add_all([free, pro, elite])
    db_session.commit()
    return {"free": free, "pro": pro, "elite": elite}


@pytest.fixture()
def user(db_session):
    u = UserEntity(
        username="trader",
        email="trader@example.com",
        password_hash="x",
        first_name="Ama",
        is_admin=False,
        is_active=True,
    )
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture()
def admin_user(db_session):
    u = UserEntity(
        username="admin",
        email="admin@example.com",
        password_hash="x",
        is_admin=True,
        is_active=True,
    )
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture()
def make_subscription(db_session):
    def _make(user, plan, status="active", start=None, end=None, **extra):
        start = start or NOW - timedelta(days=10)
        end = end or start + timedelta(days=30)
        sub = UserSubscriptionEntity(
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            current_period_start=start,
            current_period_end=end,
            created_at=extra.pop("created_at", start),
            **extra,
        )
        db_session.add(sub)
        db_session.commit()
        db_session.refresh(sub)
        return sub

    return _make


@pytest.fixture()
def notifier():
    return RecordingNotifier()


def _client(db_session, current_user=None, notifier=None):
    def _get_db_override():
        yield db_session

    app.dependency_overrides[get_db] = _get_db_override
    if current_user is not None:
        app.dependency_overrides[get_current_user] = lambda: current_user
    if notifier is not None:
        app.dependency_overrides[get_notifier] = lambda: notifier
    return TestClient(app)


@pytest.fixture()
def client(db_session, user, notifier):
    try:
        yield _client(db_session, current_user=user, notifier=notifier)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def admin_client(db_session, admin_user):
    try:
        yield _client(db_session, current_user=admin_user)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def public_client(db_session, notifier):
    try:
        yield _client(db_session, notifier=notifier)
    finally:
        app.dependency_overrides.clear()
