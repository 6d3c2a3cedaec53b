import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import itertools
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root on sys.path so 'order_reconciliation' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

"""Pytest fixtures and factories.

Every test gets a fresh in-memory SQLite database (StaticPool keeps the single
connection alive across sessions), a controllable clock and a scripted gateway.
Async code is driven with asyncio.run inside plain tests.
"""
from order_reconciliation.config import load_settings  # noqa: E402
from order_reconciliation.database import Base, init_db  # noqa: E402
from order_reconciliation.exceptions import GatewayNotFound  # noqa: E402
from order_reconciliation.integrations.base import PaymentGateway  # noqa: E402
from order_reconciliation.integrations.normalization import normalize_charge  # noqa: E402
from order_reconciliation.jobs.reconciliation_cycle import ReconciliationCycle  # noqa: E402
from order_reconciliation.models.db import Order, OrderStatus  # noqa: E402
from order_reconciliation.services.audit import AuditSink  # noqa: E402
from order_reconciliation.services.lock_manager import LockManager  # noqa: E402
from order_reconciliation.services.reconciler import Reconciler  # noqa: E402

T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeGateway(PaymentGateway):
    """Scripted gateway.

    `script(reference, *outcomes)`: each call consumes the next outcome; the
    last one repeats. An outcome is either a payload dict or an exception
    instance to raise. Unscripted references answer 404.
    """

    name = "fake"

    def __init__(self):
        self.scripts: dict[str, list] = {}
        self.calls: list[str] = []
        self.on_call = None

    def script(self, reference: str, *outcomes) -> None:
        self.scripts[reference] = list(outcomes)

    def call_count(self, reference: str) -> int:
        return sum(1 for ref in self.calls if ref == reference)

    async def query_status(self, payment_reference: str):
        self.calls.append(payment_reference)
        if self.on_call is not None:
            self.on_call(payment_reference)
        outcomes = self.scripts.get(payment_reference)
        if not outcomes:
            raise GatewayNotFound(f"Charge {payment_reference} not found", status_code=404)
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return normalize_charge(payment_reference, outcome)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def recording_sleep():
    return RecordingSleep()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def settings():
    return load_settings(
        "test",
        batch_size=10,
        max_retries=3,
        retry_delay_seconds=1.0,
        backoff_multiplier=2.0,
        api_throttle_seconds=0.0,
        execution_timeout_seconds=240.0,
        lock_timeout_seconds=360.0,
        lock_backend="database",
        price_tolerance=0.05,
        expected_ticket_price=15000,
        pending_order_min_age_seconds=3600.0,
        pending_order_max_age_seconds=86400.0,
    )


# ---------- Data factory helpers ----------

@pytest.fixture()
def order_factory(session_factory, clock):
    counter = itertools.count(1)

    def _create(
        order_id: str | None = None,
        *,
        status: OrderStatus = OrderStatus.PENDING,
        amount: int = 9000,
        payment_reference: str | None = "auto",
        age: timedelta = timedelta(hours=2),
        email: str = "buyer@example.com",
    ) -> Order:
        n = next(counter)
        order_id = order_id or f"order-{n:03d}"
        if payment_reference == "auto":
            payment_reference = f"bill_{order_id}"
        created = clock() - age
        order = Order(
            id=order_id,
            payment_reference=payment_reference,
            status=status,
            amount=amount,
            customer_email=email,
            customer_name="Test Buyer",
            created_at=created,
            updated_at=created,
        )
        with session_factory() as session:
            session.add(order)
            session.commit()
        return order

    return _create


@pytest.fixture()
def load_order(session_factory):
    def _load(order_id: str) -> Order:
        with session_factory() as session:
            return session.get(Order, order_id)

    return _load


@pytest.fixture()
def reconciler(session_factory, gateway, settings, recording_sleep, clock):
    return Reconciler(session_factory, gateway, settings, sleep=recording_sleep, clock=clock)


@pytest.fixture()
def audit(session_factory, clock):
    return AuditSink(session_factory, clock=clock)


@pytest.fixture()
def lock_manager(session_factory, settings, clock):
    return LockManager(session_factory, lease_seconds=settings.lock_timeout_seconds, clock=clock)


@pytest.fixture()
def cycle(settings, session_factory, lock_manager, reconciler, audit, clock):
    return ReconciliationCycle(
        settings,
        session_factory,
        lock_manager=lock_manager,
        reconciler=reconciler,
        audit=audit,
        holder_id="test-host:1",
        clock=clock,
    )
