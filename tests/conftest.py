"""
Pytest Configuration and Fixtures
"""

import os
import sys
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)
os.environ.pop("TESTING_MODE", None)
os.environ.pop("DEBUG", None)

from screentime_settlement.billing.gateway import (  # noqa: E402
    IDEMPOTENCY_REUSED_CODE,
    GatewayRejectedError,
    GatewayResult,
    GatewayTransientError,
    PaymentGateway,
)
from screentime_settlement.core.timing import TimingPolicy  # noqa: E402
from screentime_settlement.engine import (  # noqa: E402
    CommitmentService,
    ReconciliationEngine,
    SettlementEngine,
    UsageLedger,
    UsageSyncService,
    WeeklyPoolAggregator,
)
from screentime_settlement.persistence import (  # noqa: E402
    Database,
    PaymentRepository,
    PenaltyRepository,
    PoolRepository,
    UsageRepository,
)

# Monday 2026-10-19 12:00 America/New_York (EDT)
WEEK_END = datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc)
WEEK_START = WEEK_END - timedelta(days=7)
GRACE_EXPIRES = WEEK_END + timedelta(days=1)
AFTER_GRACE = GRACE_EXPIRES + timedelta(minutes=5)


class FakeClock:
    """Settable clock handed to TimingPolicy."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """
    In-memory gateway honoring idempotency keys the way Stripe does.

    A repeated key replays the first result; a repeated key with another
    amount is rejected. Queue errors with fail_next_charge/fail_next_refund
    to simulate declines and outages. after_charge/after_refund run once,
    after the gateway has executed a call but before the caller sees the
    response, to interleave a competing request.
    """

    def __init__(self):
        self.charges: List[Dict] = []
        self.refunds: List[Dict] = []
        self.charge_calls = 0
        self.refund_calls = 0
        self.after_charge: Optional[Callable[[], None]] = None
        self.after_refund: Optional[Callable[[], None]] = None
        self._by_key: Dict[str, Tuple[int, GatewayResult]] = {}
        self._charge_errors: List[Exception] = []
        self._refund_errors: List[Exception] = []
        self._lock = threading.Lock()

    def fail_next_charge(self, error: Exception) -> None:
        self._charge_errors.append(error)

    def fail_next_refund(self, error: Exception) -> None:
        self._refund_errors.append(error)

    def _replay(self, idempotency_key: str, amount_cents: int) -> Optional[GatewayResult]:
        if idempotency_key not in self._by_key:
            return None
        amount, result = self._by_key[idempotency_key]
        if amount != amount_cents:
            raise GatewayRejectedError(
                "Keys for idempotent requests can only be used with the same parameters",
                code=IDEMPOTENCY_REUSED_CODE,
            )
        return result

    def charge(self, customer_ref, amount_cents, idempotency_key, payment_method_ref=None, metadata=None):
        with self._lock:
            self.charge_calls += 1
            if self._charge_errors:
                raise self._charge_errors.pop(0)
            result = self._replay(idempotency_key, amount_cents)
            if result is None:
                result = GatewayResult(success=True, gateway_ref=f"pi_{len(self._by_key) + 1}")
                self._by_key[idempotency_key] = (amount_cents, result)
                self.charges.append({
                    "customer_ref": customer_ref,
                    "amount_cents": amount_cents,
                    "idempotency_key": idempotency_key,
                    "gateway_ref": result.gateway_ref,
                })
            hook, self.after_charge = self.after_charge, None
        if hook:
            hook()
        return result

    def refund(self, gateway_ref, amount_cents, idempotency_key, metadata=None):
        with self._lock:
            self.refund_calls += 1
            if self._refund_errors:
                raise self._refund_errors.pop(0)
            result = self._replay(idempotency_key, amount_cents)
            if result is None:
                result = GatewayResult(success=True, gateway_ref=f"re_{len(self._by_key) + 1}")
                self._by_key[idempotency_key] = (amount_cents, result)
                self.refunds.append({
                    "charge_ref": gateway_ref,
                    "amount_cents": amount_cents,
                    "idempotency_key": idempotency_key,
                    "gateway_ref": result.gateway_ref,
                })
            hook, self.after_refund = self.after_refund, None
        if hook:
            hook()
        return result


@pytest.fixture
def db():
    """Temporary SQLite database with the schema applied."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    database = Database(f"sqlite:///{db_path}")
    database.initialize()

    yield database

    database.close()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except FileNotFoundError:
            pass


@pytest.fixture
def clock():
    """Clock parked mid-week, before the deadline."""
    return FakeClock(WEEK_END - timedelta(days=3))


@pytest.fixture
def policy(clock):
    return TimingPolicy.production(clock_now=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def commitment_service(policy, db):
    return CommitmentService(policy, db)


@pytest.fixture
def ledger(policy, db):
    return UsageLedger(policy, db)


@pytest.fixture
def settlement(policy, gateway, db):
    return SettlementEngine(policy, gateway, db, processor_minimum_cents=60)


@pytest.fixture
def reconciliation(policy, gateway, db):
    return ReconciliationEngine(policy, gateway, db, allow_adjustment_charges=False)


@pytest.fixture
def sync_service(policy, reconciliation, db):
    return UsageSyncService(policy, reconciliation, db)


@pytest.fixture
def pool_aggregator(policy, db):
    return WeeklyPoolAggregator(policy, db)


@pytest.fixture
def penalties(db):
    return PenaltyRepository(db)


@pytest.fixture
def payments(db):
    return PaymentRepository(db)


@pytest.fixture
def usage(db):
    return UsageRepository(db)


@pytest.fixture
def pools(db):
    return PoolRepository(db)


@pytest.fixture
def make_commitment(commitment_service):
    """Factory: 60 min/day at 10 cents/min (cap 4200) for WEEK_END by default."""

    def _make(
        user_id: str = "user-1",
        limit_minutes: int = 60,
        penalty_per_minute_cents: int = 10,
        week_end: Optional[datetime] = WEEK_END,
        with_payment_method: bool = True,
    ):
        return commitment_service.create_commitment(
            user_id=user_id,
            limit_minutes=limit_minutes,
            penalty_per_minute_cents=penalty_per_minute_cents,
            saved_payment_method_ref="pm_test" if with_payment_method else None,
            customer_ref=f"cus_{user_id}" if with_payment_method else None,
            week_end=week_end,
        )

    return _make


@pytest.fixture
def transient_error():
    return GatewayTransientError("gateway timed out")
