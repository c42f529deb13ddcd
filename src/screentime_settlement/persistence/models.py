"""
Data Models for Persistence Layer

One dataclass per relation. Timestamps are carried as canonical UTC ISO
strings; Postgres hands back datetime objects which are normalized on read.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
import json
import uuid

from ..core.status import MonitoringStatus, PoolStatus, SettlementStatus


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: Any) -> Optional[str]:
    """Normalize a stored timestamp (str or datetime) to a UTC ISO string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def _date(value: Any) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class AppsToLimit:
    """The apps and app categories a commitment restricts."""
    app_ids: List[str] = field(default_factory=list)
    category_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"app_ids": list(self.app_ids), "category_ids": list(self.category_ids)}

    @classmethod
    def from_value(cls, value: Any) -> "AppsToLimit":
        if isinstance(value, str):
            value = json.loads(value) if value else {}
        value = value or {}
        return cls(
            app_ids=list(value.get("app_ids", [])),
            category_ids=list(value.get("category_ids", [])),
        )


@dataclass
class CommitmentRecord:
    """A user's weekly limit/penalty agreement."""
    user_id: str
    week_start: str
    week_end: str
    grace_expires_at: str
    limit_minutes: int
    penalty_per_minute_cents: int
    max_charge_cents: int
    apps_to_limit: AppsToLimit = field(default_factory=AppsToLimit)
    monitoring_status: MonitoringStatus = MonitoringStatus.OK
    monitoring_revoked_at: Optional[str] = None
    status: str = "pending"
    saved_payment_method_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "week_start": self.week_start,
            "week_end": self.week_end,
            "grace_expires_at": self.grace_expires_at,
            "limit_minutes": self.limit_minutes,
            "penalty_per_minute_cents": self.penalty_per_minute_cents,
            "max_charge_cents": self.max_charge_cents,
            "apps_to_limit": self.apps_to_limit.to_dict(),
            "monitoring_status": self.monitoring_status.value,
            "monitoring_revoked_at": self.monitoring_revoked_at,
            "status": self.status,
            "saved_payment_method_ref": self.saved_payment_method_ref,
            "customer_ref": self.customer_ref,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.user_id,
            self.week_start,
            self.week_end,
            self.grace_expires_at,
            self.limit_minutes,
            self.penalty_per_minute_cents,
            self.max_charge_cents,
            json.dumps(self.apps_to_limit.to_dict()),
            self.monitoring_status.value,
            self.monitoring_revoked_at,
            self.status,
            self.saved_payment_method_ref,
            self.customer_ref,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CommitmentRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            week_start=_ts(row["week_start"]),
            week_end=_ts(row["week_end"]),
            grace_expires_at=_ts(row["grace_expires_at"]),
            limit_minutes=row["limit_minutes"],
            penalty_per_minute_cents=row["penalty_per_minute_cents"],
            max_charge_cents=row["max_charge_cents"],
            apps_to_limit=AppsToLimit.from_value(row.get("apps_to_limit")),
            monitoring_status=MonitoringStatus(row.get("monitoring_status", "ok")),
            monitoring_revoked_at=_ts(row.get("monitoring_revoked_at")),
            status=row.get("status", "pending"),
            saved_payment_method_ref=row.get("saved_payment_method_ref"),
            customer_ref=row.get("customer_ref"),
            created_at=_ts(row["created_at"]),
        )


@dataclass
class DailyUsageRecord:
    """One day of reported (or estimated) usage for a commitment."""
    user_id: str
    commitment_id: str
    date: str
    used_minutes: float
    limit_minutes: int
    exceeded_minutes: float
    penalty_cents: int
    is_estimated: bool = False
    source: str = "client_sync"
    reported_at: str = field(default_factory=_now_iso)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "commitment_id": self.commitment_id,
            "date": self.date,
            "used_minutes": self.used_minutes,
            "limit_minutes": self.limit_minutes,
            "exceeded_minutes": self.exceeded_minutes,
            "penalty_cents": self.penalty_cents,
            "is_estimated": self.is_estimated,
            "source": self.source,
            "reported_at": self.reported_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.user_id,
            self.commitment_id,
            self.date,
            self.used_minutes,
            self.limit_minutes,
            self.exceeded_minutes,
            self.penalty_cents,
            self.is_estimated,
            self.source,
            self.reported_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DailyUsageRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            commitment_id=row["commitment_id"],
            date=_date(row["date"]),
            used_minutes=float(row["used_minutes"]),
            limit_minutes=row["limit_minutes"],
            exceeded_minutes=float(row["exceeded_minutes"]),
            penalty_cents=row["penalty_cents"],
            is_estimated=bool(row.get("is_estimated", False)),
            source=row.get("source", "client_sync"),
            reported_at=_ts(row["reported_at"]),
        )


@dataclass
class UserWeekPenaltyRecord:
    """Settlement state for one (user, week). `version` guards every update."""
    user_id: str
    week_start: str
    week_end: str
    total_penalty_cents: int = 0
    actual_amount_cents: int = 0
    charged_amount_cents: int = 0
    settlement_status: SettlementStatus = SettlementStatus.PENDING
    needs_reconciliation: bool = False
    reconciliation_delta_cents: int = 0
    reconciliation_reason: Optional[str] = None
    reconciliation_detected_at: Optional[str] = None
    refund_amount_cents: int = 0
    charged_at: Optional[str] = None
    refund_issued_at: Optional[str] = None
    charge_gateway_ref: Optional[str] = None
    refund_gateway_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    last_updated: Optional[str] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_start": self.week_start,
            "week_end": self.week_end,
            "total_penalty_cents": self.total_penalty_cents,
            "actual_amount_cents": self.actual_amount_cents,
            "charged_amount_cents": self.charged_amount_cents,
            "settlement_status": self.settlement_status.value,
            "needs_reconciliation": self.needs_reconciliation,
            "reconciliation_delta_cents": self.reconciliation_delta_cents,
            "reconciliation_reason": self.reconciliation_reason,
            "reconciliation_detected_at": self.reconciliation_detected_at,
            "refund_amount_cents": self.refund_amount_cents,
            "charged_at": self.charged_at,
            "refund_issued_at": self.refund_issued_at,
            "charge_gateway_ref": self.charge_gateway_ref,
            "refund_gateway_ref": self.refund_gateway_ref,
            "failure_reason": self.failure_reason,
            "last_updated": self.last_updated,
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserWeekPenaltyRecord":
        return cls(
            user_id=row["user_id"],
            week_start=_ts(row["week_start"]),
            week_end=_ts(row["week_end"]),
            total_penalty_cents=row["total_penalty_cents"],
            actual_amount_cents=row["actual_amount_cents"],
            charged_amount_cents=row["charged_amount_cents"],
            settlement_status=SettlementStatus(row["settlement_status"]),
            needs_reconciliation=bool(row["needs_reconciliation"]),
            reconciliation_delta_cents=row["reconciliation_delta_cents"],
            reconciliation_reason=row.get("reconciliation_reason"),
            reconciliation_detected_at=_ts(row.get("reconciliation_detected_at")),
            refund_amount_cents=row.get("refund_amount_cents", 0),
            charged_at=_ts(row.get("charged_at")),
            refund_issued_at=_ts(row.get("refund_issued_at")),
            charge_gateway_ref=row.get("charge_gateway_ref"),
            refund_gateway_ref=row.get("refund_gateway_ref"),
            failure_reason=row.get("failure_reason"),
            last_updated=_ts(row.get("last_updated")),
            version=row["version"],
        )


@dataclass
class PaymentRecord:
    """Append-only record of one charge or refund."""
    user_id: str
    week_start: str
    amount_cents: int
    payment_type: str
    idempotency_key: str
    status: str = "succeeded"
    gateway_ref: Optional[str] = None
    related_gateway_ref: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "week_start": self.week_start,
            "amount_cents": self.amount_cents,
            "payment_type": self.payment_type,
            "status": self.status,
            "gateway_ref": self.gateway_ref,
            "related_gateway_ref": self.related_gateway_ref,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.user_id,
            self.week_start,
            self.amount_cents,
            self.payment_type,
            self.status,
            self.gateway_ref,
            self.related_gateway_ref,
            self.idempotency_key,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            week_start=_ts(row["week_start"]),
            amount_cents=row["amount_cents"],
            payment_type=row["payment_type"],
            status=row["status"],
            gateway_ref=row.get("gateway_ref"),
            related_gateway_ref=row.get("related_gateway_ref"),
            idempotency_key=row["idempotency_key"],
            created_at=_ts(row["created_at"]),
        )


@dataclass
class WeeklyPoolRecord:
    """Aggregate of all users' settled penalties for one week."""
    week_start: str
    week_end: str
    total_penalty_cents: int = 0
    status: PoolStatus = PoolStatus.OPEN
    closed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start,
            "week_end": self.week_end,
            "total_penalty_cents": self.total_penalty_cents,
            "status": self.status.value,
            "closed_at": self.closed_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WeeklyPoolRecord":
        return cls(
            week_start=_ts(row["week_start"]),
            week_end=_ts(row["week_end"]),
            total_penalty_cents=row["total_penalty_cents"],
            status=PoolStatus(row["status"]),
            closed_at=_ts(row.get("closed_at")),
        )
