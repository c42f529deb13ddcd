"""
Screen-Time Settlement - FastAPI Server

Endpoints:
- POST /commitments - Create a weekly commitment
- POST /commitments/{id}/monitoring-revoked - Record monitoring revocation
- POST /usage/sync - Record a day of usage (reconciles late worst-case weeks)
- POST /settle - Settle a week (defaults to the most recently completed one)
- POST /reconcile - Retry flagged reconciliations
- POST /pools/close - Close a week's pool
- GET /penalties/{user_id} - Settlement state and payments for a week
- POST /webhooks/stripe - PaymentIntent status updates
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..billing.gateway import PaymentGateway
from ..billing.stripe_gateway import StripeGateway, StripeWebhookError
from ..core.exceptions import NotFoundError, ValidationError
from ..core.timing import TimingPolicy, isoformat_utc
from ..engine import (
    CommitmentService,
    ReconciliationEngine,
    SettlementEngine,
    UsageSyncService,
    WeeklyPoolAggregator,
)
from ..persistence.database import Database, get_database
from ..persistence.models import AppsToLimit
from ..persistence.repository import (
    CommitmentRepository,
    PaymentRepository,
    PenaltyRepository,
    PoolRepository,
)

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AppsToLimitModel(_Request):
    """Apps and categories restricted by a commitment."""
    app_ids: List[str] = Field(default_factory=list, alias="appIds")
    category_ids: List[str] = Field(default_factory=list, alias="categoryIds")


class CommitmentRequest(_Request):
    """Request to create a weekly commitment."""
    user_id: str = Field(..., alias="userId", min_length=1)
    limit_minutes: int = Field(..., alias="limitMinutes", ge=0)
    penalty_per_minute_cents: int = Field(..., alias="penaltyPerMinuteCents", ge=0)
    apps_to_limit: AppsToLimitModel = Field(default_factory=AppsToLimitModel, alias="appsToLimit")
    saved_payment_method_ref: Optional[str] = Field(None, alias="savedPaymentMethodRef")
    customer_ref: Optional[str] = Field(None, alias="customerRef")
    week_end: Optional[datetime] = Field(None, alias="weekEnd", description="Deadline; defaults to the next one")


class RevokeMonitoringRequest(_Request):
    revoked_at: Optional[datetime] = Field(None, alias="revokedAt")


class UsageSyncRequest(_Request):
    """A day of usage reported by the client."""
    user_id: str = Field(..., alias="userId", min_length=1)
    commitment_id: str = Field(..., alias="commitmentId", min_length=1)
    date: str = Field(..., description="Local calendar date, YYYY-MM-DD")
    used_minutes: float = Field(..., alias="usedMinutes", ge=0)


class SettleRequest(_Request):
    target_week: Optional[str] = Field(None, alias="targetWeek", description="Week deadline date or timestamp")


class ReconcileRequest(_Request):
    limit: int = Field(default=25, ge=1, le=100)
    week_end: Optional[str] = Field(None, alias="weekEnd")
    user_id: Optional[str] = Field(None, alias="userId")
    dry_run: bool = Field(default=False, alias="dryRun")


class ClosePoolRequest(_Request):
    week_end: Optional[str] = Field(None, alias="weekEnd")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    testing_mode: bool
    stripe_live: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        db: Optional[Database] = None,
        gateway: Optional[PaymentGateway] = None,
        policy: Optional[TimingPolicy] = None,
    ):
        self.db = db or get_database()
        self.policy = policy or TimingPolicy.from_environment()
        self.gateway = gateway or StripeGateway()

        self.commitment_service = CommitmentService(self.policy, self.db)
        self.settlement = SettlementEngine(self.policy, self.gateway, self.db)
        self.reconciliation = ReconciliationEngine(self.policy, self.gateway, self.db)
        self.sync = UsageSyncService(self.policy, self.reconciliation, self.db)
        self.pools = WeeklyPoolAggregator(self.policy, self.db)

        self.commitments = CommitmentRepository(self.db)
        self.penalties = PenaltyRepository(self.db)
        self.payments = PaymentRepository(self.db)
        self.pool_repository = PoolRepository(self.db)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    logger.info("settlement_api_starting", version=__version__)
    if app_state is None:
        app_state = AppState()
    yield
    logger.info("settlement_api_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Screen-Time Settlement",
        description="""
# Weekly Screen-Time Penalty Settlement

Users commit to a weekly screen-time limit backed by a per-minute penalty.

## Features
- **Grace-window settlement**: actual penalty if usage was synced inside the grace window, worst case otherwise
- **Late-data reconciliation**: refunds when late usage shows less was owed
- **Exactly-once charges**: compare-and-swap on every status change plus gateway idempotency keys
- **Weekly pools**: per-week totals of everything charged
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @application.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        testing_mode=not state.policy.calendar_aligned,
        stripe_live=getattr(state.gateway, "is_available", False),
        uptime_seconds=uptime,
    )


@app.post("/commitments", status_code=201, tags=["Commitments"])
def create_commitment(
    request: CommitmentRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Create a commitment for the next weekly deadline.

    The worst-case cap (limit x rate x 7) is fixed here and never changes.
    """
    commitment = state.commitment_service.create_commitment(
        user_id=request.user_id,
        limit_minutes=request.limit_minutes,
        penalty_per_minute_cents=request.penalty_per_minute_cents,
        apps_to_limit=AppsToLimit(
            app_ids=request.apps_to_limit.app_ids,
            category_ids=request.apps_to_limit.category_ids,
        ),
        saved_payment_method_ref=request.saved_payment_method_ref,
        customer_ref=request.customer_ref,
        week_end=request.week_end,
    )
    return commitment.to_dict()


@app.get("/commitments/{commitment_id}", tags=["Commitments"])
def get_commitment(
    commitment_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    commitment = state.commitments.get(commitment_id)
    if commitment is None:
        raise HTTPException(status_code=404, detail=f"Commitment {commitment_id} not found")
    return commitment.to_dict()


@app.post("/commitments/{commitment_id}/monitoring-revoked", tags=["Commitments"])
def revoke_monitoring(
    commitment_id: str,
    request: RevokeMonitoringRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Record that the user revoked screen-time monitoring. Idempotent."""
    commitment = state.commitment_service.revoke_monitoring(commitment_id, request.revoked_at)
    return commitment.to_dict()


@app.post("/usage/sync", tags=["Usage"])
def sync_usage(
    request: UsageSyncRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Record a day of usage.

    If the week was already charged at the worst case the new total is
    reconciled immediately and the result is included in the response.
    """
    return state.sync.sync_usage(
        user_id=request.user_id,
        commitment_id=request.commitment_id,
        usage_date=request.date,
        used_minutes=request.used_minutes,
    )


@app.post("/settle", tags=["Settlement"])
def settle_week(
    request: Optional[SettleRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Settle a week.

    Safe to call repeatedly: settled commitments are reported as
    already_settled and nothing is charged twice.
    """
    target = request.target_week if request else None
    run = state.settlement.settle(target)
    return run.to_dict()


@app.post("/reconcile", tags=["Settlement"])
def process_reconciliation_queue(
    request: Optional[ReconcileRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Retry reconciliations left flagged by gateway failures."""
    request = request or ReconcileRequest()
    run = state.reconciliation.process_queue(
        limit=request.limit,
        week_end=request.week_end,
        user_id=request.user_id,
        dry_run=request.dry_run,
    )
    return run.to_dict()


@app.post("/pools/close", tags=["Pools"])
def close_pool(
    request: Optional[ClosePoolRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Close the pool for a week (defaults to the most recently completed one)."""
    week_end = request.week_end if request else None
    pool = state.pools.close_week_ending(week_end)
    return pool.to_dict()


@app.get("/pools", tags=["Pools"])
def list_pools(
    limit: int = 20,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    pools = state.pool_repository.list_all(limit=limit)
    return {"total": len(pools), "pools": [p.to_dict() for p in pools]}


@app.get("/penalties/{user_id}", tags=["Settlement"])
def get_penalty(
    user_id: str,
    week_end: Optional[str] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Settlement state and payments for one user's week."""
    target = state.policy.resolve_week_target(week_end)
    week_start = isoformat_utc(state.policy.week_start(target))

    penalty = state.penalties.get(user_id, week_start)
    if penalty is None:
        raise HTTPException(status_code=404, detail=f"No penalty for {user_id} week ending {isoformat_utc(target)}")

    payments = state.payments.list_for_user_week(user_id, week_start)
    return {
        "penalty": penalty.to_dict(),
        "payments": [p.to_dict() for p in payments],
    }


@app.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """Apply PaymentIntent status changes to recorded payments."""
    if not isinstance(state.gateway, StripeGateway):
        raise HTTPException(status_code=400, detail="Stripe webhooks not enabled")

    payload = await request.body()
    try:
        event = state.gateway.parse_webhook(payload, stripe_signature)
    except StripeWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))

    updated = 0
    if event["status"] and event["gateway_ref"]:
        updated = state.payments.update_status_by_gateway_ref(event["gateway_ref"], event["status"])

    return {"event_type": event["event_type"], "processed": True, "payments_updated": updated}


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "screentime_settlement.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
