"""
Reconciliation operations endpoints.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
import time

from order_reconciliation.api.deps import (
    check_admin_access,
    get_audit,
    get_db,
    get_pagination_params,
    get_scheduler,
    get_settings,
)
from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.exceptions import LockStorageError, LockUnavailable
from order_reconciliation.jobs.scheduler import ReconciliationScheduler
from order_reconciliation.models.db import ReconciliationOutcome, ReconciliationRun
from order_reconciliation.models.db.enums import OutcomeKind, RunStatus
from order_reconciliation.models.schemas.base import ResponseBase
from order_reconciliation.models.schemas.reconciliation import (
    LeaseRead,
    MetricsRead,
    OutcomeRead,
    PurgeRequest,
    RunRead,
)
from order_reconciliation.services.audit import AuditSink
from order_reconciliation.utils import get_logger, log_business_event, log_performance

router = APIRouter(dependencies=[Depends(check_admin_access)])
logger = get_logger(__name__)

@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run one reconciliation cycle now"
)
async def trigger_reconciliation(
    request: Request,
    scheduler: ReconciliationScheduler = Depends(get_scheduler)
) -> ResponseBase:
    """Run a cycle synchronously. 409 when a cycle is already running (here or on another instance)."""
    start_time = time.time()
    request_id = getattr(request.state, "request_id", "unknown")

    logger.info("Manual reconciliation triggered", request_id=request_id)

    summary = await scheduler.run_now()
    if summary is None:
        raise LockUnavailable(holder_id=scheduler.cycle.holder_id)
    if summary.status == RunStatus.SKIPPED:
        raise LockUnavailable(holder_id=summary.lock_held_by)

    duration_ms = (time.time() - start_time) * 1000
    log_performance(
        operation="manual_reconciliation_cycle",
        duration_ms=duration_ms,
        additional_data={"execution_id": summary.execution_id}
    )
    log_business_event(
        "manual_reconciliation",
        {"status": summary.status.value, "orders_processed": summary.orders_processed},
        execution_id=summary.execution_id,
        request_id=request_id
    )
    return ResponseBase(
        success=summary.status != RunStatus.FAILED,
        message=f"Reconciliation cycle {summary.status.value}",
        data=summary.to_dict()
    )

@router.get(
    "/metrics",
    response_model=MetricsRead,
    summary="Outcome counters for the last cycle and cumulative"
)
async def get_metrics(audit: AuditSink = Depends(get_audit)) -> MetricsRead:
    return MetricsRead(**audit.metrics())

@router.get(
    "/outcomes",
    response_model=List[OutcomeRead],
    summary="List reconciliation outcomes"
)
async def list_outcomes(
    request: Request,
    kind: Optional[OutcomeKind] = Query(None),
    order_id: Optional[str] = Query(None),
    execution_id: Optional[str] = Query(None),
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db)
) -> List[OutcomeRead]:
    """Newest first, optionally filtered by outcome kind, order or cycle."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info(
        "Reconciliation outcomes requested",
        kind=kind.value if kind else None,
        order_id=order_id,
        execution_id=execution_id,
        request_id=request_id,
        **pagination
    )

    query = db.query(ReconciliationOutcome)
    if kind:
        query = query.filter(ReconciliationOutcome.kind == kind)
    if order_id:
        query = query.filter(ReconciliationOutcome.order_id == order_id)
    if execution_id:
        query = query.filter(ReconciliationOutcome.execution_id == execution_id)

    rows = (
        query.order_by(ReconciliationOutcome.created_at.desc(), ReconciliationOutcome.id.desc())
        .offset(pagination["offset"])
        .limit(pagination["limit"])
        .all()
    )
    return [OutcomeRead.model_validate(row) for row in rows]

@router.get(
    "/runs",
    response_model=List[RunRead],
    summary="List recent reconciliation cycles"
)
async def list_runs(
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    pagination: dict = Depends(get_pagination_params),
    db: Session = Depends(get_db)
) -> List[RunRead]:
    query = db.query(ReconciliationRun)
    if status_filter:
        query = query.filter(ReconciliationRun.status == status_filter)
    rows = (
        query.order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc())
        .offset(pagination["offset"])
        .limit(pagination["limit"])
        .all()
    )
    return [RunRead.model_validate(row) for row in rows]

@router.get(
    "/lock",
    response_model=Optional[LeaseRead],
    summary="Current reconciliation lease"
)
async def get_lock(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> Optional[LeaseRead]:
    try:
        lease = scheduler.cycle.lock_manager.current()
    except LockStorageError as e:
        logger.error("Lease lookup failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Lock storage unavailable"
        )
    if lease is None:
        return None
    return LeaseRead(holder_id=lease.holder_id, acquired_at=lease.acquired_at, expires_at=lease.expires_at)

@router.get(
    "/scheduler",
    response_model=ResponseBase,
    summary="Scheduler status and next runs"
)
async def scheduler_status(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> ResponseBase:
    return ResponseBase(success=True, message="Scheduler status", data=scheduler.status())

@router.post(
    "/purge",
    response_model=ResponseBase,
    summary="Purge audit records outside the retention window"
)
async def purge_audit(
    request: Request,
    body: Optional[PurgeRequest] = None,
    audit: AuditSink = Depends(get_audit),
    settings: ReconciliationSettings = Depends(get_settings)
) -> ResponseBase:
    request_id = getattr(request.state, "request_id", "unknown")
    days = (body.days if body and body.days else None) or settings.audit_retention_days
    try:
        deleted = audit.purge_older_than(days)
    except SQLAlchemyError as e:
        logger.error("Audit purge failed", error=str(e), request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Audit purge failed"
        )
    logger.info("Audit purge requested", days=days, deleted=deleted, request_id=request_id)
    return ResponseBase(success=True, message=f"Purged {deleted} outcome records", data={"days": days, "deleted": deleted})
