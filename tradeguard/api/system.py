"""System API: health, scheduler status, tick logs, audit, reconcile, kill switch."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session, select

from tradeguard.api.deps import get_broker_client, get_optional_broker
from tradeguard.database import get_session
from tradeguard.models.tick_log import TickLog
from tradeguard.services import audit_ledger

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler")
def scheduler_status():
    """Current scheduler state with job details."""
    from tradeguard.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.get("/logs")
def tick_logs(
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(TickLog).order_by(TickLog.started_at.desc())
    if status is not None:
        stmt = stmt.where(TickLog.status == status)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/audit")
def audit_entries(
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    limit: int = 100,
):
    return audit_ledger.list_entries(entity_type, entity_id, action, limit)


@router.get("/audit/verify")
def verify_audit():
    result = audit_ledger.verify_chain()
    return {
        "valid": result.valid,
        "checked": result.checked,
        "first_invalid_id": result.first_invalid_id,
        "reason": result.reason,
    }


@router.post("/reconcile")
async def reconcile(broker=Depends(get_broker_client)):
    """Manually run one reconciliation tick."""
    from tradeguard.engine.reconciliation import run_reconciliation_tick

    result = await run_reconciliation_tick(broker=broker)
    return {
        "closed_count": result.closed_count,
        "kill_switch_triggered": result.kill_switch_triggered,
        "evaluated": result.evaluated,
        "skipped": result.skipped,
        "errors": result.errors,
        "status": result.status,
    }


class KillSwitchRequest(BaseModel):
    reason: str | None = None


@router.post("/kill-switch")
async def kill_switch(body: KillSwitchRequest | None = None, broker=Depends(get_optional_broker)):
    """Cancel all orders, liquidate, and close every open position."""
    from tradeguard.services.kill_switch import trigger_kill_switch

    return await trigger_kill_switch(broker, actor="operator", reason=body.reason if body else None)
