"""Profit-take approval API."""

from fastapi import APIRouter, Depends

from tradeguard.api.deps import get_broker_client
from tradeguard.engine import approvals

router = APIRouter(prefix="/api/profit-takes", tags=["profit-takes"])


@router.get("")
def pending_requests():
    return approvals.list_pending_profit_takes()


@router.post("/{request_id}/approve")
async def approve(request_id: int, broker=Depends(get_broker_client)):
    position = await approvals.approve_profit_take(request_id, broker=broker)
    return {"ok": True, "closed_trade_id": position.id, "realized_pnl": position.realized_pnl}


@router.post("/{request_id}/deny")
def deny(request_id: int):
    req = approvals.deny_profit_take(request_id)
    return {"ok": True, "request_id": req.id, "status": req.status}
