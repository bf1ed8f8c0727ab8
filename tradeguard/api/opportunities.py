"""Opportunities API: ingest, list, approve, reject, narrative."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlmodel import Session, select

from tradeguard.api.deps import get_broker_client, get_narrative_client
from tradeguard.database import get_session
from tradeguard.engine import approvals
from tradeguard.models.opportunity import Opportunity
from tradeguard.schemas.opportunity import (
    ApproveRequest,
    OpportunityCreate,
    OpportunityRead,
    RejectRequest,
    StatusRequest,
)
from tradeguard.services import audit_ledger
from tradeguard.services.narrative import NarrativeClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/opportunities", tags=["opportunities"])


@router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Opportunity).order_by(Opportunity.created_at.desc())
    if status is not None:
        stmt = stmt.where(Opportunity.status == status)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.post("", response_model=OpportunityRead, status_code=201)
async def create_opportunity(
    data: OpportunityCreate,
    session: Session = Depends(get_session),
    narrative: NarrativeClient = Depends(get_narrative_client),
):
    """Publish a proposed trade for human review."""
    text = await narrative.explain(
        data.symbol,
        data.side.value,
        {"entry": data.entry_price, "stop": data.stop_price, "target": data.target_price},
    )
    opp = Opportunity(
        **data.model_dump(exclude={"side"}),
        side=data.side.value,
        ai_summary=text.summary,
        ai_risks=text.risks,
    )
    session.add(opp)
    session.commit()
    session.refresh(opp)
    audit_ledger.append("research", "OPPORTUNITY_PUBLISHED", "opportunity", opp.id,
                        {"symbol": opp.symbol, "side": opp.side, "narrative_fallback": text.fallback})
    return opp


@router.get("/{opp_id}", response_model=OpportunityRead)
def get_opportunity(opp_id: int, session: Session = Depends(get_session)):
    opp = session.get(Opportunity, opp_id)
    if not opp:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return opp


@router.post("/{opp_id}/approve")
async def approve(
    opp_id: int,
    body: ApproveRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    broker=Depends(get_broker_client),
):
    return await approvals.approve_opportunity(opp_id, body.qty, idempotency_key, broker=broker)


@router.post("/{opp_id}/reject", response_model=OpportunityRead)
def reject(opp_id: int, body: RejectRequest):
    return approvals.reject_opportunity(opp_id, body.reason)


@router.post("/{opp_id}/status", response_model=OpportunityRead)
def set_status(opp_id: int, body: StatusRequest):
    return approvals.set_opportunity_status(opp_id, body.status, body.reason)


@router.get("/{opp_id}/narrative")
async def narrative_for(
    opp_id: int,
    refresh: bool = False,
    session: Session = Depends(get_session),
    narrative: NarrativeClient = Depends(get_narrative_client),
):
    """Advisory summary and risks; regenerated on request."""
    opp = session.get(Opportunity, opp_id)
    if not opp:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    if opp.ai_summary and not refresh:
        return {"summary": opp.ai_summary, "risks": opp.ai_risks, "fallback": False}

    text = await narrative.explain(
        opp.symbol, opp.side, {"entry": opp.entry_price, "stop": opp.stop_price, "target": opp.target_price}
    )
    opp.ai_summary = text.summary
    opp.ai_risks = text.risks
    session.add(opp)
    session.commit()
    return {"summary": text.summary, "risks": text.risks, "fallback": text.fallback}
