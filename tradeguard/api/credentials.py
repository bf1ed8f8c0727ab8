"""CRUD API for broker credentials."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from tradeguard.database import get_session
from tradeguard.errors import BrokerError
from tradeguard.models.credential import Credential
from tradeguard.schemas.credential import CredentialCreate, CredentialUpdate, CredentialRead
from tradeguard.services.credentials import decrypt, store_credential, update_credential

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credentials", tags=["credentials"])


@router.get("", response_model=list[CredentialRead])
def list_credentials(session: Session = Depends(get_session)):
    return session.exec(select(Credential)).all()


@router.post("", response_model=CredentialRead, status_code=201)
def create_credential(data: CredentialCreate):
    return store_credential(
        api_key_id=data.api_key_id,
        secret=data.secret,
        name=data.name,
        paper=data.paper,
        base_url=data.base_url,
        activate=data.is_active,
    )


@router.get("/{cred_id}", response_model=CredentialRead)
def get_credential(cred_id: int, session: Session = Depends(get_session)):
    cred = session.get(Credential, cred_id)
    if not cred:
        raise HTTPException(status_code=404, detail="Credential not found")
    return cred


@router.put("/{cred_id}", response_model=CredentialRead)
def update_credential_route(cred_id: int, data: CredentialUpdate):
    """Update fields; sending a new secret rotates the key pair."""
    return update_credential(cred_id, data.model_dump(exclude_unset=True))


@router.delete("/{cred_id}", status_code=204)
def delete_credential(cred_id: int, session: Session = Depends(get_session)):
    cred = session.get(Credential, cred_id)
    if not cred:
        raise HTTPException(status_code=404, detail="Credential not found")
    session.delete(cred)
    session.commit()


@router.post("/{cred_id}/test")
async def test_credential(cred_id: int, session: Session = Depends(get_session)):
    """Test connectivity to the broker using this credential."""
    cred = session.get(Credential, cred_id)
    if not cred:
        raise HTTPException(status_code=404, detail="Credential not found")

    from tradeguard.services.broker import AlpacaBroker

    try:
        broker = AlpacaBroker(
            api_key=cred.api_key_id,
            secret_key=decrypt(cred.secret_encrypted),
            paper=cred.paper,
            base_url=cred.base_url,
        )
        equity = await broker.get_equity()
    except BrokerError as e:
        logger.warning(f"Credential {cred_id} test failed: {e}")
        return {"status": "error", "message": str(e)}
    return {"status": "ok", "equity": equity, "paper": cred.paper}
