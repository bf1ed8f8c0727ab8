"""Broker credential storage: Fernet-encrypted secrets and key rotation."""

import logging

from cryptography.fernet import Fernet, InvalidToken
from sqlmodel import Session, select

from tradeguard.config import settings
from tradeguard.database import engine
from tradeguard.errors import NotFoundError, ValidationError
from tradeguard.models.credential import Credential
from tradeguard.services import audit_ledger

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError(
                "TG_ENCRYPTION_KEY not set. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encrypt(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise ValidationError("Stored broker secret cannot be decrypted with the current key") from e


def mask(value: str) -> str:
    """Show only the last four characters of an identifier."""
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def store_credential(
    api_key_id: str,
    secret: str,
    name: str = "default",
    paper: bool = True,
    base_url: str | None = None,
    activate: bool = True,
) -> Credential:
    """Persist a credential; activating it deactivates every other one."""
    with Session(engine) as session:
        if activate:
            _deactivate_all(session)
        cred = Credential(
            name=name,
            api_key_id=api_key_id,
            secret_encrypted=encrypt(secret),
            paper=paper,
            base_url=base_url,
            is_active=activate,
        )
        session.add(cred)
        session.commit()
        session.refresh(cred)

    audit_ledger.append(
        actor="operator",
        action="CREDENTIAL_STORED",
        entity_type="credential",
        entity_id=cred.id,
        payload={"api_key_id": mask(api_key_id), "paper": paper, "active": activate},
    )
    logger.info(f"Stored broker credential {cred.id} ({mask(api_key_id)})")
    return cred


def rotate_credential(cred_id: int, api_key_id: str, secret: str) -> Credential:
    """Replace the key pair of an existing credential in place."""
    with Session(engine) as session:
        cred = session.get(Credential, cred_id)
        if not cred:
            raise NotFoundError(f"Credential {cred_id} not found")
        old_key = cred.api_key_id
        cred.api_key_id = api_key_id
        cred.secret_encrypted = encrypt(secret)
        session.add(cred)
        session.commit()
        session.refresh(cred)

    audit_ledger.append(
        actor="operator",
        action="CREDENTIAL_ROTATED",
        entity_type="credential",
        entity_id=cred_id,
        payload={"old_key": mask(old_key), "new_key": mask(api_key_id)},
    )
    logger.info(f"Rotated broker credential {cred_id}: {mask(old_key)} -> {mask(api_key_id)}")
    return cred


def update_credential(cred_id: int, changes: dict) -> Credential:
    """Apply non-secret field changes; a new secret rotates the key pair."""
    secret = changes.pop("secret", None)
    new_key_id = changes.pop("api_key_id", None)
    if secret is not None:
        current = _get(cred_id)
        rotate_credential(cred_id, new_key_id or current.api_key_id, secret)
    elif new_key_id is not None:
        raise ValidationError("Changing api_key_id requires the matching secret")

    with Session(engine) as session:
        cred = session.get(Credential, cred_id)
        if not cred:
            raise NotFoundError(f"Credential {cred_id} not found")
        if changes.get("is_active"):
            _deactivate_all(session)
        for key, value in changes.items():
            setattr(cred, key, value)
        session.add(cred)
        session.commit()
        session.refresh(cred)
    return cred


def _get(cred_id: int) -> Credential:
    with Session(engine) as session:
        cred = session.get(Credential, cred_id)
    if not cred:
        raise NotFoundError(f"Credential {cred_id} not found")
    return cred


def get_active_credential() -> Credential | None:
    with Session(engine) as session:
        return session.exec(
            select(Credential).where(Credential.is_active == True)
        ).first()


def _deactivate_all(session: Session):
    for cred in session.exec(select(Credential).where(Credential.is_active == True)).all():
        cred.is_active = False
        session.add(cred)


def reset_cache():
    """Forget the cached Fernet instance after the key setting changes."""
    global _fernet
    _fernet = None
