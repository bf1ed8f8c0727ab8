"""Tamper-evident audit ledger.

Every entry stores the hash of its predecessor; the entry hash is
``sha256(prev_hash + canonical_json(entry))`` with ``""`` as the genesis
predecessor. Reading the chain head and inserting the next entry happen under
one lock and one transaction, and ``prev_hash`` is unique in the table, so a
writer in another process that raced us fails with an IntegrityError instead
of forking the chain.
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.errors import PersistenceError
from tradeguard.models.audit_entry import AuditEntry

logger = logging.getLogger(__name__)

GENESIS_PREV_HASH = ""
_APPEND_ATTEMPTS = 3

_chain_lock = threading.Lock()


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    first_invalid_id: int | None = None
    reason: str | None = None


def normalize_payload(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    """Round-trip through JSON so the stored payload hashes identically on re-read."""
    if payload is None:
        return None
    return json.loads(json.dumps(payload, default=str))


def serialize_entry(
    actor: str,
    action: str,
    entity_type: str | None,
    entity_id: str | None,
    payload: dict[str, Any] | None,
) -> str:
    record = {
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
    }
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(prev_hash: str, serialized: str) -> str:
    return hashlib.sha256((prev_hash + serialized).encode("utf-8")).hexdigest()


def entry_hash(entry: AuditEntry, prev_hash: str) -> str:
    serialized = serialize_entry(
        entry.actor, entry.action, entry.entity_type, entry.entity_id, entry.payload
    )
    return compute_hash(prev_hash, serialized)


def append(
    actor: str,
    action: str,
    entity_type: str | None = None,
    entity_id: Any = None,
    payload: dict[str, Any] | None = None,
) -> AuditEntry:
    """Append one entry to the chain and return it."""
    entity_id = str(entity_id) if entity_id is not None else None
    payload = normalize_payload(payload)
    serialized = serialize_entry(actor, action, entity_type, entity_id, payload)

    last_error: Exception | None = None
    for attempt in range(1, _APPEND_ATTEMPTS + 1):
        with _chain_lock:
            with Session(engine) as session:
                head = session.exec(
                    select(AuditEntry).order_by(AuditEntry.id.desc()).limit(1)
                ).first()
                prev_hash = head.hash if head else GENESIS_PREV_HASH
                entry = AuditEntry(
                    actor=actor,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    payload=payload,
                    prev_hash=prev_hash,
                    hash=compute_hash(prev_hash, serialized),
                )
                session.add(entry)
                try:
                    session.commit()
                except IntegrityError as e:
                    # Another process appended first; re-read the head
                    session.rollback()
                    last_error = e
                    logger.warning(
                        f"[audit] chain head moved during append of {action} "
                        f"(attempt {attempt}/{_APPEND_ATTEMPTS})"
                    )
                    continue
                session.refresh(entry)
                logger.debug(f"[audit] {action} {entity_type}:{entity_id} -> {entry.hash[:12]}")
                return entry

    raise PersistenceError(f"Audit append failed for {action}: {last_error}")


def verify_entries(entries: Iterable[AuditEntry]) -> ChainVerification:
    """Walk entries in insertion order and check every link and hash."""
    expected_prev = GENESIS_PREV_HASH
    checked = 0
    for entry in entries:
        if entry.prev_hash != expected_prev:
            return ChainVerification(
                valid=False, checked=checked, first_invalid_id=entry.id,
                reason="prev_hash does not match predecessor",
            )
        if entry_hash(entry, entry.prev_hash) != entry.hash:
            return ChainVerification(
                valid=False, checked=checked, first_invalid_id=entry.id,
                reason="hash does not match contents",
            )
        expected_prev = entry.hash
        checked += 1
    return ChainVerification(valid=True, checked=checked)


def verify_chain() -> ChainVerification:
    with Session(engine) as session:
        entries = session.exec(select(AuditEntry).order_by(AuditEntry.id)).all()
    result = verify_entries(entries)
    if not result.valid:
        logger.error(
            f"[audit] chain verification failed at entry {result.first_invalid_id}: {result.reason}"
        )
    return result


def list_entries(
    entity_type: str | None = None,
    entity_id: Any = None,
    action: str | None = None,
    limit: int = 100,
) -> list[AuditEntry]:
    stmt = select(AuditEntry).order_by(AuditEntry.id.desc())
    if entity_type is not None:
        stmt = stmt.where(AuditEntry.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(AuditEntry.entity_id == str(entity_id))
    if action is not None:
        stmt = stmt.where(AuditEntry.action == action)
    with Session(engine) as session:
        return list(session.exec(stmt.limit(limit)).all())
