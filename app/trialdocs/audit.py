"""
Append-only audit trail of state transitions.

Each entity (ProtocolVersion, Delegation) has its own chain of AuditRecords.
verify_chain() is the primitive compliance reporting relies on: it must be
able to recompute every stored hash from stored columns alone.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.trialdocs.errors import NotFoundError, StorageError, ValidationError
from app.trialdocs.hashing import GENESIS_HASH, compute_hash, hash_entity
from app.trialdocs.models import AuditRecord
from app.trialdocs.utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_PROTOCOL_VERSION = "ProtocolVersion"
ENTITY_DELEGATION = "Delegation"


def _entity_model(entity_type: str):
    from app.trialdocs.modules.delegations.models import Delegation
    from app.trialdocs.modules.protocol_versions.models import ProtocolVersion

    models = {
        ENTITY_PROTOCOL_VERSION: ProtocolVersion,
        ENTITY_DELEGATION: Delegation,
    }
    model = models.get(entity_type)
    if model is None:
        raise ValidationError(f"Unknown entity type: {entity_type!r}", entity_type=entity_type)
    return model


def last_record(s: Session, entity_type: str, entity_id: int | str) -> AuditRecord | None:
    return (
        s.query(AuditRecord)
        .filter(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == str(entity_id))
        .order_by(AuditRecord.id.desc())
        .first()
    )


def entries_for(s: Session, entity_type: str, entity_id: int | str) -> list[AuditRecord]:
    _entity_model(entity_type)
    return (
        s.query(AuditRecord)
        .filter(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == str(entity_id))
        .order_by(AuditRecord.id.asc())
        .all()
    )


def append(
    s: Session,
    *,
    entity_type: str,
    entity_id: int | str,
    from_status: str | None,
    to_status: str,
    actor_id: int,
    record_hash: str,
    previous_hash: str,
    created_at: datetime | None = None,
) -> AuditRecord:
    """
    Append one transition. `record_hash`/`previous_hash` are the entity row's
    chain link after the transition; the audit record chains onto the last
    audit record of the same entity.
    """
    try:
        prior = last_record(s, entity_type, entity_id)
        rec = AuditRecord(
            entity_type=entity_type,
            entity_id=str(entity_id),
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            created_at=created_at or utcnow(),
            entity_record_hash=record_hash,
            entity_previous_hash=previous_hash,
        )
        rec.previous_hash = prior.record_hash if prior else GENESIS_HASH
        rec.record_hash = compute_hash("AuditRecord", rec, rec.previous_hash)
        s.add(rec)
        s.flush()
    except SQLAlchemyError as e:
        raise StorageError(f"Audit append failed: {e.__class__.__name__}", entity_type=entity_type) from e
    return rec


def append_transition(s: Session, entity, *, from_status: str | None, actor_id: int) -> AuditRecord:
    return append(
        s,
        entity_type=type(entity).__name__,
        entity_id=entity.id,
        from_status=from_status,
        to_status=entity.status,
        actor_id=actor_id,
        record_hash=entity.record_hash,
        previous_hash=entity.previous_hash,
    )


def _fail(entity_type: str, entity_id: int | str, reason: str, **extra) -> bool:
    logger.warning("CHAIN: verify failed entity=%s id=%s reason=%s %s", entity_type, entity_id, reason, extra or "")
    return False


def verify_chain(s: Session, entity_type: str, entity_id: int | str) -> bool:
    """
    Walk one entity's audit chain and its live row.

    Checks, in order:
    - each audit record's previous_hash links to its predecessor (the first to GENESIS_HASH)
    - each audit record_hash recomputes from its stored columns
    - each entity_previous_hash equals the preceding record's entity_record_hash
    - the live row's record_hash recomputes from its canonical fields
    - the last audit record describes the live row's current link
    """
    model = _entity_model(entity_type)
    records = entries_for(s, entity_type, entity_id)

    expected_prev = GENESIS_HASH
    prior_entity_hash: str | None = None
    for rec in records:
        if rec.previous_hash != expected_prev:
            return _fail(entity_type, entity_id, "audit_link_broken", audit_id=rec.id)
        if compute_hash("AuditRecord", rec, rec.previous_hash) != rec.record_hash:
            return _fail(entity_type, entity_id, "audit_hash_mismatch", audit_id=rec.id)
        if prior_entity_hash is not None and rec.entity_previous_hash != prior_entity_hash:
            return _fail(entity_type, entity_id, "entity_link_broken", audit_id=rec.id)
        expected_prev = rec.record_hash
        prior_entity_hash = rec.entity_record_hash

    try:
        pk = int(entity_id)
    except (TypeError, ValueError):
        raise ValidationError("entity_id must be an integer.", entity_id=str(entity_id))
    row = s.get(model, pk)
    if row is None:
        if records:
            return _fail(entity_type, entity_id, "entity_row_missing")
        raise NotFoundError(f"{entity_type} {entity_id} not found.")

    if not row.record_hash or hash_entity(row) != row.record_hash:
        return _fail(entity_type, entity_id, "entity_hash_mismatch")
    if records:
        last = records[-1]
        if last.entity_record_hash != row.record_hash or last.entity_previous_hash != row.previous_hash:
            return _fail(entity_type, entity_id, "entity_head_mismatch", audit_id=last.id)
        if last.to_status != row.status:
            return _fail(entity_type, entity_id, "status_mismatch", audit_id=last.id)
    return True


@event.listens_for(Session, "before_flush")
def _guard_append_only(session: Session, flush_context, instances) -> None:
    for obj in list(session.dirty) + list(session.deleted):
        if isinstance(obj, AuditRecord) and (obj in session.deleted or session.is_modified(obj)):
            raise StorageError("Audit records are append-only.", audit_id=obj.id)
