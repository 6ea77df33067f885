"""
Version ledger.
Owns DocumentMaster/ProtocolVersion rows and the single-Current rule.

Functions here mutate the session but never commit; ComplianceCore owns the
transaction and writes the audit records.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.trialdocs.errors import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.trialdocs.hashing import chain_entity
from app.trialdocs.utils import clean_text, utcnow

from .models import DocumentMaster, ProtocolVersion

logger = logging.getLogger(__name__)

UPLOADED = "Uploaded"
CURRENT = "Current"
SUPERSEDED = "Superseded"

STATUS_TRANSITIONS = {
    UPLOADED: {CURRENT},
    CURRENT: {SUPERSEDED},
    SUPERSEDED: set(),
}


@dataclass
class Promotion:
    version: ProtocolVersion
    superseded: ProtocolVersion | None = None
    changed: bool = True


def create_document_master(
    s: Session,
    *,
    trial_id: int,
    display_name: str,
    created_by: int,
    site_id: int | None = None,
    document_type: str = "Protocol",
) -> DocumentMaster:
    name = clean_text(display_name)
    if not name:
        raise ValidationError("display_name is required.", field="display_name")

    exists = (
        s.query(DocumentMaster)
        .filter(
            DocumentMaster.trial_id == trial_id,
            DocumentMaster.site_id.is_(None) if site_id is None else DocumentMaster.site_id == site_id,
            DocumentMaster.display_name == name,
        )
        .one_or_none()
    )
    if exists:
        raise ConflictError("A document with this name already exists for the trial/site.", document_master_id=exists.id)

    now = utcnow()
    master = DocumentMaster(
        trial_id=trial_id,
        site_id=site_id,
        display_name=name,
        document_type=clean_text(document_type) or "Protocol",
        created_by_user_id=created_by,
        created_at=now,
        updated_at=now,
    )
    s.add(master)
    s.flush()
    return master


def get_document_master(s: Session, document_master_id: int, *, for_update: bool = False) -> DocumentMaster:
    # populate_existing: a row we waited on must be re-read, not served from the identity map
    master = s.get(DocumentMaster, document_master_id, with_for_update=for_update or None, populate_existing=for_update)
    if not master:
        raise NotFoundError(f"DocumentMaster {document_master_id} not found.", document_master_id=document_master_id)
    return master


def get_version(s: Session, version_id: int, *, for_update: bool = False) -> ProtocolVersion:
    v = s.get(ProtocolVersion, version_id, with_for_update=for_update or None)
    if not v:
        raise NotFoundError(f"ProtocolVersion {version_id} not found.", version_id=version_id)
    return v


def latest_version(s: Session, document_master_id: int) -> ProtocolVersion | None:
    return (
        s.query(ProtocolVersion)
        .filter(ProtocolVersion.document_master_id == document_master_id)
        .order_by(ProtocolVersion.id.desc())
        .first()
    )


def current_version(s: Session, document_master_id: int, *, for_update: bool = False) -> ProtocolVersion | None:
    q = s.query(ProtocolVersion).filter(
        ProtocolVersion.document_master_id == document_master_id,
        ProtocolVersion.status == CURRENT,
    )
    if for_update:
        q = q.with_for_update().populate_existing()
    return q.one_or_none()


def list_versions(s: Session, document_master_id: int) -> list[ProtocolVersion]:
    """Newest upload first."""
    get_document_master(s, document_master_id)
    return (
        s.query(ProtocolVersion)
        .filter(ProtocolVersion.document_master_id == document_master_id)
        .order_by(ProtocolVersion.id.desc())
        .all()
    )


def list_document_masters(s: Session, *, trial_id: int | None = None, site_id: int | None = None) -> list[DocumentMaster]:
    q = s.query(DocumentMaster)
    if trial_id is not None:
        q = q.filter(DocumentMaster.trial_id == trial_id)
    if site_id is not None:
        q = q.filter(DocumentMaster.site_id == site_id)
    return q.order_by(DocumentMaster.display_name.asc(), DocumentMaster.id.asc()).all()


def register_upload(
    s: Session,
    *,
    document_master_id: int,
    version_number: str,
    uploaded_by: int,
    file_reference: str,
    original_filename: str | None = None,
) -> ProtocolVersion:
    """
    Register an uploaded file as a new version in status Uploaded.

    The new row's hash chains onto the most recent version of the same
    DocumentMaster (genesis sentinel for the first one).
    """
    number = clean_text(version_number)
    ref = clean_text(file_reference)
    if not number:
        raise ValidationError("version_number is required.", field="version_number")
    if not ref:
        raise ValidationError("file_reference is required.", field="file_reference")

    master = get_document_master(s, document_master_id, for_update=True)

    dup = (
        s.query(ProtocolVersion.id)
        .filter(ProtocolVersion.document_master_id == master.id, ProtocolVersion.version_number == number)
        .first()
    )
    if dup:
        raise ConflictError(f"Version {number!r} already exists for this document.", version_id=dup[0])

    predecessor = latest_version(s, master.id)
    now = utcnow()
    v = ProtocolVersion(
        document_master_id=master.id,
        version_number=number,
        status=UPLOADED,
        uploaded_by=uploaded_by,
        uploaded_at=now,
        file_reference=ref,
        original_filename=clean_text(original_filename) or None,
    )
    s.add(v)
    master.updated_at = now
    try:
        s.flush()
    except IntegrityError as e:
        raise ConflictError(f"Version {number!r} already exists for this document.") from e

    chain_entity(v, predecessor.record_hash if predecessor else None)
    s.flush()
    logger.info(
        "VERSIONS: registered version=%s master=%s number=%s by=%s",
        v.id,
        master.id,
        v.version_number,
        uploaded_by,
    )
    return v


def can_transition_to(version: ProtocolVersion, new_status: str) -> tuple[bool, list[str]]:
    errors = []
    if version.status not in STATUS_TRANSITIONS:
        errors.append(f"Current status '{version.status}' is invalid")
        return False, errors
    if new_status not in STATUS_TRANSITIONS[version.status]:
        errors.append(f"Cannot transition from '{version.status}' to '{new_status}'")
        return False, errors
    return True, []


def promote(s: Session, version_id: int, *, actor_id: int) -> Promotion:
    """
    Make `version_id` the Current version of its DocumentMaster.

    The previously Current version (if any) is Superseded in the same
    transaction. Promoting the version that is already Current is a no-op.
    """
    target = get_version(s, version_id)
    if target.status == CURRENT:
        return Promotion(version=target, changed=False)

    ok, errors = can_transition_to(target, CURRENT)
    if not ok:
        raise InvalidTransitionError("; ".join(errors), version_id=target.id, status=target.status)

    # Lock the master row first: every promotion of this master serializes here.
    master = get_document_master(s, target.document_master_id, for_update=True)
    s.refresh(target)
    if target.status != UPLOADED:
        # Changed underneath us between the first read and the lock.
        if target.status == CURRENT:
            return Promotion(version=target, changed=False)
        raise InvalidTransitionError(
            f"Cannot transition from '{target.status}' to '{CURRENT}'",
            version_id=target.id,
            status=target.status,
        )

    now = utcnow()
    master.updated_at = now
    previous = current_version(s, master.id, for_update=True)
    try:
        if previous is not None:
            previous.status = SUPERSEDED
            previous.superseded_at = now
            chain_entity(previous, previous.record_hash)
            # Flush before promoting so the single-Current index never sees two rows.
            s.flush()

        target.status = CURRENT
        target.promoted_by = actor_id
        target.promoted_at = now
        chain_entity(target, target.record_hash)
        s.flush()
    except IntegrityError as e:
        raise ConcurrentModificationError(
            "Another promotion for this document committed first.",
            document_master_id=master.id,
        ) from e

    logger.info(
        "VERSIONS: promoted version=%s master=%s superseded=%s by=%s",
        target.id,
        master.id,
        previous.id if previous else None,
        actor_id,
    )
    return Promotion(version=target, superseded=previous, changed=True)
