"""
Delegation ledger.
Handles issuing delegations and the sign/revoke state machine.

    Pending --accept (delegatee)--> Accepted --revoke (admin)--> Revoked
    Pending --decline (delegatee)--> Declined

Declined and Revoked are terminal; re-granting means issuing a new delegation.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date

from sqlalchemy.orm import Session

from app.trialdocs.errors import InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
from app.trialdocs.hashing import chain_entity
from app.trialdocs.models import User
from app.trialdocs.modules.protocol_versions.models import ProtocolVersion
from app.trialdocs.modules.protocol_versions.service import SUPERSEDED
from app.trialdocs.utils import clean_text, utcnow

from .models import Delegation

logger = logging.getLogger(__name__)

PENDING = "Pending"
ACCEPTED = "Accepted"
DECLINED = "Declined"
REVOKED = "Revoked"

VALID_STATUSES = {PENDING, ACCEPTED, DECLINED, REVOKED}

STATUS_TRANSITIONS = {
    PENDING: {ACCEPTED, DECLINED},
    ACCEPTED: {REVOKED},
    DECLINED: set(),
    REVOKED: set(),
}

# sign() decisions
ACCEPT = "accept"
DECLINE = "decline"
DECISION_TO_STATUS = {ACCEPT: ACCEPTED, DECLINE: DECLINED}

DEFAULT_REVOCATION_REASON = "Revoked by authorized personnel"


def get_delegation(s: Session, delegation_id: int, *, for_update: bool = False) -> Delegation:
    d = s.get(Delegation, delegation_id, with_for_update=for_update or None, populate_existing=for_update)
    if not d:
        raise NotFoundError(f"Delegation {delegation_id} not found.", delegation_id=delegation_id)
    return d


def trial_scope(d: Delegation) -> int:
    return d.protocol_version.document_master.trial_id


def list_for_user(s: Session, user_id: int, *, status: str | None = None) -> list[Delegation]:
    q = s.query(Delegation).filter(Delegation.delegated_user_id == user_id)
    if status:
        if status not in VALID_STATUSES:
            raise ValidationError(f"Unknown delegation status: {status!r}", field="status")
        q = q.filter(Delegation.status == status)
    return q.order_by(Delegation.id.desc()).all()


def list_for_version(s: Session, protocol_version_id: int) -> list[Delegation]:
    return (
        s.query(Delegation)
        .filter(Delegation.protocol_version_id == protocol_version_id)
        .order_by(Delegation.id.asc())
        .all()
    )


def _check_transition(d: Delegation, new_status: str) -> None:
    allowed = STATUS_TRANSITIONS.get(d.status)
    if allowed is None:
        raise InvalidTransitionError(f"Current status '{d.status}' is invalid", delegation_id=d.id)
    if new_status not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from '{d.status}' to '{new_status}'",
            delegation_id=d.id,
            status=d.status,
        )


def issue(
    s: Session,
    *,
    protocol_version_id: int,
    delegated_user_id: int,
    job_title: str,
    effective_start_date: date,
    issued_by: int,
    task_description: str | None = None,
    effective_end_date: date | None = None,
    training_required: bool = False,
    trial_role: str | None = None,
) -> Delegation:
    """Create a Pending delegation; its hash starts a new chain."""
    title = clean_text(job_title)
    if not title:
        raise ValidationError("delegated_job_title is required.", field="delegated_job_title")
    if effective_start_date is None:
        raise ValidationError("effective_start_date is required.", field="effective_start_date")
    if effective_end_date is not None and effective_end_date < effective_start_date:
        raise ValidationError("effective_end_date cannot precede effective_start_date.", field="effective_end_date")

    version = s.get(ProtocolVersion, protocol_version_id)
    if not version:
        raise NotFoundError(f"ProtocolVersion {protocol_version_id} not found.", version_id=protocol_version_id)
    if version.status == SUPERSEDED:
        raise InvalidTransitionError(
            "Cannot delegate authority on a superseded protocol version.",
            version_id=version.id,
        )
    delegatee = s.get(User, delegated_user_id)
    if not delegatee:
        raise NotFoundError(f"User {delegated_user_id} not found.", user_id=delegated_user_id)
    if not delegatee.is_active:
        raise ValidationError("Cannot delegate authority to an inactive user.", field="delegated_user_id")

    now = utcnow()
    d = Delegation(
        protocol_version_id=version.id,
        delegated_user_id=delegated_user_id,
        delegated_by_user_id=issued_by,
        delegated_job_title=title,
        trial_role=clean_text(trial_role) or None,
        task_description=clean_text(task_description) or None,
        delegation_date=now.date(),
        effective_start_date=effective_start_date,
        effective_end_date=effective_end_date,
        training_required=bool(training_required),
        status=PENDING,
    )
    s.add(d)
    s.flush()
    chain_entity(d, None)
    s.flush()
    logger.info(
        "DELEGATIONS: issued delegation=%s version=%s user=%s by=%s",
        d.id,
        version.id,
        delegated_user_id,
        issued_by,
    )
    return d


def sign(
    s: Session,
    delegation_id: int,
    *,
    acting_user_id: int,
    decision: str,
    printed_name: str,
) -> Delegation:
    """Delegatee accepts or declines a Pending delegation."""
    status = DECISION_TO_STATUS.get(clean_text(decision).lower())
    if status is None:
        raise ValidationError("decision must be 'accept' or 'decline'.", field="decision")
    name = clean_text(printed_name)
    if not name:
        raise ValidationError("printed_name is required to sign.", field="printed_name")

    d = get_delegation(s, delegation_id, for_update=True)
    if acting_user_id != d.delegated_user_id:
        raise UnauthorizedError("Only the delegated user may sign this delegation.", delegation_id=d.id)
    _check_transition(d, status)

    d.status = status
    d.signed_by = name
    d.signed_at = utcnow()
    chain_entity(d, d.record_hash)
    s.flush()
    logger.info("DELEGATIONS: signed delegation=%s status=%s by=%s", d.id, d.status, acting_user_id)
    return d


def revoke(
    s: Session,
    delegation_id: int,
    *,
    acting_user_id: int,
    is_authorized: Callable[[int, Delegation], bool],
    reason: str | None = None,
) -> Delegation:
    """
    Administrator revokes an Accepted delegation.
    `is_authorized(actor_id, delegation)` is the capability check.
    """
    d = get_delegation(s, delegation_id, for_update=True)
    if not is_authorized(acting_user_id, d):
        raise UnauthorizedError("Only a site/trial administrator may revoke delegations.", delegation_id=d.id)
    _check_transition(d, REVOKED)

    d.status = REVOKED
    d.revoked_by_user_id = acting_user_id
    d.revoked_at = utcnow()
    d.revocation_reason = clean_text(reason) or DEFAULT_REVOCATION_REASON
    chain_entity(d, d.record_hash)
    s.flush()
    logger.info("DELEGATIONS: revoked delegation=%s by=%s", d.id, acting_user_id)
    return d
