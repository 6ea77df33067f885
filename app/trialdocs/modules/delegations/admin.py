"""
JSON API for delegations of authority.
Paths mirror the compliance endpoints the portal clients call
(the version picker feed lives with the protocol_versions blueprint).
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.trialdocs.auth import current_actor_id
from app.trialdocs.compliance import ComplianceCore
from app.trialdocs.errors import UnauthorizedError, ValidationError
from app.trialdocs.rbac import CAP_DELEGATIONS_VIEW, holds_permission_anywhere, require_user, user_has_permission
from app.trialdocs.utils import optional_text, parse_int, parse_iso_date

from .models import Delegation
from .service import trial_scope

bp = Blueprint("delegations", __name__)


def _core() -> ComplianceCore:
    return ComplianceCore.from_app(current_app)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def serialize_delegation(d: Delegation) -> dict:
    return {
        "id": d.id,
        "protocol_version_id": d.protocol_version_id,
        "delegated_user_id": d.delegated_user_id,
        "delegated_by_user_id": d.delegated_by_user_id,
        "delegated_job_title": d.delegated_job_title,
        "trial_role": d.trial_role,
        "task_description": d.task_description,
        "delegation_date": d.delegation_date.isoformat(),
        "effective_start_date": d.effective_start_date.isoformat(),
        "effective_end_date": d.effective_end_date.isoformat() if d.effective_end_date else None,
        "training_required": d.training_required,
        "status": d.status,
        "signed_by": d.signed_by,
        "signed_at": d.signed_at.isoformat() if d.signed_at else None,
        "revoked_by_user_id": d.revoked_by_user_id,
        "revoked_at": d.revoked_at.isoformat() if d.revoked_at else None,
        "revocation_reason": d.revocation_reason,
        "record_hash": d.record_hash,
        "previous_hash": d.previous_hash,
    }


def _can_view(d: Delegation) -> bool:
    actor = g.current_user
    if d.delegated_user_id == actor.id:
        return True
    return user_has_permission(actor, CAP_DELEGATIONS_VIEW, trial_id=trial_scope(d))


@bp.get("/delegations")
@require_user
def list_delegations():
    actor = g.current_user
    raw_user = request.args.get("user_id")
    user_id = parse_int(raw_user, field="user_id") if raw_user else actor.id
    # Anyone may list their own. Someone else's are filtered to trials the caller may view.
    if user_id != actor.id and not holds_permission_anywhere(actor, CAP_DELEGATIONS_VIEW):
        raise UnauthorizedError("Not allowed to view other users' delegations.")
    status = (request.args.get("status") or "").strip().capitalize() or None
    items = [d for d in _core().list_delegations_for_user(user_id, status=status) if _can_view(d)]
    return {"ok": True, "data": [serialize_delegation(d) for d in items]}


@bp.get("/versions/<int:version_id>/delegations")
@require_user
def list_version_delegations(version_id: int):
    core = _core()
    trial_id = core.get_version(version_id).document_master.trial_id
    if not user_has_permission(g.current_user, CAP_DELEGATIONS_VIEW, trial_id=trial_id):
        raise UnauthorizedError("Not allowed to view the delegation log.", trial_id=trial_id)
    items = core.list_delegations_for_version(version_id)
    return {"ok": True, "data": [serialize_delegation(d) for d in items]}


@bp.get("/delegation/<int:delegation_id>")
@require_user
def delegation_detail(delegation_id: int):
    d = _core().get_delegation(delegation_id)
    if not _can_view(d):
        raise UnauthorizedError("Not allowed to view this delegation.")
    return {"ok": True, "data": serialize_delegation(d)}


@bp.post("/delegation")
@require_user
def issue_delegation():
    body = _json_body()
    for field in ("protocol_version_id", "delegated_user_id", "effective_start_date"):
        if body.get(field) in (None, ""):
            raise ValidationError(f"{field} is required.", field=field)
    d = _core().issue_delegation(
        parse_int(body["protocol_version_id"], field="protocol_version_id"),
        parse_int(body["delegated_user_id"], field="delegated_user_id"),
        optional_text(body.get("delegated_job_title"), field="delegated_job_title") or "",
        parse_iso_date(body["effective_start_date"], field="effective_start_date"),
        current_actor_id(),
        task_description=optional_text(body.get("task_description"), field="task_description"),
        effective_end_date=parse_iso_date(body.get("effective_end_date"), field="effective_end_date"),
        training_required=_as_bool(body.get("training_required")),
        trial_role=optional_text(body.get("trial_role"), field="trial_role"),
    )
    return {"ok": True, "data": serialize_delegation(d)}, 201


@bp.post("/delegation/<int:delegation_id>/sign")
@require_user
def sign_delegation(delegation_id: int):
    body = _json_body()
    decision = body.get("action") if body.get("action") is not None else body.get("decision")
    d = _core().sign_delegation(
        delegation_id,
        current_actor_id(),
        optional_text(decision, field="action") or "",
        optional_text(body.get("printed_name"), field="printed_name") or "",
    )
    return {"ok": True, "data": serialize_delegation(d)}


@bp.put("/delegation/<int:delegation_id>/revoke")
@require_user
def revoke_delegation(delegation_id: int):
    body = _json_body()
    reason = optional_text(body.get("revocation_reason"), field="revocation_reason")
    d = _core().revoke_delegation(delegation_id, current_actor_id(), reason=reason)
    return {"ok": True, "data": serialize_delegation(d)}
