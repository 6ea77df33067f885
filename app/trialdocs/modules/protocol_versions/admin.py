"""
JSON API for protocol documents and their versions.

Thin adapter: parses input, calls ComplianceCore, serializes the result.
Errors propagate to the app-level ComplianceError handler.
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.trialdocs.auth import current_actor_id
from app.trialdocs.compliance import ComplianceCore
from app.trialdocs.errors import UnauthorizedError, ValidationError
from app.trialdocs.rbac import CAP_PROTOCOLS_VIEW, require_user, user_has_permission
from app.trialdocs.utils import optional_text, parse_int

from .models import DocumentMaster, ProtocolVersion
from .service import STATUS_TRANSITIONS

bp = Blueprint("protocol_versions", __name__)


def _core() -> ComplianceCore:
    return ComplianceCore.from_app(current_app)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _optional_int(value, *, field: str) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    return parse_int(value, field=field)


def serialize_master(m: DocumentMaster) -> dict:
    return {
        "id": m.id,
        "trial_id": m.trial_id,
        "site_id": m.site_id,
        "display_name": m.display_name,
        "document_type": m.document_type,
        "created_at": m.created_at.isoformat(),
        "created_by_user_id": m.created_by_user_id,
    }


def serialize_version(v: ProtocolVersion) -> dict:
    return {
        "id": v.id,
        "document_master_id": v.document_master_id,
        "version_number": v.version_number,
        "status": v.status,
        "uploaded_by": v.uploaded_by,
        "uploaded_at": v.uploaded_at.isoformat(),
        "file_reference": v.file_reference,
        "original_filename": v.original_filename,
        "promoted_by": v.promoted_by,
        "promoted_at": v.promoted_at.isoformat() if v.promoted_at else None,
        "superseded_at": v.superseded_at.isoformat() if v.superseded_at else None,
        "record_hash": v.record_hash,
        "previous_hash": v.previous_hash,
    }


def _require_view(trial_id: int) -> None:
    if not user_has_permission(g.current_user, CAP_PROTOCOLS_VIEW, trial_id=trial_id):
        raise UnauthorizedError("Not allowed to view protocol documents for this trial.", trial_id=trial_id)


@bp.get("/documents")
@require_user
def list_documents():
    trial_id = _optional_int(request.args.get("trial_id"), field="trial_id")
    site_id = _optional_int(request.args.get("site_id"), field="site_id")
    masters = _core().list_document_masters(trial_id=trial_id, site_id=site_id)
    # Only trials the caller may view; no permission anywhere means an empty list.
    visible = [m for m in masters if user_has_permission(g.current_user, CAP_PROTOCOLS_VIEW, trial_id=m.trial_id)]
    return {"ok": True, "data": [serialize_master(m) for m in visible]}


@bp.post("/documents")
@require_user
def create_document():
    body = _json_body()
    if body.get("trial_id") is None:
        raise ValidationError("trial_id is required.", field="trial_id")
    m = _core().create_document_master(
        trial_id=parse_int(body.get("trial_id"), field="trial_id"),
        site_id=_optional_int(body.get("site_id"), field="site_id"),
        display_name=optional_text(body.get("display_name"), field="display_name") or "",
        document_type=optional_text(body.get("document_type"), field="document_type") or "Protocol",
        actor_id=current_actor_id(),
    )
    return {"ok": True, "data": serialize_master(m)}, 201


@bp.get("/documents/<int:document_id>")
@require_user
def document_detail(document_id: int):
    core = _core()
    m = core.get_document_master(document_id)
    _require_view(m.trial_id)
    current = core.current_version(document_id)
    out = serialize_master(m)
    out["current_version"] = serialize_version(current) if current else None
    return {"ok": True, "data": out}


@bp.get("/documents/<int:document_id>/versions")
@require_user
def list_versions(document_id: int):
    core = _core()
    _require_view(core.get_document_master(document_id).trial_id)
    versions = core.list_versions(document_id)
    return {"ok": True, "data": [serialize_version(v) for v in versions]}


@bp.post("/documents/<int:document_id>/versions")
@require_user
def register_upload(document_id: int):
    body = _json_body()
    v = _core().register_upload(
        document_master_id=document_id,
        version_number=optional_text(body.get("version_number"), field="version_number") or "",
        file_reference=optional_text(body.get("file_reference"), field="file_reference") or "",
        original_filename=optional_text(body.get("original_filename"), field="original_filename"),
        actor_id=current_actor_id(),
    )
    return {"ok": True, "data": serialize_version(v)}, 201


@bp.get("/versions/<int:version_id>")
@require_user
def version_detail(version_id: int):
    v = _core().get_version(version_id)
    _require_view(v.document_master.trial_id)
    return {"ok": True, "data": serialize_version(v)}


@bp.get("/compliance/protocol-versions")
@require_user
def list_protocol_versions():
    """Flat list of viewable versions, as the delegation log's version picker reads it."""
    trial_id = _optional_int(request.args.get("trial_id"), field="trial_id")
    status = (request.args.get("status") or "").strip().capitalize() or None
    if status and status not in STATUS_TRANSITIONS:
        raise ValidationError(f"Unknown version status: {status!r}", field="status")
    core = _core()
    out = []
    for m in core.list_document_masters(trial_id=trial_id):
        if not user_has_permission(g.current_user, CAP_PROTOCOLS_VIEW, trial_id=m.trial_id):
            continue
        for v in core.list_versions(m.id):
            if status and v.status != status:
                continue
            row = serialize_version(v)
            row["document_display_name"] = m.display_name
            row["trial_id"] = m.trial_id
            out.append(row)
    return {"ok": True, "data": out}


@bp.post("/versions/<int:version_id>/promote")
@require_user
def promote_version(version_id: int):
    v = _core().promote_version(version_id, current_actor_id())
    return {"ok": True, "data": serialize_version(v)}
