from flask import Blueprint, current_app

from app.trialdocs.compliance import ComplianceCore
from app.trialdocs.rbac import CAP_AUDIT_VIEW, require_permission, require_trial_permission

bp = Blueprint("routes", __name__)


def serialize_audit_record(rec) -> dict:
    return {
        "id": rec.id,
        "entity_type": rec.entity_type,
        "entity_id": rec.entity_id,
        "from_status": rec.from_status,
        "to_status": rec.to_status,
        "actor_id": rec.actor_id,
        "created_at": rec.created_at.isoformat(),
        "entity_record_hash": rec.entity_record_hash,
        "entity_previous_hash": rec.entity_previous_hash,
        "record_hash": rec.record_hash,
        "previous_hash": rec.previous_hash,
    }


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/api/audit/<entity_type>/<int:entity_id>")
@require_permission(CAP_AUDIT_VIEW)
def audit_history(entity_type: str, entity_id: int):
    core = ComplianceCore.from_app(current_app)
    require_trial_permission(CAP_AUDIT_VIEW, core.trial_for_entity(entity_type, entity_id))
    records = core.audit_history(entity_type, entity_id)
    verified = core.verify_chain(entity_type, entity_id)
    return {
        "ok": True,
        "data": {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "verified": verified,
            "records": [serialize_audit_record(r) for r in records],
        },
    }
