"""Tamper evidence: any out-of-band change to a chained row must fail verification."""
import logging

import pytest
from sqlalchemy import delete, update

from app.trialdocs import audit, create_app
from app.trialdocs.compliance import ComplianceCore
from app.trialdocs.db import session_scope
from app.trialdocs.errors import NotFoundError, StorageError, ValidationError
from app.trialdocs.hashing import compute_hash
from app.trialdocs.models import AuditRecord, Base, Permission, Role, User
from app.trialdocs.modules.protocol_versions.models import ProtocolVersion


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [
            Permission(key="protocols.upload", name="Protocols: register uploads"),
            Permission(key="protocols.promote", name="Protocols: promote to Current"),
        ]
        r = Role(key="admin", name="Administrator")
        r.permissions.extend(perms)
        u = User(email="admin@example.com", is_active=True)
        u.roles.append(r)
        s.add_all(perms + [r, u])
    return app


@pytest.fixture()
def promoted(app):
    """Two versions of one document; v1 promoted then superseded by v2."""
    core = ComplianceCore.from_app(app)
    m = core.create_document_master(trial_id=1, display_name="Protocol", actor_id=1)
    v1 = core.register_upload(document_master_id=m.id, version_number="1", actor_id=1, file_reference="blob://v1")
    core.promote_version(v1.id, 1)
    v2 = core.register_upload(document_master_id=m.id, version_number="2", actor_id=1, file_reference="blob://v2")
    core.promote_version(v2.id, 1)
    return core, v1.id, v2.id


def _execute(app, stmt):
    with app.extensions["sqlalchemy_engine"].begin() as conn:
        conn.execute(stmt)


def test_untampered_chains_verify(promoted):
    core, v1, v2 = promoted
    assert core.verify_chain("ProtocolVersion", v1) is True
    assert core.verify_chain("ProtocolVersion", v2) is True


def test_editing_a_hashed_column_breaks_the_chain(app, promoted, caplog):
    core, v1, _ = promoted
    _execute(
        app,
        update(ProtocolVersion.__table__)
        .where(ProtocolVersion.__table__.c.id == v1)
        .values(file_reference="blob://swapped"),
    )
    with caplog.at_level(logging.WARNING):
        assert core.verify_chain("ProtocolVersion", v1) is False
    assert "CHAIN: verify failed" in caplog.text


def test_rehashing_a_tampered_row_is_still_detected(app, promoted):
    core, v1, _ = promoted
    with session_scope(app) as s:
        row = s.get(ProtocolVersion, v1)
        fields = {name: getattr(row, name) for name in ("id", "document_master_id", "version_number", "status")}
        fields.update(
            uploaded_by=row.uploaded_by,
            uploaded_at=row.uploaded_at,
            file_reference="blob://swapped",
            promoted_by=row.promoted_by,
            promoted_at=row.promoted_at,
            superseded_at=row.superseded_at,
        )
        forged = compute_hash("ProtocolVersion", fields, row.previous_hash)
    _execute(
        app,
        update(ProtocolVersion.__table__)
        .where(ProtocolVersion.__table__.c.id == v1)
        .values(file_reference="blob://swapped", record_hash=forged),
    )
    # Row now hashes consistently, but no longer matches what the audit trail recorded.
    assert core.verify_chain("ProtocolVersion", v1) is False


def test_editing_an_audit_record_breaks_the_chain(app, promoted):
    core, v1, _ = promoted
    _execute(
        app,
        update(AuditRecord.__table__)
        .where(AuditRecord.__table__.c.entity_id == str(v1), AuditRecord.__table__.c.to_status == "Current")
        .values(actor_id=999),
    )
    assert core.verify_chain("ProtocolVersion", v1) is False


def test_deleting_an_audit_record_breaks_the_chain(app, promoted):
    core, v1, _ = promoted
    first = core.audit_history("ProtocolVersion", v1)[0]
    _execute(app, delete(AuditRecord.__table__).where(AuditRecord.__table__.c.id == first.id))
    assert core.verify_chain("ProtocolVersion", v1) is False


def test_orm_refuses_to_update_or_delete_audit_records(app, promoted):
    with pytest.raises(StorageError):
        with session_scope(app) as s:
            rec = s.query(AuditRecord).first()
            rec.to_status = "Uploaded"

    with pytest.raises(StorageError):
        with session_scope(app) as s:
            s.delete(s.query(AuditRecord).first())

    core, v1, v2 = promoted
    assert core.verify_chain("ProtocolVersion", v1) is True
    assert core.verify_chain("ProtocolVersion", v2) is True


def test_verify_unknown_targets(promoted):
    core, _, _ = promoted
    with pytest.raises(ValidationError):
        core.verify_chain("Spreadsheet", 1)
    with pytest.raises(NotFoundError):
        core.verify_chain("ProtocolVersion", 424242)


def test_failed_audit_append_rolls_back_the_whole_promotion(app, monkeypatch):
    core = ComplianceCore.from_app(app)
    m = core.create_document_master(trial_id=1, display_name="Protocol", actor_id=1)
    v1 = core.register_upload(document_master_id=m.id, version_number="1", actor_id=1, file_reference="blob://v1")
    core.promote_version(v1.id, 1)
    v2 = core.register_upload(document_master_id=m.id, version_number="2", actor_id=1, file_reference="blob://v2")

    real_append = audit.append
    calls = []

    def append_then_fail(*args, **kwargs):
        calls.append(kwargs.get("to_status"))
        # First append (v1 -> Superseded) succeeds, the second (v2 -> Current) fails.
        if len(calls) == 2:
            raise StorageError("Audit store unavailable.")
        return real_append(*args, **kwargs)

    monkeypatch.setattr(audit, "append", append_then_fail)
    with pytest.raises(StorageError):
        core.promote_version(v2.id, 1)

    assert len(calls) == 2
    assert core.get_version(v1.id).status == "Current"
    assert core.get_version(v2.id).status == "Uploaded"
    assert core.current_version(m.id).id == v1.id
    assert len(core.audit_history("ProtocolVersion", v1.id)) == 1
    assert core.audit_history("ProtocolVersion", v2.id) == []
    assert core.verify_chain("ProtocolVersion", v1.id) is True
