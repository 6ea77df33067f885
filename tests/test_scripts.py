import pytest
from sqlalchemy import update

from app.trialdocs import create_app
from app.trialdocs.compliance import ComplianceCore
from app.trialdocs.db import session_scope
from app.trialdocs.models import Base, Permission, Role, User
from app.trialdocs.modules.protocol_versions.models import ProtocolVersion
from app.trialdocs.rbac import user_has_permission
from scripts import init_db, release, verify_chains


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ADMIN_EMAIL", "Admin@Example.com")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


def test_seed_is_idempotent(app):
    init_db.seed_only(database_url=app.config["DATABASE_URL"])
    init_db.seed_only(database_url=app.config["DATABASE_URL"])

    with session_scope(app) as s:
        assert s.query(Permission).count() == len(init_db.PERMISSIONS)
        assert s.query(Role).count() == len(init_db.ROLES)
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        assert [r.key for r in admin.roles] == ["admin"]
        for key in init_db.PERMISSIONS:
            assert user_has_permission(admin, key)


def test_verify_chains_exit_codes(app):
    init_db.seed_only(database_url=app.config["DATABASE_URL"])
    core = ComplianceCore.from_app(app)
    m = core.create_document_master(trial_id=1, display_name="Protocol", actor_id=1)
    v = core.register_upload(document_master_id=m.id, version_number="1", actor_id=1, file_reference="blob://v1")
    core.promote_version(v.id, 1)

    url = app.config["DATABASE_URL"]
    assert verify_chains.main(["--database-url", url]) == 0

    with app.extensions["sqlalchemy_engine"].begin() as conn:
        conn.execute(
            update(ProtocolVersion.__table__)
            .where(ProtocolVersion.__table__.c.id == v.id)
            .values(version_number="1-edited")
        )
    assert verify_chains.main(["--database-url", url]) == 1
    assert verify_chains.main(["--database-url", url, "--entity-type", "Delegation"]) == 0


def test_release_migrates_seeds_and_refuses_broken_chains(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@example.com")

    # Fresh database: the schema comes from the migrations, not create_all.
    assert release.main([]) == 0

    app = create_app()
    core = ComplianceCore.from_app(app)
    m = core.create_document_master(trial_id=1, display_name="Protocol", actor_id=1)
    v = core.register_upload(document_master_id=m.id, version_number="1", actor_id=1, file_reference="blob://v1")
    core.promote_version(v.id, 1)

    # Re-running on an intact ledger is a no-op.
    release.run_release()

    with app.extensions["sqlalchemy_engine"].begin() as conn:
        conn.execute(
            update(ProtocolVersion.__table__)
            .where(ProtocolVersion.__table__.c.id == v.id)
            .values(file_reference="blob://swapped")
        )
    with pytest.raises(RuntimeError, match="ProtocolVersion#"):
        release.run_release()
    assert release.main([]) == 1
    assert release.main(["--skip-chain-check"]) == 0


def test_release_requires_postgres_in_production(monkeypatch, tmp_path):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        release.run_release()

    monkeypatch.delenv("DATABASE_URL")
    assert release.main([]) == 1
