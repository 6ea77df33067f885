import pytest

from app.trialdocs import create_app
from app.trialdocs.db import session_scope
from app.trialdocs.models import Base, Role, TrialRoleAssignment, User
from scripts.init_db import seed_session


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("AUTH_USER_HEADER", raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_session(s)
        roles = {r.key: r for r in s.query(Role).all()}
        admin = User(email="admin@example.com", display_name="Admin", is_active=True)
        admin.roles.append(roles["admin"])
        nurse = User(email="nurse@site1.example.com", display_name="Research Nurse", is_active=True)
        nurse.trial_roles.append(TrialRoleAssignment(role=roles["site_user"], trial_id=1))
        pi = User(email="pi@site1.example.com", display_name="Dr. Principal", is_active=True)
        pi.trial_roles.append(TrialRoleAssignment(role=roles["trial_admin"], trial_id=1))
        other_pi = User(email="pi@site9.example.com", display_name="Dr. Elsewhere", is_active=True)
        other_pi.trial_roles.append(TrialRoleAssignment(role=roles["trial_admin"], trial_id=2))
        s.add_all([admin, nurse, pi, other_pi])
        s.flush()
        assert [admin.id, nurse.id, pi.id, other_pi.id] == [1, 2, 3, 4]

    return app.test_client()


ADMIN = {"X-Authenticated-User-Id": "1"}
NURSE = {"X-Authenticated-User-Id": "2"}
PI = {"X-Authenticated-User-Id": "3"}
OTHER_PI = {"X-Authenticated-User-Id": "4"}


def _create_current_version(client) -> tuple[int, int]:
    r = client.post("/api/documents", json={"trial_id": 1, "site_id": 5, "display_name": "Protocol ABC"}, headers=ADMIN)
    assert r.status_code == 201
    doc_id = r.json["data"]["id"]

    r = client.post(
        f"/api/documents/{doc_id}/versions",
        json={"version_number": "1.0", "file_reference": "blob://abc/v1.pdf", "original_filename": "v1.pdf"},
        headers=ADMIN,
    )
    assert r.status_code == 201
    version_id = r.json["data"]["id"]
    assert r.json["data"]["status"] == "Uploaded"

    r = client.post(f"/api/versions/{version_id}/promote", headers=ADMIN)
    assert r.status_code == 200
    assert r.json["data"]["status"] == "Current"
    return doc_id, version_id


def test_protocol_version_endpoints(client):
    doc_id, version_id = _create_current_version(client)

    r = client.get(f"/api/documents/{doc_id}", headers=NURSE)
    assert r.status_code == 200
    assert r.json["data"]["current_version"]["id"] == version_id

    r = client.post(
        f"/api/documents/{doc_id}/versions",
        json={"version_number": "2.0", "file_reference": "blob://abc/v2.pdf"},
        headers=ADMIN,
    )
    v2 = r.json["data"]
    assert v2["previous_hash"] != "0" * 64

    r = client.get(f"/api/documents/{doc_id}/versions", headers=NURSE)
    assert [v["version_number"] for v in r.json["data"]] == ["2.0", "1.0"]

    r = client.get("/api/documents?trial_id=1", headers=NURSE)
    assert [d["id"] for d in r.json["data"]] == [doc_id]
    r = client.get("/api/documents?trial_id=2", headers=NURSE)
    assert r.json["data"] == []

    r = client.get(f"/api/audit/ProtocolVersion/{version_id}", headers=ADMIN)
    assert r.status_code == 200
    assert r.json["data"]["verified"] is True
    assert r.json["data"]["records"][0]["previous_hash"] == "0" * 64


def test_error_mapping(client):
    doc_id, version_id = _create_current_version(client)

    # duplicate version number -> 409 conflict
    r = client.post(
        f"/api/documents/{doc_id}/versions",
        json={"version_number": "1.0", "file_reference": "blob://abc/dup.pdf"},
        headers=ADMIN,
    )
    assert r.status_code == 409
    assert r.json["error"] == "conflict"

    # capability missing -> 403
    r = client.post(
        f"/api/documents/{doc_id}/versions",
        json={"version_number": "9.0", "file_reference": "blob://abc/v9.pdf"},
        headers=NURSE,
    )
    assert r.status_code == 403
    assert r.json["error"] == "unauthorized"

    # unknown version -> 404
    r = client.post("/api/versions/4242/promote", headers=ADMIN)
    assert r.status_code == 404
    assert r.json["error"] == "not_found"

    # malformed input -> 400
    r = client.post("/api/documents", json={"display_name": "No trial"}, headers=ADMIN)
    assert r.status_code == 400
    r = client.post(
        "/api/compliance/delegation",
        json={
            "protocol_version_id": version_id,
            "delegated_user_id": 2,
            "delegated_job_title": "Nurse",
            "effective_start_date": "June 1st",
        },
        headers=ADMIN,
    )
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    assert r.json["context"]["field"] == "effective_start_date"


def test_delegation_endpoints_full_lifecycle(client):
    _, version_id = _create_current_version(client)

    r = client.post(
        "/api/compliance/delegation",
        json={
            "protocol_version_id": version_id,
            "delegated_user_id": 2,
            "delegated_job_title": "Research Nurse",
            "trial_role": "Sub-Investigator",
            "task_description": "Consent; vitals",
            "effective_start_date": "2024-06-01",
            "effective_end_date": "2025-06-01",
            "training_required": "true",
        },
        headers=ADMIN,
    )
    assert r.status_code == 201
    d = r.json["data"]
    assert d["status"] == "Pending"
    assert d["training_required"] is True
    assert d["effective_end_date"] == "2025-06-01"

    # The delegatee sees it in their own pending list.
    r = client.get("/api/compliance/delegations?status=pending", headers=NURSE)
    assert [x["id"] for x in r.json["data"]] == [d["id"]]

    # ...but cannot list someone else's or revoke.
    r = client.get("/api/compliance/delegations?user_id=1", headers=NURSE)
    assert r.status_code == 403

    r = client.post(
        f"/api/compliance/delegation/{d['id']}/sign",
        json={"action": "accept", "printed_name": "Nora Nurse"},
        headers=NURSE,
    )
    assert r.status_code == 200
    assert r.json["data"]["status"] == "Accepted"
    assert r.json["data"]["signed_by"] == "Nora Nurse"

    r = client.put(f"/api/compliance/delegation/{d['id']}/revoke", json={}, headers=NURSE)
    assert r.status_code == 403

    r = client.put(
        f"/api/compliance/delegation/{d['id']}/revoke",
        json={"revocation_reason": "Study closed at site"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    assert r.json["data"]["status"] == "Revoked"
    assert r.json["data"]["revocation_reason"] == "Study closed at site"

    # Terminal state -> 409
    r = client.post(
        f"/api/compliance/delegation/{d['id']}/sign",
        json={"action": "decline", "printed_name": "Nora Nurse"},
        headers=NURSE,
    )
    assert r.status_code == 409
    assert r.json["error"] == "invalid_transition"

    r = client.get(f"/api/compliance/versions/{version_id}/delegations", headers=ADMIN)
    assert [x["id"] for x in r.json["data"]] == [d["id"]]

    r = client.get(f"/api/compliance/delegation/{d['id']}", headers=NURSE)
    assert r.status_code == 200

    r = client.get(f"/api/audit/Delegation/{d['id']}", headers=ADMIN)
    body = r.json["data"]
    assert body["verified"] is True
    assert [x["to_status"] for x in body["records"]] == ["Pending", "Accepted", "Revoked"]


def test_identity_header_name_is_configurable(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("AUTH_USER_HEADER", "X-Remote-User")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add(User(email="someone@example.com", is_active=True))

    client = app.test_client()
    assert client.get("/api/documents", headers={"X-Authenticated-User-Id": "1"}).status_code == 401
    r = client.get("/api/documents", headers={"X-Remote-User": "1"})
    assert r.status_code == 200
    assert r.json["data"] == []


def _issue_to_nurse(client, version_id, headers) -> int:
    r = client.post(
        "/api/compliance/delegation",
        json={
            "protocol_version_id": version_id,
            "delegated_user_id": 2,
            "delegated_job_title": "Research Nurse",
            "effective_start_date": "2024-06-01",
        },
        headers=headers,
    )
    assert r.status_code == 201
    return r.json["data"]["id"]


def test_trial_admin_reads_audit_and_delegation_log_in_own_trial_only(client):
    _, version_id = _create_current_version(client)
    delegation_id = _issue_to_nurse(client, version_id, PI)

    r = client.get(f"/api/audit/ProtocolVersion/{version_id}", headers=PI)
    assert r.status_code == 200
    assert r.json["data"]["verified"] is True
    r = client.get(f"/api/audit/Delegation/{delegation_id}", headers=PI)
    assert r.status_code == 200
    assert [x["to_status"] for x in r.json["data"]["records"]] == ["Pending"]

    r = client.get(f"/api/compliance/versions/{version_id}/delegations", headers=PI)
    assert r.status_code == 200
    assert [x["id"] for x in r.json["data"]] == [delegation_id]
    r = client.get(f"/api/compliance/delegation/{delegation_id}", headers=PI)
    assert r.status_code == 200
    r = client.get("/api/compliance/delegations?user_id=2", headers=PI)
    assert [x["id"] for x in r.json["data"]] == [delegation_id]

    # Same role, different trial.
    r = client.get(f"/api/audit/ProtocolVersion/{version_id}", headers=OTHER_PI)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "audit.view"
    r = client.get(f"/api/audit/Delegation/{delegation_id}", headers=OTHER_PI)
    assert r.status_code == 403
    r = client.get(f"/api/compliance/versions/{version_id}/delegations", headers=OTHER_PI)
    assert r.status_code == 403
    r = client.get(f"/api/compliance/delegation/{delegation_id}", headers=OTHER_PI)
    assert r.status_code == 403
    r = client.get("/api/compliance/delegations?user_id=2", headers=OTHER_PI)
    assert r.status_code == 200
    assert r.json["data"] == []


def test_protocol_reads_are_scoped_to_trial(client):
    doc_id, version_id = _create_current_version(client)

    for headers in (ADMIN, PI, NURSE):
        assert client.get(f"/api/documents/{doc_id}", headers=headers).status_code == 200
        assert client.get(f"/api/documents/{doc_id}/versions", headers=headers).status_code == 200
        assert client.get(f"/api/versions/{version_id}", headers=headers).status_code == 200
        assert [d["id"] for d in client.get("/api/documents", headers=headers).json["data"]] == [doc_id]

    for path in (f"/api/documents/{doc_id}", f"/api/documents/{doc_id}/versions", f"/api/versions/{version_id}"):
        r = client.get(path, headers=OTHER_PI)
        assert r.status_code == 403
        assert r.json["error"] == "unauthorized"
    r = client.get("/api/documents", headers=OTHER_PI)
    assert r.status_code == 200
    assert r.json["data"] == []

    assert client.get("/api/documents/4242", headers=ADMIN).status_code == 404


def test_non_string_text_fields_are_rejected(client):
    doc_id, version_id = _create_current_version(client)
    delegation_id = _issue_to_nurse(client, version_id, ADMIN)

    cases = [
        ("post", "/api/documents", {"trial_id": 1, "display_name": 123}, ADMIN, "display_name"),
        ("post", "/api/documents", {"trial_id": 1, "display_name": "X", "document_type": ["ICF"]}, ADMIN, "document_type"),
        (
            "post",
            f"/api/documents/{doc_id}/versions",
            {"version_number": 2.0, "file_reference": "blob://abc/v2.pdf"},
            ADMIN,
            "version_number",
        ),
        (
            "post",
            f"/api/documents/{doc_id}/versions",
            {"version_number": "2.0", "file_reference": "blob://abc/v2.pdf", "original_filename": {"name": "v2.pdf"}},
            ADMIN,
            "original_filename",
        ),
        (
            "post",
            "/api/compliance/delegation",
            {
                "protocol_version_id": version_id,
                "delegated_user_id": 2,
                "delegated_job_title": "Nurse",
                "effective_start_date": "2024-06-01",
                "trial_role": 7,
            },
            ADMIN,
            "trial_role",
        ),
        (
            "post",
            f"/api/compliance/delegation/{delegation_id}/sign",
            {"action": "accept", "printed_name": 42},
            NURSE,
            "printed_name",
        ),
        (
            "put",
            f"/api/compliance/delegation/{delegation_id}/revoke",
            {"revocation_reason": {"why": "closed"}},
            ADMIN,
            "revocation_reason",
        ),
    ]
    for method, path, body, headers, field in cases:
        r = getattr(client, method)(path, json=body, headers=headers)
        assert r.status_code == 400, (path, body)
        assert r.json["error"] == "validation_error"
        assert r.json["context"]["field"] == field

    # Nothing was written by the rejected requests.
    r = client.get(f"/api/documents/{doc_id}/versions", headers=ADMIN)
    assert [v["version_number"] for v in r.json["data"]] == ["1.0"]
    r = client.get(f"/api/compliance/delegation/{delegation_id}", headers=ADMIN)
    assert r.json["data"]["status"] == "Pending"


def test_protocol_version_feed_for_the_delegation_log(client):
    doc_id, v1 = _create_current_version(client)
    r = client.post(
        f"/api/documents/{doc_id}/versions",
        json={"version_number": "2.0", "file_reference": "blob://abc/v2.pdf"},
        headers=ADMIN,
    )
    v2 = r.json["data"]["id"]

    r = client.get("/api/compliance/protocol-versions", headers=NURSE)
    assert r.status_code == 200
    rows = r.json["data"]
    assert [row["id"] for row in rows] == [v2, v1]
    assert {row["document_display_name"] for row in rows} == {"Protocol ABC"}
    assert {row["trial_id"] for row in rows} == {1}

    r = client.get("/api/compliance/protocol-versions?status=current", headers=NURSE)
    assert [row["id"] for row in r.json["data"]] == [v1]
    assert client.get("/api/compliance/protocol-versions?status=archived", headers=NURSE).status_code == 400
    assert client.get("/api/compliance/protocol-versions", headers=OTHER_PI).json["data"] == []
