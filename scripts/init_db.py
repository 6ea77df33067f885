import os
import sys
from pathlib import Path

from sqlalchemy.orm import Session

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.trialdocs.models import Permission, Role, User
from app.trialdocs.rbac import (
    CAP_AUDIT_VIEW,
    CAP_DELEGATIONS_ISSUE,
    CAP_DELEGATIONS_REVOKE,
    CAP_DELEGATIONS_VIEW,
    CAP_PROTOCOLS_PROMOTE,
    CAP_PROTOCOLS_UPLOAD,
    CAP_PROTOCOLS_VIEW,
)
from scripts._db_utils import resolve_database_url, script_session

PERMISSIONS = {
    CAP_PROTOCOLS_VIEW: "Protocols: view",
    CAP_PROTOCOLS_UPLOAD: "Protocols: register uploads",
    CAP_PROTOCOLS_PROMOTE: "Protocols: promote to Current",
    CAP_DELEGATIONS_VIEW: "Delegations: view all",
    CAP_DELEGATIONS_ISSUE: "Delegations: issue",
    CAP_DELEGATIONS_REVOKE: "Delegations: revoke",
    CAP_AUDIT_VIEW: "Audit trail: view",
}

# role key -> (display name, permission keys)
ROLES = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "trial_admin": (
        "Site/Trial Administrator",
        (
            CAP_PROTOCOLS_VIEW,
            CAP_PROTOCOLS_UPLOAD,
            CAP_PROTOCOLS_PROMOTE,
            CAP_DELEGATIONS_VIEW,
            CAP_DELEGATIONS_ISSUE,
            CAP_DELEGATIONS_REVOKE,
            CAP_AUDIT_VIEW,
        ),
    ),
    "trial_lead": ("Trial Lead", (CAP_PROTOCOLS_VIEW, CAP_DELEGATIONS_VIEW, CAP_DELEGATIONS_ISSUE, CAP_AUDIT_VIEW)),
    "site_user": ("Site User", (CAP_PROTOCOLS_VIEW,)),
}


def seed_session(s: Session, *, admin_email: str | None = None) -> None:
    """
    Seed permissions/roles (and optionally an admin identity) in an idempotent way.
    Existing role grants are only ever added to, never removed.
    """
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, keys) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for pk in keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role

    if admin_email:
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, display_name="Administrator", is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])
    s.flush()


def seed_only(*, database_url: str | None = None) -> None:
    # Identities come from the upstream identity provider; ADMIN_EMAIL only bootstraps the first admin.
    admin_email = (os.environ.get("ADMIN_EMAIL") or "").strip().lower() or None
    db_url = resolve_database_url(database_url)

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        seed_session(s, admin_email=admin_email)

    print("Initialized database (seed_only).")
    print(f"Roles: {', '.join(ROLES)}")
    if admin_email:
        print(f"Admin email: {admin_email}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
