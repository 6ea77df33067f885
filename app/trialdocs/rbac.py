from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any, Protocol

from flask import abort, g
from sqlalchemy.orm import Session, sessionmaker

from app.trialdocs.models import User

# Capability keys checked by ComplianceCore. Seeded by scripts/init_db.py.
CAP_PROTOCOLS_VIEW = "protocols.view"
CAP_PROTOCOLS_UPLOAD = "protocols.upload"
CAP_PROTOCOLS_PROMOTE = "protocols.promote"
CAP_DELEGATIONS_VIEW = "delegations.view"
CAP_DELEGATIONS_ISSUE = "delegations.issue"
CAP_DELEGATIONS_REVOKE = "delegations.revoke"
CAP_AUDIT_VIEW = "audit.view"


class AuthorizationProvider(Protocol):
    def has_capability(self, actor_id: int, capability: str, scope_id: int | None) -> bool: ...


def user_has_permission(user: User | None, permission_key: str, *, trial_id: int | None = None) -> bool:
    """
    Global roles grant the permission everywhere; trial role assignments only
    grant it within their own trial.
    """
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    if trial_id is None:
        return False
    for assignment in user.trial_roles:
        if assignment.trial_id != trial_id:
            continue
        for perm in assignment.role.permissions:
            if perm.key == permission_key:
                return True
    return False


class RbacAuthorization:
    """Authorization provider backed by the roles/permissions tables."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def has_capability(self, actor_id: int, capability: str, scope_id: int | None) -> bool:
        s: Session = self._session_factory()
        try:
            user = s.get(User, actor_id)
            return user_has_permission(user, capability, trial_id=scope_id)
        finally:
            s.close()


def holds_permission_anywhere(user: User | None, permission_key: str) -> bool:
    if user_has_permission(user, permission_key):
        return True
    if not user or not user.is_active:
        return False
    return any(
        perm.key == permission_key for assignment in user.trial_roles for perm in assignment.role.permissions
    )


def require_trial_permission(permission_key: str, trial_id: int) -> None:
    """Abort 403 unless the current user holds permission_key within trial_id."""
    if not user_has_permission(getattr(g, "current_user", None), permission_key, trial_id=trial_id):
        g.missing_permission = permission_key
        abort(403)


def require_user(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401)
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Coarse gate: the user must hold the permission globally or in at least one
    trial. Views over trial-owned records follow up with require_trial_permission.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # No identity from the upstream provider -> 401
            if not user or not user.is_active:
                abort(401)
            # Authenticated but unauthorized -> 403
            if not holds_permission_anywhere(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
