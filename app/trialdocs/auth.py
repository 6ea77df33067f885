from __future__ import annotations

import uuid

from flask import current_app, g, request

from app.trialdocs.db import db_session
from app.trialdocs.models import User


def load_current_user() -> None:
    """
    Loads g.current_user from the identity header set by the upstream
    identity provider (already authenticated; trusted as given).
    Also assigns a per-request request_id (for audit/log correlation).
    """
    g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/health", "/healthz")):
        return

    header = current_app.config.get("AUTH_USER_HEADER") or "X-Authenticated-User-Id"
    raw = (request.headers.get(header) or "").strip()
    if not raw:
        return
    try:
        user_id = int(raw)
    except ValueError:
        current_app.logger.warning("Ignoring non-integer %s header (request_id=%s)", header, g.request_id)
        return

    s = db_session()
    user = s.get(User, user_id)
    if not user or not user.is_active:
        current_app.logger.warning("Unknown or inactive user id=%s (request_id=%s)", user_id, g.request_id)
        return
    g.current_user = user


def current_actor_id() -> int:
    """Actor id for the current request; rbac.require_user guarantees it is set."""
    user: User | None = getattr(g, "current_user", None)
    if user is None:
        raise RuntimeError("No current user")
    return user.id
