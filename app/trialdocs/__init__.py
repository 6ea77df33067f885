import logging

from flask import Flask, g
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.trialdocs.config import load_config
from app.trialdocs.db import init_db, teardown_db_session
from app.trialdocs.errors import ComplianceError
from app.trialdocs.auth import load_current_user
from app.trialdocs.routes import bp as routes_bp
from app.trialdocs.modules.protocol_versions.admin import bp as protocol_versions_bp
from app.trialdocs.modules.delegations.admin import bp as delegations_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(protocol_versions_bp, url_prefix="/api")
    app.register_blueprint(delegations_bp, url_prefix="/api/compliance")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ComplianceError)
    def _err_compliance(e: ComplianceError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if e.http_status >= 500:
            app.logger.error("Compliance failure %s (request_id=%s): %s", e.code, rid, e.message)
        else:
            app.logger.info("Rejected %s (request_id=%s): %s", e.code, rid, e.message)
        body = e.to_dict()
        body["request_id"] = rid
        return body, e.http_status

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if e.code == 403 and missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        body = {"ok": False, "error": (e.name or "error").lower().replace(" ", "_"), "message": e.description}
        if missing:
            body["missing_permission"] = missing
        return body, e.code or 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"ok": False, "error": "internal_server_error", "message": "Internal server error."}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
