"""
ComplianceCore: the only entry point that mutates protocol versions and
delegations.

Each public operation runs as one transaction:
authorize -> ledger mutation -> record hash -> audit append -> commit.
Any failure rolls the whole unit back, so no partial audit entry survives.
"""
from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import date

from flask import Flask
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.trialdocs import audit
from app.trialdocs.errors import (
    ComplianceError,
    ConcurrentModificationError,
    ConflictError,
    StorageError,
    TransactionTimeoutError,
    UnauthorizedError,
    ValidationError,
)
from app.trialdocs.models import AuditRecord
from app.trialdocs.modules.delegations import service as delegations
from app.trialdocs.modules.delegations.models import Delegation
from app.trialdocs.modules.protocol_versions import service as versions
from app.trialdocs.modules.protocol_versions.models import DocumentMaster, ProtocolVersion
from app.trialdocs.rbac import (
    CAP_DELEGATIONS_ISSUE,
    CAP_DELEGATIONS_REVOKE,
    CAP_PROTOCOLS_PROMOTE,
    CAP_PROTOCOLS_UPLOAD,
    AuthorizationProvider,
    RbacAuthorization,
)

logger = logging.getLogger(__name__)

# Postgres: lock_not_available, query_canceled (statement/lock timeout)
_PG_TIMEOUT_CODES = {"55P03", "57014"}
_TIMEOUT_MARKERS = ("database is locked", "lock timeout", "statement timeout", "deadlock detected")


def _is_timeout(e: DBAPIError) -> bool:
    code = getattr(getattr(e, "orig", None), "pgcode", None)
    if code in _PG_TIMEOUT_CODES:
        return True
    msg = str(getattr(e, "orig", e)).lower()
    return any(m in msg for m in _TIMEOUT_MARKERS)


def translate_db_error(e: SQLAlchemyError, *, operation: str) -> ComplianceError:
    if isinstance(e, StaleDataError):
        return ConcurrentModificationError(
            "The record was modified by a concurrent operation; retry.",
            operation=operation,
        )
    if isinstance(e, OperationalError) and _is_timeout(e):
        return TransactionTimeoutError("Timed out waiting for a database lock; retry.", operation=operation)
    if isinstance(e, IntegrityError):
        return ConflictError("The change conflicts with existing data.", operation=operation)
    return StorageError(f"Storage failure: {e.__class__.__name__}", operation=operation)


class ComplianceCore:
    def __init__(
        self,
        session_factory: sessionmaker,
        authorization: AuthorizationProvider,
        *,
        lock_timeout_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._authz = authorization
        self._lock_timeout_ms = int(lock_timeout_seconds * 1000) if lock_timeout_seconds else None

    @classmethod
    def from_app(cls, app: Flask) -> "ComplianceCore":
        core = app.extensions.get("compliance_core")
        if core is None:
            sm = app.extensions["sqlalchemy_sessionmaker"]
            core = cls(
                sm,
                RbacAuthorization(sm),
                lock_timeout_seconds=float(app.config.get("DB_LOCK_TIMEOUT_SECONDS") or 0) or None,
            )
            app.extensions["compliance_core"] = core
        return core

    # ------------------------------------------------------------------
    # transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, operation: str) -> Generator[Session, None, None]:
        s: Session = self._session_factory()
        try:
            if self._lock_timeout_ms and s.get_bind().dialect.name == "postgresql":
                s.execute(text(f"SET LOCAL lock_timeout = {self._lock_timeout_ms}"))
            yield s
            s.commit()
        except ComplianceError as e:
            s.rollback()
            logger.warning("COMPLIANCE: op=%s rejected error=%s message=%s", operation, e.code, e.message)
            raise
        except SQLAlchemyError as e:
            s.rollback()
            err = translate_db_error(e, operation=operation)
            logger.warning("COMPLIANCE: op=%s failed error=%s cause=%s", operation, err.code, e.__class__.__name__)
            raise err from e
        except Exception:
            s.rollback()
            logger.exception("COMPLIANCE: op=%s crashed", operation)
            raise
        finally:
            s.close()

    @contextmanager
    def _read(self, operation: str) -> Generator[Session, None, None]:
        s: Session = self._session_factory()
        try:
            yield s
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation=operation) from e
        finally:
            s.close()

    def _authorize(self, actor_id: int, capability: str, scope_id: int | None, *, operation: str) -> None:
        if not self._authz.has_capability(actor_id, capability, scope_id):
            raise UnauthorizedError(
                f"Actor lacks capability {capability!r} for this trial.",
                operation=operation,
                capability=capability,
            )

    # ------------------------------------------------------------------
    # protocol versions
    # ------------------------------------------------------------------

    def create_document_master(
        self,
        *,
        trial_id: int,
        display_name: str,
        actor_id: int,
        site_id: int | None = None,
        document_type: str = "Protocol",
    ) -> DocumentMaster:
        op = "create_document_master"
        with self.transaction(op) as s:
            self._authorize(actor_id, CAP_PROTOCOLS_UPLOAD, trial_id, operation=op)
            master = versions.create_document_master(
                s,
                trial_id=trial_id,
                display_name=display_name,
                created_by=actor_id,
                site_id=site_id,
                document_type=document_type,
            )
        return master

    def register_upload(
        self,
        *,
        document_master_id: int,
        version_number: str,
        actor_id: int,
        file_reference: str,
        original_filename: str | None = None,
    ) -> ProtocolVersion:
        op = "register_upload"
        with self.transaction(op) as s:
            master = versions.get_document_master(s, document_master_id)
            self._authorize(actor_id, CAP_PROTOCOLS_UPLOAD, master.trial_id, operation=op)
            v = versions.register_upload(
                s,
                document_master_id=master.id,
                version_number=version_number,
                uploaded_by=actor_id,
                file_reference=file_reference,
                original_filename=original_filename,
            )
        return v

    def promote_version(self, version_id: int, actor_id: int) -> ProtocolVersion:
        op = "promote_version"
        with self.transaction(op) as s:
            target = versions.get_version(s, version_id)
            self._authorize(actor_id, CAP_PROTOCOLS_PROMOTE, target.document_master.trial_id, operation=op)
            promotion = versions.promote(s, version_id, actor_id=actor_id)
            if promotion.changed:
                if promotion.superseded is not None:
                    audit.append_transition(s, promotion.superseded, from_status=versions.CURRENT, actor_id=actor_id)
                audit.append_transition(s, promotion.version, from_status=versions.UPLOADED, actor_id=actor_id)
        if promotion.changed:
            logger.info("COMPLIANCE: op=%s ok version=%s actor=%s", op, version_id, actor_id)
        else:
            logger.info("COMPLIANCE: op=%s noop version=%s already Current", op, version_id)
        return promotion.version

    # ------------------------------------------------------------------
    # delegations
    # ------------------------------------------------------------------

    def issue_delegation(
        self,
        protocol_version_id: int,
        delegated_user_id: int,
        job_title: str,
        effective_start_date: date,
        issued_by: int,
        *,
        task_description: str | None = None,
        effective_end_date: date | None = None,
        training_required: bool = False,
        trial_role: str | None = None,
    ) -> Delegation:
        op = "issue_delegation"
        with self.transaction(op) as s:
            version = versions.get_version(s, protocol_version_id)
            self._authorize(issued_by, CAP_DELEGATIONS_ISSUE, version.document_master.trial_id, operation=op)
            d = delegations.issue(
                s,
                protocol_version_id=version.id,
                delegated_user_id=delegated_user_id,
                job_title=job_title,
                effective_start_date=effective_start_date,
                issued_by=issued_by,
                task_description=task_description,
                effective_end_date=effective_end_date,
                training_required=training_required,
                trial_role=trial_role,
            )
            audit.append_transition(s, d, from_status=None, actor_id=issued_by)
        logger.info("COMPLIANCE: op=%s ok delegation=%s actor=%s", op, d.id, issued_by)
        return d

    def sign_delegation(self, delegation_id: int, actor_id: int, decision: str, printed_name: str) -> Delegation:
        op = "sign_delegation"
        with self.transaction(op) as s:
            d = delegations.sign(
                s,
                delegation_id,
                acting_user_id=actor_id,
                decision=decision,
                printed_name=printed_name,
            )
            audit.append_transition(s, d, from_status=delegations.PENDING, actor_id=actor_id)
        logger.info("COMPLIANCE: op=%s ok delegation=%s status=%s actor=%s", op, d.id, d.status, actor_id)
        return d

    def revoke_delegation(self, delegation_id: int, actor_id: int, reason: str | None = None) -> Delegation:
        op = "revoke_delegation"

        def _is_admin(actor: int, d: Delegation) -> bool:
            return self._authz.has_capability(actor, CAP_DELEGATIONS_REVOKE, delegations.trial_scope(d))

        with self.transaction(op) as s:
            d = delegations.revoke(
                s,
                delegation_id,
                acting_user_id=actor_id,
                is_authorized=_is_admin,
                reason=reason,
            )
            audit.append_transition(s, d, from_status=delegations.ACCEPTED, actor_id=actor_id)
        logger.info("COMPLIANCE: op=%s ok delegation=%s actor=%s", op, d.id, actor_id)
        return d

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def verify_chain(self, entity_type: str, entity_id: int | str) -> bool:
        with self._read("verify_chain") as s:
            return audit.verify_chain(s, entity_type, entity_id)

    def audit_history(self, entity_type: str, entity_id: int | str) -> list[AuditRecord]:
        with self._read("audit_history") as s:
            return audit.entries_for(s, entity_type, entity_id)

    def trial_for_entity(self, entity_type: str, entity_id: int) -> int:
        """Trial that owns an audited entity; read checks are scoped to it."""
        with self._read("trial_for_entity") as s:
            if entity_type == audit.ENTITY_PROTOCOL_VERSION:
                return versions.get_version(s, entity_id).document_master.trial_id
            if entity_type == audit.ENTITY_DELEGATION:
                return delegations.trial_scope(delegations.get_delegation(s, entity_id))
            raise ValidationError(f"Unknown audited entity type: {entity_type!r}", entity_type=entity_type)

    def get_document_master(self, document_master_id: int) -> DocumentMaster:
        with self._read("get_document_master") as s:
            return versions.get_document_master(s, document_master_id)

    def list_document_masters(self, *, trial_id: int | None = None, site_id: int | None = None) -> list[DocumentMaster]:
        with self._read("list_document_masters") as s:
            return versions.list_document_masters(s, trial_id=trial_id, site_id=site_id)

    def get_version(self, version_id: int) -> ProtocolVersion:
        with self._read("get_version") as s:
            return versions.get_version(s, version_id)

    def list_versions(self, document_master_id: int) -> list[ProtocolVersion]:
        with self._read("list_versions") as s:
            return versions.list_versions(s, document_master_id)

    def current_version(self, document_master_id: int) -> ProtocolVersion | None:
        with self._read("current_version") as s:
            versions.get_document_master(s, document_master_id)
            return versions.current_version(s, document_master_id)

    def get_delegation(self, delegation_id: int) -> Delegation:
        with self._read("get_delegation") as s:
            return delegations.get_delegation(s, delegation_id)

    def list_delegations_for_user(self, user_id: int, *, status: str | None = None) -> list[Delegation]:
        with self._read("list_delegations_for_user") as s:
            return delegations.list_for_user(s, user_id, status=status)

    def list_delegations_for_version(self, protocol_version_id: int) -> list[Delegation]:
        with self._read("list_delegations_for_version") as s:
            versions.get_version(s, protocol_version_id)
            return delegations.list_for_version(s, protocol_version_id)
