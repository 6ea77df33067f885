"""
Record hashing for protocol versions, delegations and audit records.

Every record_hash in the database is produced here, and the chain verifier
recomputes through the same functions. Keep this module free of I/O.

Hash policy
-----------
  canonical = compact JSON array of [field, value] pairs, in FIELD_ORDER
  digest    = SHA-256(previous_hash || canonical).hexdigest()

- previous_hash is the 64-char lowercase hex digest of the prior state in
  the lineage, encoded as ASCII. The first record of a lineage uses
  GENESIS_HASH (64 ASCII zeros).
- Values: null, true/false, integers as JSON numbers, strings as-is,
  finite floats/Decimals as strings (repr/str), datetimes as
  "YYYY-MM-DDTHH:MM:SS.ffffffZ" in UTC (naive datetimes are UTC),
  dates as "YYYY-MM-DD", enums by value.
- JSON is UTF-8 without ASCII escaping, separators "," and ":".
"""
from __future__ import annotations

import enum
import hashlib
import json
import math
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from app.trialdocs.errors import EncodingError

GENESIS_HASH = "0" * 64

# Explicit per-entity field order. Appending a field changes every future hash
# for that entity type, so existing rows need a backfill when this changes.
FIELD_ORDER: dict[str, tuple[str, ...]] = {
    "ProtocolVersion": (
        "id",
        "document_master_id",
        "version_number",
        "status",
        "uploaded_by",
        "uploaded_at",
        "file_reference",
        "promoted_by",
        "promoted_at",
        "superseded_at",
    ),
    "Delegation": (
        "id",
        "protocol_version_id",
        "delegated_user_id",
        "delegated_by_user_id",
        "delegated_job_title",
        "trial_role",
        "task_description",
        "delegation_date",
        "effective_start_date",
        "effective_end_date",
        "training_required",
        "status",
        "signed_by",
        "signed_at",
        "revoked_by_user_id",
        "revoked_at",
        "revocation_reason",
    ),
    "AuditRecord": (
        "entity_type",
        "entity_id",
        "from_status",
        "to_status",
        "actor_id",
        "created_at",
        "entity_record_hash",
        "entity_previous_hash",
    ),
}

_HEX64 = re.compile(r"[0-9a-f]{64}")


def canonical_value(name: str, value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, enum.Enum):
        return canonical_value(name, value.value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise EncodingError(f"Field {name!r} is not a finite number.", field=name)
        return repr(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise EncodingError(f"Field {name!r} is not a finite number.", field=name)
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if isinstance(value, date):
        return value.isoformat()
    raise EncodingError(
        f"Field {name!r} has a type that cannot be canonicalized: {type(value).__name__}.",
        field=name,
    )


def canonical_bytes(pairs: Sequence[tuple[str, Any]]) -> bytes:
    doc = [[str(name), canonical_value(str(name), value)] for name, value in pairs]
    try:
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")
    except (TypeError, ValueError) as e:  # pragma: no cover - canonical_value filters these
        raise EncodingError(f"Canonical encoding failed: {e}") from e


def ordered_fields(entity_type: str, source: Mapping[str, Any] | object) -> list[tuple[str, Any]]:
    """
    Pick the hashed fields for `entity_type` out of a mapping or a model
    instance, in schema order.
    """
    order = FIELD_ORDER.get(entity_type)
    if order is None:
        raise EncodingError(f"No canonical field order defined for {entity_type!r}.", entity_type=entity_type)
    pairs: list[tuple[str, Any]] = []
    for name in order:
        if isinstance(source, Mapping):
            if name not in source:
                raise EncodingError(f"Missing canonical field {name!r} for {entity_type}.", field=name)
            pairs.append((name, source[name]))
        else:
            if not hasattr(source, name):
                raise EncodingError(f"Missing canonical field {name!r} for {entity_type}.", field=name)
            pairs.append((name, getattr(source, name)))
    return pairs


def compute_hash_from_pairs(pairs: Sequence[tuple[str, Any]], previous_hash: str | None) -> str:
    prev = GENESIS_HASH if previous_hash is None else previous_hash
    if not isinstance(prev, str) or not _HEX64.fullmatch(prev):
        raise EncodingError("previous_hash must be a 64-char lowercase hex digest.")
    h = hashlib.sha256()
    h.update(prev.encode("ascii"))
    h.update(canonical_bytes(pairs))
    return h.hexdigest()


def compute_hash(entity_type: str, source: Mapping[str, Any] | object, previous_hash: str | None) -> str:
    return compute_hash_from_pairs(ordered_fields(entity_type, source), previous_hash)


def hash_entity(entity: object) -> str:
    """Hash a model instance against its own stored previous_hash."""
    return compute_hash(type(entity).__name__, entity, getattr(entity, "previous_hash", None))


def chain_entity(entity: Any, previous_hash: str | None) -> str:
    """
    Link `entity` onto `previous_hash` and store the resulting record_hash.
    Callers pass the entity's old record_hash when restating an existing row.
    """
    entity.previous_hash = GENESIS_HASH if previous_hash is None else previous_hash
    entity.record_hash = hash_entity(entity)
    return entity.record_hash
