"""
Verify every protocol version and delegation hash chain.

Exits 1 if any chain fails (details are logged as "CHAIN: verify failed ...").

Usage:
  python scripts/verify_chains.py [--database-url URL] [--entity-type ProtocolVersion|Delegation]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.orm import Session

from app.trialdocs import audit
from app.trialdocs.modules.delegations.models import Delegation
from app.trialdocs.modules.protocol_versions.models import ProtocolVersion
from scripts._db_utils import resolve_database_url, script_session

ENTITY_MODELS = {
    audit.ENTITY_PROTOCOL_VERSION: ProtocolVersion,
    audit.ENTITY_DELEGATION: Delegation,
}


def verify_all(s: Session, entity_types: list[str] | None = None) -> list[tuple[str, int]]:
    """Return (entity_type, id) for every chain that fails verification."""
    failures: list[tuple[str, int]] = []
    for entity_type in entity_types or list(ENTITY_MODELS):
        model = ENTITY_MODELS[entity_type]
        ids = [row_id for (row_id,) in s.query(model.id).order_by(model.id.asc()).all()]
        for entity_id in ids:
            if not audit.verify_chain(s, entity_type, entity_id):
                failures.append((entity_type, entity_id))
        print(f"{entity_type}: checked={len(ids)}", flush=True)
    return failures


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify protocol version and delegation hash chains.")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    parser.add_argument("--entity-type", choices=sorted(ENTITY_MODELS), default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    with script_session(resolve_database_url(args.database_url)) as s:
        failures = verify_all(s, [args.entity_type] if args.entity_type else None)

    if failures:
        for entity_type, entity_id in failures:
            print(f"FAILED {entity_type} {entity_id}", flush=True)
        print(f"{len(failures)} chain(s) failed verification.", flush=True)
        return 1
    print("All chains verified.", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
