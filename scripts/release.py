"""
Release step for a deploy: migrate, seed, then re-verify every hash chain.

A deploy must not go live on top of a tampered ledger, so any chain that
fails verification aborts the release with a non-zero exit.

Usage:
  python scripts/release.py [--skip-chain-check]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alembic import command
from alembic.config import Config

from scripts import init_db, verify_chains
from scripts._db_utils import script_session


def release_database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set for a release.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and not db_url.startswith("postgres"):
        raise RuntimeError(f"Production releases must target Postgres, not {db_url.split(':', 1)[0]}.")
    return db_url


def migrate(db_url: str) -> None:
    cfg = Config(str(ROOT / "alembic.ini"))
    # Absolute path so the release works from any working directory.
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def check_chains(db_url: str) -> None:
    with script_session(db_url) as s:
        failures = verify_chains.verify_all(s)
    if failures:
        broken = ", ".join(f"{entity_type}#{entity_id}" for entity_type, entity_id in failures)
        raise RuntimeError(f"{len(failures)} hash chain(s) failed verification: {broken}")


def run_release(*, chain_check: bool = True) -> None:
    db_url = release_database_url()

    print("[release] alembic upgrade head", flush=True)
    migrate(db_url)

    print("[release] seeding permissions and roles", flush=True)
    init_db.seed_only(database_url=db_url)

    if chain_check:
        print("[release] verifying hash chains", flush=True)
        check_chains(db_url)
    else:
        print("[release] chain check skipped", flush=True)
    print("[release] done", flush=True)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate, seed and verify the compliance ledger before a deploy.")
    parser.add_argument(
        "--skip-chain-check",
        action="store_true",
        help="Skip hash chain verification (e.g. when a separate verify_chains run is scheduled).",
    )
    args = parser.parse_args(argv)
    try:
        run_release(chain_check=not args.skip_chain_check)
    except RuntimeError as e:
        print(f"[release] FAILED: {e}", file=sys.stderr, flush=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
