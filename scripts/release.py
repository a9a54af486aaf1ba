"""
Release-phase helper: runs Alembic migrations before the app boots.

On Postgres a session-level advisory lock is held for the duration, so several
instances starting at once apply migrations one at a time.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

MIGRATION_LOCK_ID = 1


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def _upgrade(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    # ConfigParser interpolation: escape '%' in passwords.
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def run_release() -> None:
    from dotenv import load_dotenv

    load_dotenv()
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print("=== release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)

    if not db_url.startswith("postgres"):
        print("Running Alembic migrations...", flush=True)
        _upgrade(db_url)
        print("=== release done ===", flush=True)
        return

    from sqlalchemy import text

    from scripts._db_utils import create_script_engine

    engine = create_script_engine(db_url)
    try:
        with engine.connect() as conn:
            print("Acquiring migration lock...", flush=True)
            conn.execute(text("SELECT pg_advisory_lock(:id)"), {"id": MIGRATION_LOCK_ID})
            try:
                print("Running Alembic migrations...", flush=True)
                _upgrade(db_url)
            finally:
                try:
                    conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": MIGRATION_LOCK_ID})
                except Exception as e:
                    print(f"Failed to release migration lock: {e}", flush=True)
    finally:
        engine.dispose()
    print("=== release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
