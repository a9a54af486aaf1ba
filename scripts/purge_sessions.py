"""
Deletes expired login sessions. The app does this hourly on its own; use this
from cron when the in-process sweeper is disabled (SESSION_SWEEP_SECONDS=0).

Usage:
  python scripts/purge_sessions.py [--dry-run]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from app.portal.models import Session, utcnow  # noqa: E402
from app.portal.sessions import delete_expired_sessions  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def purge(db_url: str, *, dry_run: bool = False) -> int:
    with script_session(db_url) as s:
        if dry_run:
            return s.scalar(select(func.count()).select_from(Session).where(Session.expires_at < utcnow())) or 0
        return delete_expired_sessions(s)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired login sessions.")
    parser.add_argument("--dry-run", action="store_true", help="count expired sessions without deleting them")
    args = parser.parse_args(argv)

    load_dotenv()
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        print("DATABASE_URL is not set", file=sys.stderr)
        return 1

    n = purge(db_url, dry_run=args.dry_run)
    verb = "would delete" if args.dry_run else "deleted"
    print(f"{verb} {n} expired sessions")
    return 0


if __name__ == "__main__":
    sys.exit(main())
