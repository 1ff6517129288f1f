from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from satgate.core.config import get_settings
from satgate.persistence.db import SessionLocal
from satgate.persistence.repos.replay import prune_expired


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete expired action-token replay records")
    parser.add_argument(
        "--grace-hours",
        type=int,
        default=None,
        help="Keep rows this many hours past expiry (default: SAT_RETENTION_HOURS)",
    )
    return parser


async def prune(grace_hours: int) -> int:
    # Expired rows can never authorize again; keep a grace window for investigations.
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(grace_hours, 0))
    async with SessionLocal() as session:
        deleted = await prune_expired(session, older_than=cutoff)
        await session.commit()
    print(f"pruned_sat_tokens={deleted}")
    return deleted


def main() -> int:
    args = _build_parser().parse_args()
    grace_hours = args.grace_hours if args.grace_hours is not None else get_settings().sat_retention_hours
    asyncio.run(prune(grace_hours))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
