#!/usr/bin/env python3
"""
Run one listing and/or ownership sync immediately, outside the scheduler.

Usage:
    python scripts/sync_now.py            # both jobs
    python scripts/sync_now.py listings   # listing sync only
    python scripts/sync_now.py ownership  # ownership sync only
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from nft_tracker.config import settings
from nft_tracker.db.models import Base
from nft_tracker.db.session import engine
from nft_tracker.logging_config import setup_logging
from nft_tracker.worker.job_guard import OUTCOME_COMPLETED
from nft_tracker.worker.tasks import SyncTaskRunner


async def sync_now(jobs: list[str]) -> int:
    """Run the requested jobs in order and print their summaries."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    runner = SyncTaskRunner(settings)
    exit_code = 0
    try:
        for job in jobs:
            if job == "listings":
                outcome = await runner.run_listing_sync(trigger="manual")
            else:
                outcome = await runner.run_ownership_sync(trigger="manual")

            print(f"{job}: {outcome.state}")
            if outcome.result is not None:
                print(json.dumps(outcome.result, indent=2, default=str))
            if outcome.error is not None:
                print(f"  error: {outcome.error}")
            if outcome.state != OUTCOME_COMPLETED:
                exit_code = 1
    finally:
        await runner.close()
        await engine.dispose()

    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Run a sync immediately")
    parser.add_argument(
        "job",
        nargs="?",
        choices=["listings", "ownership", "all"],
        default="all",
    )
    args = parser.parse_args()

    setup_logging()
    jobs = ["listings", "ownership"] if args.job == "all" else [args.job]
    sys.exit(asyncio.run(sync_now(jobs)))


if __name__ == "__main__":
    main()
