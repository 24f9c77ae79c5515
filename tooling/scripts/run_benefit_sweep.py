"""Run the benefit maintenance jobs once.

Intended usage: manual invocation or an external cron when the in-process
scheduler is disabled.

Example:
    python tooling/scripts/run_benefit_sweep.py --sync-counters
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire benefits whose validity window has closed")
    parser.add_argument(
        "--sync-counters",
        action="store_true",
        help="Also recompute the active benefit counter of every business.",
    )
    return parser.parse_args()


async def _run(sync_counters: bool) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from fidelya_api.db.session import async_session  # type: ignore import-position
    from fidelya_api.jobs.benefits import (  # type: ignore import-position
        sweep_expired_benefits,
        sync_business_benefit_counters,
    )

    summary = await sweep_expired_benefits(session_factory=async_session)
    if sync_counters:
        summary.update(await sync_business_benefit_counters(session_factory=async_session))
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.sync_counters))
    logger.success(
        "Benefit maintenance run completed",
        expired=summary.get("expired", 0),
        businesses_synced=summary.get("businesses_synced"),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
