#!/usr/bin/env python3
"""
Deliver pending outbox messages (processor resync, payment-failed e-mails).

Meant to run from cron or a scheduler next to the API, which only drains the
outbox opportunistically after a status transition commits.

Usage:
    python scripts/drain_outbox.py            # one batch of OUTBOX_BATCH_SIZE
    python scripts/drain_outbox.py --all      # loop until nothing is due
    python scripts/drain_outbox.py --limit 10
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.logging import configure_logging  # noqa: E402
from app.db.session import engine  # noqa: E402
from app.services.outbox import drain_outbox  # noqa: E402

logger = logging.getLogger("scripts.drain_outbox")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--limit", type=int, default=None, help="messages per batch")
    parser.add_argument("--all", action="store_true", help="keep draining until a batch delivers nothing")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    totals = {"delivered": 0, "retried": 0, "failed": 0}
    try:
        while True:
            summary = await drain_outbox(limit=args.limit)
            totals["delivered"] += summary.delivered
            totals["retried"] += summary.retried
            totals["failed"] += summary.failed
            if not args.all or summary.delivered + summary.retried + summary.failed == 0:
                break
    finally:
        await engine.dispose()
    logger.info("Outbox drain complete", extra=totals)
    return 1 if totals["failed"] else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
