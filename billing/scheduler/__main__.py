"""Run one renewal sweep: ``python -m billing.scheduler``."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from billing.config import Settings
from billing.main import build_services
from billing.scheduler.renewal import SweepReport

logger = logging.getLogger("billing.scheduler")


async def _run() -> SweepReport:
    services = build_services(Settings.from_env())
    report = await services.scheduler.run_sweep()
    await services.notifier.drain()
    return report


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    try:
        report = asyncio.run(_run())
    except Exception:
        logger.exception("Renewal sweep aborted")
        return 1
    for outcome in report.outcomes:
        print(json.dumps(outcome.as_payload()))
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
