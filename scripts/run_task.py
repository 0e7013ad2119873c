from __future__ import annotations

import argparse
import asyncio
import json
import sys

from channelplane.core.logging import configure_logging
from channelplane.services.credential_refresh import run_credential_expiry_tick, run_credential_refresh_tick
from channelplane.services.events import run_event_reaper_tick
from channelplane.services.reconciliation import run_reconciliation_tick
from channelplane.services.scheduling import (
    TASK_CREDENTIAL_EXPIRY,
    TASK_CREDENTIAL_REFRESH,
    TASK_EVENT_REAPER,
    TASK_RECONCILIATION,
)

_TASKS = {
    TASK_RECONCILIATION: run_reconciliation_tick,
    TASK_CREDENTIAL_REFRESH: run_credential_refresh_tick,
    TASK_CREDENTIAL_EXPIRY: run_credential_expiry_tick,
    TASK_EVENT_REAPER: run_event_reaper_tick,
}


def _build_parser() -> argparse.ArgumentParser:
    # One-shot tick for cron-driven deployments that do not run the arq scheduler.
    parser = argparse.ArgumentParser(description="Run a single tick of a periodic task")
    parser.add_argument("task", choices=sorted(_TASKS), help="Task type to run")
    return parser


async def _run(task: str) -> int:
    summary = await _TASKS[task]()
    print(json.dumps(summary, indent=2, default=str))
    return 0 if not summary.get("failed") else 1


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    return asyncio.run(_run(args.task))


if __name__ == "__main__":
    sys.exit(main())
