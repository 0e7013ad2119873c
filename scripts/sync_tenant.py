from __future__ import annotations

import argparse
import asyncio
import json
import sys

from channelplane.core.logging import configure_logging
from channelplane.services.reconciliation import sync_tenant


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile one tenant's channel now, bypassing backoff")
    parser.add_argument("tenant_id", help="Tenant whose channel should be synced")
    return parser


async def _sync(tenant_id: str) -> int:
    result = await sync_tenant(tenant_id)
    print(json.dumps(result.as_dict(), indent=2, default=str))
    return 0 if result.outcome in {"synced", "skipped"} else 1


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    return asyncio.run(_sync(args.tenant_id))


if __name__ == "__main__":
    sys.exit(main())
