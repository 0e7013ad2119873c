from __future__ import annotations

import asyncio

from channelplane.core.logging import configure_logging
from channelplane.services.events import EventWorkerPool


async def _main() -> None:
    # Run the event pool without arq, e.g. as a sidecar next to a single API process.
    configure_logging()
    pool = EventWorkerPool()
    pool.start()
    try:
        await asyncio.Event().wait()
    finally:
        await pool.stop()


if __name__ == "__main__":
    asyncio.run(_main())
