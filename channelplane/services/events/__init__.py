from __future__ import annotations

from channelplane.services.events.intake import AcceptedEvent, accept_event, verify_signature, verify_subscription
from channelplane.services.events.processing import (
    EventProcessor,
    ProcessOutcome,
    queue_stats,
    replay_dead_letter,
    requeue_stale_jobs,
    run_event_reaper_tick,
)
from channelplane.services.events.worker_pool import EventWorkerPool


__all__ = [
    "AcceptedEvent",
    "EventProcessor",
    "EventWorkerPool",
    "ProcessOutcome",
    "accept_event",
    "queue_stats",
    "replay_dead_letter",
    "requeue_stale_jobs",
    "run_event_reaper_tick",
    "verify_signature",
    "verify_subscription",
]
