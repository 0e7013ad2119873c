from __future__ import annotations

from dataclasses import dataclass
import random
import threading
import time
from typing import Callable
import zlib

from channelplane.core.config import get_settings


TENANT_NAMESPACE = "tenant"
CREDENTIAL_NAMESPACE = "credential"


def tenant_key(tenant_id: str) -> str:
    return f"{TENANT_NAMESPACE}:{tenant_id}"


def credential_key(credential_id: str) -> str:
    return f"{CREDENTIAL_NAMESPACE}:{credential_id}"


@dataclass(frozen=True)
class BackoffConfig:
    # Delays are seconds; defaults mirror the settings module.
    initial_delay_s: float = 60.0
    max_delay_s: float = 1800.0
    multiplier: float = 2.0
    max_retries: int = 10
    jitter_factor: float = 0.1
    shards: int = 16

    @classmethod
    def from_settings(cls) -> "BackoffConfig":
        settings = get_settings()
        return cls(
            initial_delay_s=float(settings.backoff_initial_delay_s),
            max_delay_s=float(settings.backoff_max_delay_s),
            multiplier=float(settings.backoff_multiplier),
            max_retries=int(settings.backoff_max_retries),
            jitter_factor=float(settings.backoff_jitter_factor),
            shards=int(settings.backoff_shards),
        )


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    next_delay: float
    total_retries: int


@dataclass
class BackoffState:
    failures: int = 0
    # Monotonic clock reading of the most recent failure.
    last_failure_at: float | None = None
    next_delay: float = 0.0


class _Shard:
    __slots__ = ("lock", "states")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.states: dict[str, BackoffState] = {}


class BackoffEngine:
    """Per-entity exponential backoff bookkeeping.

    State lives only in process memory and is striped across independent
    shards, so bookkeeping for unrelated tenants and credentials never
    contends on one lock. Every public operation is atomic per key.

    Entity ids are namespaced by the caller (``tenant:<id>``,
    ``credential:<id>``) so both control loops can share one engine while
    keeping separate failure budgets.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or BackoffConfig.from_settings()
        self._clock = clock or time.monotonic
        self._rng = rng or random.Random()
        self._shards = [_Shard() for _ in range(max(1, int(self.config.shards)))]

    def _shard(self, entity_id: str) -> _Shard:
        return self._shards[zlib.crc32(entity_id.encode("utf-8")) % len(self._shards)]

    def _compute_delay(self, state: BackoffState | None) -> float:
        # Caller holds the shard lock.
        cfg = self.config
        if state is None or state.failures <= 0:
            # Outside a streak the delay is exactly the initial delay.
            return cfg.initial_delay_s
        base = min(cfg.max_delay_s, cfg.initial_delay_s * (cfg.multiplier ** state.failures))
        jitter = base * cfg.jitter_factor * (self._rng.random() * 2 - 1)
        delay = min(cfg.max_delay_s, max(cfg.initial_delay_s, base + jitter))
        # Never shrink within a streak, even when jitter lands low near the cap.
        return max(delay, state.next_delay)

    def next_delay(self, entity_id: str) -> float:
        shard = self._shard(entity_id)
        with shard.lock:
            return self._compute_delay(shard.states.get(entity_id))

    def record_failure(self, entity_id: str, *, max_retries: int | None = None) -> RetryDecision:
        limit = self.config.max_retries if max_retries is None else int(max_retries)
        shard = self._shard(entity_id)
        with shard.lock:
            state = shard.states.get(entity_id)
            if state is None:
                state = BackoffState()
                shard.states[entity_id] = state
            # The window after failure n is sized by the n-1 failures that preceded it.
            state.next_delay = self._compute_delay(state)
            state.failures += 1
            state.last_failure_at = self._clock()
            return RetryDecision(
                should_retry=state.failures < limit,
                next_delay=state.next_delay,
                total_retries=state.failures,
            )

    def reset(self, entity_id: str) -> None:
        shard = self._shard(entity_id)
        with shard.lock:
            shard.states.pop(entity_id, None)

    def is_in_backoff(self, entity_id: str) -> bool:
        shard = self._shard(entity_id)
        with shard.lock:
            state = shard.states.get(entity_id)
            if state is None or state.last_failure_at is None:
                return False
            return (self._clock() - state.last_failure_at) < state.next_delay

    def failure_count(self, entity_id: str) -> int:
        shard = self._shard(entity_id)
        with shard.lock:
            state = shard.states.get(entity_id)
            return state.failures if state is not None else 0

    def snapshot(self, *, prefix: str | None = None) -> dict[str, dict[str, float | int]]:
        # Copy state shard by shard for ops views; never holds more than one lock at a time.
        now = self._clock()
        result: dict[str, dict[str, float | int]] = {}
        for shard in self._shards:
            with shard.lock:
                for entity_id, state in shard.states.items():
                    if prefix and not entity_id.startswith(prefix):
                        continue
                    remaining = 0.0
                    if state.last_failure_at is not None:
                        remaining = max(0.0, state.next_delay - (now - state.last_failure_at))
                    result[entity_id] = {
                        "failures": state.failures,
                        "next_delay_s": state.next_delay,
                        "remaining_s": remaining,
                    }
        return result


_engine: BackoffEngine | None = None


def get_backoff_engine() -> BackoffEngine:
    # One engine per process, shared by reconciliation and credential refresh.
    global _engine
    if _engine is None:
        _engine = BackoffEngine()
    return _engine


def reset_backoff_engine() -> None:
    # Allow tests to rebuild the engine after tweaking settings.
    global _engine
    _engine = None
