from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import random

from channelplane.services.backoff import BackoffConfig, BackoffEngine, credential_key, tenant_key


def _engine(clock: dict[str, float] | None = None, **overrides) -> BackoffEngine:
    values = {
        "initial_delay_s": 1.0,
        "max_delay_s": 8.0,
        "multiplier": 2.0,
        "max_retries": 4,
        "jitter_factor": 0.1,
        "shards": 4,
    }
    values.update(overrides)
    now = clock if clock is not None else {"t": 0.0}
    return BackoffEngine(BackoffConfig(**values), clock=lambda: now["t"], rng=random.Random(7))


def test_untracked_entity_uses_exact_initial_delay() -> None:
    engine = _engine()
    assert engine.next_delay("tenant:unknown") == 1.0
    assert engine.failure_count("tenant:unknown") == 0
    assert engine.is_in_backoff("tenant:unknown") is False


def test_delays_never_shrink_and_respect_cap() -> None:
    engine = _engine(jitter_factor=0.5)
    delays = [engine.record_failure("tenant:a", max_retries=100).next_delay for _ in range(12)]
    assert delays[0] == 1.0
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) <= 8.0


def test_delay_doubles_then_caps_without_jitter() -> None:
    engine = _engine(jitter_factor=0.0)
    delays = [engine.record_failure("tenant:a", max_retries=100).next_delay for _ in range(6)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]


def test_retry_allowed_until_max_retries() -> None:
    engine = _engine()
    decisions = [engine.record_failure("tenant:a") for _ in range(4)]
    assert [d.should_retry for d in decisions] == [True, True, True, False]
    assert decisions[-1].total_retries == 4


def test_reset_returns_to_initial_state() -> None:
    engine = _engine()
    for _ in range(3):
        engine.record_failure("tenant:a")
    engine.reset("tenant:a")
    assert engine.failure_count("tenant:a") == 0
    assert engine.next_delay("tenant:a") == 1.0
    assert engine.is_in_backoff("tenant:a") is False


def test_in_backoff_window_follows_clock() -> None:
    clock = {"t": 1000.0}
    engine = _engine(clock)
    decision = engine.record_failure("tenant:a")
    assert decision.next_delay == 1.0
    clock["t"] = 1000.5
    assert engine.is_in_backoff("tenant:a") is True
    clock["t"] = 1001.0
    assert engine.is_in_backoff("tenant:a") is False


def test_namespaces_keep_separate_budgets() -> None:
    engine = _engine()
    engine.record_failure(tenant_key("abc"))
    engine.record_failure(tenant_key("abc"))
    engine.record_failure(credential_key("abc"))
    assert engine.failure_count(tenant_key("abc")) == 2
    assert engine.failure_count(credential_key("abc")) == 1
    snapshot = engine.snapshot(prefix="credential:")
    assert list(snapshot) == ["credential:abc"]


def test_concurrent_failures_are_all_counted() -> None:
    engine = _engine()

    def _fail(_: int) -> None:
        for _ in range(100):
            engine.record_failure("tenant:hot", max_retries=10_000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_fail, range(8)))
    assert engine.failure_count("tenant:hot") == 800
