from __future__ import annotations

from channelplane.services.events.processing import retry_backoff_ms


def test_retry_delay_grows_exponentially_with_bounded_jitter() -> None:
    first = retry_backoff_ms(1, "job-1")
    second = retry_backoff_ms(2, "job-1")
    fourth = retry_backoff_ms(4, "job-1")
    assert 1000 <= first <= 1100
    assert 2000 <= second <= 2200
    assert 8000 <= fourth <= 8800


def test_retry_delay_is_capped() -> None:
    assert retry_backoff_ms(12, "job-1") == 60000


def test_retry_jitter_is_deterministic_per_job() -> None:
    assert retry_backoff_ms(3, "job-a") == retry_backoff_ms(3, "job-a")
