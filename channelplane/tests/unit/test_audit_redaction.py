from __future__ import annotations

from datetime import datetime, timezone

from channelplane.services.audit import sanitize_metadata


def test_credential_fields_are_redacted_at_any_depth() -> None:
    sanitized = sanitize_metadata(
        {
            "tenant_id": "tenant-a",
            "access_token": "EAAG-live",
            "nested": {"Refresh_Token": "r-1", "items": [{"app_secret": "s"}, {"phone": "+1555"}]},
            "X-Hub-Signature-256": "sha256=abc",
        }
    )
    assert sanitized["tenant_id"] == "tenant-a"
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["nested"]["Refresh_Token"] == "[REDACTED]"
    assert sanitized["nested"]["items"] == [{"app_secret": "[REDACTED]"}, {"phone": "+1555"}]
    assert sanitized["X-Hub-Signature-256"] == "[REDACTED]"


def test_long_upstream_bodies_are_truncated() -> None:
    sanitized = sanitize_metadata({"error": "x" * 5000})
    assert len(sanitized["error"]) == 1003
    assert sanitized["error"].endswith("...")


def test_datetimes_become_isoformat() -> None:
    moment = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert sanitize_metadata({"at": moment}) == {"at": "2026-01-02T03:04:05+00:00"}
