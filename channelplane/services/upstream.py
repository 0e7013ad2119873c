from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any

import httpx

from channelplane.core.config import get_settings
from channelplane.core.errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
)
from channelplane.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_PHONE_FIELDS = ",".join(
    [
        "id",
        "display_phone_number",
        "verified_name",
        "quality_rating",
        "messaging_limit_tier",
        "code_verification_status",
        "account_mode",
        "name_status",
        "status",
    ]
)
_ACCOUNT_FIELDS = "id,name,account_review_status,health_status"
# Graph error codes that mean throttling even when the HTTP status is 400.
_RATE_LIMIT_CODES = frozenset({4, 17, 32, 613, 80007, 130429, 131048, 131056})
_AUTH_ERROR_CODES = frozenset({102, 190})


@dataclass(frozen=True)
class PhoneState:
    id: str
    display_phone_number: str | None = None
    verified_name: str | None = None
    quality_rating: str | None = None
    messaging_limit_tier: str | None = None
    code_verification_status: str | None = None
    account_mode: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class ChannelState:
    business_account_id: str
    phones: list[PhoneState] = field(default_factory=list)
    account_review_status: str | None = None
    # None means upstream did not report the signal; callers keep their local value.
    account_blocked: bool | None = None
    account_block_reason: str | None = None
    capability_blocked: bool | None = None
    capability_block_reason: str | None = None

    def select_phone(self, external_channel_id: str | None) -> PhoneState | None:
        # Prefer the number already bound to the tenant, otherwise the first one upstream lists.
        if external_channel_id:
            for phone in self.phones:
                if phone.id == external_channel_id:
                    return phone
        return self.phones[0] if self.phones else None


@dataclass(frozen=True)
class RefreshedCredential:
    access_token: str
    refresh_token: str | None
    expires_in: int | None


def _error_details(response: httpx.Response) -> tuple[int | None, str]:
    # Extract the Graph error code and a short type; raw bodies never leave this module.
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None, f"http_{response.status_code}"
    code = error.get("code")
    error_type = str(error.get("type") or "upstream_error")
    return (int(code) if isinstance(code, int) else None), error_type


def _raise_for_response(response: httpx.Response, *, operation: str) -> None:
    if response.status_code < 400:
        return
    code, error_type = _error_details(response)
    message = f"{operation} failed status={response.status_code} code={code} type={error_type}"
    if response.status_code == 429 or (code is not None and code in _RATE_LIMIT_CODES):
        raise UpstreamRateLimitedError(message, status_code=response.status_code, code=str(code))
    if response.status_code == 401 or (code is not None and code in _AUTH_ERROR_CODES):
        raise UpstreamAuthError(message, status_code=response.status_code, code=str(code))
    raise UpstreamError(message, status_code=response.status_code, code=str(code) if code is not None else None)


def _derive_capability(health_status: Any) -> tuple[bool | None, str | None]:
    # health_status.can_send_message is authoritative for the messaging capability.
    if not isinstance(health_status, dict):
        return None, None
    can_send = str(health_status.get("can_send_message") or "").upper()
    if can_send == "BLOCKED":
        return True, "MESSAGING blocked"
    if can_send in {"AVAILABLE", "LIMITED"}:
        return False, None
    return None, None


class UpstreamClient:
    """Thin async client for the upstream messaging platform.

    Every call is bounded by ``upstream_timeout_ms``; an expired call raises
    :class:`UpstreamTimeoutError` so callers can count it as a failure.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        root = (base_url or settings.upstream_base_url).rstrip("/")
        self._base_url = f"{root}/{api_version or settings.upstream_api_version}"
        self._timeout_s = max(1, int(timeout_ms or settings.upstream_timeout_ms)) / 1000.0
        self._transport = transport
        self._app_id = settings.upstream_app_id
        self._app_secret = settings.upstream_app_secret

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        start = time.monotonic()
        success = False
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout_s, transport=self._transport
            ) as client:
                response = await asyncio.wait_for(
                    client.request(method, path, params=params), timeout=self._timeout_s
                )
            _raise_for_response(response, operation=operation)
            try:
                payload = response.json()
            except ValueError as exc:
                raise UpstreamError(f"{operation} returned invalid json", status_code=response.status_code) from exc
            success = True
            return payload if isinstance(payload, dict) else {}
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeoutError(f"{operation} timed out after {self._timeout_s:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{operation} transport error {type(exc).__name__}") from exc
        finally:
            record_external_call(
                integration=f"upstream.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def fetch_channel_state(self, business_account_id: str, access_token: str) -> ChannelState:
        account = await self._request(
            "GET",
            f"/{business_account_id}",
            operation="fetch_account",
            params={"access_token": access_token, "fields": _ACCOUNT_FIELDS},
        )
        phones_payload = await self._request(
            "GET",
            f"/{business_account_id}/phone_numbers",
            operation="fetch_phone_numbers",
            params={"access_token": access_token, "fields": _PHONE_FIELDS},
        )
        phones = [
            PhoneState(
                id=str(item["id"]),
                display_phone_number=item.get("display_phone_number"),
                verified_name=item.get("verified_name"),
                quality_rating=item.get("quality_rating"),
                messaging_limit_tier=item.get("messaging_limit_tier"),
                code_verification_status=item.get("code_verification_status"),
                account_mode=item.get("account_mode"),
                status=item.get("status"),
            )
            for item in phones_payload.get("data") or []
            if isinstance(item, dict) and item.get("id")
        ]
        review_status = account.get("account_review_status")
        account_blocked: bool | None = None
        account_block_reason: str | None = None
        # Reconciliation only raises account blocks; clearing comes from account_update events or operators.
        if str(review_status or "").upper() == "REJECTED":
            account_blocked, account_block_reason = True, "REJECTED"
        capability_blocked, capability_reason = _derive_capability(account.get("health_status"))
        return ChannelState(
            business_account_id=business_account_id,
            phones=phones,
            account_review_status=review_status,
            account_blocked=account_blocked,
            account_block_reason=account_block_reason,
            capability_blocked=capability_blocked,
            capability_block_reason=capability_reason,
        )

    async def refresh_credential(self, refresh_token: str) -> RefreshedCredential:
        payload = await self._request(
            "GET",
            "/oauth/access_token",
            operation="refresh_credential",
            params={
                "grant_type": "refresh_token",
                "client_id": self._app_id,
                "client_secret": self._app_secret,
                "refresh_token": refresh_token,
            },
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamError("refresh_credential response missing access_token")
        expires_in = payload.get("expires_in")
        return RefreshedCredential(
            access_token=str(access_token),
            # Upstream may omit a rotated refresh token; the previous one stays valid.
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
        )

    async def ensure_event_subscription(self, business_account_id: str, access_token: str) -> bool:
        # Returns True when a missing subscription had to be re-created.
        payload = await self._request(
            "GET",
            f"/{business_account_id}/subscribed_apps",
            operation="check_subscription",
            params={"access_token": access_token},
        )
        apps = payload.get("data") or []
        for app in apps:
            app_data = app.get("whatsapp_business_api_data") if isinstance(app, dict) else None
            app_id = app_data.get("id") if isinstance(app_data, dict) else None
            if not self._app_id or str(app_id) == str(self._app_id):
                return False
        result = await self._request(
            "POST",
            f"/{business_account_id}/subscribed_apps",
            operation="subscribe",
            params={"access_token": access_token},
        )
        if result.get("success") is not True:
            raise UpstreamError("subscribe did not confirm success")
        logger.info("upstream_subscription_restored business_account_id=%s", business_account_id)
        return True


_client: UpstreamClient | None = None


def get_upstream_client() -> UpstreamClient:
    global _client
    if _client is None:
        _client = UpstreamClient()
    return _client


def reset_upstream_client() -> None:
    global _client
    _client = None
