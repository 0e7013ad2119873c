from __future__ import annotations


class ChannelPlaneError(Exception):
    """Base error for the channel control plane."""


class UpstreamError(ChannelPlaneError):
    """Upstream platform call failed; transient unless a subclass says otherwise."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class UpstreamTimeoutError(UpstreamError):
    """Upstream call exceeded its fixed request timeout."""


class UpstreamRateLimitedError(UpstreamError):
    """Upstream rejected the call with a rate-limit response."""


class UpstreamAuthError(UpstreamError):
    """Upstream rejected the credential used for the call."""


class CredentialUnavailableError(ChannelPlaneError):
    """No usable credential could be resolved from the vault."""


class VaultConfigError(ChannelPlaneError):
    """Vault is missing key material or is otherwise misconfigured."""


class IdentityConflictError(ChannelPlaneError):
    """External channel identifier is already bound to another tenant."""

    def __init__(self, external_id: str, owner_tenant_id: str | None) -> None:
        super().__init__(f"external channel {external_id} already bound")
        self.external_id = external_id
        self.owner_tenant_id = owner_tenant_id


class WebhookSignatureError(ChannelPlaneError):
    """Inbound event signature is missing or does not match."""


class EventPayloadError(ChannelPlaneError):
    """Inbound event payload cannot be parsed or applied; never retried."""


class KillSwitchActiveError(ChannelPlaneError):
    """A kill-switch trigger condition still holds for the tenant."""


class NotFoundError(ChannelPlaneError):
    """Requested record does not exist."""
