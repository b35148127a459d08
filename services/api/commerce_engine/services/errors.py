"""Error taxonomy for platform integrations.

- AuthError: token invalid/expired, needs re-authorization
- RateLimited: backoff budget exhausted on HTTP 429
- UpstreamError: unexpected status or response shape from a platform
- SignatureError / InvalidPayload: webhook rejected at the boundary
- HandlerFailed: webhook recorded, handler raised (row marked FAILED)
- DuplicateEvent / AttributionMiss: informational outcomes, returned in
  result objects rather than raised across the HTTP boundary
"""


class IntegrationError(RuntimeError):
    """Base class for platform integration failures."""

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        merchant_id: int | None = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.merchant_id = merchant_id


class AuthError(IntegrationError):
    """Credentials rejected and not recoverable by refreshing."""


class OAuthStateError(AuthError):
    """OAuth state token missing, tampered, expired, or not bound to this browser."""


class CredentialsNotFound(IntegrationError):
    """No credential record for the merchant/platform pair."""


class RateLimited(IntegrationError):
    """HTTP 429 persisted past the retry budget."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        retry_after: float | None = None,
        platform: str | None = None,
        merchant_id: int | None = None,
    ) -> None:
        super().__init__(message, platform=platform, merchant_id=merchant_id)
        self.attempts = attempts
        self.retry_after = retry_after


class UpstreamError(IntegrationError):
    """Platform returned an error status or a malformed envelope."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        platform: str | None = None,
        merchant_id: int | None = None,
    ) -> None:
        super().__init__(message, platform=platform, merchant_id=merchant_id)
        self.status_code = status_code


class SignatureError(IntegrationError):
    """Webhook signature missing or not matching the shared secret."""


class DuplicateEvent(IntegrationError):
    """Webhook delivery already recorded; not a failure."""


class AttributionMiss(IntegrationError):
    """Order has no qualifying click; not a failure."""


class InvalidPayload(IntegrationError):
    """Signed webhook body that is not a JSON object."""


class HandlerFailed(IntegrationError):
    """Webhook was recorded but its handler raised; the row is marked FAILED."""

    def __init__(self, message: str, *, event_id: int, platform: str | None = None) -> None:
        super().__init__(message, platform=platform)
        self.event_id = event_id
