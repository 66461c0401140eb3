class DonationEngineError(Exception):
    """Base exception for the donation engine."""

    pass


class DonationValidationError(DonationEngineError):
    """Raised when donor input fails server-side validation."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__(f"Invalid donation request: {', '.join(sorted(errors))}")


class DonationNotFoundError(DonationEngineError):
    """Raised when a donation id does not exist."""

    pass


class DonationStateError(DonationEngineError):
    """Raised when a donation can no longer be processed from its current status."""

    pass


class RateLimitExceeded(DonationEngineError):
    """Raised when a client IP exceeds the initialization rate limit."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded, retry after {retry_after}s")


class GatewayError(DonationEngineError):
    """Base class for classified payment gateway failures."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class GatewayAuthError(GatewayError):
    """Raised when the gateway rejects our credentials (401/403)."""

    pass


class GatewayValidationError(GatewayError):
    """Raised when the gateway rejects a request as malformed (4xx)."""

    def __init__(
        self,
        message: str,
        field_errors: dict[str, str] | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ):
        self.field_errors = field_errors or {}
        super().__init__(message, status_code=status_code, body=body)


class GatewayRateLimited(GatewayError):
    """Raised when the gateway throttles us (429)."""

    def __init__(self, message: str, retry_after: int | None = None, body: str | None = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, body=body)


class GatewayTransientError(GatewayError):
    """Transient gateway fault; eligible for one synchronous retry."""

    pass


class GatewayServerError(GatewayTransientError):
    """Raised when the gateway answers with a 5xx."""

    pass


class GatewayNetworkError(GatewayTransientError):
    """Raised on connection failures and timeouts."""

    pass


class GatewayDeclined(GatewayError):
    """Raised when a charge or subscription was not approved."""

    def __init__(self, reason: str, transaction_id: str | None = None):
        self.reason = reason
        self.transaction_id = transaction_id
        super().__init__(f"Payment not approved: {reason}")


class WebhookVerificationFailed(DonationEngineError):
    """Raised when an inbound webhook fails the verification pipeline."""

    def __init__(self, reason: str, status_code: int = 401):
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Webhook rejected: {reason}")


class WebhookConfigurationError(DonationEngineError):
    """Raised when the webhook verifier token is not configured."""

    pass
