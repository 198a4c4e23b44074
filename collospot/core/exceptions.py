class CollospotError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CollospotError):
    status_code = 400


class NotFound(CollospotError):
    status_code = 404


class DuplicateResource(CollospotError):
    status_code = 409


class GatewayError(CollospotError):
    """Payment gateway failure. ``raw`` keeps the provider body for the logs only."""

    public_message = "Payment service error. Please try again."

    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None):
        super().__init__(message)
        self.provider_status = status_code
        self.raw = raw


class GatewayUnavailable(GatewayError):
    # Retryable: transport, timeout, auth or provider-side outage.
    status_code = 503
    public_message = "Payment service is temporarily unavailable. Please retry in a moment."


class GatewayRejected(GatewayError):
    # Terminal: the provider refused the push, no callback will follow.
    status_code = 402
    public_message = "The payment request was declined. Check the phone number and try again."


class CallbackParseError(ValidationError):
    pass


class RouterUnavailable(CollospotError):
    status_code = 503

    def __init__(self, message: str, *, command: str | None = None):
        super().__init__(message)
        self.command = command
