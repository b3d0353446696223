"""Error taxonomy for the HTTP layer.

Every error carries the status code it maps to and renders as
``{"error": <message>, ...extra}``. Handlers are registered in ``main``.
"""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class Unauthorized(MarketplaceError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized", **extra):
        super().__init__(message, **extra)


class Forbidden(MarketplaceError):
    status_code = 403

    def __init__(self, message: str = "Not allowed", **extra):
        super().__init__(message, **extra)


class NotFound(MarketplaceError):
    status_code = 404


class ValidationFailed(MarketplaceError):
    status_code = 400


class BusinessRuleViolation(MarketplaceError):
    status_code = 400


class RateLimited(MarketplaceError):
    status_code = 429

    def __init__(self, retry_after: float):
        super().__init__("Too many requests. Please slow down.")
        self.retry_after = retry_after


class WebhookRejected(MarketplaceError):
    """Delivery refused at the gate; the provider should not retry it as-is."""

    status_code = 400
