class TuneStreamError(Exception):
    """Base exception for the TuneStream backend."""

    pass


class AuthenticationError(TuneStreamError):
    """Raised for a bad or missing webhook signature or an unauthenticated caller.

    Never retried internally.
    """

    pass


class WebhookNotConfiguredError(TuneStreamError):
    """Raised when the webhook endpoint is hit without a signing secret configured."""

    pass


class NotRetryableSkip(TuneStreamError):
    """Raised for malformed or irrelevant events that must be acknowledged, not retried."""

    def __init__(self, reason: str, event_id: str | None = None):
        self.reason = reason
        self.event_id = event_id
        super().__init__(f"Skipped event {event_id or '<unknown>'}: {reason}")


class TransientExternalFailure(TuneStreamError):
    """Raised when a payment processor call failed (network or processor error)."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Payment processor call '{operation}' failed{detail}")


class PersistenceFailure(TuneStreamError):
    """Raised when writing an entitlement record to the store failed."""

    pass


class EntitlementUndeterminedError(TuneStreamError):
    """Raised when every external lookup failed and no stored record exists.

    Distinguishes "could not determine" from "no subscription".
    """

    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(
            f"Could not determine entitlement for user '{user_id}': all {attempts} processor lookups failed"
        )


class SubscriptionNotFoundError(TuneStreamError):
    """Raised when a checkout session carries no subscription to confirm."""

    def __init__(self, session_id: str, session_status: str | None = None):
        self.session_id = session_id
        self.session_status = session_status
        super().__init__(f"No subscription found in checkout session '{session_id}'")
