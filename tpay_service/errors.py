class PaymentError(Exception):
    """Base class for payment flow errors."""


class ConfigurationError(PaymentError):
    """Merchant credentials are missing. Fatal, not retried."""


class InvalidRequestError(PaymentError):
    """Initiation fields are missing or malformed."""


class NotYetAvailable(PaymentError):
    """A payment or invoice is not readable yet; callers keep polling."""


class ReconciliationTimeout(PaymentError):
    """The polling budget ran out before a terminal state was observed."""
