class ValidationError(ValueError):
    """Raised for input rejected locally, before any gateway call."""


class InvalidAmountError(ValidationError):
    """Raised when an amount is not a positive integer of minor units."""


class InvalidAccountReferenceError(ValidationError):
    """Raised when a phone number cannot be normalized to the international prefix."""


class AccountNotFoundError(Exception):
    """Raised when an account id is missing from the store."""


class TransactionNotFoundError(Exception):
    """Raised when a transaction id is missing from the store."""


class InsufficientBalanceError(Exception):
    """Raised when a withdrawal would drop the available balance below zero."""


class InvalidTransitionError(Exception):
    """Raised when a transaction is moved out of a state that does not allow it."""


class UnmatchedCorrelationError(Exception):
    """Raised when a notification's correlation id matches no pending transaction."""


class GatewayError(Exception):
    """Base class for failures talking to the payment provider."""


class GatewayAuthError(GatewayError):
    """Raised when the provider refuses or fails the client-credentials exchange."""


class GatewayUnavailableError(GatewayError):
    """Raised on transport failures: connection errors, timeouts, 5xx responses."""


class GatewayRejectedError(GatewayError):
    """Raised when the provider answers but declines the payment request."""


class MalformedNotificationError(ValueError):
    """Raised when a callback body does not carry the fields needed to match it."""
