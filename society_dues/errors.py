"""Exceptions raised by the dues engine and its collaborators."""


class DuesError(Exception):
    """Base class for every error this package raises on purpose."""


class InvalidAmount(DuesError, ValueError):
    """A tendered amount was zero, negative or not a finite number."""


class NoConfig(DuesError):
    """The billing configuration is unavailable, so dues cannot be determined."""

    def __init__(self, message: str = "Billing configuration is not set; cannot determine dues") -> None:
        super().__init__(message)


class MemberNotFound(DuesError, LookupError):
    """No member account exists for the given id."""


class GatewayFailure(DuesError):
    """Order creation, checkout or verification failed at the payment gateway."""


class UserCancelled(GatewayFailure):
    """The member dismissed the checkout without paying."""


class VerificationFailed(GatewayFailure):
    """A checkout response did not carry a valid signature for its order."""


class DuplicatePayment(DuesError):
    """A gateway payment id that is already in the ledger was submitted again."""
