class DomainError(Exception):
    """Base domain error."""

class InvalidState(DomainError):
    """Invalid state transition (409)."""

class ZeroRecipients(DomainError):
    """No recipients to send to (400)."""

class InvalidPhone(DomainError):
    """Phone number cannot be normalized (400)."""

class DiscountProvisioningError(DomainError):
    """Discount rules could not be created at the store (502)."""

class RecipientError(DomainError):
    """A single recipient cannot be sent to; fails that row only."""

class LockBusy(DomainError):
    """Another worker holds the campaign's queue lock."""
