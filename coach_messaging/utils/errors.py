class MessagingError(Exception):
    """Base class for failures raised by the messaging subsystem."""


class ValidationError(MessagingError):
    """Submission rejected before reaching the backend. Not retried."""


class TransientNetworkError(MessagingError):
    """A send or fetch did not complete. Safe to retry."""


class AuthorizationError(MessagingError):
    """Conversation or record not found, or not visible to the caller."""
