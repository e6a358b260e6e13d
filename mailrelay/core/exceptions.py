"""
Custom exceptions for the mailbox notification relay.
"""


class MailRelayException(Exception):
    """Base exception for all custom exceptions."""

    pass


# ============================================================================
# Configuration Exceptions
# ============================================================================


class ConfigurationError(MailRelayException):
    """Configuration is invalid or missing."""

    pass


# ============================================================================
# Mail Provider Exceptions
# ============================================================================


class MailProviderError(MailRelayException):
    """Error communicating with the mail provider API."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(MailProviderError):
    """Provider rejected the bearer token (recoverable with one refresh)."""

    pass


class InvalidCredentialsError(MailProviderError):
    """Provider rejected the mailbox credentials."""

    pass


class TransientError(MailProviderError):
    """Network failure, timeout, rate limit or provider 5xx."""

    pass


class MailboxNotFoundError(MailProviderError):
    """Mailbox no longer exists on the provider side."""

    pass


class MessageNotFoundError(MailProviderError):
    """Message not found in mailbox."""

    pass


# ============================================================================
# Database Exceptions
# ============================================================================


class DatabaseError(MailRelayException):
    """Database operation failed."""

    pass


class SessionNotFoundError(DatabaseError):
    """No session stored for this mailbox."""

    pass


# ============================================================================
# Dispatch Exceptions
# ============================================================================


class DispatchError(MailRelayException):
    """Delivery to a transport failed."""

    pass
