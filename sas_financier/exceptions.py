"""Exception hierarchy for SAS Financier.

Messages are French and shown as-is to the user.
"""


class AssoError(Exception):
    """Base exception for all application errors."""


class ValidationError(AssoError):
    """Raised when user input is rejected before touching the store."""


class PermissionDenied(AssoError):
    """Raised when the caller's role lacks the required capability."""


class NotFoundError(AssoError):
    """Raised when a referenced row does not exist."""


class InvalidTransitionError(AssoError):
    """Raised when a transaction status change is not allowed."""


class EmptyReportError(AssoError):
    """Raised when exporting a report with no transaction."""


class StoreError(AssoError):
    """Raised when the database or the object store fails."""


class ConfigurationError(AssoError):
    """Raised when configuration is invalid."""
