"""
Exception hierarchy for the Salesflow pipeline.

Each phase raises its own error type; phase entry points catch them and turn
them into a PhaseResult so one entity or segment never aborts its siblings.
"""


class SalesflowError(Exception):
    """Base exception for all pipeline failures."""


class ConfigError(SalesflowError):
    """Raised for invalid runtime configuration."""


class ZoneStoreError(SalesflowError):
    """Raised for zone store read/write failures."""


class TransportError(SalesflowError):
    """Raised when an upstream source cannot be read."""


class TransientTransportError(TransportError):
    """Timeouts, rate limiting and 5xx responses; safe to retry."""


class AuthenticationError(TransportError):
    """Rejected credentials; never retried."""


class SchemaDriftError(SalesflowError):
    """Raised when no expected source column is present at all."""


class KeyIntegrityError(SalesflowError):
    """Raised when a composite-key join cannot produce valid output."""


class KeyDomainError(KeyIntegrityError):
    """Header owners and detail owner copies share no value."""


class ModelingError(SalesflowError):
    """Raised for singular designs, non-convergence and non-finite fits."""


class SparsityError(ModelingError):
    """Outcome too sparse for a count regression."""
