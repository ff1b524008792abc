"""Custom exceptions for the risk governor.

This module defines the exception hierarchy for the application.

Only configuration errors are expected to cross the public API. Storage
and venue errors are raised by the low-level adapters and recovered
inside the ledger store, audit log and reconciler.
"""


class GovernorError(Exception):
    """Base exception for all risk governor errors.

    All custom exceptions in the application should inherit from this class.
    """

    pass


class ConfigurationError(GovernorError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing required configuration keys
        - Configuration file not found
        - Environment variable with an unparsable value
    """

    pass


class RiskError(GovernorError):
    """Base exception for risk layer errors.

    Parent class for all risk-related exceptions.
    """

    pass


class RiskConfigError(RiskError):
    """Raised when risk configuration is invalid.

    Examples:
        - Non-positive loss budget or exposure cap
        - Liquidity threshold outside [0, 1]
        - Non-positive drift window or throttle duration
    """

    pass


class StorageError(GovernorError):
    """Raised when database operations fail.

    Examples:
        - Database connection failed
        - SQL query failed
        - Persisted ledger row could not be decoded
    """

    pass


class VenueError(GovernorError):
    """Raised when the trading venue cannot be queried.

    Examples:
        - Positions endpoint unreachable or timed out
        - Non-2xx HTTP response
        - Malformed position payload
    """

    pass
