"""
Custom exception classes for the application.
Provides structured error handling across all modules.

Every error carries a stable machine-readable ``code`` and a message that is
safe to show to players. Internal details go to the logs, not the message.
"""

from typing import Any, Optional, Dict, List


class OilfieldException(Exception):
    """Base exception class for the Oilfield backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(OilfieldException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(OilfieldException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(OilfieldException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(OilfieldException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(OilfieldException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class AuthorizationError(OilfieldException):
    """Raised when authorization fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHORIZATION_ERROR", details)


class NotVerifiedError(AuthorizationError):
    """Raised when a player has not passed humanity verification."""

    def __init__(self, player_id: int):
        super().__init__("Human verification required", {"player_id": player_id})
        self.code = "NOT_VERIFIED"


class RateLimitError(OilfieldException):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "RATE_LIMITED", details)


class FeatureDisabledError(OilfieldException):
    """Raised when a feature is switched off by policy."""

    def __init__(self, feature: str, message: Optional[str] = None):
        super().__init__(
            message or f"{feature} is currently disabled",
            "FEATURE_DISABLED",
            {"feature": feature}
        )


class StateConflictError(OilfieldException):
    """Raised when an entity is not in the state an operation requires."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STATE_CONFLICT", details)


class ExternalDependencyError(OilfieldException):
    """Raised when payment or swap collaborators fail or reject."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_DEPENDENCY_FAILURE", details)


class SlippageExceededError(ExternalDependencyError):
    """Raised when a swap realized less than the slippage bound allows."""

    def __init__(self, received, minimum):
        super().__init__(
            "Slippage tolerance exceeded",
            {"amount_received": str(received), "minimum_expected": str(minimum)}
        )


# Balance exceptions
class InsufficientBalanceError(OilfieldException):
    """Raised when a balance is too low at the moment of debit."""

    def __init__(self, resource: str, required, available):
        super().__init__(
            f"Insufficient {resource}: required {required}, available {available}",
            "INSUFFICIENT_BALANCE",
            {"resource": resource, "required": str(required), "available": str(available)}
        )


# Entity lookups
class PlayerNotFoundError(NotFoundError):
    """Raised when a player is not found."""

    def __init__(self, player_id):
        super().__init__(
            f"Player not found: {player_id}",
            {"player_id": player_id}
        )


class MachineNotFoundError(NotFoundError):
    """Raised when a machine is not found or not owned by the player."""

    def __init__(self, machine_id):
        super().__init__(
            f"Machine not found: {machine_id}",
            {"machine_id": machine_id}
        )


class RoundNotFoundError(NotFoundError):
    """Raised when a cashout round is not found."""

    def __init__(self, round_id):
        super().__init__(
            f"Cashout round not found: {round_id}",
            {"round_id": round_id}
        )


class SettlementPartialFailure(DatabaseError):
    """Raised when some rows of a settlement loop could not be written.

    Rows that were written stay written; callers retry the whole operation.
    """

    def __init__(self, round_id: int, failed_items: List[str]):
        super().__init__(
            f"Round partially processed. Failed items: {len(failed_items)}",
            {"round_id": round_id, "failed_items": failed_items}
        )
        self.failed_items = failed_items
