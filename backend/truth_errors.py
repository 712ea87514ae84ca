"""
Inventory Truth Errors

Exception taxonomy shared by the detector bank, registry and investigation
builder. The API layer maps these onto HTTP status codes.

- ValidationError: bad scope/window/analysis type, not retried
- NotFoundError: unknown discrepancy or investigation id, not retried
- ConflictError: duplicate discrepancy insert under a race, recovered locally
- DependencyError: store adapter or operator directory unavailable
"""

from typing import Any, Dict, Optional


class TruthEngineError(Exception):
    """Base class for all inventory truth engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TruthEngineError):
    """Raised for unsupported analysis types, scopes, windows or filters."""


class NotFoundError(TruthEngineError):
    """Raised when a discrepancy or investigation does not exist."""


class ConflictError(TruthEngineError):
    """Raised when a discrepancy insert loses a uniqueness race."""


class DependencyError(TruthEngineError):
    """Raised when the store adapter or operator directory fails."""
