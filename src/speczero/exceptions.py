"""Custom exception hierarchy for SpecZero.

Only structural problems are raised. A step that fails at run time is
reported as data on its ``ExecutionResult``, never as an exception.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Standardized error codes for diagnostics and CLI output."""

    # DAG errors
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    INVALID_DAG = "INVALID_DAG"

    # Shared context errors
    DUPLICATE_OUTPUT = "DUPLICATE_OUTPUT"

    # Configuration errors
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # LLM endpoint protection
    CIRCUIT_OPEN = "CIRCUIT_OPEN"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SpecZeroError(Exception):
    """
    Base exception for all SpecZero errors.

    Carries a human-readable message, a machine-readable error code
    and optional structured details.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a JSON-serialisable dictionary."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


class CircularDependencyError(SpecZeroError):
    """The DAG contains a cycle that no missing step can explain."""

    def __init__(self, remaining: List[str]):
        super().__init__(
            f"Circular dependency detected in DAG. Remaining: {', '.join(remaining)}",
            ErrorCode.CIRCULAR_DEPENDENCY,
            details={"remaining": list(remaining)},
        )
        self.remaining = list(remaining)


class DAGValidationError(SpecZeroError):
    """A planned DAG failed validation and the caller chose to abort."""

    def __init__(self, errors: List[str]):
        super().__init__(
            "Invalid DAG:\n  - " + "\n  - ".join(errors),
            ErrorCode.INVALID_DAG,
            details={"errors": list(errors)},
        )
        self.errors = list(errors)


class DuplicateOutputError(SpecZeroError):
    """An agent tried to register its output twice in one run."""

    def __init__(self, agent_id: str):
        super().__init__(
            f"Output already registered for agent: {agent_id}",
            ErrorCode.DUPLICATE_OUTPUT,
            details={"agent_id": agent_id},
        )


class ConfigurationError(SpecZeroError):
    """Settings are invalid for this run."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR)
