"""GreenTrace Custom Exception Hierarchy.

This module provides the exception hierarchy for GreenTrace with rich
error context for debugging, monitoring, and caller feedback.

Exception Hierarchy:
    GreenTraceException (base)
    ├── LineageException
    │   ├── EntityNotFound
    │   ├── LineageTooLarge
    │   ├── DataSourceTimeout
    │   └── InvalidReportType
    └── LedgerException
        ├── ChainNotFound
        ├── InvalidQuantity
        ├── DuplicateChainId
        ├── InsufficientQuantity
        ├── SplitExceedsAvailable
        ├── ProductTypeMismatch
        ├── EmptyChainMerge
        └── NegativeWaste

All exceptions include rich context:
- error_code: Unique error identifier
- component: Name of the engine that raised the error
- context: Dictionary with error-specific details
- timestamp: When the error occurred

Example:
    >>> from greentrace.exceptions import InsufficientQuantity
    >>> raise InsufficientQuantity(
    ...     message="Shipment exceeds remaining quantity",
    ...     context={"chain_id": "CHAIN-1", "requested": 120.0, "remaining": 100.0}
    ... )

Author: GreenTrace Platform Team
Status: Production Ready
"""

from typing import Any, Dict, Optional
from datetime import datetime
import json
import re


# ==============================================================================
# Base Exception
# ==============================================================================

class GreenTraceException(Exception):
    """Base exception for all GreenTrace errors.

    Attributes:
        message: Human-readable error message
        error_code: Unique error identifier (e.g., "GT_LEDGER_INVALID_QUANTITY")
        component: Name of the engine that raised the error (optional)
        context: Dictionary with error-specific details
        timestamp: When the error occurred
    """

    # Base error code prefix
    ERROR_PREFIX = "GT"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize GreenTrace exception with rich context.

        Args:
            message: Human-readable error message
            error_code: Unique error identifier (auto-generated if not provided)
            component: Name of the engine that raised the error
            context: Dictionary with error-specific details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.component = component
        self.context = context or {}
        self.timestamp = datetime.now()

    def _generate_error_code(self) -> str:
        """Generate error code based on exception class.

        Returns:
            Error code like "GT_LEDGER_INVALID_QUANTITY"
        """
        class_name = self.__class__.__name__
        # Convert CamelCase to SCREAMING_SNAKE_CASE
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', class_name).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "component": self.component,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        """String representation with error code and message."""
        parts = [f"[{self.error_code}]"]
        if self.component:
            parts.append(f"Component: {self.component}")
        parts.append(self.message)
        return " - ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}', "
            f"component='{self.component}')"
        )


# ==============================================================================
# Lineage Exceptions
# ==============================================================================

class LineageException(GreenTraceException):
    """Base exception for lineage traversal errors."""
    ERROR_PREFIX = "GT_LINEAGE"


class EntityNotFound(LineageException):
    """The start entity of a traversal does not exist.

    Example:
        >>> raise EntityNotFound(
        ...     message="plot PLOT-9 not found",
        ...     entity_id="PLOT-9",
        ...     entity_type="plot",
        ... )
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if entity_id is not None:
            context["entity_id"] = entity_id
        if entity_type is not None:
            context["entity_type"] = entity_type
        super().__init__(message, component=component, context=context)


class LineageTooLarge(LineageException):
    """Traversal exceeded the hard node-count ceiling."""

    def __init__(
        self,
        message: str,
        max_nodes: Optional[int] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if max_nodes is not None:
            context["max_nodes"] = max_nodes
        super().__init__(message, component=component, context=context)


class DataSourceTimeout(LineageException):
    """A graph data source call timed out.

    Retriable by the caller; never retried internally.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if operation:
            context["operation"] = operation
        super().__init__(message, component=component, context=context)


class InvalidReportType(LineageException):
    """Unknown lineage report type requested."""


# ==============================================================================
# Ledger Exceptions
# ==============================================================================

class LedgerException(GreenTraceException):
    """Base exception for custody ledger errors.

    All ledger errors are input or programming errors and are not
    retried.
    """
    ERROR_PREFIX = "GT_LEDGER"


class ChainNotFound(LedgerException):
    """Referenced custody chain does not exist."""

    def __init__(
        self,
        message: str,
        chain_id: Optional[str] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if chain_id is not None:
            context["chain_id"] = chain_id
        super().__init__(message, component=component, context=context)


class InvalidQuantity(LedgerException):
    """A quantity is zero, negative, or otherwise unusable."""


class DuplicateChainId(LedgerException):
    """A custody chain with the same human-readable chain_id exists."""


class InsufficientQuantity(LedgerException):
    """Operation would drive a chain's remaining quantity below zero."""


class SplitExceedsAvailable(LedgerException):
    """Split quantities sum to more than the parent's remaining quantity."""


class ProductTypeMismatch(LedgerException):
    """Chains being merged do not share a product type."""


class EmptyChainMerge(LedgerException):
    """A chain with no remaining quantity was included in a merge."""


class NegativeWaste(LedgerException):
    """Output exceeds input beyond the mass-balance tolerance."""


# ==============================================================================
# Exception Utilities
# ==============================================================================

def format_exception_chain(exc: Exception) -> str:
    """Format exception chain for logging/display.

    Args:
        exc: Exception to format

    Returns:
        Formatted string with full exception chain
    """
    lines = []
    current = exc

    while current is not None:
        if isinstance(current, GreenTraceException):
            lines.append(str(current))
            lines.append(f"  Context: {current.context}")
        else:
            lines.append(f"{type(current).__name__}: {current}")

        current = getattr(current, "__cause__", None)

    return "\n".join(lines)


def is_retriable(exc: Exception) -> bool:
    """Check if exception is retriable.

    Only data source timeouts are retriable; every ledger error and
    every other lineage error is an input or programming error.

    Args:
        exc: Exception to check

    Returns:
        True if operation should be retried
    """
    return isinstance(exc, DataSourceTimeout)


__all__ = [
    "GreenTraceException",
    "LineageException",
    "EntityNotFound",
    "LineageTooLarge",
    "DataSourceTimeout",
    "InvalidReportType",
    "LedgerException",
    "ChainNotFound",
    "InvalidQuantity",
    "DuplicateChainId",
    "InsufficientQuantity",
    "SplitExceedsAvailable",
    "ProductTypeMismatch",
    "EmptyChainMerge",
    "NegativeWaste",
    "format_exception_chain",
    "is_retriable",
]
