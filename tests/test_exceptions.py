"""Tests for GreenTrace Exception Hierarchy.

Test suite covering:
- Base exception functionality
- LineageException hierarchy
- LedgerException hierarchy
- Exception serialization
- Exception utilities

Author: GreenTrace Platform Team
Status: Production Ready
"""

import json
from datetime import datetime

import pytest

from greentrace.exceptions import (
    # Base
    GreenTraceException,
    # Lineage exceptions
    LineageException,
    EntityNotFound,
    LineageTooLarge,
    DataSourceTimeout,
    InvalidReportType,
    # Ledger exceptions
    LedgerException,
    ChainNotFound,
    InvalidQuantity,
    DuplicateChainId,
    InsufficientQuantity,
    SplitExceedsAvailable,
    ProductTypeMismatch,
    EmptyChainMerge,
    NegativeWaste,
    # Utilities
    format_exception_chain,
    is_retriable,
)


# ==============================================================================
# Base Exception Tests
# ==============================================================================

class TestGreenTraceException:
    """Tests for base GreenTraceException."""

    def test_create_basic_exception(self):
        """Can create basic exception with message."""
        exc = GreenTraceException("Something went wrong")

        assert exc.message == "Something went wrong"
        assert exc.error_code == "GT_GREEN_TRACE_EXCEPTION"
        assert exc.component is None
        assert exc.context == {}
        assert isinstance(exc.timestamp, datetime)

    def test_custom_error_code_and_component(self):
        """Explicit error code and component are kept."""
        exc = GreenTraceException(
            "Broken", error_code="GT_CUSTOM", component="CustodyLedger",
        )

        assert exc.error_code == "GT_CUSTOM"
        assert str(exc) == "[GT_CUSTOM] - Component: CustodyLedger - Broken"

    def test_to_dict(self):
        """to_dict carries every field."""
        exc = GreenTraceException("Oops", context={"key": "value"})
        data = exc.to_dict()

        assert data["error_type"] == "GreenTraceException"
        assert data["message"] == "Oops"
        assert data["context"] == {"key": "value"}
        assert "timestamp" in data

    def test_to_json(self):
        """to_json produces parseable JSON."""
        exc = GreenTraceException("Oops", context={"quantity": 1.5})
        data = json.loads(exc.to_json())

        assert data["context"]["quantity"] == 1.5

    def test_repr(self):
        """repr names class and error code."""
        exc = GreenTraceException("Oops")

        assert "GreenTraceException(" in repr(exc)
        assert "GT_GREEN_TRACE_EXCEPTION" in repr(exc)


# ==============================================================================
# Lineage Exception Tests
# ==============================================================================

class TestLineageExceptions:
    """Tests for the lineage exception family."""

    def test_entity_not_found(self):
        """EntityNotFound records the entity identity in context."""
        exc = EntityNotFound(
            "plot PLOT-9 not found", entity_id="PLOT-9", entity_type="plot",
        )

        assert isinstance(exc, LineageException)
        assert exc.error_code == "GT_LINEAGE_ENTITY_NOT_FOUND"
        assert exc.context == {"entity_id": "PLOT-9", "entity_type": "plot"}

    def test_lineage_too_large(self):
        """LineageTooLarge records the ceiling."""
        exc = LineageTooLarge("too many nodes", max_nodes=5000)

        assert exc.error_code == "GT_LINEAGE_LINEAGE_TOO_LARGE"
        assert exc.context["max_nodes"] == 5000

    def test_data_source_timeout(self):
        """DataSourceTimeout records the failed operation."""
        exc = DataSourceTimeout("timed out", operation="get_outgoing_edges")

        assert exc.context["operation"] == "get_outgoing_edges"

    def test_invalid_report_type(self):
        """InvalidReportType uses the lineage prefix."""
        exc = InvalidReportType("bad type")

        assert exc.error_code == "GT_LINEAGE_INVALID_REPORT_TYPE"


# ==============================================================================
# Ledger Exception Tests
# ==============================================================================

class TestLedgerExceptions:
    """Tests for the ledger exception family."""

    @pytest.mark.parametrize("exc_class,code", [
        (InvalidQuantity, "GT_LEDGER_INVALID_QUANTITY"),
        (DuplicateChainId, "GT_LEDGER_DUPLICATE_CHAIN_ID"),
        (InsufficientQuantity, "GT_LEDGER_INSUFFICIENT_QUANTITY"),
        (SplitExceedsAvailable, "GT_LEDGER_SPLIT_EXCEEDS_AVAILABLE"),
        (ProductTypeMismatch, "GT_LEDGER_PRODUCT_TYPE_MISMATCH"),
        (EmptyChainMerge, "GT_LEDGER_EMPTY_CHAIN_MERGE"),
        (NegativeWaste, "GT_LEDGER_NEGATIVE_WASTE"),
    ])
    def test_error_codes(self, exc_class, code):
        """Each ledger error derives its code from the class name."""
        exc = exc_class("failed")

        assert isinstance(exc, LedgerException)
        assert exc.error_code == code

    def test_chain_not_found(self):
        """ChainNotFound records the chain id."""
        exc = ChainNotFound("missing", chain_id="abc")

        assert exc.error_code == "GT_LEDGER_CHAIN_NOT_FOUND"
        assert exc.context["chain_id"] == "abc"


# ==============================================================================
# Utility Tests
# ==============================================================================

class TestExceptionUtilities:
    """Tests for exception helper functions."""

    def test_only_timeouts_are_retriable(self):
        """Only DataSourceTimeout is retriable."""
        assert is_retriable(DataSourceTimeout("timed out")) is True
        assert is_retriable(EntityNotFound("missing")) is False
        assert is_retriable(InsufficientQuantity("short")) is False
        assert is_retriable(ValueError("bad")) is False

    def test_format_exception_chain(self):
        """The formatted chain includes the cause."""
        try:
            try:
                raise TimeoutError("backend slow")
            except TimeoutError as inner:
                raise DataSourceTimeout(
                    "timed out", operation="get_entity",
                ) from inner
        except DataSourceTimeout as exc:
            formatted = format_exception_chain(exc)

        assert "GT_LINEAGE_DATA_SOURCE_TIMEOUT" in formatted
        assert "TimeoutError: backend slow" in formatted
