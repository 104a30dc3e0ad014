"""Tests for mass-balance validation, efficiency and anomaly detection.

Author: GreenTrace Platform Team
Status: Production Ready
"""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from greentrace.exceptions import ChainNotFound
from greentrace.traceability.config import TraceabilityConfig
from greentrace.traceability.custody_ledger import CustodyLedger
from greentrace.traceability.mass_balance import MassBalanceAnalyzer, event_waste
from greentrace.traceability.models import (
    CustodyChain,
    MassBalanceEvent,
    MassBalanceEventType,
    Severity,
)
from greentrace.traceability.persistence import InMemoryCustodyStore


def _import_chain(store, chain_id):
    chain = CustodyChain(
        chain_id=chain_id, product_type="ffb",
        total_quantity=100.0, remaining_quantity=100.0,
    )
    store.insert_chain(chain)
    return chain


# ==============================================================================
# Validation
# ==============================================================================

class TestValidateMassBalance:
    """Reconciliation over connected events."""

    def test_chain_without_events(self, ledger, ffb_chain):
        """A chain with no events is trivially valid."""
        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.is_valid is True
        assert validation.event_count == 0
        assert validation.efficiency == 0.0
        assert validation.discrepancies == []

    def test_processing_loss_is_valid(self, ledger, ffb_chain):
        """Input 100, output 92 and waste 8 balance with 92% efficiency."""
        ledger.record_mass_balance_event({
            "input_quantity": 100.0,
            "output_quantity": 92.0,
            "parent_chain_ids": [ffb_chain.id],
        })

        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.is_valid is True
        assert validation.total_input == 100.0
        assert validation.total_output == 92.0
        assert validation.total_waste == pytest.approx(8.0)
        assert validation.efficiency == pytest.approx(0.92)

    def test_unaccounted_loss_is_invalid(self, ledger, ffb_chain):
        """Explicit waste that does not close the balance is flagged."""
        event = ledger.record_mass_balance_event({
            "input_quantity": 100.0,
            "output_quantity": 80.0,
            "waste_quantity": 5.0,
            "parent_chain_ids": [ffb_chain.id],
        })

        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.is_valid is False
        assert len(validation.discrepancies) == 1
        discrepancy = validation.discrepancies[0]
        assert discrepancy.type == "mass_balance"
        assert discrepancy.event_id == event.id
        assert discrepancy.expected == 100.0
        assert discrepancy.actual == 85.0
        assert discrepancy.variance == pytest.approx(15.0)

    def test_drift_within_tolerance(self, ledger, ffb_chain):
        """Drift below epsilon times input is accepted."""
        ledger.record_mass_balance_event({
            "input_quantity": 1000.0,
            "output_quantity": 900.0,
            "waste_quantity": 96.0,
            "parent_chain_ids": [ffb_chain.id],
        })

        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.is_valid is True
        assert validation.discrepancies == []

    def test_conversion_rate_discrepancy(self, ledger, ffb_chain):
        """A stated rate differing from output/input is reported."""
        ledger.record_mass_balance_event({
            "input_quantity": 100.0,
            "output_quantity": 20.0,
            "conversion_rate": 0.25,
            "parent_chain_ids": [ffb_chain.id],
        })

        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.is_valid is True
        assert [d.type for d in validation.discrepancies] == ["conversion_rate"]
        assert validation.discrepancies[0].actual == pytest.approx(0.2)

    def test_connected_events_span_descendants(self, ledger, ffb_chain):
        """Validation of a parent covers events on its descendants."""
        split = ledger.split_custody_chain(
            ffb_chain.id, [{"quantity": 60.0}, {"quantity": 40.0}], "MILL-1",
        )
        ledger.transform_custody_chain({
            "source_chain_id": split.child_chains[0].id,
            "input_quantity": 60.0,
            "conversion_rate": 0.2,
            "output_product_type": "cpo",
            "process_location": "MILL-1",
        })

        validation = ledger.validate_mass_balance(ffb_chain.id)

        assert validation.event_count == 2
        assert validation.total_input == 160.0
        assert validation.total_output == pytest.approx(112.0)
        assert validation.is_valid is True

    def test_cyclic_history_terminates(self, store, config):
        """Imported cyclic parent/child links are walked once."""
        a = _import_chain(store, "A")
        b = _import_chain(store, "B")
        for parent, child in ((a, b), (b, a)):
            store.append_mass_balance_event(MassBalanceEvent(
                event_type=MassBalanceEventType.TRANSFORM,
                parent_chain_ids=[parent.id],
                child_chain_ids=[child.id],
                input_quantity=10.0,
                output_quantity=10.0,
                waste_quantity=0.0,
            ))

        validation = MassBalanceAnalyzer(store, config).validate(a.id)

        assert validation.event_count == 2
        assert validation.is_valid is True

    def test_validation_is_read_only(self, ledger, ffb_chain):
        """Validation leaves chains and events untouched."""
        ledger.record_mass_balance_event({
            "input_quantity": 100.0, "output_quantity": 50.0,
            "waste_quantity": 1.0, "parent_chain_ids": [ffb_chain.id],
        })
        before = ledger.list_mass_balance_events()

        ledger.validate_mass_balance(ffb_chain.id)

        assert ledger.list_mass_balance_events() == before
        assert ledger.get_chain(ffb_chain.id) == ffb_chain

    def test_unknown_chain(self, ledger):
        """Validating an unknown chain raises ChainNotFound."""
        with pytest.raises(ChainNotFound):
            ledger.validate_mass_balance("missing")

    def test_validation_counter(self, ledger, ffb_chain):
        """Each validation is counted by result."""
        labels = {"result": "valid"}
        before = REGISTRY.get_sample_value(
            "gt_traceability_mass_balance_validations_total", labels,
        ) or 0.0

        ledger.validate_mass_balance(ffb_chain.id)

        after = REGISTRY.get_sample_value(
            "gt_traceability_mass_balance_validations_total", labels,
        )
        assert after == before + 1


# ==============================================================================
# Efficiency
# ==============================================================================

class TestEfficiency:
    """Chain and facility efficiency summaries."""

    def test_chain_efficiency(self, ledger, ffb_chain):
        """Efficiency is total output over total input."""
        for output in (90.0, 80.0):
            ledger.record_mass_balance_event({
                "input_quantity": 100.0,
                "output_quantity": output,
                "parent_chain_ids": [ffb_chain.id],
            })

        summary = ledger.get_chain_efficiency(ffb_chain.id)

        assert summary.event_count == 2
        assert summary.average_efficiency == pytest.approx(0.85)
        assert summary.total_waste == pytest.approx(30.0)

    def test_chain_efficiency_unknown_chain(self, ledger):
        """Unknown chains raise ChainNotFound."""
        with pytest.raises(ChainNotFound):
            ledger.get_chain_efficiency("missing")

    def test_facility_efficiency(self, ledger):
        """Facility efficiency covers events at one processing location."""
        for location, output in (("MILL-1", 20.0), ("MILL-1", 22.0), ("MILL-2", 5.0)):
            ledger.record_mass_balance_event({
                "input_quantity": 100.0,
                "output_quantity": output,
                "process_location": location,
            })

        summary = ledger.get_facility_efficiency("MILL-1")

        assert summary.facility_id == "MILL-1"
        assert summary.event_count == 2
        assert summary.average_efficiency == pytest.approx(0.21)
        assert summary.events_by_type == {"transform": 2}

    def test_date_range(self, ledger):
        """Events outside the date range are excluded."""
        now = datetime(2026, 5, 1, tzinfo=timezone.utc)
        ledger.record_mass_balance_event({
            "input_quantity": 100.0, "output_quantity": 20.0,
            "process_location": "MILL-1", "process_date": now - timedelta(days=30),
        })
        ledger.record_mass_balance_event({
            "input_quantity": 100.0, "output_quantity": 25.0,
            "process_location": "MILL-1", "process_date": now,
        })

        summary = ledger.get_facility_efficiency(
            "MILL-1", start=now - timedelta(days=1),
        )

        assert summary.event_count == 1
        assert summary.average_efficiency == pytest.approx(0.25)


# ==============================================================================
# Anomaly Detection
# ==============================================================================

class TestDetectAnomalies:
    """Statistical outliers among mass-balance events."""

    def test_quantity_anomaly(self, ledger):
        """An input far above the mean is flagged."""
        for _ in range(12):
            ledger.record_mass_balance_event({
                "input_quantity": 10.0, "output_quantity": 9.0,
                "process_location": "MILL-1",
            })
        outlier = ledger.record_mass_balance_event({
            "input_quantity": 1000.0, "output_quantity": 900.0,
            "process_location": "MILL-1",
        })

        anomalies = ledger.detect_anomalies("MILL-1")

        assert [(a.type, a.event_id) for a in anomalies] == [
            ("quantity_anomaly", outlier.id),
        ]
        assert anomalies[0].severity == Severity.MEDIUM

    def test_conversion_rate_anomaly(self, ledger):
        """A conversion rate far from its peers is flagged as high severity."""
        for _ in range(20):
            ledger.record_mass_balance_event({
                "input_quantity": 100.0, "output_quantity": 21.0,
                "conversion_rate": 0.21, "process_location": "MILL-1",
            })
        outlier = ledger.record_mass_balance_event({
            "input_quantity": 100.0, "output_quantity": 60.0,
            "conversion_rate": 0.6, "process_location": "MILL-1",
        })

        anomalies = ledger.detect_anomalies()

        assert len(anomalies) == 1
        anomaly = anomalies[0]
        assert anomaly.type == "conversion_rate_anomaly"
        assert anomaly.event_id == outlier.id
        assert anomaly.severity == Severity.HIGH
        assert anomaly.expected_min < 0.21 < anomaly.expected_max

    def test_uniform_rates_have_no_anomalies(self, ledger):
        """Zero spread produces no conversion-rate anomalies."""
        for _ in range(5):
            ledger.record_mass_balance_event({
                "input_quantity": 100.0, "output_quantity": 21.0,
                "conversion_rate": 0.21,
            })

        assert ledger.detect_anomalies() == []

    def test_thresholds_are_configurable(self):
        """A lower quantity multiplier flags smaller outliers."""
        ledger = CustodyLedger(
            store=InMemoryCustodyStore(),
            config=TraceabilityConfig(anomaly_quantity_multiplier=1.5),
        )
        for quantity in (10.0, 10.0, 40.0):
            ledger.record_mass_balance_event({
                "input_quantity": quantity, "output_quantity": quantity,
            })

        assert [a.value for a in ledger.detect_anomalies()] == [40.0]


def test_event_waste_defaults_to_zero():
    """Events without recorded waste count as zero waste."""
    event = MassBalanceEvent(
        event_type=MassBalanceEventType.SPLIT,
        input_quantity=5.0,
        output_quantity=5.0,
    )

    assert event_waste(event) == 0.0
