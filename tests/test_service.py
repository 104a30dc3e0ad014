"""Tests for the TraceabilityService facade.

Author: GreenTrace Platform Team
Status: Production Ready
"""

import pytest

from greentrace.exceptions import EntityNotFound
from greentrace.traceability import TraceabilityService
from greentrace.traceability.config import TraceabilityConfig
from greentrace.traceability.models import EntityType, Severity


SNAPSHOT = {
    "entities": [
        {"id": "P1", "type": "plot", "name": "Plot 1",
         "coordinates": {"latitude": 1.5, "longitude": 103.0},
         "certifications": ["RSPO-IP"],
         "data": {"commodity": "oil_palm"}},
        {"id": "P2", "type": "plot", "name": "Plot 2",
         "coordinates": {"latitude": 1.6, "longitude": 103.1},
         "data": {"protected_area_overlap": True}},
        {"id": "M1", "type": "facility", "name": "Mill 1"},
    ],
    "edges": [
        {"source": {"id": "P1", "type": "plot"},
         "target": {"id": "M1", "type": "facility"}, "type": "supplies"},
        {"source": {"id": "P2", "type": "plot"},
         "target": {"id": "M1", "type": "facility"}, "type": "supplies"},
    ],
}


class TestTraceabilityService:
    """Lineage over the graph and the ledger through one facade."""

    def test_from_snapshot(self):
        """A snapshot builds a queryable service."""
        service = TraceabilityService.from_snapshot(SNAPSHOT)

        result = service.trace_backward("M1", "facility")

        assert {n.id for n in result.nodes} == {"M1", "P1", "P2"}
        assert result.risk_assessment.overall_risk == Severity.HIGH

    def test_severity_overrides_from_config(self):
        """Configured overrides apply to snapshot services."""
        config = TraceabilityConfig(severity_overrides="protected_area=critical")
        service = TraceabilityService.from_snapshot(SNAPSHOT, config=config)

        risk = service.trace_forward("P2", "plot").risk_assessment

        assert risk.overall_risk == Severity.CRITICAL

    def test_chains_join_the_lineage(self):
        """Custody chains harvested from a plot are traced downstream."""
        service = TraceabilityService.from_snapshot(SNAPSHOT)
        chain = service.create_custody_chain({
            "product_type": "ffb",
            "total_quantity": 100.0,
            "source_plot": {"id": "P2", "type": "plot"},
        })
        split = service.split_custody_chain(
            chain.id, [{"quantity": 60.0}, {"quantity": 40.0}], "M1",
        )
        cpo = service.transform_custody_chain({
            "source_chain_id": split.child_chains[0].id,
            "input_quantity": 60.0,
            "conversion_rate": 0.2,
            "output_product_type": "cpo",
            "process_location": "M1",
        }).transformed_chain

        forward = service.trace_forward("P2", "plot")
        levels = {n.id: n.level for n in forward.nodes}
        assert levels[chain.id] == 1
        assert levels[split.child_chains[0].id] == 2
        assert levels[cpo.id] == 3

        backward = service.trace_backward(cpo.id, EntityType.CUSTODY_CHAIN)
        assert {n.id for n in backward.nodes} >= {"P2", chain.id}
        assert backward.risk_assessment.overall_risk == Severity.HIGH
        assert backward.risk_assessment.compliance.eudr_compliant is False

    def test_merge_and_validate(self):
        """Merged chains validate through the facade."""
        service = TraceabilityService()
        a = service.create_custody_chain({"product_type": "cpo", "total_quantity": 10})
        b = service.create_custody_chain({"product_type": "cpo", "total_quantity": 15})

        merged = service.merge_custody_chains(
            [a.id, b.id], None, "cpo", "REF-1",
        ).merged_chain

        validation = service.validate_mass_balance(merged.id)
        assert validation.is_valid is True
        assert validation.total_input == 25.0

    def test_record_events_through_facade(self):
        """Custody and mass-balance events are recorded by the ledger."""
        service = TraceabilityService()
        chain = service.create_custody_chain({"product_type": "ffb", "total_quantity": 50})

        service.record_custody_event(chain.id, {"event_type": "process", "quantity": 50})
        event = service.record_mass_balance_event({
            "input_quantity": 50, "output_quantity": 11,
            "parent_chain_ids": [chain.id],
        })

        assert service.ledger.get_chain(chain.id).status.value == "consumed"
        assert event.waste_quantity == 39

    def test_report(self):
        """Reports are generated by the lineage engine."""
        service = TraceabilityService.from_snapshot(SNAPSHOT)

        report = service.generate_report("backward_trace", "M1", "facility")

        assert report.total_nodes == 3
        assert report.total_levels == 1

    def test_missing_entity(self):
        """Unknown entities raise EntityNotFound."""
        service = TraceabilityService()

        with pytest.raises(EntityNotFound):
            service.get_full_lineage("nope", "shipment")

    def test_statistics(self):
        """Statistics combine graph and ledger counts."""
        service = TraceabilityService.from_snapshot(SNAPSHOT)
        service.create_custody_chain({"product_type": "ffb", "total_quantity": 1})

        stats = service.get_statistics()

        assert stats["graph_entities"] == 3
        assert stats["graph_edges"] == 2
        assert stats["chains"] == 1
        assert "protected_area" in stats["risk_predicates"]

    def test_snapshot_with_chain_history(self):
        """Recorded chains and events load from a snapshot."""
        service = TraceabilityService.from_snapshot({
            "chains": [{
                "id": "c-1", "chain_id": "CHAIN-OLD", "product_type": "ffb",
                "total_quantity": 100, "remaining_quantity": 0, "status": "consumed",
            }],
            "custody_events": [
                {"chain_id": "c-1", "sequence": 1, "event_type": "receive", "quantity": 100},
                {"chain_id": "c-1", "sequence": 2, "event_type": "process", "quantity": 100},
            ],
            "mass_balance_events": [{
                "event_type": "transform", "parent_chain_ids": ["c-1"],
                "input_quantity": 100, "output_quantity": 20, "waste_quantity": 70,
            }],
        })

        assert service.ledger.rebuild_chain_state("c-1").remaining_quantity == 0.0
        assert service.validate_mass_balance("c-1").is_valid is False
