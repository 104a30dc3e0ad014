# -*- coding: utf-8 -*-
"""
Traceability Service Facade - GreenTrace Lineage & Custody Ledger

Provides the main service class composing both engines:
- TraceabilityService: lineage engine over the supply-chain graph plus
  custody chains, and the custody ledger over a shared store
- TraceabilityService.from_snapshot(data): build a service from a
  recorded snapshot (entities, edges, chains and events)

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from greentrace.traceability.config import TraceabilityConfig, get_config
from greentrace.traceability.custody_ledger import CustodyLedger
from greentrace.traceability.data_source import (
    CustodyGraphDataSource,
    InMemoryGraphDataSource,
)
from greentrace.traceability.lineage_engine import LineageEngine
from greentrace.traceability.models import (
    CustodyChain,
    CustodyEvent,
    MassBalanceEvent,
)
from greentrace.traceability.persistence import InMemoryCustodyStore
from greentrace.traceability.risk_predicates import RiskPredicateRegistry

logger = logging.getLogger(__name__)


class TraceabilityService:
    """Facade composing the lineage engine and the custody ledger.

    Custody chains recorded through the ledger are visible to lineage
    queries as ``custody_chain`` entities linked to their source plots
    and to each other through split/merge/transform events.

    Attributes:
        config: TraceabilityConfig instance.
        predicates: Risk predicate registry with configured overrides.
        graph: In-memory supply-chain graph.
        store: Custody store shared by the ledger and the lineage view.
        ledger: CustodyLedger instance.
        engine: LineageEngine instance.
    """

    def __init__(
        self,
        config: Optional[TraceabilityConfig] = None,
        graph: Optional[InMemoryGraphDataSource] = None,
        store: Optional[InMemoryCustodyStore] = None,
        predicates: Optional[RiskPredicateRegistry] = None,
    ) -> None:
        self.config = config or get_config()
        self.predicates = predicates or RiskPredicateRegistry.default(
            severity_overrides=self.config.parsed_severity_overrides(),
        )
        self.graph = graph or InMemoryGraphDataSource(predicates=self.predicates)
        self.store = store or InMemoryCustodyStore()
        self.ledger = CustodyLedger(store=self.store, config=self.config)
        self.engine = LineageEngine(
            CustodyGraphDataSource(
                self.store, delegate=self.graph, predicates=self.predicates,
            ),
            config=self.config,
        )
        logger.info("TraceabilityService initialized")

    @classmethod
    def from_snapshot(
        cls,
        data: Dict[str, Any],
        config: Optional[TraceabilityConfig] = None,
    ) -> TraceabilityService:
        """Build a service from a snapshot mapping.

        Recognised keys: ``entities``, ``edges``, ``chains``,
        ``custody_events``, ``mass_balance_events``. Missing keys are
        treated as empty.
        """
        config = config or get_config()
        predicates = RiskPredicateRegistry.default(
            severity_overrides=config.parsed_severity_overrides(),
        )
        graph = InMemoryGraphDataSource.from_dict(data, predicates=predicates)
        store = InMemoryCustodyStore()
        store.import_records(
            chains=[
                CustodyChain.model_validate(c) for c in data.get("chains") or []
            ],
            custody_events=[
                CustodyEvent.model_validate(e)
                for e in data.get("custody_events") or []
            ],
            mass_balance_events=[
                MassBalanceEvent.model_validate(e)
                for e in data.get("mass_balance_events") or []
            ],
        )
        return cls(config=config, graph=graph, store=store, predicates=predicates)

    # ------------------------------------------------------------------
    # Lineage
    # ------------------------------------------------------------------

    def trace_forward(self, entity_id: str, entity_type: Any,
                      max_depth: Optional[int] = None) -> Any:
        return self.engine.trace_forward(entity_id, entity_type, max_depth)

    def trace_backward(self, entity_id: str, entity_type: Any,
                       max_depth: Optional[int] = None) -> Any:
        return self.engine.trace_backward(entity_id, entity_type, max_depth)

    def get_full_lineage(self, entity_id: str, entity_type: Any,
                         max_depth: Optional[int] = None) -> Any:
        return self.engine.get_full_lineage(entity_id, entity_type, max_depth)

    def generate_report(self, report_type: Any, entity_id: str,
                        entity_type: Any, **kwargs: Any) -> Any:
        return self.engine.generate_report(
            report_type, entity_id, entity_type, **kwargs,
        )

    # ------------------------------------------------------------------
    # Custody ledger
    # ------------------------------------------------------------------

    def create_custody_chain(self, request: Any) -> Any:
        return self.ledger.create_custody_chain(request)

    def record_custody_event(self, chain_id: str, request: Any) -> Any:
        return self.ledger.record_custody_event(chain_id, request)

    def split_custody_chain(self, parent_chain_id: str, splits: List[Any],
                            process_location: str, **kwargs: Any) -> Any:
        return self.ledger.split_custody_chain(
            parent_chain_id, splits, process_location, **kwargs,
        )

    def merge_custody_chains(self, parent_chain_ids: List[str],
                             destination_facility: Any, product_type: str,
                             process_location: str, **kwargs: Any) -> Any:
        return self.ledger.merge_custody_chains(
            parent_chain_ids, destination_facility, product_type,
            process_location, **kwargs,
        )

    def transform_custody_chain(self, request: Any) -> Any:
        return self.ledger.transform_custody_chain(request)

    def record_mass_balance_event(self, request: Any) -> Any:
        return self.ledger.record_mass_balance_event(request)

    def validate_mass_balance(self, chain_id: str) -> Any:
        return self.ledger.validate_mass_balance(chain_id)

    def get_statistics(self) -> Dict[str, Any]:
        """Return aggregate counts across the graph and the ledger."""
        stats = self.ledger.get_statistics()
        stats["graph_entities"] = self.graph.entity_count
        stats["graph_edges"] = self.graph.edge_count
        stats["risk_predicates"] = self.predicates.predicate_names
        return stats


__all__ = [
    "TraceabilityService",
]
