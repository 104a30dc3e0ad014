# -*- coding: utf-8 -*-
"""
Graph Data Sources - GreenTrace Lineage & Custody Ledger

The lineage engine reads the supply-chain graph exclusively through the
``GraphDataSource`` collaborator interface:

    get_entity(id, type)              -> Entity | None
    get_outgoing_edges(id, type)      -> [LineageEdge]
    get_incoming_edges(id, type)      -> [LineageEdge]
    evaluate_risk_predicates(entity)  -> [RiskFactor]

Two implementations are provided:

- ``InMemoryGraphDataSource``: adjacency-list graph of plots, facilities,
  deliveries, lots and shipments, loadable from a snapshot dict.
- ``CustodyGraphDataSource``: exposes custody chains from a
  ``CustodyStore`` as ``custody_chain`` entities, with mass-balance
  events as split/merge/transform edges, delegating every other entity
  type to a wrapped source.

Example:
    >>> source = InMemoryGraphDataSource()
    >>> source.add_entity(Entity(id="P1", type="plot", name="Plot 1"))
    >>> source.get_entity("P1", EntityType.PLOT).name
    'Plot 1'

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple, Union

from greentrace.traceability.models import (
    CustodyChain,
    Entity,
    EntityRef,
    EntityType,
    LineageEdge,
    RiskFactor,
)
from greentrace.traceability.persistence import CustodyStore
from greentrace.traceability.risk_predicates import (
    PREDICATE_FAMILIES,
    RiskPredicateRegistry,
)

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]


def _key(entity_id: str, entity_type: Union[EntityType, str]) -> _Key:
    return (entity_id, EntityType(entity_type).value)


class GraphDataSource(ABC):
    """Read interface over the supply-chain entity/relationship store.

    Implementations signal a timed-out backend call by raising the
    builtin ``TimeoutError``; the lineage engine maps it to
    ``DataSourceTimeout``.
    """

    @abstractmethod
    def get_entity(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> Optional[Entity]:
        """Return the entity or None when it does not exist."""

    @abstractmethod
    def get_outgoing_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        """Return edges whose source is the given entity."""

    @abstractmethod
    def get_incoming_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        """Return edges whose target is the given entity."""

    @abstractmethod
    def evaluate_risk_predicates(self, entity: Entity) -> List[RiskFactor]:
        """Run compliance predicates (possibly external) for one entity."""

    def predicate_families(self) -> Dict[str, str]:
        """Return the factor type -> family mapping used for compliance flags."""
        return dict(PREDICATE_FAMILIES)


class InMemoryGraphDataSource(GraphDataSource):
    """Adjacency-list graph held in process memory.

    Attributes:
        _entities: Entities keyed by ``(id, type)``.
        _outgoing: Edges keyed by source ``(id, type)``.
        _incoming: Edges keyed by target ``(id, type)``.
        _predicates: Registry used by ``evaluate_risk_predicates``.
        _lock: Guards all mutations and reads.
    """

    def __init__(
        self,
        predicates: Optional[RiskPredicateRegistry] = None,
    ) -> None:
        self._entities: Dict[_Key, Entity] = {}
        self._outgoing: Dict[_Key, List[LineageEdge]] = defaultdict(list)
        self._incoming: Dict[_Key, List[LineageEdge]] = defaultdict(list)
        self._edge_keys: set = set()
        self._predicates = predicates or RiskPredicateRegistry.default()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_entity(self, entity: Entity) -> Entity:
        """Insert or replace an entity (status/risk refresh)."""
        with self._lock:
            self._entities[_key(entity.id, entity.type)] = entity
        return entity

    def add_edge(self, edge: LineageEdge) -> LineageEdge:
        """Insert a directed edge; duplicates (same endpoints and type) are ignored."""
        with self._lock:
            if edge.key in self._edge_keys:
                return edge
            self._edge_keys.add(edge.key)
            self._outgoing[edge.source.key].append(edge)
            self._incoming[edge.target.key].append(edge)
        return edge

    def link(
        self,
        source: Entity,
        target: Entity,
        relation: str,
        quantity: Optional[float] = None,
        **metadata: Any,
    ) -> LineageEdge:
        """Convenience wrapper building an edge between two entities."""
        return self.add_edge(LineageEdge(
            source=source.ref,
            target=target.ref,
            type=relation,
            quantity=quantity,
            metadata=metadata,
        ))

    # ------------------------------------------------------------------
    # GraphDataSource
    # ------------------------------------------------------------------

    def get_entity(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> Optional[Entity]:
        with self._lock:
            return self._entities.get(_key(entity_id, entity_type))

    def get_outgoing_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        with self._lock:
            return list(self._outgoing.get(_key(entity_id, entity_type), []))

    def get_incoming_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        with self._lock:
            return list(self._incoming.get(_key(entity_id, entity_type), []))

    def evaluate_risk_predicates(self, entity: Entity) -> List[RiskFactor]:
        return self._predicates.evaluate(entity)

    def predicate_families(self) -> Dict[str, str]:
        return self._predicates.families

    # ------------------------------------------------------------------
    # Snapshot loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        predicates: Optional[RiskPredicateRegistry] = None,
    ) -> InMemoryGraphDataSource:
        """Build a graph from ``{"entities": [...], "edges": [...]}``.

        Edge endpoints are ``{"id": ..., "type": ...}`` mappings.
        """
        source = cls(predicates=predicates)
        for raw in data.get("entities") or []:
            source.add_entity(Entity.model_validate(raw))
        for raw in data.get("edges") or []:
            source.add_edge(LineageEdge.model_validate(raw))
        logger.info(
            "Loaded graph snapshot: %d entities, %d edges",
            source.entity_count, source.edge_count,
        )
        return source

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def edge_count(self) -> int:
        return len(self._edge_keys)


class CustodyGraphDataSource(GraphDataSource):
    """Custody chains as lineage entities, layered over another source.

    Edges produced for chain ``C``:
        - outgoing: one edge per child of each mass-balance event where
          ``C`` is a parent (relation = event type)
        - incoming: the mirror of the above, plus ``harvested_into`` from
          ``C.source_plot`` when C has no parent chains
    A plot additionally gains outgoing ``harvested_into`` edges to every
    parentless chain that names it as ``source_plot``.
    """

    HARVEST_RELATION = "harvested_into"

    def __init__(
        self,
        store: CustodyStore,
        delegate: Optional[GraphDataSource] = None,
        predicates: Optional[RiskPredicateRegistry] = None,
    ) -> None:
        self._store = store
        self._delegate = delegate
        self._predicates = predicates or RiskPredicateRegistry.default()

    def get_entity(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> Optional[Entity]:
        if EntityType(entity_type) == EntityType.CUSTODY_CHAIN:
            chain = self._store.get_chain(entity_id)
            return self._chain_entity(chain) if chain is not None else None
        if self._delegate is None:
            return None
        return self._delegate.get_entity(entity_id, entity_type)

    def get_outgoing_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.CUSTODY_CHAIN:
            edges: List[LineageEdge] = []
            for event in self._store.list_mass_balance_events(entity_id):
                if entity_id not in event.parent_chain_ids:
                    continue
                for child_id in event.child_chain_ids:
                    edges.append(self._mass_balance_edge(
                        event, entity_id, child_id,
                    ))
            return edges

        edges = (
            self._delegate.get_outgoing_edges(entity_id, entity_type)
            if self._delegate is not None else []
        )
        if entity_type == EntityType.PLOT:
            for chain in self._store.list_chains():
                if self._harvested_from(chain, entity_id):
                    edges.append(LineageEdge(
                        source=chain.source_plot,
                        target=chain.ref,
                        type=self.HARVEST_RELATION,
                        quantity=chain.total_quantity,
                        date=chain.created_at,
                    ))
        return edges

    def get_incoming_edges(
        self,
        entity_id: str,
        entity_type: EntityType,
    ) -> List[LineageEdge]:
        entity_type = EntityType(entity_type)
        if entity_type != EntityType.CUSTODY_CHAIN:
            if self._delegate is None:
                return []
            return self._delegate.get_incoming_edges(entity_id, entity_type)

        edges: List[LineageEdge] = []
        for event in self._store.list_mass_balance_events(entity_id):
            if entity_id not in event.child_chain_ids:
                continue
            for parent_id in event.parent_chain_ids:
                edges.append(self._mass_balance_edge(event, parent_id, entity_id))

        chain = self._store.get_chain(entity_id)
        if chain is not None and self._harvested_from(chain):
            edges.append(LineageEdge(
                source=chain.source_plot,
                target=chain.ref,
                type=self.HARVEST_RELATION,
                quantity=chain.total_quantity,
                date=chain.created_at,
            ))
        return edges

    def evaluate_risk_predicates(self, entity: Entity) -> List[RiskFactor]:
        if entity.type != EntityType.CUSTODY_CHAIN and self._delegate is not None:
            return self._delegate.evaluate_risk_predicates(entity)
        return self._predicates.evaluate(entity)

    def predicate_families(self) -> Dict[str, str]:
        families = self._predicates.families
        if self._delegate is not None:
            families.update(self._delegate.predicate_families())
        return families

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _harvested_from(chain: CustodyChain, plot_id: Optional[str] = None) -> bool:
        """True for a parentless chain harvested from the (given) plot."""
        if chain.source_plot is None or chain.parent_chain_ids:
            return False
        return plot_id is None or chain.source_plot.id == plot_id

    @staticmethod
    def _chain_entity(chain: CustodyChain) -> Entity:
        return Entity(
            id=chain.id,
            type=EntityType.CUSTODY_CHAIN,
            name=chain.chain_id,
            status=chain.status.value,
            data={
                "chain_id": chain.chain_id,
                "product_type": chain.product_type,
                "total_quantity": chain.total_quantity,
                "remaining_quantity": chain.remaining_quantity,
                "status": chain.status.value,
                "batch_number": chain.batch_number,
                "quality_grade": chain.quality_grade,
                "uom": chain.uom,
            },
        )

    def _mass_balance_edge(
        self,
        event: Any,
        parent_id: str,
        child_id: str,
    ) -> LineageEdge:
        child = self._store.get_chain(child_id)
        quantity = (
            child.total_quantity if child is not None
            else event.output_quantity
        )
        return LineageEdge(
            source=EntityRef(id=parent_id, type=EntityType.CUSTODY_CHAIN),
            target=EntityRef(id=child_id, type=EntityType.CUSTODY_CHAIN),
            type=event.event_type.value,
            quantity=quantity,
            date=event.process_date,
            metadata={
                "mass_balance_event_id": event.id,
                "input_quantity": event.input_quantity,
                "output_quantity": event.output_quantity,
                "waste_quantity": event.waste_quantity,
            },
        )


__all__ = [
    "GraphDataSource",
    "InMemoryGraphDataSource",
    "CustodyGraphDataSource",
]
