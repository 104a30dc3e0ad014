# -*- coding: utf-8 -*-
"""
Traceability Data Models - GreenTrace Lineage & Custody Ledger

Pydantic v2 data models for supply-chain lineage traversal and custody
chain mass-balance accounting. Defines all enumerations, core data
models, operation results, and request wrappers.

Models:
    - Enumerations: EntityType, Severity, ChainStatus, CustodyEventType,
        MassBalanceEventType, TraceDirection, LineageReportType
    - Graph models: EntityRef, Coordinates, Entity, LineageNode,
        LineageEdge, RiskFactor, ComplianceSummary, RiskAssessment,
        LineageResult, LineageReport
    - Ledger models: CustodyChain, CustodyEvent, MassBalanceEvent,
        Discrepancy, MassBalanceValidation, SplitResult, MergeResult,
        TransformResult, EfficiencySummary, FacilityEfficiency,
        MassBalanceAnomaly
    - Request models: CreateCustodyChainRequest, RecordCustodyEventRequest,
        SplitDefinition, TransformChainRequest,
        RecordMassBalanceEventRequest

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _new_id() -> str:
    return str(uuid.uuid4())


# Absolute slack for float comparisons on quantities
QUANTITY_EPSILON = 1e-9


# =============================================================================
# Enumerations
# =============================================================================


class EntityType(str, Enum):
    """Kinds of supply-chain entity that can appear in a lineage graph."""

    PLOT = "plot"
    COLLECTION_POINT = "collection_point"
    FACILITY = "facility"
    DELIVERY = "delivery"
    PRODUCTION_LOT = "production_lot"
    CUSTODY_CHAIN = "custody_chain"
    SHIPMENT = "shipment"
    SUPPLIER = "supplier"


class Severity(str, Enum):
    """Risk severity, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ChainStatus(str, Enum):
    """Lifecycle status of a custody chain.

    ``active`` is the only non-terminal status. A chain becomes terminal
    when its remaining quantity reaches zero.
    """

    ACTIVE = "active"
    SPLIT = "split"
    MERGED = "merged"
    CONSUMED = "consumed"
    SHIPPED = "shipped"


class CustodyEventType(str, Enum):
    """EPCIS-style custody event types."""

    RECEIVE = "receive"
    PROCESS = "process"
    SHIP = "ship"
    SPLIT = "split"
    MERGE = "merge"


class MassBalanceEventType(str, Enum):
    """Mass-conserving (split/merge) or lossy (transform) operations."""

    SPLIT = "split"
    MERGE = "merge"
    TRANSFORM = "transform"


class TraceDirection(str, Enum):
    """Lineage traversal direction."""

    FORWARD = "forward"
    BACKWARD = "backward"
    FULL = "full"


class LineageReportType(str, Enum):
    """Lineage report variants."""

    FORWARD_TRACE = "forward_trace"
    BACKWARD_TRACE = "backward_trace"
    FULL_LINEAGE = "full_lineage"


# =============================================================================
# Graph Models
# =============================================================================


class EntityRef(BaseModel):
    """Identity of a supply-chain entity: the ``(id, type)`` pair."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Entity identifier")
    type: EntityType = Field(..., description="Entity type")

    @property
    def key(self) -> tuple:
        return (self.id, self.type.value)


class Coordinates(BaseModel):
    """WGS84 point location."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(
        ...,
        ge=-90.0,
        le=90.0,
        description="GPS latitude in decimal degrees (WGS84)",
    )
    longitude: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        description="GPS longitude in decimal degrees (WGS84)",
    )


class Entity(BaseModel):
    """A plot, facility, delivery, lot, chain, shipment or supplier.

    Identity is ``(id, type)``. Only ``status`` and ``risk_level`` are
    expected to change after creation, and only through external
    monitoring.

    Attributes:
        id: Entity identifier.
        type: Entity type.
        name: Display name.
        coordinates: Optional point location.
        certifications: Certification scheme codes held (e.g. RSPO).
        risk_level: Externally assigned risk level.
        data: Opaque key-value attributes; risk predicates read
            well-known keys from here.
        status: Optional lifecycle status.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., min_length=1, description="Entity identifier")
    type: EntityType = Field(..., description="Entity type")
    name: str = Field(default="", description="Display name")
    coordinates: Optional[Coordinates] = Field(
        None, description="Optional point location",
    )
    certifications: List[str] = Field(
        default_factory=list,
        description="Certification scheme codes held by the entity",
    )
    risk_level: Optional[Severity] = Field(
        None, description="Externally assigned risk level",
    )
    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque serializable attributes",
    )
    status: Optional[str] = Field(None, description="Lifecycle status")

    @property
    def ref(self) -> EntityRef:
        return EntityRef(id=self.id, type=self.type)


class LineageEdge(BaseModel):
    """Directed relationship between two entities.

    Direction always matches the stored relationship direction,
    independent of the traversal direction that discovered it.
    """

    model_config = ConfigDict(from_attributes=True)

    source: EntityRef = Field(..., description="Source entity")
    target: EntityRef = Field(..., description="Target entity")
    type: str = Field(
        ...,
        min_length=1,
        description="Relation kind, e.g. supplies, delivers_to, processed_into",
    )
    quantity: Optional[float] = Field(None, description="Quantity moved")
    date: Optional[datetime] = Field(None, description="Relationship date")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque edge attributes",
    )

    @property
    def key(self) -> tuple:
        return (self.source.key, self.target.key, self.type)


class LineageNode(BaseModel):
    """Traversal-time projection of an Entity.

    ``level`` is the signed hop distance from the start entity
    (0 = start, positive = downstream, negative = upstream). It is fixed
    at traversal time.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: EntityType
    name: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    coordinates: Optional[Coordinates] = None
    risk_level: Optional[Severity] = None
    certifications: List[str] = Field(default_factory=list)
    distance: Optional[float] = Field(
        None, description="Great-circle km from the start entity",
    )
    level: int = 0

    @property
    def ref(self) -> EntityRef:
        return EntityRef(id=self.id, type=self.type)


class RiskFactor(BaseModel):
    """A single failed compliance check on one entity."""

    type: str = Field(..., description="Predicate name")
    severity: Severity = Field(..., description="Severity of the failure")
    description: str = Field(..., description="Human-readable issue")
    entity_id: str = Field(..., description="Entity the factor applies to")


class ComplianceSummary(BaseModel):
    """Regulatory/certification compliance flags for a lineage."""

    eudr_compliant: bool = True
    rspo_compliant: bool = True
    issues: List[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    """Aggregated risk over every node of one lineage result.

    Recomputed on every query; never cached.

    Attributes:
        overall_risk: Maximum factor severity (``low`` when no factors).
        risk_factors: All emitted factors.
        compliance: EUDR/RSPO flags and deduplicated issue descriptions.
        unassessed_entity_ids: Nodes whose predicate evaluation failed and
            whose risk is therefore unknown.
    """

    overall_risk: Severity = Severity.LOW
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    compliance: ComplianceSummary = Field(default_factory=ComplianceSummary)
    unassessed_entity_ids: List[str] = Field(default_factory=list)


class LineageResult(BaseModel):
    """Leveled graph snapshot produced by one lineage query."""

    entity_id: str
    entity_type: EntityType
    direction: TraceDirection
    depth: int = 0
    total_nodes: int = 0
    nodes: List[LineageNode] = Field(default_factory=list)
    edges: List[LineageEdge] = Field(default_factory=list)
    risk_assessment: Optional[RiskAssessment] = None
    generated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def validate_shape(self) -> LineageResult:
        """Enforce node count, depth span and edge closure."""
        if self.total_nodes != len(self.nodes):
            raise ValueError(
                f"total_nodes ({self.total_nodes}) must equal the number "
                f"of nodes ({len(self.nodes)})"
            )
        if self.nodes:
            levels = [n.level for n in self.nodes]
            span = max(levels) - min(levels)
            if self.depth != span:
                raise ValueError(
                    f"depth ({self.depth}) must equal the level span ({span})"
                )
        keys = {(n.id, n.type.value) for n in self.nodes}
        for edge in self.edges:
            if edge.source.key not in keys or edge.target.key not in keys:
                raise ValueError(
                    f"edge {edge.source.id} -> {edge.target.id} references "
                    f"a node outside the result"
                )
        return self


class LineageReport(BaseModel):
    """Persistable wrapper around a lineage query."""

    report_id: str
    report_type: LineageReportType
    target_entity_id: str
    target_entity_type: EntityType
    lineage_data: LineageResult
    generation_parameters: Dict[str, Any] = Field(default_factory=dict)
    total_nodes: int
    total_levels: int
    export_format: str = "json"
    status: str = "completed"
    created_at: datetime = Field(default_factory=_utcnow)


# =============================================================================
# Ledger Models
# =============================================================================


class CustodyChain(BaseModel):
    """One continuously tracked lot of material.

    Mutated only by applying custody events; the ledger stores each new
    state with ``model_copy``.

    Attributes:
        id: Internal identifier referenced by events and operations.
        chain_id: Unique human-readable identifier (e.g. ``CHAIN-...``).
        source_plot: Plot of origin, when known.
        source_facility: Facility the material came from.
        destination_facility: Facility the material is headed to.
        product_type: Product carried (e.g. ffb, cpo).
        total_quantity: Quantity at creation.
        remaining_quantity: Quantity still available.
        status: Lifecycle status.
        quality_grade: Optional grade.
        batch_number: Optional batch or lot number.
        harvest_date: Optional harvest date.
        expiry_date: Optional expiry date.
        parent_chain_ids: Chains this one was split, merged or transformed from.
        uom: Unit of measure.
    """

    model_config = ConfigDict(from_attributes=True, allow_inf_nan=False)

    id: str = Field(default_factory=_new_id)
    chain_id: str = Field(..., min_length=1)
    source_plot: Optional[EntityRef] = None
    source_facility: Optional[EntityRef] = None
    destination_facility: Optional[EntityRef] = None
    product_type: str = Field(..., min_length=1)
    total_quantity: float
    remaining_quantity: float
    status: ChainStatus = ChainStatus.ACTIVE
    quality_grade: Optional[str] = None
    batch_number: Optional[str] = None
    harvest_date: Optional[date] = None
    expiry_date: Optional[date] = None
    parent_chain_ids: List[str] = Field(default_factory=list)
    uom: str = "kg"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def validate_quantities(self) -> CustodyChain:
        """Enforce ``0 <= remaining_quantity <= total_quantity``."""
        if self.remaining_quantity < -QUANTITY_EPSILON:
            raise ValueError("remaining_quantity must be non-negative")
        if self.remaining_quantity > self.total_quantity + QUANTITY_EPSILON:
            raise ValueError(
                "remaining_quantity must not exceed total_quantity"
            )
        return self

    @property
    def ref(self) -> EntityRef:
        return EntityRef(id=self.id, type=EntityType.CUSTODY_CHAIN)


class CustodyEvent(BaseModel):
    """Immutable append-only custody record for one chain.

    ``mass_balance_event_id`` is set on split/merge events emitted by the
    ledger itself; only those split/merge events carry bookkeeping weight.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str = Field(default_factory=_new_id)
    chain_id: str
    sequence: int = Field(..., ge=1)
    event_type: CustodyEventType
    event_time: datetime = Field(default_factory=_utcnow)
    business_step: str = ""
    disposition: str = ""
    quantity: Optional[float] = None
    uom: str = "kg"
    location: Optional[Coordinates] = None
    facility_ref: Optional[EntityRef] = None
    recorded_by: str = "system"
    user_data: Dict[str, Any] = Field(default_factory=dict)
    mass_balance_event_id: Optional[str] = None


class MassBalanceEvent(BaseModel):
    """Immutable record of a split, merge or transformation.

    Balanced when ``input_quantity ~= output_quantity + waste_quantity``
    within the configured tolerance.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str = Field(default_factory=_new_id)
    event_type: MassBalanceEventType
    parent_chain_ids: List[str] = Field(default_factory=list)
    child_chain_ids: List[str] = Field(default_factory=list)
    input_quantity: float
    output_quantity: float
    conversion_rate: Optional[float] = None
    waste_quantity: Optional[float] = None
    process_location: Optional[str] = None
    process_date: datetime = Field(default_factory=_utcnow)
    processed_by: str = "system"
    notes: Optional[str] = None

    @property
    def chain_ids(self) -> List[str]:
        return list(self.parent_chain_ids) + list(self.child_chain_ids)


class Discrepancy(BaseModel):
    """One accounting drift surfaced by mass-balance validation."""

    type: str
    expected: float
    actual: float
    variance: float
    description: str
    event_id: Optional[str] = None


class MassBalanceValidation(BaseModel):
    """Read-only diagnostic over all events connected to a chain."""

    chain_id: str
    is_valid: bool
    total_input: float = 0.0
    total_output: float = 0.0
    total_waste: float = 0.0
    efficiency: float = 0.0
    event_count: int = 0
    discrepancies: List[Discrepancy] = Field(default_factory=list)


class SplitResult(BaseModel):
    """Outcome of splitting one chain into several."""

    parent_chain: CustodyChain
    child_chains: List[CustodyChain]
    mass_balance_event: MassBalanceEvent


class MergeResult(BaseModel):
    """Outcome of merging several chains into one."""

    parent_chains: List[CustodyChain]
    merged_chain: CustodyChain
    mass_balance_event: MassBalanceEvent


class TransformResult(BaseModel):
    """Outcome of a lossy product transformation."""

    source_chain: CustodyChain
    transformed_chain: CustodyChain
    mass_balance_event: MassBalanceEvent


class EfficiencySummary(BaseModel):
    """Aggregate conversion efficiency for a chain's events."""

    average_efficiency: float = 0.0
    event_count: int = 0
    total_input: float = 0.0
    total_output: float = 0.0
    total_waste: float = 0.0


class FacilityEfficiency(EfficiencySummary):
    """Aggregate efficiency for events processed at one facility."""

    facility_id: str
    events_by_type: Dict[str, int] = Field(default_factory=dict)


class MassBalanceAnomaly(BaseModel):
    """Statistical outlier among mass-balance events."""

    event_id: str
    type: str
    severity: Severity
    description: str
    event_type: Optional[MassBalanceEventType] = None
    value: float
    average_value: Optional[float] = None
    expected_min: Optional[float] = None
    expected_max: Optional[float] = None


# =============================================================================
# Request Models
# =============================================================================


class CreateCustodyChainRequest(BaseModel):
    """Request for registering material entering tracking.

    ``total_quantity`` is range-checked by the ledger so that a
    non-positive quantity surfaces as ``InvalidQuantity``.
    """

    model_config = ConfigDict(extra="forbid")

    chain_id: Optional[str] = Field(
        None, description="Human-readable id; generated when omitted",
    )
    product_type: str = Field(..., min_length=1)
    total_quantity: float
    source_plot: Optional[EntityRef] = None
    source_facility: Optional[EntityRef] = None
    destination_facility: Optional[EntityRef] = None
    quality_grade: Optional[str] = None
    batch_number: Optional[str] = None
    harvest_date: Optional[date] = None
    expiry_date: Optional[date] = None
    uom: Optional[str] = None
    recorded_by: str = "system"

    @field_validator("chain_id")
    @classmethod
    def validate_chain_id(cls, v: Optional[str]) -> Optional[str]:
        """Reject blank chain ids."""
        if v is not None and not v.strip():
            raise ValueError("chain_id must be non-empty when provided")
        return v.strip() if v is not None else v


class RecordCustodyEventRequest(BaseModel):
    """Request for appending a custody event to a chain."""

    model_config = ConfigDict(extra="forbid")

    event_type: CustodyEventType
    business_step: str = ""
    disposition: str = ""
    quantity: Optional[float] = None
    uom: Optional[str] = None
    event_time: Optional[datetime] = None
    location: Optional[Coordinates] = None
    facility_ref: Optional[EntityRef] = None
    recorded_by: str = "system"
    user_data: Dict[str, Any] = Field(default_factory=dict)


class SplitDefinition(BaseModel):
    """One child of a split."""

    model_config = ConfigDict(extra="forbid")

    quantity: float
    destination_facility: Optional[EntityRef] = None
    quality_grade: Optional[str] = None


class TransformChainRequest(BaseModel):
    """Request for a lossy product transformation (e.g. FFB to CPO)."""

    model_config = ConfigDict(extra="forbid")

    source_chain_id: str = Field(..., min_length=1)
    input_quantity: float
    conversion_rate: float = Field(..., gt=0.0, le=1.0)
    output_product_type: str = Field(..., min_length=1)
    process_location: str = Field(..., min_length=1)
    destination_facility: Optional[EntityRef] = None
    quality_grade: Optional[str] = None
    notes: Optional[str] = None
    processed_by: str = "system"
    idempotency_key: Optional[str] = None


class RecordMassBalanceEventRequest(BaseModel):
    """Request for recording a processing transformation's accounting.

    Attributes:
        event_type: Usually ``transform``; split/merge are emitted by the
            ledger itself but may be recorded for imported history.
        input_quantity: Quantity entering the process (must be positive).
        output_quantity: Quantity leaving the process.
        waste_quantity: Explicit waste; computed as input - output when
            omitted.
    """

    model_config = ConfigDict(extra="forbid")

    event_type: MassBalanceEventType = MassBalanceEventType.TRANSFORM
    parent_chain_ids: List[str] = Field(default_factory=list)
    child_chain_ids: List[str] = Field(default_factory=list)
    input_quantity: float
    output_quantity: float
    conversion_rate: Optional[float] = None
    waste_quantity: Optional[float] = None
    process_location: Optional[str] = None
    process_date: Optional[datetime] = None
    processed_by: str = "system"
    notes: Optional[str] = None


__all__ = [
    # Enumerations
    "EntityType",
    "Severity",
    "SEVERITY_RANK",
    "ChainStatus",
    "CustodyEventType",
    "MassBalanceEventType",
    "TraceDirection",
    "LineageReportType",
    "QUANTITY_EPSILON",
    # Graph models
    "EntityRef",
    "Coordinates",
    "Entity",
    "LineageEdge",
    "LineageNode",
    "RiskFactor",
    "ComplianceSummary",
    "RiskAssessment",
    "LineageResult",
    "LineageReport",
    # Ledger models
    "CustodyChain",
    "CustodyEvent",
    "MassBalanceEvent",
    "Discrepancy",
    "MassBalanceValidation",
    "SplitResult",
    "MergeResult",
    "TransformResult",
    "EfficiencySummary",
    "FacilityEfficiency",
    "MassBalanceAnomaly",
    # Request models
    "CreateCustodyChainRequest",
    "RecordCustodyEventRequest",
    "SplitDefinition",
    "TransformChainRequest",
    "RecordMassBalanceEventRequest",
]
