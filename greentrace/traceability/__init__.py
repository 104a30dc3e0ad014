# -*- coding: utf-8 -*-
"""
GreenTrace Traceability: Lineage Engine & Custody Ledger
========================================================

This package answers two questions about a multi-tier commodity supply
chain (plots, collection points, mills, refineries, shipments):

- What is the full upstream/downstream lineage of an entity, and what
  EUDR/RSPO compliance risk does that lineage carry?
- Does the recorded mass balance of split/merge/transform operations on
  custody chains remain arithmetically consistent?

Key Components:
    - config: TraceabilityConfig with GT_TRACEABILITY_ env prefix
    - models: Pydantic v2 models for all data structures
    - data_source: GraphDataSource interface and in-memory/custody sources
    - risk_predicates: pluggable compliance predicates and severity table
    - lineage_engine: bounded BFS traversal with risk aggregation
    - persistence: CustodyStore interface and in-memory store
    - custody_ledger: custody chains, split/merge/transform, mass balance
    - mass_balance: validation, efficiency and anomaly analytics
    - dds_risk: due diligence statement risk roll-up
    - provenance: SHA-256 chain-hashed audit trail
    - metrics: Prometheus metrics
    - setup: TraceabilityService facade

Example:
    >>> from greentrace.traceability import TraceabilityService
    >>> service = TraceabilityService()
    >>> chain = service.create_custody_chain(
    ...     {"product_type": "ffb", "total_quantity": 100},
    ... )
    >>> service.validate_mass_balance(chain.id).is_valid
    True
"""

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from greentrace.traceability.config import (
    TraceabilityConfig,
    get_config,
    set_config,
    reset_config,
)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
from greentrace.traceability.models import (
    # Enumerations
    EntityType,
    Severity,
    ChainStatus,
    CustodyEventType,
    MassBalanceEventType,
    TraceDirection,
    LineageReportType,
    # Graph models
    EntityRef,
    Coordinates,
    Entity,
    LineageEdge,
    LineageNode,
    RiskFactor,
    ComplianceSummary,
    RiskAssessment,
    LineageResult,
    LineageReport,
    # Ledger models
    CustodyChain,
    CustodyEvent,
    MassBalanceEvent,
    Discrepancy,
    MassBalanceValidation,
    SplitResult,
    MergeResult,
    TransformResult,
    EfficiencySummary,
    FacilityEfficiency,
    MassBalanceAnomaly,
    # Request models
    CreateCustodyChainRequest,
    RecordCustodyEventRequest,
    SplitDefinition,
    TransformChainRequest,
    RecordMassBalanceEventRequest,
)

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
from greentrace.traceability.data_source import (
    GraphDataSource,
    InMemoryGraphDataSource,
    CustodyGraphDataSource,
)
from greentrace.traceability.persistence import (
    CustodyStore,
    InMemoryCustodyStore,
)
from greentrace.traceability.risk_predicates import (
    RiskPredicate,
    RiskPredicateRegistry,
)

# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------
from greentrace.traceability.lineage_engine import LineageEngine
from greentrace.traceability.custody_ledger import (
    CustodyLedger,
    apply_custody_event,
)
from greentrace.traceability.mass_balance import MassBalanceAnalyzer
from greentrace.traceability.dds_risk import (
    PlotAnalysisResult,
    DDSRiskCalculation,
    calculate_dds_risk_from_plots,
)
from greentrace.traceability.provenance import ProvenanceTracker

# ---------------------------------------------------------------------------
# Service facade
# ---------------------------------------------------------------------------
from greentrace.traceability.setup import TraceabilityService

__all__ = [
    # Configuration
    "TraceabilityConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Enumerations
    "EntityType",
    "Severity",
    "ChainStatus",
    "CustodyEventType",
    "MassBalanceEventType",
    "TraceDirection",
    "LineageReportType",
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
    # Collaborators
    "GraphDataSource",
    "InMemoryGraphDataSource",
    "CustodyGraphDataSource",
    "CustodyStore",
    "InMemoryCustodyStore",
    "RiskPredicate",
    "RiskPredicateRegistry",
    # Engines
    "LineageEngine",
    "CustodyLedger",
    "apply_custody_event",
    "MassBalanceAnalyzer",
    "PlotAnalysisResult",
    "DDSRiskCalculation",
    "calculate_dds_risk_from_plots",
    "ProvenanceTracker",
    # Service facade
    "TraceabilityService",
]
