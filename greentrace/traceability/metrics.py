# -*- coding: utf-8 -*-
"""
Prometheus Metrics - GreenTrace Lineage & Custody Ledger

Metrics:
    1. gt_traceability_lineage_queries_total (Counter) [direction, status]
    2. gt_traceability_lineage_duration_seconds (Histogram) [direction]
    3. gt_traceability_lineage_nodes (Histogram) [direction]
    4. gt_traceability_risk_evaluation_failures_total (Counter) [entity_type]
    5. gt_traceability_lineage_reports_total (Counter) [report_type]
    6. gt_traceability_ledger_operations_total (Counter) [operation, status]
    7. gt_traceability_ledger_duration_seconds (Histogram) [operation]
    8. gt_traceability_mass_balance_validations_total (Counter) [result]
    9. gt_traceability_anomalies_detected_total (Counter) [type, severity]

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

lineage_queries_total = Counter(
    "gt_traceability_lineage_queries_total",
    "Total lineage traversals executed",
    labelnames=["direction", "status"],
)

lineage_duration_seconds = Histogram(
    "gt_traceability_lineage_duration_seconds",
    "Lineage traversal duration in seconds",
    labelnames=["direction"],
    buckets=(
        0.001, 0.005, 0.01, 0.05, 0.1, 0.25,
        0.5, 1.0, 2.5, 5.0, 10.0, 30.0,
    ),
)

# Result sizes up to the default node ceiling
lineage_nodes = Histogram(
    "gt_traceability_lineage_nodes",
    "Number of nodes returned per lineage traversal",
    labelnames=["direction"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

risk_evaluation_failures_total = Counter(
    "gt_traceability_risk_evaluation_failures_total",
    "Risk predicate evaluations that failed and left a node unassessed",
    labelnames=["entity_type"],
)

lineage_reports_total = Counter(
    "gt_traceability_lineage_reports_total",
    "Total lineage reports generated",
    labelnames=["report_type"],
)

ledger_operations_total = Counter(
    "gt_traceability_ledger_operations_total",
    "Total custody ledger operations",
    labelnames=["operation", "status"],
)

ledger_duration_seconds = Histogram(
    "gt_traceability_ledger_duration_seconds",
    "Custody ledger operation duration in seconds",
    labelnames=["operation"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)

mass_balance_validations_total = Counter(
    "gt_traceability_mass_balance_validations_total",
    "Total mass-balance validations by outcome",
    labelnames=["result"],
)

anomalies_detected_total = Counter(
    "gt_traceability_anomalies_detected_total",
    "Mass-balance anomalies detected",
    labelnames=["type", "severity"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_lineage_query(
    direction: str,
    status: str,
    duration_seconds: float,
    node_count: int = 0,
) -> None:
    """Record one lineage traversal.

    Args:
        direction: forward, backward or full.
        status: success or the exception class name.
        duration_seconds: Wall-clock traversal time.
        node_count: Nodes in the result (0 on failure).
    """
    lineage_queries_total.labels(direction=direction, status=status).inc()
    lineage_duration_seconds.labels(direction=direction).observe(duration_seconds)
    if status == "success":
        lineage_nodes.labels(direction=direction).observe(node_count)


def record_risk_evaluation_failure(entity_type: str) -> None:
    risk_evaluation_failures_total.labels(entity_type=entity_type).inc()


def record_lineage_report(report_type: str) -> None:
    lineage_reports_total.labels(report_type=report_type).inc()


def record_ledger_operation(
    operation: str,
    status: str,
    duration_seconds: float,
) -> None:
    """Record one custody ledger operation.

    Args:
        operation: create_chain, record_event, split, merge, transform,
            record_mass_balance or validate.
        status: success or the exception class name.
        duration_seconds: Wall-clock operation time.
    """
    ledger_operations_total.labels(operation=operation, status=status).inc()
    ledger_duration_seconds.labels(operation=operation).observe(duration_seconds)


def record_mass_balance_validation(is_valid: bool) -> None:
    mass_balance_validations_total.labels(
        result="valid" if is_valid else "invalid",
    ).inc()


def record_anomaly(anomaly_type: str, severity: str) -> None:
    anomalies_detected_total.labels(type=anomaly_type, severity=severity).inc()


__all__ = [
    # Metric objects
    "lineage_queries_total",
    "lineage_duration_seconds",
    "lineage_nodes",
    "risk_evaluation_failures_total",
    "lineage_reports_total",
    "ledger_operations_total",
    "ledger_duration_seconds",
    "mass_balance_validations_total",
    "anomalies_detected_total",
    # Helper functions
    "record_lineage_query",
    "record_risk_evaluation_failure",
    "record_lineage_report",
    "record_ledger_operation",
    "record_mass_balance_validation",
    "record_anomaly",
]
