# -*- coding: utf-8 -*-
"""
DDS Risk Roll-up - GreenTrace Lineage & Custody Ledger

Derives the deforestation risk level, legality status and compliance
score of a due diligence statement (DDS) from the per-plot analysis
results of the plots it declares.

Rules:
    - Risk level: highest of the matching plot results (high > medium > low)
    - Legality: ``non-compliant`` if any plot is non-compliant,
      ``compliant`` if all are, ``under-review`` otherwise
    - Compliance score: percentage of compliant plots, one decimal

Example:
    >>> calculate_dds_risk_from_plots(
    ...     ["PLOT-1:1.5,103.2"],
    ...     [PlotAnalysisResult(plot_id="PLOT-1", overall_risk="HIGH",
    ...                         compliance_status="COMPLIANT")],
    ... ).deforestation_risk_level
    'high'

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class PlotAnalysisResult(BaseModel):
    """Outcome of a satellite/compliance analysis for one plot."""

    plot_id: str = Field(..., min_length=1)
    overall_risk: Literal["LOW", "MEDIUM", "HIGH"]
    compliance_status: Literal["COMPLIANT", "NON-COMPLIANT", "UNDER-REVIEW"]

    @field_validator("overall_risk", "compliance_status", mode="before")
    @classmethod
    def normalize_case(cls, v: str) -> str:
        """Accept lower-case and underscore spellings."""
        if isinstance(v, str):
            return v.strip().upper().replace("_", "-")
        return v


class DDSRiskCalculation(BaseModel):
    """Roll-up written onto a due diligence statement."""

    deforestation_risk_level: Literal["low", "medium", "high"]
    legality_status: Literal["compliant", "non-compliant", "under-review"]
    compliance_score: str = Field(
        ..., description="Percentage of compliant plots, one decimal place",
    )
    plot_count: int = 0


def _plot_ids(plot_geolocations: Sequence[str]) -> List[str]:
    ids = []
    for geo in plot_geolocations:
        plot_id = geo.split(":", 1)[0].strip()
        if plot_id:
            ids.append(plot_id)
    return ids


def calculate_dds_risk_from_plots(
    plot_geolocations: Optional[Sequence[str]],
    analysis_results: Sequence[PlotAnalysisResult],
) -> Optional[DDSRiskCalculation]:
    """Roll plot analysis results up to statement level.

    Args:
        plot_geolocations: ``"<plotId>:<coordinates>"`` strings declared on
            the statement.
        analysis_results: All available plot analysis results.

    Returns:
        DDSRiskCalculation, or None when no plots are declared or none of
        them has an analysis result.
    """
    if not plot_geolocations:
        return None
    plot_ids = set(_plot_ids(plot_geolocations))
    if not plot_ids:
        return None

    relevant = [r for r in analysis_results if r.plot_id in plot_ids]
    if not relevant:
        logger.warning(
            "No analysis results found for %d declared plots", len(plot_ids),
        )
        return None

    risks = {r.overall_risk for r in relevant}
    if "HIGH" in risks:
        risk_level = "high"
    elif "MEDIUM" in risks:
        risk_level = "medium"
    else:
        risk_level = "low"

    compliant = sum(1 for r in relevant if r.compliance_status == "COMPLIANT")
    if any(r.compliance_status == "NON-COMPLIANT" for r in relevant):
        legality = "non-compliant"
    elif compliant == len(relevant):
        legality = "compliant"
    else:
        legality = "under-review"

    score = f"{compliant / len(relevant) * 100:.1f}"
    logger.info(
        "DDS risk calculated over %d plots: risk=%s legality=%s score=%s%%",
        len(relevant), risk_level, legality, score,
    )
    return DDSRiskCalculation(
        deforestation_risk_level=risk_level,
        legality_status=legality,
        compliance_score=score,
        plot_count=len(relevant),
    )


__all__ = [
    "PlotAnalysisResult",
    "DDSRiskCalculation",
    "calculate_dds_risk_from_plots",
]
