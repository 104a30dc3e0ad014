# -*- coding: utf-8 -*-
"""
Risk Predicates - GreenTrace Lineage & Custody Ledger

Pluggable compliance checks evaluated per lineage node. Each predicate
belongs to a family (EUDR, RSPO or general) and carries a severity that
is intrinsic to the predicate: severities come from a fixed table,
optionally overridden by configuration policy, never from the entity.

Predicates read well-known keys from ``Entity.data`` by contract:

    protected_area_overlap  bool     plot intersects a protected area
    deforestation_alerts    int      count of open deforestation alerts
    deforestation_risk      str      low / medium / high / critical
    legality_status         str      compliant / issues / non_compliant
    commodity, product_type str      product carried by the entity
    rspo_required           bool     entity must hold RSPO certification

Protected-area and deforestation predicates also accept an external
``lookup(entity) -> bool`` callable wrapping a WDPA or forest-monitoring
client. Lookup failures propagate to the caller so that the lineage
engine can degrade the node to unknown risk.

Example:
    >>> from greentrace.traceability.risk_predicates import RiskPredicateRegistry
    >>> registry = RiskPredicateRegistry.default()
    >>> factors = registry.evaluate(entity)

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from greentrace.traceability.models import (
    Entity,
    EntityType,
    RiskFactor,
    Severity,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Families and the fixed severity table
# ---------------------------------------------------------------------------

FAMILY_EUDR = "eudr"
FAMILY_RSPO = "rspo"
FAMILY_GENERAL = "general"

DEFAULT_SEVERITY_TABLE: Dict[str, Severity] = {
    "protected_area": Severity.HIGH,
    "deforestation_alert": Severity.CRITICAL,
    "legality_issue": Severity.HIGH,
    "missing_geolocation": Severity.MEDIUM,
    "high_risk_entity": Severity.HIGH,
    "critical_risk_entity": Severity.CRITICAL,
    "missing_rspo_certification": Severity.MEDIUM,
}

PREDICATE_FAMILIES: Dict[str, str] = {
    "protected_area": FAMILY_EUDR,
    "deforestation_alert": FAMILY_EUDR,
    "legality_issue": FAMILY_EUDR,
    "missing_geolocation": FAMILY_EUDR,
    "high_risk_entity": FAMILY_GENERAL,
    "critical_risk_entity": FAMILY_GENERAL,
    "missing_rspo_certification": FAMILY_RSPO,
}

# Commodity labels that fall under RSPO certification
PALM_COMMODITIES = frozenset({
    "oil_palm", "palm_oil", "ffb", "cpo", "pko", "palm_kernel",
    "palm_kernel_oil", "fresh_fruit_bunches", "crude_palm_oil",
})

_LEGALITY_FAILURES = frozenset({
    "issues", "non_compliant", "non-compliant", "violation",
})

_DEFORESTATION_FAILURES = frozenset({"medium", "high", "critical"})


def family_of(factor_type: str) -> str:
    """Return the predicate family for a factor type (general if unknown)."""
    return PREDICATE_FAMILIES.get(factor_type, FAMILY_GENERAL)


def _label(entity: Entity) -> str:
    return entity.name or entity.id


# =============================================================================
# Predicate base
# =============================================================================


class RiskPredicate(ABC):
    """A single compliance check.

    Subclasses set ``name`` and ``family`` and implement :meth:`check`,
    which returns a human-readable description when the entity fails
    the check and ``None`` when it passes or does not apply.
    """

    name: str = ""
    family: str = FAMILY_GENERAL

    @abstractmethod
    def check(self, entity: Entity) -> Optional[str]:
        """Return a failure description, or None when the entity passes."""


class ProtectedAreaPredicate(RiskPredicate):
    """Plot overlaps a legally protected area (WDPA)."""

    name = "protected_area"
    family = FAMILY_EUDR

    def __init__(self, lookup: Optional[Callable[[Entity], bool]] = None) -> None:
        self._lookup = lookup

    def check(self, entity: Entity) -> Optional[str]:
        if entity.type != EntityType.PLOT:
            return None
        if self._lookup is not None:
            overlaps = bool(self._lookup(entity))
        else:
            overlaps = bool(entity.data.get("protected_area_overlap", False))
        if overlaps:
            return f"Plot {_label(entity)} intersects a protected area"
        return None


class DeforestationAlertPredicate(RiskPredicate):
    """Plot is flagged by a deforestation alert (GLAD/RADD style)."""

    name = "deforestation_alert"
    family = FAMILY_EUDR

    def __init__(self, lookup: Optional[Callable[[Entity], bool]] = None) -> None:
        self._lookup = lookup

    def check(self, entity: Entity) -> Optional[str]:
        if entity.type != EntityType.PLOT:
            return None
        if self._lookup is not None:
            flagged = bool(self._lookup(entity))
        else:
            alerts = entity.data.get("deforestation_alerts") or 0
            risk = str(entity.data.get("deforestation_risk", "low")).lower()
            flagged = int(alerts) > 0 or risk in _DEFORESTATION_FAILURES
        if flagged:
            return f"Plot {_label(entity)} is flagged by a deforestation alert"
        return None


class LegalityIssuePredicate(RiskPredicate):
    """Legal compliance issues recorded against the entity."""

    name = "legality_issue"
    family = FAMILY_EUDR

    def check(self, entity: Entity) -> Optional[str]:
        status = str(entity.data.get("legality_status", "")).lower()
        if status in _LEGALITY_FAILURES:
            return f"Legal compliance issues detected for {_label(entity)}"
        return None


class MissingGeolocationPredicate(RiskPredicate):
    """Plot has no geolocation (EUDR Article 9)."""

    name = "missing_geolocation"
    family = FAMILY_EUDR

    def check(self, entity: Entity) -> Optional[str]:
        if entity.type == EntityType.PLOT and entity.coordinates is None:
            return f"Plot {_label(entity)} has no geolocation"
        return None


class HighRiskEntityPredicate(RiskPredicate):
    """Entity carries an externally assigned high risk level."""

    name = "high_risk_entity"
    family = FAMILY_GENERAL

    def check(self, entity: Entity) -> Optional[str]:
        if entity.risk_level == Severity.HIGH:
            return (
                f"{entity.type.value} {_label(entity)} has high risk level"
            )
        return None


class CriticalRiskEntityPredicate(RiskPredicate):
    """Entity carries an externally assigned critical risk level."""

    name = "critical_risk_entity"
    family = FAMILY_GENERAL

    def check(self, entity: Entity) -> Optional[str]:
        if entity.risk_level == Severity.CRITICAL:
            return (
                f"{entity.type.value} {_label(entity)} has critical risk level"
            )
        return None


class MissingRSPOCertificationPredicate(RiskPredicate):
    """Palm-handling plot or facility lacks RSPO certification."""

    name = "missing_rspo_certification"
    family = FAMILY_RSPO

    _APPLIES_TO = frozenset({
        EntityType.PLOT, EntityType.FACILITY,
        EntityType.COLLECTION_POINT, EntityType.SUPPLIER,
    })

    def check(self, entity: Entity) -> Optional[str]:
        if entity.type not in self._APPLIES_TO:
            return None
        if not self._requires_rspo(entity.data):
            return None
        held = {c.strip().upper() for c in entity.certifications}
        if any(c.startswith("RSPO") for c in held):
            return None
        return f"{entity.type.value} {_label(entity)} lacks RSPO certification"

    @staticmethod
    def _requires_rspo(data: Dict[str, Any]) -> bool:
        if data.get("rspo_required"):
            return True
        for key in ("commodity", "product_type"):
            value = data.get(key)
            if value and str(value).lower() in PALM_COMMODITIES:
                return True
        return False


# =============================================================================
# Registry
# =============================================================================


class RiskPredicateRegistry:
    """Ordered set of predicates plus the severity policy.

    Attributes:
        _predicates: Predicates evaluated in registration order.
        _severities: Predicate name -> severity, after overrides.
        _families: Predicate name -> family.
    """

    def __init__(
        self,
        predicates: Optional[Iterable[RiskPredicate]] = None,
        severity_overrides: Optional[Dict[str, str]] = None,
    ) -> None:
        self._predicates: List[RiskPredicate] = list(predicates or [])
        self._severities: Dict[str, Severity] = dict(DEFAULT_SEVERITY_TABLE)
        self._families: Dict[str, str] = dict(PREDICATE_FAMILIES)
        for predicate in self._predicates:
            self._families[predicate.name] = predicate.family
        for name, severity in (severity_overrides or {}).items():
            try:
                self._severities[name] = Severity(severity)
            except ValueError:
                logger.warning(
                    "Ignoring unknown severity %r for predicate %s",
                    severity, name,
                )

    @classmethod
    def default(
        cls,
        protected_area_lookup: Optional[Callable[[Entity], bool]] = None,
        deforestation_lookup: Optional[Callable[[Entity], bool]] = None,
        severity_overrides: Optional[Dict[str, str]] = None,
    ) -> RiskPredicateRegistry:
        """Build the registry with every built-in predicate."""
        return cls(
            predicates=[
                ProtectedAreaPredicate(lookup=protected_area_lookup),
                DeforestationAlertPredicate(lookup=deforestation_lookup),
                LegalityIssuePredicate(),
                MissingGeolocationPredicate(),
                HighRiskEntityPredicate(),
                CriticalRiskEntityPredicate(),
                MissingRSPOCertificationPredicate(),
            ],
            severity_overrides=severity_overrides,
        )

    def register(self, predicate: RiskPredicate, severity: Optional[Severity] = None) -> None:
        """Add a predicate, optionally setting its severity.

        Raises:
            ValueError: If the predicate has no name or no known severity.
        """
        if not predicate.name:
            raise ValueError("predicate must define a name")
        if severity is not None:
            self._severities[predicate.name] = severity
        if predicate.name not in self._severities:
            raise ValueError(
                f"no severity configured for predicate {predicate.name}"
            )
        self._families[predicate.name] = predicate.family
        self._predicates.append(predicate)

    def severity_for(self, name: str) -> Severity:
        return self._severities.get(name, Severity.MEDIUM)

    @property
    def families(self) -> Dict[str, str]:
        return dict(self._families)

    @property
    def predicate_names(self) -> List[str]:
        return [p.name for p in self._predicates]

    def evaluate(self, entity: Entity) -> List[RiskFactor]:
        """Run every predicate against one entity.

        Exceptions raised by a predicate (for example an external lookup
        timing out) propagate unchanged.

        Args:
            entity: Entity to check.

        Returns:
            One RiskFactor per failing predicate.
        """
        factors: List[RiskFactor] = []
        for predicate in self._predicates:
            description = predicate.check(entity)
            if description is None:
                continue
            factors.append(RiskFactor(
                type=predicate.name,
                severity=self.severity_for(predicate.name),
                description=description,
                entity_id=entity.id,
            ))
        return factors


__all__ = [
    "FAMILY_EUDR",
    "FAMILY_RSPO",
    "FAMILY_GENERAL",
    "DEFAULT_SEVERITY_TABLE",
    "PREDICATE_FAMILIES",
    "PALM_COMMODITIES",
    "family_of",
    "RiskPredicate",
    "ProtectedAreaPredicate",
    "DeforestationAlertPredicate",
    "LegalityIssuePredicate",
    "MissingGeolocationPredicate",
    "HighRiskEntityPredicate",
    "CriticalRiskEntityPredicate",
    "MissingRSPOCertificationPredicate",
    "RiskPredicateRegistry",
]
