# -*- coding: utf-8 -*-
"""
Traceability Service Configuration - GreenTrace Lineage & Custody Ledger

Centralized configuration for the traceability engines covering:
- Lineage traversal: default depth bound and hard node ceiling
- Mass balance: relative tolerance (epsilon) for input/output checks
- Anomaly detection: z-score and quantity multiplier thresholds
- Risk policy: per-predicate severity overrides
- Units, provenance toggle, logging level

All settings can be overridden via environment variables with the
``GT_TRACEABILITY_`` prefix (e.g. ``GT_TRACEABILITY_MASS_BALANCE_TOLERANCE``).

Example:
    >>> from greentrace.traceability.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.default_max_depth, cfg.mass_balance_tolerance)
    10 0.005

Author: GreenTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "GT_TRACEABILITY_"


# ---------------------------------------------------------------------------
# TraceabilityConfig
# ---------------------------------------------------------------------------


@dataclass
class TraceabilityConfig:
    """Complete configuration for the GreenTrace traceability engines.

    Attributes:
        default_max_depth: Hop bound applied when a trace call gives none.
        max_lineage_nodes: Hard node ceiling; larger traversals abort.
        mass_balance_tolerance: Relative tolerance epsilon as a fraction of
            input quantity (0.005 = 0.5%).
        anomaly_zscore_threshold: Conversion-rate z-score flagged as anomalous.
        anomaly_high_zscore: Z-score above which an anomaly is high severity.
        anomaly_quantity_multiplier: Input quantity multiple of the mean
            flagged as anomalous.
        default_uom: Unit of measure for new chains and events.
        severity_overrides: Comma-separated ``predicate=severity`` pairs
            replacing entries of the default severity table.
        enable_provenance: Whether ledger mutations are provenance-hashed.
        log_level: Logging level for the traceability service.
    """

    # -- Lineage traversal ---------------------------------------------------
    default_max_depth: int = 10
    max_lineage_nodes: int = 5000

    # -- Mass balance --------------------------------------------------------
    mass_balance_tolerance: float = 0.005

    # -- Anomaly detection ---------------------------------------------------
    anomaly_zscore_threshold: float = 2.0
    anomaly_high_zscore: float = 3.0
    anomaly_quantity_multiplier: float = 10.0

    # -- Units ---------------------------------------------------------------
    default_uom: str = "kg"

    # -- Risk policy ---------------------------------------------------------
    severity_overrides: str = ""

    # -- Provenance ----------------------------------------------------------
    enable_provenance: bool = True

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def parsed_severity_overrides(self) -> Dict[str, str]:
        """Parse ``severity_overrides`` into a predicate -> severity mapping.

        Malformed pairs are skipped with a warning.

        Returns:
            Dictionary of predicate name to severity string.
        """
        overrides: Dict[str, str] = {}
        for pair in self.severity_overrides.split(","):
            pair = pair.strip()
            if not pair:
                continue
            name, sep, severity = pair.partition("=")
            if not sep or not name.strip() or not severity.strip():
                logger.warning("Ignoring malformed severity override %r", pair)
                continue
            overrides[name.strip()] = severity.strip().lower()
        return overrides

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> TraceabilityConfig:
        """Build a TraceabilityConfig from environment variables.

        Every field can be overridden via ``GT_TRACEABILITY_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).

        Returns:
            Populated TraceabilityConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %f",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        config = cls(
            default_max_depth=_int(
                "DEFAULT_MAX_DEPTH", cls.default_max_depth,
            ),
            max_lineage_nodes=_int(
                "MAX_LINEAGE_NODES", cls.max_lineage_nodes,
            ),
            mass_balance_tolerance=_float(
                "MASS_BALANCE_TOLERANCE", cls.mass_balance_tolerance,
            ),
            anomaly_zscore_threshold=_float(
                "ANOMALY_ZSCORE_THRESHOLD", cls.anomaly_zscore_threshold,
            ),
            anomaly_high_zscore=_float(
                "ANOMALY_HIGH_ZSCORE", cls.anomaly_high_zscore,
            ),
            anomaly_quantity_multiplier=_float(
                "ANOMALY_QUANTITY_MULTIPLIER",
                cls.anomaly_quantity_multiplier,
            ),
            default_uom=_str("DEFAULT_UOM", cls.default_uom),
            severity_overrides=_str(
                "SEVERITY_OVERRIDES", cls.severity_overrides,
            ),
            enable_provenance=_bool(
                "ENABLE_PROVENANCE", cls.enable_provenance,
            ),
            log_level=_str("LOG_LEVEL", cls.log_level),
        )

        logger.info(
            "TraceabilityConfig loaded: max_depth=%d, max_nodes=%d, "
            "tolerance=%.4f, zscore=%.1f/%.1f, qty_multiplier=%.1f, "
            "uom=%s, provenance=%s",
            config.default_max_depth,
            config.max_lineage_nodes,
            config.mass_balance_tolerance,
            config.anomaly_zscore_threshold,
            config.anomaly_high_zscore,
            config.anomaly_quantity_multiplier,
            config.default_uom,
            config.enable_provenance,
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[TraceabilityConfig] = None
_config_lock = threading.Lock()


def get_config() -> TraceabilityConfig:
    """Return the singleton TraceabilityConfig, creating from env if needed.

    Returns:
        TraceabilityConfig singleton instance.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = TraceabilityConfig.from_env()
    return _config_instance


def set_config(config: TraceabilityConfig) -> None:
    """Replace the singleton TraceabilityConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("TraceabilityConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "TraceabilityConfig",
    "get_config",
    "set_config",
    "reset_config",
]
