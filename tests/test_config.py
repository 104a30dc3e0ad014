"""Tests for traceability configuration.

Author: GreenTrace Platform Team
Status: Production Ready
"""

from greentrace.traceability.config import (
    TraceabilityConfig,
    get_config,
    reset_config,
    set_config,
)


class TestTraceabilityConfig:
    """Defaults, environment overrides and the singleton accessor."""

    def test_defaults(self):
        """Default values match the documented policy."""
        cfg = TraceabilityConfig()

        assert cfg.default_max_depth == 10
        assert cfg.max_lineage_nodes == 5000
        assert cfg.mass_balance_tolerance == 0.005
        assert cfg.default_uom == "kg"
        assert cfg.enable_provenance is True

    def test_from_env(self, monkeypatch):
        """GT_TRACEABILITY_ variables override defaults."""
        monkeypatch.setenv("GT_TRACEABILITY_DEFAULT_MAX_DEPTH", "4")
        monkeypatch.setenv("GT_TRACEABILITY_MASS_BALANCE_TOLERANCE", "0.01")
        monkeypatch.setenv("GT_TRACEABILITY_ENABLE_PROVENANCE", "no")
        monkeypatch.setenv("GT_TRACEABILITY_DEFAULT_UOM", "t")

        cfg = TraceabilityConfig.from_env()

        assert cfg.default_max_depth == 4
        assert cfg.mass_balance_tolerance == 0.01
        assert cfg.enable_provenance is False
        assert cfg.default_uom == "t"

    def test_invalid_env_values_fall_back(self, monkeypatch):
        """Unparseable numbers keep the default."""
        monkeypatch.setenv("GT_TRACEABILITY_MAX_LINEAGE_NODES", "lots")
        monkeypatch.setenv("GT_TRACEABILITY_ANOMALY_HIGH_ZSCORE", "high")

        cfg = TraceabilityConfig.from_env()

        assert cfg.max_lineage_nodes == 5000
        assert cfg.anomaly_high_zscore == 3.0

    def test_parsed_severity_overrides(self):
        """Override pairs are parsed; malformed ones are skipped."""
        cfg = TraceabilityConfig(
            severity_overrides="protected_area=Critical, bogus, =low,legality_issue=medium",
        )

        assert cfg.parsed_severity_overrides() == {
            "protected_area": "critical",
            "legality_issue": "medium",
        }

    def test_singleton(self):
        """set_config installs the instance returned by get_config."""
        cfg = TraceabilityConfig(default_max_depth=3)
        set_config(cfg)
        assert get_config() is cfg

        reset_config()
        assert get_config() is not cfg
