"""Tests for the gt command line interface.

Author: GreenTrace Platform Team
Status: Production Ready
"""

import json

import pytest
import yaml
from typer.testing import CliRunner

from greentrace import __version__
from greentrace.cli.main import app

runner = CliRunner()

SNAPSHOT = {
    "entities": [
        {"id": "P1", "type": "plot", "name": "Plot 1",
         "coordinates": {"latitude": 1.5, "longitude": 103.0},
         "certifications": ["RSPO-IP"], "data": {"commodity": "oil_palm"}},
        {"id": "P2", "type": "plot", "name": "Plot 2",
         "coordinates": {"latitude": 1.6, "longitude": 103.1},
         "data": {"protected_area_overlap": True}},
        {"id": "M1", "type": "facility", "name": "Mill 1",
         "coordinates": {"latitude": 1.7, "longitude": 103.2}},
    ],
    "edges": [
        {"source": {"id": "P1", "type": "plot"},
         "target": {"id": "M1", "type": "facility"}, "type": "supplies"},
        {"source": {"id": "P2", "type": "plot"},
         "target": {"id": "M1", "type": "facility"}, "type": "supplies"},
    ],
    "chains": [
        {"id": "c-1", "chain_id": "CHAIN-1", "product_type": "ffb",
         "total_quantity": 100, "remaining_quantity": 0, "status": "consumed"},
        {"id": "c-2", "chain_id": "CHAIN-2", "product_type": "cpo",
         "total_quantity": 21, "remaining_quantity": 21,
         "parent_chain_ids": ["c-1"]},
    ],
    "mass_balance_events": [
        {"event_type": "transform", "parent_chain_ids": ["c-1"],
         "child_chain_ids": ["c-2"], "input_quantity": 100,
         "output_quantity": 21, "conversion_rate": 0.21,
         "waste_quantity": 79},
    ],
}


@pytest.fixture
def snapshot_yaml(tmp_path):
    path = tmp_path / "snapshot.yaml"
    path.write_text(yaml.safe_dump(SNAPSHOT), encoding="utf-8")
    return path


@pytest.fixture
def snapshot_json(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    return path


class TestVersion:
    """gt version"""

    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestTraceCommand:
    """gt trace"""

    def test_trace_json(self, snapshot_yaml):
        """JSON output is the serialized lineage result."""
        result = runner.invoke(app, [
            "trace", str(snapshot_yaml), "M1", "facility",
            "--direction", "backward", "--json",
        ])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["direction"] == "backward"
        assert {n["id"] for n in data["nodes"]} == {"M1", "P1", "P2"}
        assert data["risk_assessment"]["overall_risk"] == "high"

    def test_trace_table(self, snapshot_json):
        """The default output is a table with the risk summary."""
        result = runner.invoke(app, ["trace", str(snapshot_json), "P1", "plot"])

        assert result.exit_code == 0, result.output
        assert "Overall risk" in result.stdout
        assert "M1" in result.stdout

    def test_trace_max_depth(self, snapshot_yaml):
        """--max-depth bounds the traversal."""
        result = runner.invoke(app, [
            "trace", str(snapshot_yaml), "P1", "plot", "--max-depth", "0", "--json",
        ])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["total_nodes"] == 1

    def test_trace_unknown_entity(self, snapshot_yaml):
        """Unknown entities exit with status 1."""
        result = runner.invoke(app, ["trace", str(snapshot_yaml), "NOPE", "plot"])

        assert result.exit_code == 1
        assert "GT_LINEAGE_ENTITY_NOT_FOUND" in result.stdout

    def test_trace_invalid_entity_type(self, snapshot_yaml):
        """Unknown entity types exit with status 1."""
        result = runner.invoke(app, ["trace", str(snapshot_yaml), "P1", "field"])

        assert result.exit_code == 1

    def test_bad_snapshot(self, tmp_path):
        """A snapshot that is not a mapping is rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        result = runner.invoke(app, ["trace", str(path), "P1", "plot"])

        assert result.exit_code == 1
        assert "Error loading snapshot" in result.stdout


class TestMassBalanceCommand:
    """gt mass-balance"""

    def test_by_chain_id(self, snapshot_yaml):
        """Chains can be addressed by their human-readable id."""
        result = runner.invoke(app, [
            "mass-balance", str(snapshot_yaml), "CHAIN-2", "--json",
        ])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["chain_id"] == "c-2"
        assert data["is_valid"] is True
        assert data["efficiency"] == pytest.approx(0.21)

    def test_table_output(self, snapshot_yaml):
        """The default output reports validity."""
        result = runner.invoke(app, ["mass-balance", str(snapshot_yaml), "c-1"])

        assert result.exit_code == 0, result.output
        assert "VALID" in result.stdout

    def test_unknown_chain(self, snapshot_yaml):
        """Unknown chains exit with status 1."""
        result = runner.invoke(app, ["mass-balance", str(snapshot_yaml), "CHAIN-X"])

        assert result.exit_code == 1
