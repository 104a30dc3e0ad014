# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures."""

import pytest

from greentrace.traceability.config import (
    TraceabilityConfig,
    reset_config,
    set_config,
)
from greentrace.traceability.custody_ledger import CustodyLedger
from greentrace.traceability.data_source import InMemoryGraphDataSource
from greentrace.traceability.lineage_engine import LineageEngine
from greentrace.traceability.models import Coordinates, Entity, EntityType
from greentrace.traceability.persistence import InMemoryCustodyStore


@pytest.fixture(autouse=True)
def config():
    """Install a default configuration and reset it after each test."""
    cfg = TraceabilityConfig()
    set_config(cfg)
    yield cfg
    reset_config()


def make_entity(entity_id, entity_type, lat=None, lon=None, **kwargs):
    """Build an Entity with optional coordinates."""
    coordinates = None
    if lat is not None and lon is not None:
        coordinates = Coordinates(latitude=lat, longitude=lon)
    return Entity(
        id=entity_id,
        type=entity_type,
        name=kwargs.pop("name", entity_id),
        coordinates=coordinates,
        **kwargs,
    )


@pytest.fixture
def sample_graph():
    """Two plots feeding a collection point, a mill and a shipment.

        P1 --supplies--> CP1 --delivers_to--> M1 --processed_into--> S1
        P2 --supplies--/

    P2 overlaps a protected area; everything else is clean.
    """
    graph = InMemoryGraphDataSource()
    p1 = graph.add_entity(make_entity(
        "P1", EntityType.PLOT, 1.50, 103.00,
        certifications=["RSPO-IP"],
        data={"commodity": "oil_palm", "legality_status": "compliant"},
    ))
    p2 = graph.add_entity(make_entity(
        "P2", EntityType.PLOT, 1.60, 103.10,
        certifications=["RSPO-MB"],
        data={"commodity": "oil_palm", "protected_area_overlap": True},
    ))
    cp1 = graph.add_entity(make_entity(
        "CP1", EntityType.COLLECTION_POINT, 1.55, 103.05,
    ))
    m1 = graph.add_entity(make_entity(
        "M1", EntityType.FACILITY, 1.70, 103.20,
        certifications=["RSPO-SCC"],
        data={"commodity": "cpo"},
    ))
    s1 = graph.add_entity(make_entity("S1", EntityType.SHIPMENT))

    graph.link(p1, cp1, "supplies", quantity=1000.0)
    graph.link(p2, cp1, "supplies", quantity=800.0)
    graph.link(cp1, m1, "delivers_to", quantity=1800.0)
    graph.link(m1, s1, "processed_into", quantity=380.0)
    return graph


@pytest.fixture
def engine(sample_graph, config):
    """LineageEngine over the sample graph."""
    return LineageEngine(sample_graph, config=config)


@pytest.fixture
def store():
    """Empty in-memory custody store."""
    return InMemoryCustodyStore()


@pytest.fixture
def ledger(store, config):
    """CustodyLedger over an empty in-memory store."""
    return CustodyLedger(store=store, config=config)


@pytest.fixture
def ffb_chain(ledger):
    """Active 100 kg FFB chain."""
    return ledger.create_custody_chain({
        "chain_id": "CHAIN-FFB-1",
        "product_type": "ffb",
        "total_quantity": 100.0,
    })
