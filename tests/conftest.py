"""
Pytest configuration for the herb ledger tests.
"""

import pytest

from config import Settings
from ledger import LedgerStore, MemoryBackend
from provenance import ProvenanceAssembler
from service import TransactionService


JAIPUR = {"lat": 26.9124, "lng": 75.7873}


@pytest.fixture
def settings():
    return Settings(ledger_backend="memory", base_url="http://trace.test", chain_id="test-chain")


@pytest.fixture
def store():
    return LedgerStore.open(MemoryBackend(), chain_id="test-chain")


@pytest.fixture
def service(store, settings):
    return TransactionService(store, settings=settings)


@pytest.fixture
def assembler(store, settings):
    return ProvenanceAssembler(store, settings=settings)


@pytest.fixture
def make_collection():
    def factory(**overrides):
        data = {
            "batch_id": "BATCH_ASH_001",
            "species": "Ashwagandha",
            "gps": dict(JAIPUR),
            "harvested_at": "2025-01-15T08:30:00Z",
            "moisture": 12.5,
            "farmer_name": "Ram Kumar Sharma",
            "farmer_id": "FARMER_001",
        }
        data.update(overrides)
        return data
    return factory


@pytest.fixture
def make_quality_test():
    def factory(batch_id="BATCH_ASH_001", **overrides):
        data = {
            "batch_id": batch_id,
            "dna": "ATCGATCGATCGATCG",
            "pesticide_ppm": 0.03,
            "moisture": 12.5,
            "heavy_metals_ppm": 0.01,
            "lab_name": "Ayurveda Quality Labs",
            "lab_id": "LAB_AQL_001",
            "tested_at": "2025-01-16T14:00:00Z",
        }
        data.update(overrides)
        return data
    return factory


@pytest.fixture
def tested_batch(service, make_collection, make_quality_test):
    """A collected batch with a passing quality test."""
    service.submit_collection(make_collection())
    service.submit_quality_test(make_quality_test())
    return "BATCH_ASH_001"


def walk_stages(service, batch_id, upto="packaging"):
    for stage in ("drying", "grinding", "packaging"):
        service.update_processing_stage(batch_id, stage, "in-progress", "PROC_HWC_001", "Himalaya Wellness")
        service.update_processing_stage(batch_id, stage, "completed", "PROC_HWC_001", "Himalaya Wellness")
        if stage == upto:
            break


@pytest.fixture
def stage_walker():
    return walk_stages
