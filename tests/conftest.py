"""
Pytest configuration and fixtures
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest


# Define paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
BACKEND_SRC = PROJECT_ROOT / "backend" / "src"

# Make the application packages (privacy, services, api, config) importable
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from privacy.age_gate import AgeGate
from privacy.engine import PrivacyComplianceEngine
from privacy.evaluator import ComplianceEvaluator
from privacy.ledger import ConsentLedger
from privacy.regions import RegionPolicyResolver
from privacy.rights import RightsRequestTracker
from services.authority import InMemoryComplianceAuthority
from services.cache_store import InMemoryCacheStore


START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture(scope="session")
def resolver():
    """Resolver over the built-in region table"""
    return RegionPolicyResolver.default()


@pytest.fixture
def age_gate(resolver, clock):
    return AgeGate(resolver, clock)


@pytest.fixture
def ledger(resolver, age_gate, clock):
    return ConsentLedger(resolver, age_gate, clock)


@pytest.fixture
def tracker(resolver, clock):
    return RightsRequestTracker(resolver, clock)


@pytest.fixture
def evaluator(ledger, tracker, age_gate, clock):
    return ComplianceEvaluator(ledger, tracker, age_gate, clock=clock)


@pytest.fixture
def authority():
    return InMemoryComplianceAuthority()


@pytest.fixture
def cache():
    return InMemoryCacheStore()


@pytest.fixture
def engine(resolver, authority, cache, clock):
    return PrivacyComplianceEngine(resolver, authority, cache, clock=clock)
