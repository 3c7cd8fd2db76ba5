"""
Test Configuration and Fixtures for the Funnel & Cohort Analytics Engine
========================================================================

Central fixtures, data factories and fake backends shared by the test suite.

Key Principles:
1. **Reusable Fixtures**: Centralized test data and configuration
2. **Both Engines**: Every calculation is exercised on Polars and on Pandas
3. **Fake Backends**: Failover is tested with in-memory and failing stores

Test Architecture:
- conftest.py: This file - central fixtures and utilities
- test_funnel_*.py: Funnel matching and aggregation
- test_cohorts.py / test_revenue_cohorts.py: Cohort assignment, retention and revenue
- test_backend_fallback.py: Backend selection, deadline and degraded results
- test_engine_consistency.py: Polars and Pandas agree on generated data
"""

import json
import logging
import os
import sys
import time
from datetime import datetime, timedelta
from typing import Any, Optional

import numpy as np
import pandas as pd
import pytest

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from analytics_core import (
    AnalyticsEngine,
    Backend,
    BackendSet,
    CohortCalculator,
    EngineSettings,
    EventStore,
    FunnelCalculator,
    InMemoryDefinitionStore,
    InMemoryEventStore,
    RecordingEventSink,
)
from analytics_core.exceptions import BackendError
from models import CohortDefinition, FunnelConfig, FunnelDefinition, FunnelStep

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

ORG_ID = "org_1"

# =============================================================================
# TEST DATA FACTORIES
# =============================================================================


class EventFactory:
    """Builds event rows in the shape the event stores return."""

    @staticmethod
    def event(
        user_id: Optional[str],
        event_type: str,
        event_name: str,
        timestamp: datetime,
        properties: Optional[dict[str, Any]] = None,
        organization_id: str = ORG_ID,
        site_id: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "organization_id": organization_id,
            "user_id": user_id,
            "event_type": event_type,
            "event_name": event_name,
            "timestamp": timestamp,
            "properties": json.dumps(properties or {}),
            "site_id": site_id,
        }

    @staticmethod
    def frame(rows: list[dict[str, Any]]) -> pd.DataFrame:
        if not rows:
            return pd.DataFrame(
                {
                    col: pd.Series(dtype=object)
                    for col in [
                        "organization_id",
                        "user_id",
                        "event_type",
                        "event_name",
                        "timestamp",
                        "properties",
                        "site_id",
                    ]
                }
            )
        return pd.DataFrame(rows)

    @staticmethod
    def random_events(
        n_users: int = 200, seed: int = 42, base_timestamp: Optional[datetime] = None
    ) -> pd.DataFrame:
        """
        Random multi-week activity with signups, page views, purchases and logins.

        Timestamps fall on whole seconds and purchase values are integers so
        sums are exact on every engine.
        """
        rng = np.random.default_rng(seed)
        base = base_timestamp or datetime(2024, 1, 1, 0, 0, 0)
        catalogue = [
            ("auth", "signup"),
            ("page", "view"),
            ("commerce", "add_to_cart"),
            ("commerce", "purchase"),
            ("session", "login"),
        ]
        rows = []
        for i in range(n_users):
            user_id = f"user_{i:04d}"
            platform = str(rng.choice(["mobile", "desktop"]))
            start = base + timedelta(seconds=int(rng.integers(0, 21 * 24 * 3600)))
            for _ in range(int(rng.integers(1, 12))):
                event_type, event_name = catalogue[int(rng.integers(0, len(catalogue)))]
                ts = start + timedelta(seconds=int(rng.integers(0, 35 * 24 * 3600)))
                props = {"platform": platform}
                if event_name == "purchase":
                    props["value"] = int(rng.integers(5, 200))
                rows.append(EventFactory.event(user_id, event_type, event_name, ts, props))
        return pd.DataFrame(rows)


# =============================================================================
# FAKE BACKENDS
# =============================================================================


class FailingEventStore(EventStore):
    """Store whose every scan fails like an unreachable backend."""

    def __init__(self, name: str = "failing", message: str = "connection refused"):
        super().__init__()
        self.name = name
        self.message = message
        self.calls = 0

    def scan(self, scan):
        self.calls += 1
        raise BackendError(self.name, self.message)


class SlowEventStore(EventStore):
    """Delegates to another store after a delay."""

    def __init__(self, inner: EventStore, delay_seconds: float, name: str = "slow"):
        super().__init__()
        self.inner = inner
        self.delay_seconds = delay_seconds
        self.name = name
        self.calls = 0

    def scan(self, scan):
        self.calls += 1
        time.sleep(self.delay_seconds)
        return self.inner.scan(scan)


class CountingEventStore(EventStore):
    """Delegates to another store and counts scans."""

    def __init__(self, inner: EventStore, name: str = "counting"):
        super().__init__()
        self.inner = inner
        self.name = name
        self.calls = 0

    def scan(self, scan):
        self.calls += 1
        return self.inner.scan(scan)


# =============================================================================
# STANDARD TEST FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def base_timestamp():
    """Standard base timestamp for all tests (a Monday)."""
    return datetime(2024, 1, 1, 10, 0, 0)


@pytest.fixture(scope="session")
def analysis_window():
    """Explicit range around the base timestamp for engine calls."""
    return {"start_date": datetime(2023, 12, 1), "end_date": datetime(2024, 3, 31)}


@pytest.fixture
def event_factory():
    return EventFactory


@pytest.fixture(params=[True, False], ids=["polars", "pandas"])
def use_polars(request):
    """Run a test once per computation engine."""
    return request.param


@pytest.fixture(scope="session")
def signup_purchase_steps():
    return [
        FunnelStep(name="Sign Up", event_type="auth", event_name="signup", order=0),
        FunnelStep(name="Purchase", event_type="commerce", event_name="purchase", order=1),
    ]


@pytest.fixture(scope="session")
def three_step_funnel():
    return [
        FunnelStep(name="Sign Up", event_type="auth", event_name="signup", order=1),
        FunnelStep(name="Add To Cart", event_type="commerce", event_name="add_to_cart", order=2),
        FunnelStep(name="Purchase", event_type="commerce", event_name="purchase", order=3),
    ]


@pytest.fixture
def funnel_definition(signup_purchase_steps):
    return FunnelDefinition(
        id="signup_purchase",
        organization_id=ORG_ID,
        name="Signup to purchase",
        steps=list(signup_purchase_steps),
        conversion_window_hours=24,
    )


@pytest.fixture
def calculator_factory():
    """Factory for creating FunnelCalculator instances with different configurations."""

    def _create_calculator(config: FunnelConfig = None, use_polars: bool = True) -> FunnelCalculator:
        return FunnelCalculator(config or FunnelConfig(conversion_window_hours=24), use_polars)

    return _create_calculator


@pytest.fixture
def cohort_calculator_factory():
    def _create_calculator(definition: CohortDefinition, use_polars: bool = True) -> CohortCalculator:
        return CohortCalculator(definition, use_polars)

    return _create_calculator


@pytest.fixture
def recording_sink():
    return RecordingEventSink()


@pytest.fixture
def engine_factory(recording_sink):
    """
    Factory for AnalyticsEngine over in-memory data.

    By default the primary is a Polars-flavoured memory store and the fallback
    a Pandas-flavoured one; either can be replaced with a fake store.
    """
    engines = []

    def _create_engine(
        events: pd.DataFrame,
        definitions: tuple = (),
        primary_store: Optional[EventStore] = None,
        fallback_store: Optional[EventStore] = None,
        with_fallback: bool = True,
        timeout_seconds: float = 10.0,
        backend_workers: int = 8,
    ) -> AnalyticsEngine:
        primary_store = primary_store or InMemoryEventStore(events, frame_type="polars", name="columnar")
        backends = BackendSet(
            primary=Backend("columnar", primary_store, use_polars=True),
            fallback=(
                Backend(
                    "row",
                    fallback_store or InMemoryEventStore(events, frame_type="pandas", name="row"),
                    use_polars=False,
                )
                if with_fallback
                else None
            ),
        )
        engine = AnalyticsEngine(
            backends,
            InMemoryDefinitionStore(list(definitions)),
            sink=recording_sink,
            settings=EngineSettings(
                request_timeout_seconds=timeout_seconds, backend_workers=backend_workers
            ),
        )
        engines.append(engine)
        return engine

    yield _create_engine
    for engine in engines:
        engine.close()


# =============================================================================
# ASSERTION HELPERS
# =============================================================================


def assert_funnel_results_valid(result, expected_steps: list[str]):
    """Structural validation of a FunnelAnalysisResult."""
    assert [s.step for s in result.steps] == expected_steps
    assert [s.step_number for s in result.steps] == list(range(1, len(expected_steps) + 1))
    assert all(s.users >= 0 for s in result.steps)
    assert all(0 <= s.conversion_rate <= 100 for s in result.steps)

    # User counts never increase along the funnel
    for i in range(1, len(result.steps)):
        assert result.steps[i].users <= result.steps[i - 1].users, (
            f"User count increased from step {i - 1} to {i}: "
            f"{result.steps[i - 1].users} -> {result.steps[i].users}"
        )


def without_backend(data: dict[str, Any]) -> dict[str, Any]:
    """Result dict minus fields that name the engine that produced it."""
    return {k: v for k, v in data.items() if k != "backend"}


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest markers for organized test execution."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests for end-to-end flows")
    config.addinivalue_line("markers", "edge_case: Edge cases and boundary condition tests")
    config.addinivalue_line("markers", "polars: Polars/Pandas agreement tests")
    config.addinivalue_line("markers", "fallback: Backend failover and degraded result tests")
    config.addinivalue_line("markers", "cohort: Cohort assignment and retention tests")
    config.addinivalue_line("markers", "revenue: Revenue cohort tests")
    config.addinivalue_line("markers", "slow: Tests that take longer than 5 seconds")
