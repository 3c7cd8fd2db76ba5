"""
Core Business Logic Module for the Funnel & Cohort Analytics Engine
===================================================================

This module contains the core business logic classes:
- AnalyticsEngine: Backend selection, fallback and request deadline
- FunnelCalculator: Funnel matching and aggregation
- CohortCalculator: Cohort assignment, retention and revenue aggregation
- Event stores: ClickHouse, TimescaleDB and in-memory
- FunnelConfigManager: Configuration management

Usage:
    from analytics_core import AnalyticsEngine, BackendSet, EngineSettings
"""

from .calculator import FunnelCalculator
from .cohorts import CohortCalculator
from .config_manager import (
    DefinitionStore,
    FunnelConfigManager,
    InMemoryDefinitionStore,
    JsonDefinitionStore,
)
from .data_source import (
    ClickHouseEventStore,
    EventStore,
    InMemoryEventStore,
    TimescaleEventStore,
)
from .engine import AnalysisOutcome, AnalyticsEngine, Backend, BackendSet
from .exceptions import (
    AnalysisNotImplementedError,
    AnalyticsError,
    BackendError,
    DefinitionError,
    FunnelNotFoundError,
    InvalidRequestError,
)
from .settings import EngineSettings
from .telemetry import LoggingEventSink, RecordingEventSink

__all__ = [
    "AnalysisNotImplementedError",
    "AnalysisOutcome",
    "AnalyticsEngine",
    "AnalyticsError",
    "Backend",
    "BackendError",
    "BackendSet",
    "ClickHouseEventStore",
    "CohortCalculator",
    "DefinitionError",
    "DefinitionStore",
    "EngineSettings",
    "EventStore",
    "FunnelCalculator",
    "FunnelConfigManager",
    "FunnelNotFoundError",
    "InMemoryDefinitionStore",
    "InMemoryEventStore",
    "InvalidRequestError",
    "JsonDefinitionStore",
    "LoggingEventSink",
    "RecordingEventSink",
    "TimescaleEventStore",
]
