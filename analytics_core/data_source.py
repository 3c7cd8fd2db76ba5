"""
Event Store Adapters for the Funnel & Cohort Analytics Engine
=============================================================

This module contains the event stores the engine scans:
- ClickHouseEventStore: columnar store read through clickhouse_connect
- TimescaleEventStore: row store read through a pooled SQLAlchemy engine
- InMemoryEventStore: DataFrame-backed store for files, tests and local runs

Every store answers ``scan(EventScan)`` with a frame holding the columns in
``SCAN_COLUMNS``. Driver failures are raised as ``BackendError`` so the
backend selector can fail over.

Usage:
    from analytics_core.data_source import InMemoryEventStore
    store = InMemoryEventStore.load_from_file("events.csv")
    frame = store.scan(scan)
"""

import json
import logging
import threading
import time
from functools import wraps
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import pandas as pd
import polars as pl
import clickhouse_connect
from clickhouse_connect.driver import httputil
from sqlalchemy import create_engine, text
from sqlalchemy.pool import QueuePool

from logging_config import log_backend_operation
from models import Event

from .exceptions import BackendError, InvalidRequestError
from .query_builder import SCAN_COLUMNS, EventScan, build_clickhouse_query, build_timescale_query
from .settings import EngineSettings

REQUIRED_COLUMNS = ["user_id", "event_type", "event_name", "timestamp"]


def _data_source_performance_monitor(func_name: str):
    """Decorator for monitoring event store scan performance"""

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            start_time = time.time()
            try:
                result = func(self, *args, **kwargs)
                execution_time = time.time() - start_time

                if not hasattr(self, "_performance_metrics"):
                    self._performance_metrics = {}

                if func_name not in self._performance_metrics:
                    self._performance_metrics[func_name] = []

                self._performance_metrics[func_name].append(execution_time)

                self.logger.info(
                    f"{self.name}.{func_name} returned {len(result)} rows in {execution_time:.4f} seconds"
                )
                return result

            except Exception as e:
                execution_time = time.time() - start_time
                self.logger.error(
                    f"{self.name}.{func_name} failed after {execution_time:.4f} seconds: {str(e)}"
                )
                raise

        return wrapper

    return decorator


def validate_event_data(df: pd.DataFrame) -> tuple[bool, str]:
    """Validate that a DataFrame has the columns and types the calculators need"""
    missing_columns = [col for col in REQUIRED_COLUMNS if col not in df.columns]

    if missing_columns:
        return False, f"Missing required columns: {', '.join(missing_columns)}"

    if not pd.api.types.is_datetime64_any_dtype(df["timestamp"]):
        try:
            pd.to_datetime(df["timestamp"])
        except (TypeError, ValueError):
            return False, "Cannot convert timestamp column to datetime"

    return True, "Data validation successful"


def _empty_scan_frame() -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype=object) for col in SCAN_COLUMNS})
    frame["timestamp"] = pd.to_datetime(frame["timestamp"])
    return frame


class EventStore:
    """Base class for event stores"""

    name = "store"

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._performance_metrics = {}

    def scan(self, scan: EventScan) -> Union[pd.DataFrame, pl.DataFrame]:
        raise NotImplementedError

    def close(self) -> None:
        """Release pooled connections"""


class ClickHouseEventStore(EventStore):
    """Columnar event store; scans come back as Polars frames"""

    name = "clickhouse"

    def __init__(self, settings: Optional[EngineSettings] = None, client: Any = None):
        super().__init__()
        self.settings = settings or EngineSettings()
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self):
        with self._lock:
            if self._client is None:
                self._client = self._connect()
            return self._client

    @log_backend_operation("clickhouse.connect")
    def _connect(self):
        s = self.settings
        # one shared HTTP pool bounds concurrent queries against the cluster
        pool_mgr = httputil.get_pool_manager(maxsize=s.clickhouse_pool_size)
        try:
            client = clickhouse_connect.get_client(
                host=s.clickhouse_host,
                port=s.clickhouse_port,
                username=s.clickhouse_username,
                password=s.clickhouse_password,
                database=s.clickhouse_database,
                pool_mgr=pool_mgr,
                settings={"max_execution_time": int(s.request_timeout_seconds)},
            )
        except Exception as e:
            raise BackendError(self.name, f"connection failed: {e}") from e
        self.logger.info(
            f"Connected to ClickHouse {s.clickhouse_host}:{s.clickhouse_port}/{s.clickhouse_database}"
        )
        return client

    @_data_source_performance_monitor("scan")
    def scan(self, scan: EventScan) -> pl.DataFrame:
        plan = build_clickhouse_query(scan, self.settings.clickhouse_table)
        try:
            result = self.client.query_df(plan.sql, parameters=plan.params)
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(self.name, f"query failed: {e}") from e

        if result is None or len(result) == 0:
            return pl.from_pandas(_empty_scan_frame())
        is_valid, message = validate_event_data(result)
        if not is_valid:
            raise BackendError(self.name, f"query result validation failed: {message}")
        return pl.from_pandas(result)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


class TimescaleEventStore(EventStore):
    """Row-oriented event store; scans come back as Pandas frames"""

    name = "timescale"

    def __init__(self, settings: Optional[EngineSettings] = None, engine: Any = None):
        super().__init__()
        self.settings = settings or EngineSettings()
        self._engine = engine
        self._lock = threading.Lock()

    @property
    def engine(self):
        with self._lock:
            if self._engine is None:
                self._engine = self._create_engine()
            return self._engine

    @log_backend_operation("timescale.create_engine")
    def _create_engine(self):
        s = self.settings
        statement_timeout_ms = int(s.request_timeout_seconds * 1000)
        return create_engine(
            s.timescale_dsn,
            poolclass=QueuePool,
            pool_size=s.timescale_pool_size,
            max_overflow=s.timescale_max_overflow,
            pool_timeout=s.timescale_pool_timeout,
            pool_pre_ping=True,
            connect_args={"options": f"-c statement_timeout={statement_timeout_ms}"},
        )

    @_data_source_performance_monitor("scan")
    def scan(self, scan: EventScan) -> pd.DataFrame:
        plan = build_timescale_query(scan, self.settings.timescale_table)
        try:
            with self.engine.connect() as conn:
                result = pd.read_sql(text(plan.sql), conn, params=plan.params)
        except Exception as e:
            raise BackendError(self.name, f"query failed: {e}") from e

        if result.empty:
            return _empty_scan_frame()
        is_valid, message = validate_event_data(result)
        if not is_valid:
            raise BackendError(self.name, f"query result validation failed: {message}")
        return result

    @log_backend_operation("timescale.healthcheck")
    def healthcheck(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            return True

    def close(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None


class InMemoryEventStore(EventStore):
    """
    Event store over an in-process DataFrame.

    Scans apply the same organization, time range, site, user and event
    type/name predicates the SQL stores push down. ``frame_type`` selects
    whether scans return Polars or Pandas frames.
    """

    name = "memory"

    def __init__(
        self,
        events: Optional[pd.DataFrame] = None,
        frame_type: str = "pandas",
        name: Optional[str] = None,
    ):
        super().__init__()
        if frame_type not in ("pandas", "polars"):
            raise InvalidRequestError(f"Unsupported frame type: {frame_type}")
        self.frame_type = frame_type
        if name:
            self.name = name
        self.events = self._normalize(events if events is not None else _empty_scan_frame())

    @staticmethod
    def _normalize(events: pd.DataFrame) -> pd.DataFrame:
        if isinstance(events, pl.DataFrame):
            events = events.to_pandas()
        is_valid, message = validate_event_data(events)
        if not is_valid:
            raise InvalidRequestError(message)
        df = events.copy()
        df["timestamp"] = pd.to_datetime(df["timestamp"])
        if df["timestamp"].dt.tz is not None:
            df["timestamp"] = df["timestamp"].dt.tz_convert("UTC").dt.tz_localize(None)
        for col in ("properties", "site_id", "organization_id"):
            if col not in df.columns:
                df[col] = None
        df["properties"] = [
            json.dumps(p) if isinstance(p, dict) else ("{}" if p is None or p != p else str(p))
            for p in df["properties"]
        ]
        return df

    @classmethod
    def from_events(cls, events: Iterable[Event], **kwargs) -> "InMemoryEventStore":
        rows = [
            {
                "organization_id": e.organization_id,
                "user_id": e.user_id,
                "event_type": e.event_type,
                "event_name": e.event_name,
                "timestamp": e.timestamp,
                "properties": json.dumps(e.properties),
                "site_id": e.site_id,
            }
            for e in events
        ]
        if not rows:
            return cls(**kwargs)
        return cls(pd.DataFrame(rows), **kwargs)

    @classmethod
    def load_from_file(cls, path: Union[str, Path], **kwargs) -> "InMemoryEventStore":
        """Load event data from a CSV, Parquet or JSON-lines file"""
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix == ".csv":
            df = pd.read_csv(path)
        elif suffix == ".parquet":
            df = pd.read_parquet(path)
        elif suffix in (".jsonl", ".ndjson"):
            df = pd.read_json(path, lines=True)
        else:
            raise InvalidRequestError(
                "Unsupported file format. Please use CSV, Parquet or JSON-lines files."
            )
        return cls(df, **kwargs)

    @_data_source_performance_monitor("scan")
    def scan(self, scan: EventScan) -> Union[pd.DataFrame, pl.DataFrame]:
        df = self.events
        mask = (df["timestamp"] >= pd.Timestamp(scan.time_range.start)) & (
            df["timestamp"] <= pd.Timestamp(scan.time_range.end)
        )
        mask &= df["user_id"].notna() & (df["user_id"].astype(str) != "")
        # rows without an organization belong to every organization
        mask &= df["organization_id"].isna() | (df["organization_id"] == scan.organization_id)
        if scan.site_id:
            mask &= df["site_id"] == scan.site_id
        if not scan.matches_all:
            matched = pd.Series(False, index=df.index)
            for matcher in scan.matchers:
                term = pd.Series(True, index=df.index)
                if matcher.event_type is not None:
                    term &= df["event_type"] == matcher.event_type
                if matcher.event_name is not None:
                    term &= df["event_name"] == matcher.event_name
                matched |= term
            mask &= matched

        result = df.loc[mask, SCAN_COLUMNS].sort_values(["user_id", "timestamp"], kind="mergesort")
        result = result.reset_index(drop=True)
        if self.frame_type == "polars":
            return pl.from_pandas(result)
        return result
