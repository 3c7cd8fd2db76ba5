"""
Analytics engine with backend selection and fallback.

Every analysis runs on the primary backend first. A failure of any kind,
including an expired request deadline, is logged and the identical logical
query is re-run on the fallback backend; the result is then marked
``degraded``. When both backends fail the caller receives a zero-valued
result marked ``failed`` together with the error message. Definition lookups
and malformed requests still raise.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Optional, TypeVar

from logging_config import log_dataframe_info
from models import (
    AnalysisStatus,
    CohortAnalysisResult,
    CohortDefinition,
    CohortType,
    FunnelAnalysisResult,
    FunnelConfig,
    FunnelDefinition,
    FunnelSegmentResult,
    TimeRange,
    WindowAnchor,
)

from .calculator import FunnelCalculator, aggregate_funnel_counts
from .cohorts import (
    CohortCalculator,
    cohort_size_trends,
    compare_cohorts,
    empty_cohort_result,
    export_cohort_data,
    retention_curves,
)
from .config_manager import DefinitionStore
from .data_source import ClickHouseEventStore, EventStore, TimescaleEventStore
from .exceptions import AnalysisNotImplementedError, BackendError, InvalidRequestError
from .query_builder import EventScan
from .settings import EngineSettings
from .telemetry import (
    ANALYSIS_FAILED,
    ANALYSIS_FALLBACK,
    COHORT_COMPUTED,
    FUNNEL_COMPUTED,
    AnalyticsEventSink,
    LoggingEventSink,
)

T = TypeVar("T")


@dataclass(frozen=True)
class Backend:
    """An event store paired with the engine that computes over its frames"""

    name: str
    store: EventStore
    use_polars: bool = True


@dataclass(frozen=True)
class BackendSet:
    primary: Backend
    fallback: Optional[Backend] = None

    def __iter__(self):
        yield self.primary
        if self.fallback is not None:
            yield self.fallback

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "BackendSet":
        """Columnar ClickHouse backend first, TimescaleDB row backend as fallback"""
        return cls(
            primary=Backend("clickhouse", ClickHouseEventStore(settings), use_polars=True),
            fallback=Backend("timescale", TimescaleEventStore(settings), use_polars=False),
        )


@dataclass
class AnalysisOutcome(Generic[T]):
    """Value of a derived analysis with the status of the run that produced it"""

    value: T
    status: AnalysisStatus = AnalysisStatus.OK
    backend: Optional[str] = None
    error: Optional[str] = None


def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError as e:
        raise InvalidRequestError(f"Invalid date: {value!r}") from e


class AnalyticsEngine:
    """Funnel and cohort analyses over a primary/fallback backend pair"""

    def __init__(
        self,
        backends: BackendSet,
        definitions: DefinitionStore,
        sink: Optional[AnalyticsEventSink] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.backends = backends
        self.definitions = definitions
        self.sink = sink or LoggingEventSink()
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.backend_workers, thread_name_prefix="analytics-backend"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        for backend in self.backends:
            backend.store.close()

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    def _call_with_deadline(self, backend: Backend, compute: Callable[[Backend], T]) -> T:
        timeout = self.settings.request_timeout_seconds
        future = self._executor.submit(compute, backend)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            # the worker is not interrupted; its result is discarded
            future.cancel()
            raise BackendError(backend.name, f"deadline of {timeout}s exceeded") from e

    def _scan(self, backend: Backend, scan: EventScan):
        events = backend.store.scan(scan)
        log_dataframe_info(events, f"{backend.name} scan", self.logger)
        return events

    def _run(
        self,
        analysis: str,
        compute: Callable[[Backend], T],
        context: dict[str, Any],
    ) -> tuple[Optional[T], AnalysisStatus, Optional[str], Optional[str]]:
        """
        Run ``compute`` on the primary backend, then on the fallback.

        Only the primary call goes through the deadline executor. The fallback
        runs on the calling thread, bounded by its driver timeouts, so primary
        calls stalled past their deadline cannot queue it behind them.

        Returns (value, status, backend name, error). ``value`` is None only
        when every backend failed.
        """
        errors = []
        for index, backend in enumerate(self.backends):
            try:
                if index == 0:
                    value = self._call_with_deadline(backend, compute)
                else:
                    value = compute(backend)
            except Exception as e:
                errors.append(f"{backend.name}: {e}")
                if index == 0 and self.backends.fallback is not None:
                    self.logger.warning(
                        f"{analysis} failed on {backend.name}, retrying on "
                        f"{self.backends.fallback.name}: {e}"
                    )
                    self.sink.emit(
                        ANALYSIS_FALLBACK,
                        {
                            **context,
                            "analysis": analysis,
                            "backend": backend.name,
                            "fallback": self.backends.fallback.name,
                            "error": str(e),
                        },
                    )
                continue

            status = AnalysisStatus.OK if index == 0 else AnalysisStatus.DEGRADED
            return value, status, backend.name, None

        error = "; ".join(errors)
        self.logger.error(f"{analysis} failed on every backend: {error}")
        self.sink.emit(ANALYSIS_FAILED, {**context, "analysis": analysis, "error": error})
        return None, AnalysisStatus.FAILED, None, error

    def _time_range(
        self,
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
    ) -> TimeRange:
        start = _parse_date(start_date)
        end = _parse_date(end_date)
        if start is None and time_range is None:
            time_range = self.settings.default_time_range
        resolved = TimeRange.resolve(start, end, time_range)
        if resolved.start > resolved.end:
            raise InvalidRequestError(
                f"Start date {resolved.start.isoformat()} is after end date {resolved.end.isoformat()}"
            )
        return resolved

    # ------------------------------------------------------------------
    # Funnels
    # ------------------------------------------------------------------

    def _funnel_setup(
        self,
        organization_id: str,
        funnel_id: str,
        window_hours: Optional[int],
        window_anchor: Optional[WindowAnchor],
        segment_by: Optional[str] = None,
        segment_values: Optional[list[str]] = None,
    ) -> tuple[FunnelDefinition, FunnelConfig]:
        if window_hours is not None and window_hours <= 0:
            raise InvalidRequestError(f"windowHours must be positive, got {window_hours}")
        definition = self.definitions.get_funnel(organization_id, funnel_id)
        config = FunnelConfig(
            conversion_window_hours=(
                window_hours if window_hours is not None else definition.conversion_window_hours
            ),
            window_anchor=window_anchor or WindowAnchor.PREVIOUS_STEP,
            segment_by=segment_by,
            segment_values=segment_values,
        )
        return definition, config

    @staticmethod
    def _funnel_scan(
        definition: FunnelDefinition, time_range: TimeRange, site_id: Optional[str]
    ) -> EventScan:
        return EventScan(
            organization_id=definition.organization_id,
            time_range=time_range,
            matchers=tuple(step.matcher for step in definition.steps),
            site_id=site_id,
        )

    def analyze_funnel(
        self,
        organization_id: str,
        funnel_id: str,
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
        site_id: Optional[str] = None,
        window_hours: Optional[int] = None,
        window_anchor: Optional[WindowAnchor] = None,
    ) -> FunnelAnalysisResult:
        """
        Per-step user counts, conversion and drop-off rates for a stored funnel.

        Raises FunnelNotFoundError when the funnel does not exist for the
        organization. Backend failures never raise; see the module docstring.
        """
        start_time = time.time()
        definition, config = self._funnel_setup(
            organization_id, funnel_id, window_hours, window_anchor
        )
        identity = {
            "funnel_id": definition.id,
            "funnel_name": definition.name,
            "window_hours": config.conversion_window_hours,
        }
        if not definition.steps:
            return FunnelAnalysisResult.empty(**identity)

        scan = self._funnel_scan(definition, self._time_range(start_date, end_date, time_range), site_id)

        def compute(backend: Backend) -> FunnelAnalysisResult:
            events = self._scan(backend, scan)
            return FunnelCalculator(config, backend.use_polars).calculate_funnel_metrics(
                events, definition.steps
            )

        context = {"organization_id": organization_id, "funnel_id": funnel_id}
        result, status, backend, error = self._run("funnel", compute, context)
        if result is None:
            steps, _, _ = aggregate_funnel_counts(
                [step.name for step in definition.steps], [0] * len(definition.steps)
            )
            result = FunnelAnalysisResult(steps=steps, conversion_rate=0.0, total_users=0)

        result.funnel_id = identity["funnel_id"]
        result.funnel_name = identity["funnel_name"]
        result.window_hours = identity["window_hours"]
        result.status = status
        result.backend = backend
        result.error = error

        self.sink.emit(
            FUNNEL_COMPUTED,
            {
                **context,
                "backend": backend,
                "status": status.value,
                "total_users": result.total_users,
                "duration_seconds": round(time.time() - start_time, 4),
            },
        )
        return result

    def analyze_funnel_request(self, organization_id: str, request: dict[str, Any]) -> dict[str, Any]:
        """Funnel request/response in the external JSON contract"""
        if "funnelId" not in request:
            raise InvalidRequestError("funnelId is required")
        anchor = request.get("windowAnchor")
        result = self.analyze_funnel(
            organization_id,
            str(request["funnelId"]),
            start_date=request.get("startDate"),
            end_date=request.get("endDate"),
            time_range=request.get("timeRange"),
            site_id=request.get("siteId"),
            window_hours=request.get("windowHours"),
            window_anchor=WindowAnchor(anchor) if anchor else None,
        )
        return result.to_dict()

    def get_funnel_trends(
        self,
        organization_id: str,
        funnel_id: str,
        granularity: str = "day",
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
        site_id: Optional[str] = None,
        window_hours: Optional[int] = None,
        window_anchor: Optional[WindowAnchor] = None,
    ) -> AnalysisOutcome:
        definition, config = self._funnel_setup(
            organization_id, funnel_id, window_hours, window_anchor
        )
        if granularity not in ("hour", "day", "week", "month"):
            raise InvalidRequestError(f"Unknown period granularity: {granularity}")
        if not definition.steps:
            return AnalysisOutcome(value=[])
        scan = self._funnel_scan(definition, self._time_range(start_date, end_date, time_range), site_id)

        def compute(backend: Backend):
            calculator = FunnelCalculator(config, backend.use_polars)
            return calculator.calculate_funnel_trends(
                self._scan(backend, scan), definition.steps, granularity
            )

        context = {"organization_id": organization_id, "funnel_id": funnel_id}
        trends, status, backend, error = self._run("funnel_trends", compute, context)
        return AnalysisOutcome(value=trends or [], status=status, backend=backend, error=error)

    def get_funnel_segments(
        self,
        organization_id: str,
        funnel_id: str,
        segment_by: str,
        segment_values: Optional[list[str]] = None,
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
        site_id: Optional[str] = None,
        window_hours: Optional[int] = None,
        window_anchor: Optional[WindowAnchor] = None,
    ) -> AnalysisOutcome:
        definition, config = self._funnel_setup(
            organization_id, funnel_id, window_hours, window_anchor, segment_by, segment_values
        )
        scan = self._funnel_scan(definition, self._time_range(start_date, end_date, time_range), site_id)

        def compute(backend: Backend) -> FunnelSegmentResult:
            calculator = FunnelCalculator(config, backend.use_polars)
            return calculator.calculate_funnel_segments(
                self._scan(backend, scan), definition.steps, segment_by
            )

        context = {"organization_id": organization_id, "funnel_id": funnel_id}
        segments, status, backend, error = self._run("funnel_segments", compute, context)
        if segments is None:
            segments = FunnelSegmentResult(segment_by=segment_by, segments={})
        return AnalysisOutcome(value=segments, status=status, backend=backend, error=error)

    def get_funnel_user_paths(self, organization_id: str, funnel_id: str, **kwargs):
        """Per-user paths through a funnel are not computed by this engine"""
        raise AnalysisNotImplementedError("funnel_user_paths")

    # ------------------------------------------------------------------
    # Cohorts
    # ------------------------------------------------------------------

    @staticmethod
    def _cohort_scan(
        organization_id: str,
        definition: CohortDefinition,
        time_range: TimeRange,
        site_id: Optional[str],
    ) -> EventScan:
        activity = (
            definition.revenue_event
            if definition.cohort_type == CohortType.REVENUE
            else definition.return_event
        )
        return EventScan(
            organization_id=organization_id,
            time_range=time_range,
            matchers=(definition.entry_event, activity),
            site_id=site_id or definition.site_id,
        )

    def analyze_cohorts(
        self,
        organization_id: str,
        definition: CohortDefinition,
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
        site_id: Optional[str] = None,
    ) -> CohortAnalysisResult:
        """
        Acquisition, behavioral or revenue cohorts over the requested range.

        Backend failures never raise; see the module docstring.
        """
        start_time = time.time()
        scan = self._cohort_scan(
            organization_id, definition, self._time_range(start_date, end_date, time_range), site_id
        )

        def compute(backend: Backend) -> CohortAnalysisResult:
            events = self._scan(backend, scan)
            return CohortCalculator(definition, backend.use_polars).calculate_cohorts(events)

        context = {
            "organization_id": organization_id,
            "cohort_type": definition.cohort_type.value,
            "cohort_period": definition.cohort_period.value,
        }
        result, status, backend, error = self._run("cohort", compute, context)
        if result is None:
            result = empty_cohort_result(definition)
        result.status = status
        result.backend = backend
        result.error = error

        self.sink.emit(
            COHORT_COMPUTED,
            {
                **context,
                "backend": backend,
                "status": status.value,
                "total_cohorts": len(result.cohorts),
                "duration_seconds": round(time.time() - start_time, 4),
            },
        )
        return result

    def analyze_cohort_request(
        self, organization_id: str, request: dict[str, Any]
    ) -> dict[str, Any]:
        """Cohort request/response in the external JSON contract"""
        try:
            definition = CohortDefinition.from_dict(request)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid cohort request: {e}") from e
        result = self.analyze_cohorts(
            organization_id,
            definition,
            start_date=request.get("startDate"),
            end_date=request.get("endDate"),
            time_range=request.get("timeRange"),
            site_id=request.get("siteId"),
        )
        return result.to_dict()

    def _derived(self, result: CohortAnalysisResult, value: T) -> AnalysisOutcome:
        return AnalysisOutcome(
            value=value, status=result.status, backend=result.backend, error=result.error
        )

    def get_retention_curves(
        self, organization_id: str, definition: CohortDefinition, **range_kwargs
    ) -> AnalysisOutcome:
        """Per-cohort retention series plus the size-weighted average curve"""
        result = self.analyze_cohorts(organization_id, definition, **range_kwargs)
        curves, average_curve = retention_curves(result)
        return self._derived(result, {"curves": curves, "average_curve": average_curve})

    def get_cohort_size_trends(
        self, organization_id: str, definition: CohortDefinition, **range_kwargs
    ) -> AnalysisOutcome:
        result = self.analyze_cohorts(organization_id, definition, **range_kwargs)
        return self._derived(result, cohort_size_trends(result))

    def compare_cohorts(
        self,
        organization_id: str,
        definition: CohortDefinition,
        cohort_a: datetime,
        cohort_b: datetime,
        period: str,
        **range_kwargs,
    ) -> AnalysisOutcome:
        result = self.analyze_cohorts(organization_id, definition, **range_kwargs)
        if result.status == AnalysisStatus.FAILED:
            return self._derived(result, None)
        return self._derived(result, compare_cohorts(result, cohort_a, cohort_b, period))

    def get_cohort_users(
        self,
        organization_id: str,
        definition: CohortDefinition,
        cohort_date: datetime,
        limit: int = 100,
        offset: int = 0,
        start_date: Any = None,
        end_date: Any = None,
        time_range: Optional[str] = None,
        site_id: Optional[str] = None,
    ) -> AnalysisOutcome:
        if limit <= 0 or offset < 0:
            raise InvalidRequestError("limit must be positive and offset non-negative")
        scan = self._cohort_scan(
            organization_id, definition, self._time_range(start_date, end_date, time_range), site_id
        )

        def compute(backend: Backend):
            calculator = CohortCalculator(definition, backend.use_polars)
            return calculator.cohort_users(self._scan(backend, scan), cohort_date, limit, offset)

        context = {"organization_id": organization_id, "cohort_date": cohort_date.isoformat()}
        users, status, backend, error = self._run("cohort_users", compute, context)
        return AnalysisOutcome(value=users or [], status=status, backend=backend, error=error)

    def export_cohort_data(
        self,
        organization_id: str,
        definition: CohortDefinition,
        fmt: str = "csv",
        **range_kwargs,
    ) -> AnalysisOutcome:
        """Cohort table as CSV text or JSON records"""
        if fmt not in ("csv", "json"):
            raise InvalidRequestError(f"Unsupported export format: {fmt}")
        result = self.analyze_cohorts(organization_id, definition, **range_kwargs)
        return self._derived(result, export_cohort_data(result, fmt))
