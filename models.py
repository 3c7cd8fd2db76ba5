from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class CohortPeriod(Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class CohortType(Enum):
    ACQUISITION = "acquisition"
    BEHAVIORAL = "behavioral"
    REVENUE = "revenue"


class WindowAnchor(Enum):
    PREVIOUS_STEP = "previous_step"
    FIRST_STEP = "first_step"


class AnalysisStatus(Enum):
    OK = "ok"
    DEGRADED = "degraded"  # served by the fallback backend
    FAILED = "failed"  # both backends failed, result is zero-valued


RELATIVE_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "180d": timedelta(days=180),
    "365d": timedelta(days=365),
}


@dataclass(frozen=True)
class TimeRange:
    """Closed time range [start, end] used for every scan"""

    start: datetime
    end: datetime

    @classmethod
    def resolve(
        cls,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        relative: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "TimeRange":
        """
        Build a range from explicit bounds or a relative token such as "30d".

        Explicit bounds win over the relative token. Missing bounds default to
        the last 30 days ending at ``now``.
        """
        from analytics_core.exceptions import InvalidRequestError

        now = now or datetime.now()
        end = end or now
        if start is None:
            if relative is not None:
                if relative not in RELATIVE_RANGES:
                    raise InvalidRequestError(f"Unknown time range: {relative}")
                start = end - RELATIVE_RANGES[relative]
            else:
                start = end - timedelta(days=30)
        return cls(start=start, end=end)


@dataclass(frozen=True)
class Event:
    """A single persisted analytics event"""

    organization_id: str
    event_type: str
    event_name: str
    timestamp: datetime
    user_id: Optional[str] = None
    site_id: Optional[str] = None
    session_id: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventMatcher:
    """Matches events by type, name and property equality filters.

    A ``None`` type or name matches any value.
    """

    event_type: Optional[str] = None
    event_name: Optional[str] = None
    filters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "eventName": self.event_name,
            "filters": dict(self.filters),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "EventMatcher":
        if not data:
            return cls()
        return cls(
            event_type=data.get("eventType", data.get("event_type")),
            event_name=data.get("eventName", data.get("event_name")),
            filters=dict(data.get("filters") or {}),
        )


@dataclass(frozen=True)
class FunnelStep:
    """One ordered step of a funnel"""

    name: str
    event_type: str
    event_name: str
    order: int
    filters: dict[str, Any] = field(default_factory=dict)

    @property
    def matcher(self) -> EventMatcher:
        return EventMatcher(self.event_type, self.event_name, dict(self.filters))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "eventType": self.event_type,
            "eventName": self.event_name,
            "filters": dict(self.filters),
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FunnelStep":
        event_name = data.get("eventName", data.get("event_name"))
        return cls(
            name=data.get("name") or event_name,
            event_type=data.get("eventType", data.get("event_type")),
            event_name=event_name,
            order=int(data["order"]),
            filters=dict(data.get("filters") or {}),
        )


@dataclass
class FunnelDefinition:
    """Funnel owned by an organization; read-only for the engine"""

    id: str
    organization_id: str
    name: str
    steps: list[FunnelStep]
    conversion_window_hours: int = 24
    description: Optional[str] = None

    def __post_init__(self):
        from analytics_core.exceptions import DefinitionError

        self.steps = sorted(self.steps, key=lambda s: s.order)
        orders = [s.order for s in self.steps]
        if orders:
            if len(set(orders)) != len(orders):
                raise DefinitionError(f"Funnel {self.id} has duplicate step orders: {orders}")
            if orders[0] not in (0, 1):
                raise DefinitionError(
                    f"Funnel {self.id} step orders must start at 0 or 1, got {orders[0]}"
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
            "conversionWindowHours": self.conversion_window_hours,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FunnelDefinition":
        return cls(
            id=str(data["id"]),
            organization_id=str(data.get("organizationId", data.get("organization_id"))),
            name=data.get("name", ""),
            description=data.get("description"),
            steps=[FunnelStep.from_dict(step) for step in data.get("steps", [])],
            conversion_window_hours=int(
                data.get("conversionWindowHours", data.get("conversion_window_hours", 24))
            ),
        )


@dataclass
class FunnelConfig:
    """Configuration for funnel analysis"""

    conversion_window_hours: int = 24
    window_anchor: WindowAnchor = WindowAnchor.PREVIOUS_STEP
    segment_by: Optional[str] = None
    segment_values: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "conversion_window_hours": self.conversion_window_hours,
            "window_anchor": self.window_anchor.value,
            "segment_by": self.segment_by,
            "segment_values": self.segment_values,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FunnelConfig":
        """Create from dictionary for JSON deserialization"""
        return cls(
            conversion_window_hours=data.get("conversion_window_hours", 24),
            window_anchor=WindowAnchor(data.get("window_anchor", "previous_step")),
            segment_by=data.get("segment_by"),
            segment_values=data.get("segment_values"),
        )


@dataclass
class FunnelStepResult:
    step: str
    step_number: int
    users: int
    conversion_rate: float
    drop_off_rate: float


@dataclass
class StatSignificanceResult:
    """Statistical significance test result"""

    segment_a: str
    segment_b: str
    conversion_a: float
    conversion_b: float
    p_value: float
    is_significant: bool
    confidence_interval: tuple[float, float]
    z_score: float


@dataclass
class FunnelAnalysisResult:
    """Results of funnel analysis"""

    steps: list[FunnelStepResult]
    conversion_rate: float
    total_users: int
    funnel_id: Optional[str] = None
    funnel_name: Optional[str] = None
    window_hours: Optional[int] = None
    status: AnalysisStatus = AnalysisStatus.OK
    backend: Optional[str] = None
    error: Optional[str] = None

    @property
    def users_count(self) -> list[int]:
        return [step.users for step in self.steps]

    @classmethod
    def empty(cls, **kwargs) -> "FunnelAnalysisResult":
        return cls(steps=[], conversion_rate=0.0, total_users=0, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "funnel_id": self.funnel_id,
            "funnel_name": self.funnel_name,
            "steps": [asdict(step) for step in self.steps],
            "conversion_rate": self.conversion_rate,
            "total_users": self.total_users,
            "window_hours": self.window_hours,
            "status": self.status.value,
            "backend": self.backend,
            "error": self.error,
        }


@dataclass
class FunnelTrendPoint:
    period_start: datetime
    result: FunnelAnalysisResult


@dataclass
class FunnelSegmentResult:
    """Funnel broken down by the values of one event property"""

    segment_by: str
    segments: dict[str, FunnelAnalysisResult]
    statistical_tests: list[StatSignificanceResult] = field(default_factory=list)


@dataclass
class CohortDefinition:
    """Parameters of a cohort analysis"""

    cohort_type: CohortType = CohortType.ACQUISITION
    cohort_period: CohortPeriod = CohortPeriod.WEEK
    retention_periods: int = 12
    entry_event: EventMatcher = field(default_factory=EventMatcher)
    return_event: EventMatcher = field(default_factory=EventMatcher)
    revenue_event: EventMatcher = field(
        default_factory=lambda: EventMatcher(event_type="purchase")
    )
    period_offsets: Optional[list[int]] = None
    retention_unit: Optional[CohortPeriod] = None
    value_property: str = "value"
    currency: str = "USD"
    site_id: Optional[str] = None

    @property
    def offsets(self) -> list[int]:
        if self.period_offsets is not None:
            return sorted(set(int(o) for o in self.period_offsets))
        return list(range(self.retention_periods + 1))

    @property
    def unit(self) -> CohortPeriod:
        return self.retention_unit or self.cohort_period

    def period_label(self, offset: int) -> str:
        return f"{self.unit.value}_{offset}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "cohortType": self.cohort_type.value,
            "cohortPeriod": self.cohort_period.value,
            "retentionPeriods": self.retention_periods,
            "triggerEvent": self.entry_event.to_dict(),
            "returnEvent": self.return_event.to_dict(),
            "revenueEvent": self.revenue_event.to_dict(),
            "periodOffsets": self.period_offsets,
            "retentionUnit": self.retention_unit.value if self.retention_unit else None,
            "valueProperty": self.value_property,
            "currency": self.currency,
            "siteId": self.site_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CohortDefinition":
        retention_unit = data.get("retentionUnit")
        revenue_event = data.get("revenueEvent")
        return cls(
            cohort_type=CohortType(data.get("cohortType", "acquisition")),
            cohort_period=CohortPeriod(data.get("cohortPeriod", "week")),
            retention_periods=int(data.get("retentionPeriods", 12)),
            entry_event=EventMatcher.from_dict(data.get("triggerEvent")),
            return_event=EventMatcher.from_dict(data.get("returnEvent")),
            revenue_event=(
                EventMatcher.from_dict(revenue_event)
                if revenue_event
                else EventMatcher(event_type="purchase")
            ),
            period_offsets=data.get("periodOffsets"),
            retention_unit=CohortPeriod(retention_unit) if retention_unit else None,
            value_property=data.get("valueProperty", "value"),
            currency=data.get("currency", "USD"),
            site_id=data.get("siteId"),
        )


@dataclass
class CohortPeriodMetrics:
    """Metrics of one cohort for one period offset"""

    offset: int
    retained_users: int = 0
    retention_rate: float = 0.0
    revenue: Optional[float] = None
    buyers: Optional[int] = None
    conversion_rate: Optional[float] = None
    revenue_per_user: Optional[float] = None
    avg_order_value: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        if self.revenue is None:
            return {
                "retained_users": self.retained_users,
                "retention_rate": self.retention_rate,
            }
        return {
            "revenue": self.revenue,
            "buyers": self.buyers,
            "conversion_rate": self.conversion_rate,
            "revenue_per_user": self.revenue_per_user,
            "avg_order_value": self.avg_order_value,
        }


@dataclass
class CohortBucket:
    cohort_date: datetime
    cohort_size: int
    periods: dict[str, CohortPeriodMetrics] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cohort_date": self.cohort_date.date().isoformat(),
            "cohort_size": self.cohort_size,
            "periods": {label: m.to_dict() for label, m in self.periods.items()},
        }


@dataclass
class CohortAnalysisResult:
    """Results of cohort analysis"""

    cohort_type: CohortType
    cohort_period: CohortPeriod
    cohorts: list[CohortBucket]
    summary: dict[str, Any] = field(default_factory=dict)
    retention_rates: Optional[dict[str, float]] = None
    revenue_metrics: Optional[dict[str, Any]] = None
    ltv: Optional[dict[str, list[float]]] = None
    status: AnalysisStatus = AnalysisStatus.OK
    backend: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "cohort_type": self.cohort_type.value,
            "cohort_period": self.cohort_period.value,
            "cohorts": [bucket.to_dict() for bucket in self.cohorts],
            "summary": self.summary,
            "status": self.status.value,
            "backend": self.backend,
            "error": self.error,
        }
        if self.retention_rates is not None:
            data["retention_rates"] = self.retention_rates
        if self.revenue_metrics is not None:
            data["revenue_metrics"] = self.revenue_metrics
            data["ltv"] = self.ltv
        return data


@dataclass
class RetentionCurve:
    cohort_date: datetime
    cohort_size: int
    retention_data: list[float]
    average_retention: float


@dataclass
class CohortSizeTrend:
    cohort_date: datetime
    cohort_size: int
    growth_rate: float
    cumulative_size: int


@dataclass
class CohortUser:
    user_id: str
    first_seen: datetime
    last_seen: datetime
    retention_periods: list[int]
    is_retained: bool
    events: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["first_seen"] = self.first_seen.isoformat()
        data["last_seen"] = self.last_seen.isoformat()
        return data
