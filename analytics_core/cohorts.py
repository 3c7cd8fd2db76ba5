"""
Cohort analysis engine.

CohortCalculator assigns each user to the period bucket of their first
qualifying entry event, then measures return activity (retention) or revenue
in the period windows that follow. As with FunnelCalculator, the Polars
implementation serves the columnar backend and the Pandas implementation the
row-oriented backend.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union

import numpy as np
import pandas as pd
import polars as pl

from models import (
    AnalysisStatus,
    CohortAnalysisResult,
    CohortBucket,
    CohortDefinition,
    CohortPeriodMetrics,
    CohortSizeTrend,
    CohortType,
    CohortUser,
    RetentionCurve,
    StatSignificanceResult,
)

from .calculator import (
    _funnel_performance_monitor,
    matcher_expr,
    matcher_mask_pandas,
    numeric_property,
    numeric_property_expr,
    prepare_events_pandas,
    prepare_events_polars,
    round2,
    two_proportion_test,
)
from .exceptions import InvalidRequestError
from .periods import period_index_expr, period_index_series, truncate_expr, truncate_series

Frame = Union[pd.DataFrame, pl.DataFrame]

# (cohort_date, offset) -> (distinct users, revenue or None)
Activity = dict[tuple[datetime, int], tuple[int, Optional[float]]]


def _to_datetime(value) -> datetime:
    return pd.Timestamp(value).to_pydatetime()


def _rate(part: float, whole: float) -> float:
    return round2(part / whole * 100) if whole > 0 else 0.0


def _ratio(part: float, whole: float) -> float:
    return round2(part / whole) if whole > 0 else 0.0


def revenue_period_metrics(
    offset: int, cohort_size: int, buyers: int, revenue: float
) -> CohortPeriodMetrics:
    return CohortPeriodMetrics(
        offset=offset,
        retained_users=buyers,
        retention_rate=_rate(buyers, cohort_size),
        revenue=round2(revenue),
        buyers=buyers,
        conversion_rate=_rate(buyers, cohort_size),
        revenue_per_user=_ratio(revenue, cohort_size),
        avg_order_value=_ratio(revenue, buyers),
    )


def build_cohort_result(
    definition: CohortDefinition,
    sizes: dict[datetime, int],
    activity: Activity,
    backend: Optional[str] = None,
) -> CohortAnalysisResult:
    """
    Turn cohort sizes and per-period activity into buckets, summary and curves.

    Retention cohorts report retained users and retention rate per offset.
    Revenue cohorts report revenue, buyers and the derived per-user figures.
    Every ratio with a zero denominator is 0.
    """
    revenue_mode = definition.cohort_type == CohortType.REVENUE
    offsets = definition.offsets
    labels = [definition.period_label(offset) for offset in offsets]

    cohorts = []
    for cohort_date in sorted(sizes):
        size = sizes[cohort_date]
        periods = {}
        for offset, label in zip(offsets, labels):
            users, revenue = activity.get((cohort_date, offset), (0, 0.0))
            if revenue_mode:
                periods[label] = revenue_period_metrics(offset, size, users, revenue or 0.0)
            else:
                periods[label] = CohortPeriodMetrics(
                    offset=offset, retained_users=users, retention_rate=_rate(users, size)
                )
        cohorts.append(CohortBucket(cohort_date=cohort_date, cohort_size=size, periods=periods))

    total_users = sum(sizes.values())
    summary = {
        "total_cohorts": len(cohorts),
        "total_users": total_users,
        "average_cohort_size": _ratio(total_users, len(cohorts)),
        "periods": labels,
    }

    result = CohortAnalysisResult(
        cohort_type=definition.cohort_type,
        cohort_period=definition.cohort_period,
        cohorts=cohorts,
        summary=summary,
        backend=backend,
    )

    if not revenue_mode:
        result.retention_rates = {
            label: _rate(sum(b.periods[label].retained_users for b in cohorts), total_users)
            for label in labels
        }
        return result

    by_period = {}
    for label, offset in zip(labels, offsets):
        revenue = sum(b.periods[label].revenue for b in cohorts)
        buyers = sum(b.periods[label].buyers for b in cohorts)
        by_period[label] = revenue_period_metrics(offset, total_users, buyers, revenue).to_dict()

    total_revenue = round2(sum(m["revenue"] for m in by_period.values()))
    result.revenue_metrics = {
        "currency": definition.currency,
        "total_revenue": total_revenue,
        "revenue_per_user": _ratio(total_revenue, total_users),
        "by_period": by_period,
    }
    result.ltv = {}
    for bucket in cohorts:
        cumulative = 0.0
        curve = []
        for label in labels:
            cumulative += bucket.periods[label].revenue
            curve.append(_ratio(cumulative, bucket.cohort_size))
        result.ltv[bucket.cohort_date.date().isoformat()] = curve
    return result


def empty_cohort_result(
    definition: CohortDefinition,
    status: AnalysisStatus = AnalysisStatus.OK,
    error: Optional[str] = None,
) -> CohortAnalysisResult:
    """Zero-valued result with the same shape a computed result would have"""
    result = build_cohort_result(definition, {}, {})
    result.status = status
    result.error = error
    return result


class CohortCalculator:
    """Cohort assignment and retention/revenue aggregation"""

    def __init__(self, definition: CohortDefinition, use_polars: bool = True):
        self.definition = definition
        self.use_polars = use_polars
        self._performance_metrics = {}
        self.logger = logging.getLogger(__name__)

    @property
    def engine_name(self) -> str:
        return "polars" if self.use_polars else "pandas"

    @property
    def _activity_matcher(self):
        if self.definition.cohort_type == CohortType.REVENUE:
            return self.definition.revenue_event
        return self.definition.return_event

    def _prepare(self, events_df: Frame) -> Frame:
        if self.use_polars:
            return prepare_events_polars(events_df)
        return prepare_events_pandas(events_df)

    # ------------------------------------------------------------------
    # Cohort assignment
    # ------------------------------------------------------------------

    def assign_cohorts(self, events_df: Frame) -> Frame:
        """
        One row per user: ``user_id``, ``first_seen`` (earliest entry event)
        and ``cohort_date`` (first_seen truncated to the cohort period).
        """
        events = self._prepare(events_df)
        if self.use_polars:
            return self._assign_cohorts_polars(events)
        return self._assign_cohorts_pandas(events)

    @_funnel_performance_monitor("_assign_cohorts_polars")
    def _assign_cohorts_polars(self, events: pl.DataFrame) -> pl.DataFrame:
        return (
            events.filter(matcher_expr(self.definition.entry_event))
            .group_by("user_id")
            .agg(pl.col("timestamp").min().alias("first_seen"))
            .with_columns(truncate_expr("first_seen", self.definition.cohort_period).alias("cohort_date"))
            .sort("user_id")
        )

    @_funnel_performance_monitor("_assign_cohorts_pandas")
    def _assign_cohorts_pandas(self, events: pd.DataFrame) -> pd.DataFrame:
        entries = events[matcher_mask_pandas(self.definition.entry_event, events)]
        assignments = (
            entries.groupby("user_id", sort=True)["timestamp"]
            .min()
            .rename("first_seen")
            .reset_index()
        )
        assignments["cohort_date"] = truncate_series(
            pd.to_datetime(assignments["first_seen"]), self.definition.cohort_period
        )
        return assignments

    @staticmethod
    def cohort_sizes(assignments: Frame) -> dict[datetime, int]:
        if isinstance(assignments, pl.DataFrame):
            grouped = assignments.group_by("cohort_date").agg(pl.len().alias("size"))
            return {
                _to_datetime(row["cohort_date"]): int(row["size"])
                for row in grouped.iter_rows(named=True)
            }
        counts = assignments.groupby("cohort_date", sort=True)["user_id"].nunique()
        return {_to_datetime(date): int(size) for date, size in counts.items()}

    # ------------------------------------------------------------------
    # Period activity
    # ------------------------------------------------------------------

    def _activity_frame(self, events: Frame, assignments: Frame) -> Frame:
        """Qualifying activity events tagged with the user's cohort and period offset"""
        if self.use_polars:
            return self._activity_frame_polars(events, assignments)
        return self._activity_frame_pandas(events, assignments)

    def _activity_frame_polars(
        self, events: pl.DataFrame, assignments: pl.DataFrame
    ) -> pl.DataFrame:
        revenue_mode = self.definition.cohort_type == CohortType.REVENUE
        activity = events.filter(matcher_expr(self._activity_matcher))
        if revenue_mode:
            # missing or non-numeric values drop the event entirely
            activity = activity.with_columns(
                numeric_property_expr(self.definition.value_property).alias("_value")
            ).filter(pl.col("_value").is_not_null())
        else:
            activity = activity.with_columns(pl.lit(None, dtype=pl.Float64).alias("_value"))

        return (
            activity.select(["user_id", "timestamp", "_value"])
            .join(assignments.select(["user_id", "cohort_date"]), on="user_id", how="inner")
            .filter(pl.col("timestamp") >= pl.col("cohort_date"))
            .with_columns(
                period_index_expr("timestamp", "cohort_date", self.definition.unit)
                .cast(pl.Int64)
                .alias("_offset")
            )
            .filter(pl.col("_offset").is_in(self.definition.offsets))
        )

    def _activity_frame_pandas(
        self, events: pd.DataFrame, assignments: pd.DataFrame
    ) -> pd.DataFrame:
        revenue_mode = self.definition.cohort_type == CohortType.REVENUE
        activity = events[matcher_mask_pandas(self._activity_matcher, events)]
        activity = activity[["user_id", "timestamp", "_props"]].copy()
        if revenue_mode:
            activity["_value"] = [
                numeric_property(props, self.definition.value_property)
                for props in activity["_props"]
            ]
            activity = activity[activity["_value"].notna()]
        else:
            activity["_value"] = np.nan
        activity = activity.drop(columns=["_props"])

        columns = ["user_id", "timestamp", "_value", "cohort_date", "_offset"]
        if activity.empty or assignments.empty:
            return pd.DataFrame(columns=columns)

        activity = activity.merge(assignments[["user_id", "cohort_date"]], on="user_id", how="inner")
        activity = activity[activity["timestamp"] >= activity["cohort_date"]].copy()
        if activity.empty:
            return pd.DataFrame(columns=columns)
        activity["_offset"] = period_index_series(
            activity["timestamp"], activity["cohort_date"], self.definition.unit
        ).astype("int64")
        activity["_value"] = activity["_value"].astype(float)
        return activity[activity["_offset"].isin(self.definition.offsets)][columns]

    def _summarize_activity(self, activity: Frame) -> Activity:
        revenue_mode = self.definition.cohort_type == CohortType.REVENUE
        summary: Activity = {}
        if isinstance(activity, pl.DataFrame):
            grouped = activity.group_by(["cohort_date", "_offset"]).agg(
                [
                    pl.col("user_id").n_unique().alias("users"),
                    pl.col("_value").sum().alias("revenue"),
                ]
            )
            for row in grouped.iter_rows(named=True):
                revenue = float(row["revenue"]) if revenue_mode else None
                summary[(_to_datetime(row["cohort_date"]), int(row["_offset"]))] = (
                    int(row["users"]),
                    revenue,
                )
            return summary

        for (cohort_date, offset), group in activity.groupby(["cohort_date", "_offset"], sort=True):
            revenue = float(group["_value"].sum()) if revenue_mode else None
            summary[(_to_datetime(cohort_date), int(offset))] = (
                int(group["user_id"].nunique()),
                revenue,
            )
        return summary

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    @_funnel_performance_monitor("calculate_cohorts")
    def calculate_cohorts(self, events_df: Frame) -> CohortAnalysisResult:
        """Retention or revenue cohorts, depending on the definition's cohort type"""
        events = self._prepare(events_df)
        if self.use_polars:
            assignments = self._assign_cohorts_polars(events)
        else:
            assignments = self._assign_cohorts_pandas(events)

        sizes = self.cohort_sizes(assignments)
        if not self.definition.offsets or not sizes:
            return build_cohort_result(self.definition, sizes, {}, backend=self.engine_name)

        activity = self._summarize_activity(self._activity_frame(events, assignments))
        self.logger.debug(
            f"{len(sizes)} cohorts, {sum(sizes.values())} users, {len(activity)} active cohort periods"
        )
        return build_cohort_result(self.definition, sizes, activity, backend=self.engine_name)

    @_funnel_performance_monitor("cohort_users")
    def cohort_users(
        self, events_df: Frame, cohort_date: datetime, limit: int = 100, offset: int = 0
    ) -> list[CohortUser]:
        """Paginated users of one cohort bucket with their retained period offsets"""
        events = self._prepare(events_df)
        assignments = (
            self._assign_cohorts_polars(events)
            if self.use_polars
            else self._assign_cohorts_pandas(events)
        )
        activity = self._activity_frame(events, assignments)

        if self.use_polars:
            assignments = assignments.to_pandas()
            activity = activity.to_pandas()
            events = events.to_pandas()

        members = assignments[pd.to_datetime(assignments["cohort_date"]) == pd.Timestamp(cohort_date)]
        members = members.sort_values("user_id").iloc[offset : offset + limit]
        if members.empty:
            return []

        user_stats = events.groupby("user_id")["timestamp"].agg(["max", "count"])
        offsets_by_user: dict[str, set[int]] = {}
        for user_id, period_offset in zip(activity["user_id"], activity["_offset"]):
            offsets_by_user.setdefault(user_id, set()).add(int(period_offset))

        users = []
        for row in members.itertuples(index=False):
            retained = sorted(offsets_by_user.get(row.user_id, set()))
            users.append(
                CohortUser(
                    user_id=row.user_id,
                    first_seen=_to_datetime(row.first_seen),
                    last_seen=_to_datetime(user_stats.at[row.user_id, "max"]),
                    retention_periods=retained,
                    is_retained=any(o > 0 for o in retained),
                    events=int(user_stats.at[row.user_id, "count"]),
                )
            )
        return users


def retention_curves(result: CohortAnalysisResult) -> tuple[list[RetentionCurve], list[float]]:
    """Per-cohort retention series and the size-weighted average curve"""
    curves = []
    labels = result.summary.get("periods", [])
    for bucket in result.cohorts:
        data = [bucket.periods[label].retention_rate for label in labels]
        curves.append(
            RetentionCurve(
                cohort_date=bucket.cohort_date,
                cohort_size=bucket.cohort_size,
                retention_data=data,
                average_retention=round2(float(np.mean(data))) if data else 0.0,
            )
        )

    total = sum(b.cohort_size for b in result.cohorts)
    average_curve = [
        _rate(sum(b.periods[label].retained_users for b in result.cohorts), total)
        for label in labels
    ]
    return curves, average_curve


def cohort_size_trends(result: CohortAnalysisResult) -> list[CohortSizeTrend]:
    trends = []
    cumulative = 0
    previous = None
    for bucket in result.cohorts:
        cumulative += bucket.cohort_size
        growth = (
            round2((bucket.cohort_size - previous) / previous * 100)
            if previous
            else 0.0
        )
        trends.append(
            CohortSizeTrend(
                cohort_date=bucket.cohort_date,
                cohort_size=bucket.cohort_size,
                growth_rate=growth,
                cumulative_size=cumulative,
            )
        )
        previous = bucket.cohort_size
    return trends


def compare_cohorts(
    result: CohortAnalysisResult, cohort_a: datetime, cohort_b: datetime, period: str
) -> Optional[StatSignificanceResult]:
    """Two-proportion test on the retained share of two cohorts for one period"""
    buckets = {b.cohort_date: b for b in result.cohorts}
    missing = [d for d in (cohort_a, cohort_b) if d not in buckets]
    if missing:
        raise InvalidRequestError(f"Unknown cohort date(s): {[d.isoformat() for d in missing]}")
    a, b = buckets[cohort_a], buckets[cohort_b]
    if period not in a.periods:
        raise InvalidRequestError(f"Unknown period: {period}")
    return two_proportion_test(
        cohort_a.date().isoformat(),
        a.periods[period].retained_users,
        a.cohort_size,
        cohort_b.date().isoformat(),
        b.periods[period].retained_users,
        b.cohort_size,
    )


def export_cohort_data(result: CohortAnalysisResult, fmt: str = "csv") -> Union[str, list[dict[str, Any]]]:
    """One row per cohort and period; CSV text or JSON-ready records"""
    rows = []
    for bucket in result.cohorts:
        for label, metrics in bucket.periods.items():
            rows.append(
                {
                    "cohort_date": bucket.cohort_date.date().isoformat(),
                    "cohort_size": bucket.cohort_size,
                    "period": label,
                    **metrics.to_dict(),
                }
            )
    if fmt == "json":
        return rows
    if fmt != "csv":
        raise InvalidRequestError(f"Unsupported export format: {fmt}")

    if result.cohort_type == CohortType.REVENUE:
        metric_columns = ["revenue", "buyers", "conversion_rate", "revenue_per_user", "avg_order_value"]
    else:
        metric_columns = ["retained_users", "retention_rate"]
    columns = ["cohort_date", "cohort_size", "period", *metric_columns]
    return pd.DataFrame(rows, columns=columns).to_csv(index=False)
