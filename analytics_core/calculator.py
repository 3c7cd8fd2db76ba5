"""
Core funnel calculation engine.

This module contains the FunnelCalculator class which matches per-user event
sequences against an ordered funnel definition. The Polars implementation
serves the columnar backend and the Pandas implementation serves the
row-oriented backend; both yield the same progression and the same counts.
"""

import json
import logging
import math
import re
import time
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import wraps
from typing import Any, Optional, Union

import numpy as np
import pandas as pd
import polars as pl
import scipy.stats as stats

from models import (
    EventMatcher,
    FunnelAnalysisResult,
    FunnelConfig,
    FunnelSegmentResult,
    FunnelStep,
    FunnelStepResult,
    FunnelTrendPoint,
    StatSignificanceResult,
    WindowAnchor,
)

from .periods import truncate_expr, truncate_series

EVENT_SCHEMA = {
    "user_id": pl.Utf8,
    "event_type": pl.Utf8,
    "event_name": pl.Utf8,
    "timestamp": pl.Datetime("us"),
    "properties": pl.Utf8,
}

Frame = Union[pd.DataFrame, pl.DataFrame]

# plain decimal strings only; both engines parse property values with this grammar
NUMERIC_PATTERN = r"^-?[0-9]+(\.[0-9]+)?([eE][+-]?[0-9]+)?$"
_NUMERIC_RE = re.compile(NUMERIC_PATTERN)


# Performance monitoring decorator
def _funnel_performance_monitor(func_name: str):
    """Decorator for monitoring funnel calculation performance"""

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

                self.logger.debug(
                    f"{type(self).__name__}.{func_name} executed in {execution_time:.4f} seconds"
                )
                return result

            except Exception as e:
                execution_time = time.time() - start_time
                self.logger.error(
                    f"{type(self).__name__}.{func_name} failed after {execution_time:.4f} seconds: {str(e)}"
                )
                raise

        return wrapper

    return decorator


def round2(value: Optional[float]) -> float:
    """Round half up to two decimals (0.125 -> 0.13, 0.135 -> 0.14)"""
    if value is None or not math.isfinite(value):
        return 0.0
    return float(Decimal(repr(float(value))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def property_token(value: Any) -> str:
    """Canonical string form used to compare property values on both engines"""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def parse_properties(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, float) and math.isnan(raw)) or raw == "":
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def numeric_property(props: dict[str, Any], key: str) -> Optional[float]:
    """Finite numeric value of a property, or None when missing or non-numeric"""
    value = props.get(key)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not _NUMERIC_RE.fullmatch(value):
            return None
        number = float(value)
    else:
        return None
    return number if math.isfinite(number) else None


def json_field_expr(key: str, column: str = "properties") -> pl.Expr:
    return pl.col(column).str.json_path_match(f"$.{key}")


def numeric_property_expr(key: str) -> pl.Expr:
    """Polars counterpart of ``numeric_property``; invalid values become null"""
    raw = json_field_expr(key)
    value = (
        pl.when(raw.str.contains(NUMERIC_PATTERN))
        .then(raw)
        .otherwise(None)
        .cast(pl.Float64, strict=False)
    )
    return pl.when(value.is_finite()).then(value).otherwise(None)


def matcher_expr(matcher: EventMatcher) -> pl.Expr:
    """Polars predicate for an event matcher"""
    expr = pl.lit(True)
    if matcher.event_type is not None:
        expr = expr & (pl.col("event_type") == matcher.event_type)
    if matcher.event_name is not None:
        expr = expr & (pl.col("event_name") == matcher.event_name)
    for key, value in matcher.filters.items():
        expr = expr & (json_field_expr(key) == property_token(value)).fill_null(False)
    return expr


def matches_event(matcher: EventMatcher, event_type: str, event_name: str, props: dict) -> bool:
    """Row-wise counterpart of ``matcher_expr``"""
    if matcher.event_type is not None and event_type != matcher.event_type:
        return False
    if matcher.event_name is not None and event_name != matcher.event_name:
        return False
    for key, value in matcher.filters.items():
        if key not in props or props[key] is None:
            return False
        if property_token(props[key]) != property_token(value):
            return False
    return True


def matcher_mask_pandas(matcher: EventMatcher, events: pd.DataFrame) -> pd.Series:
    if events.empty:
        return pd.Series([], dtype=bool)
    return pd.Series(
        [
            matches_event(matcher, t, n, p)
            for t, n, p in zip(events["event_type"], events["event_name"], events["_props"])
        ],
        index=events.index,
        dtype=bool,
    )


def prepare_events_polars(events: Frame) -> pl.DataFrame:
    """Normalize a scan result for the Polars matcher and tag each row with ``_pos``"""
    if isinstance(events, pd.DataFrame):
        prepared = prepare_events_pandas(events)
        if prepared.empty:
            return pl.DataFrame(schema={**EVENT_SCHEMA, "_pos": pl.UInt32})
        events = pl.from_pandas(prepared.drop(columns=["_props", "_pos"]))
    if events.is_empty() or any(col not in events.columns for col in EVENT_SCHEMA):
        return pl.DataFrame(schema={**EVENT_SCHEMA, "_pos": pl.UInt32})

    ts_dtype = events.schema["timestamp"]
    if ts_dtype == pl.Utf8:
        timestamp = pl.col("timestamp").str.to_datetime(time_unit="us")
    elif isinstance(ts_dtype, pl.Datetime) and ts_dtype.time_zone is not None:
        # stored as UTC instants; compare as naive UTC
        timestamp = pl.col("timestamp").dt.convert_time_zone("UTC").dt.replace_time_zone(None)
    else:
        timestamp = pl.col("timestamp")

    return (
        events.with_columns(
            [
                pl.col("user_id").cast(pl.Utf8),
                pl.col("event_type").cast(pl.Utf8),
                pl.col("event_name").cast(pl.Utf8),
                pl.col("properties").cast(pl.Utf8).fill_null("{}"),
                timestamp.cast(pl.Datetime("us")),
            ]
        )
        .filter(pl.col("user_id").is_not_null() & (pl.col("user_id") != ""))
        .sort(["user_id", "timestamp"], maintain_order=True)
        .with_row_index("_pos")
    )


def prepare_events_pandas(events: Frame) -> pd.DataFrame:
    """Normalize a scan result for the Pandas matcher; adds ``_pos`` and parsed ``_props``"""
    if isinstance(events, pl.DataFrame):
        events = events.to_pandas()
    columns = list(EVENT_SCHEMA)
    if events.empty or any(col not in events.columns for col in columns):
        empty = pd.DataFrame({col: pd.Series(dtype=object) for col in columns})
        empty["timestamp"] = pd.to_datetime(empty["timestamp"])
        empty["_pos"] = pd.Series(dtype="int64")
        empty["_props"] = pd.Series(dtype=object)
        return empty

    df = events[columns].copy()
    df = df[df["user_id"].notna()].copy()
    df["user_id"] = df["user_id"].astype(str)
    df = df[df["user_id"] != ""].copy()
    timestamps = pd.to_datetime(df["timestamp"])
    if timestamps.dt.tz is not None:
        timestamps = timestamps.dt.tz_convert("UTC").dt.tz_localize(None)
    df["timestamp"] = timestamps.astype("datetime64[us]")
    df["properties"] = [
        json.dumps(p) if isinstance(p, dict) else ("{}" if p is None or p != p else str(p))
        for p in df["properties"]
    ]
    df = df.sort_values(["user_id", "timestamp"], kind="mergesort").reset_index(drop=True)
    df["_pos"] = np.arange(len(df), dtype="int64")
    df["_props"] = [parse_properties(p) for p in df["properties"]]
    return df


def aggregate_funnel_counts(
    step_names: list[str], counts: list[int]
) -> tuple[list[FunnelStepResult], float, int]:
    """
    Convert per-step user counts into step results, overall rate and total users.

    The first step's rate is measured against itself (100 when it has users);
    every later step is measured against the previous step. Zero denominators
    give a rate of 0.
    """
    if not counts:
        return [], 0.0, 0

    steps = []
    for i, (name, users) in enumerate(zip(step_names, counts)):
        previous = counts[0] if i == 0 else counts[i - 1]
        conversion_rate = round2(users / previous * 100) if previous > 0 else 0.0
        steps.append(
            FunnelStepResult(
                step=name,
                step_number=i + 1,
                users=int(users),
                conversion_rate=conversion_rate,
                drop_off_rate=round2(100 - conversion_rate),
            )
        )

    total_users = int(counts[0])
    overall = round2(counts[-1] / total_users * 100) if total_users > 0 else 0.0
    return steps, overall, total_users


class FunnelCalculator:
    """Funnel matching engine with Polars and Pandas implementations"""

    def __init__(self, config: FunnelConfig, use_polars: bool = True):
        self.config = config
        self.use_polars = use_polars
        self._performance_metrics = {}
        self.logger = logging.getLogger(__name__)

    @property
    def engine_name(self) -> str:
        return "polars" if self.use_polars else "pandas"

    def get_performance_report(self) -> dict[str, dict[str, float]]:
        """Get performance metrics report"""
        report = {}
        for func_name, times in self._performance_metrics.items():
            if times:
                report[func_name] = {
                    "avg_time": float(np.mean(times)),
                    "min_time": min(times),
                    "max_time": max(times),
                    "total_calls": len(times),
                    "total_time": sum(times),
                }
        return report

    def calculate_funnel_metrics(
        self, events_df: Frame, funnel_steps: list[FunnelStep]
    ) -> FunnelAnalysisResult:
        """
        Calculate per-step user counts and derived rates

        Args:
            events_df: Scan result with columns [user_id, event_type, event_name, timestamp, properties]
            funnel_steps: Steps in funnel order

        Returns:
            FunnelAnalysisResult with one FunnelStepResult per step
        """
        if not funnel_steps:
            return FunnelAnalysisResult.empty(window_hours=self.config.conversion_window_hours)

        progression = self.match_users(events_df, funnel_steps)
        counts = self._progression_counts(progression, len(funnel_steps))
        return self._build_result(funnel_steps, counts)

    def match_users(self, events_df: Frame, funnel_steps: list[FunnelStep]) -> Frame:
        """
        Per-user step completion timestamps.

        Returns a frame with ``user_id``, ``first_properties`` (properties of the
        step-1 event) and one ``step_<i>`` timestamp column per step, null where
        the user did not reach the step.
        """
        if self.use_polars:
            return self._match_users_polars(prepare_events_polars(events_df), funnel_steps)
        return self._match_users_pandas(prepare_events_pandas(events_df), funnel_steps)

    @_funnel_performance_monitor("_match_users_polars")
    def _match_users_polars(
        self, events: pl.DataFrame, funnel_steps: list[FunnelStep]
    ) -> pl.DataFrame:
        window = timedelta(hours=self.config.conversion_window_hours)
        anchor_first = self.config.window_anchor == WindowAnchor.FIRST_STEP
        order = ["user_id", "timestamp", "_pos"]

        progression = None
        for idx, step in enumerate(funnel_steps):
            candidates = events.filter(matcher_expr(step.matcher)).select(
                ["user_id", "timestamp", "_pos", "properties"]
            )

            if idx == 0:
                progression = (
                    candidates.sort(order)
                    .unique(subset="user_id", keep="first", maintain_order=True)
                    .select(
                        [
                            pl.col("user_id"),
                            pl.col("timestamp").alias("step_0"),
                            pl.col("_pos").alias("_pos_0"),
                            pl.col("properties").alias("first_properties"),
                        ]
                    )
                )
                continue

            prev_col = f"step_{idx - 1}"
            anchor_col = "step_0" if anchor_first else prev_col
            pos_cols = [f"_pos_{j}" for j in range(idx)]
            state_cols = ["user_id"] + list(dict.fromkeys([prev_col, anchor_col])) + pos_cols

            condition = (pl.col("timestamp") >= pl.col(prev_col)) & (
                (pl.col("timestamp") - pl.col(anchor_col)) <= window
            )
            # an event fills at most one step
            for pos_col in pos_cols:
                condition = condition & (pl.col("_pos") != pl.col(pos_col))

            chosen = (
                progression.filter(pl.col(prev_col).is_not_null())
                .select(state_cols)
                .join(candidates.select(["user_id", "timestamp", "_pos"]), on="user_id", how="inner")
                .filter(condition)
                .sort(order)
                .unique(subset="user_id", keep="first", maintain_order=True)
                .select(
                    [
                        pl.col("user_id"),
                        pl.col("timestamp").alias(f"step_{idx}"),
                        pl.col("_pos").alias(f"_pos_{idx}"),
                    ]
                )
            )
            progression = progression.join(chosen, on="user_id", how="left")

        return progression.drop([c for c in progression.columns if c.startswith("_pos_")]).sort(
            "user_id"
        )

    @_funnel_performance_monitor("_match_users_pandas")
    def _match_users_pandas(
        self, events: pd.DataFrame, funnel_steps: list[FunnelStep]
    ) -> pd.DataFrame:
        window = pd.Timedelta(hours=self.config.conversion_window_hours)
        anchor_first = self.config.window_anchor == WindowAnchor.FIRST_STEP
        step_cols = [f"step_{i}" for i in range(len(funnel_steps))]
        masks = [matcher_mask_pandas(step.matcher, events).to_numpy() for step in funnel_steps]

        rows = []
        for user_id, group in events.groupby("user_id", sort=True):
            user_events = list(zip(group["timestamp"], group["_pos"]))
            chosen_ts = []
            chosen_pos = []

            for step_idx, mask in enumerate(masks):
                found = None
                for ts, pos in user_events:
                    if not mask[pos]:
                        continue
                    if step_idx > 0:
                        if ts < chosen_ts[-1] or pos in chosen_pos:
                            continue
                        anchor = chosen_ts[0] if anchor_first else chosen_ts[-1]
                        if ts - anchor > window:
                            # events are time ordered, nothing later can qualify
                            break
                    found = (ts, pos)
                    break
                if found is None:
                    break
                chosen_ts.append(found[0])
                chosen_pos.append(found[1])

            if not chosen_ts:
                continue
            row = {"user_id": user_id, "first_properties": events.at[chosen_pos[0], "properties"]}
            for i, col in enumerate(step_cols):
                row[col] = chosen_ts[i] if i < len(chosen_ts) else pd.NaT
            rows.append(row)

        progression = pd.DataFrame(rows, columns=["user_id", *step_cols, "first_properties"])
        for col in step_cols:
            progression[col] = pd.to_datetime(progression[col])
        return progression.reset_index(drop=True)

    @staticmethod
    def _progression_counts(progression: Frame, step_count: int) -> list[int]:
        if isinstance(progression, pl.DataFrame):
            return [
                int(progression.get_column(f"step_{i}").is_not_null().sum())
                for i in range(step_count)
            ]
        return [int(progression[f"step_{i}"].notna().sum()) for i in range(step_count)]

    def _build_result(
        self, funnel_steps: list[FunnelStep], counts: list[int]
    ) -> FunnelAnalysisResult:
        steps, overall, total_users = aggregate_funnel_counts(
            [step.name for step in funnel_steps], counts
        )
        return FunnelAnalysisResult(
            steps=steps,
            conversion_rate=overall,
            total_users=total_users,
            window_hours=self.config.conversion_window_hours,
            backend=self.engine_name,
        )

    def _split_progression(self, progression: Frame, key_column: str) -> dict[Any, Frame]:
        parts = {}
        if isinstance(progression, pl.DataFrame):
            for key, part in progression.group_by(key_column, maintain_order=True):
                key = key[0] if isinstance(key, tuple) else key
                parts[key] = part
        else:
            for key, part in progression.groupby(key_column, sort=True):
                parts[key] = part
        return dict(sorted(parts.items(), key=lambda item: str(item[0])))

    @_funnel_performance_monitor("calculate_funnel_trends")
    def calculate_funnel_trends(
        self, events_df: Frame, funnel_steps: list[FunnelStep], granularity: str = "day"
    ) -> list[FunnelTrendPoint]:
        """Funnel per time bucket; users belong to the bucket of their first-step event"""
        if not funnel_steps:
            return []

        progression = self.match_users(events_df, funnel_steps)
        if isinstance(progression, pl.DataFrame):
            progression = progression.with_columns(
                truncate_expr("step_0", granularity).alias("_bucket")
            )
        else:
            progression = progression.assign(
                _bucket=truncate_series(progression["step_0"], granularity)
            )

        trends = []
        for bucket, part in self._split_progression(progression, "_bucket").items():
            counts = self._progression_counts(part, len(funnel_steps))
            trends.append(
                FunnelTrendPoint(
                    period_start=pd.Timestamp(bucket).to_pydatetime(),
                    result=self._build_result(funnel_steps, counts),
                )
            )
        return trends

    @_funnel_performance_monitor("calculate_funnel_segments")
    def calculate_funnel_segments(
        self, events_df: Frame, funnel_steps: list[FunnelStep], segment_by: Optional[str] = None
    ) -> FunnelSegmentResult:
        """
        Funnel per value of an event property, read from each user's first-step event.

        Users whose first-step event lacks the property are not segmented. When
        exactly two segments exist, each step is tested for significance.
        """
        segment_by = segment_by or self.config.segment_by
        if not funnel_steps or not segment_by:
            return FunnelSegmentResult(segment_by=segment_by or "", segments={})

        progression = self.match_users(events_df, funnel_steps)
        if isinstance(progression, pl.DataFrame):
            progression = progression.with_columns(
                json_field_expr(segment_by, "first_properties").alias("_segment")
            ).filter(pl.col("_segment").is_not_null())
        else:
            values = [
                parse_properties(p).get(segment_by) for p in progression["first_properties"]
            ]
            progression = progression.assign(
                _segment=[None if v is None else property_token(v) for v in values]
            )
            progression = progression[progression["_segment"].notna()]

        segments = {}
        for value, part in self._split_progression(progression, "_segment").items():
            if self.config.segment_values and value not in self.config.segment_values:
                continue
            counts = self._progression_counts(part, len(funnel_steps))
            segments[f"{segment_by}={value}"] = self._build_result(funnel_steps, counts)

        tests = self._calculate_statistical_significance(segments) if len(segments) == 2 else []
        return FunnelSegmentResult(segment_by=segment_by, segments=segments, statistical_tests=tests)

    def _calculate_statistical_significance(
        self, segment_results: dict[str, FunnelAnalysisResult]
    ) -> list[StatSignificanceResult]:
        """Two-proportion z-test per step between two segments"""
        segment_a, segment_b = list(segment_results.keys())
        result_a = segment_results[segment_a]
        result_b = segment_results[segment_b]

        tests = []
        for i in range(min(len(result_a.steps), len(result_b.steps))):
            users_a = result_a.total_users
            users_b = result_b.total_users
            converted_a = result_a.steps[i].users
            converted_b = result_b.steps[i].users
            test = two_proportion_test(
                segment_a, converted_a, users_a, segment_b, converted_b, users_b
            )
            if test is not None:
                tests.append(test)
        return tests


def two_proportion_test(
    label_a: str,
    converted_a: int,
    total_a: int,
    label_b: str,
    converted_b: int,
    total_b: int,
) -> Optional[StatSignificanceResult]:
    """Two-proportion z-test with a 95% interval on the rate difference"""
    if total_a <= 0 or total_b <= 0:
        return None

    rate_a = converted_a / total_a
    rate_b = converted_b / total_b
    pooled_rate = (converted_a + converted_b) / (total_a + total_b)
    if not 0 < pooled_rate < 1:
        return None

    se = np.sqrt(pooled_rate * (1 - pooled_rate) * (1 / total_a + 1 / total_b))
    if se <= 0:
        return None
    z_score = (rate_a - rate_b) / se
    p_value = 2 * (1 - stats.norm.cdf(abs(z_score)))

    se_diff = np.sqrt(rate_a * (1 - rate_a) / total_a + rate_b * (1 - rate_b) / total_b)
    margin = 1.96 * se_diff
    diff = rate_a - rate_b

    return StatSignificanceResult(
        segment_a=label_a,
        segment_b=label_b,
        conversion_a=rate_a * 100,
        conversion_b=rate_b * 100,
        p_value=float(p_value),
        is_significant=bool(p_value < 0.05),
        confidence_interval=(float(diff - margin), float(diff + margin)),
        z_score=float(z_score),
    )
