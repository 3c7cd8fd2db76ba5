"""
Period boundaries shared by the Polars and Pandas implementations.

Weeks start on Monday 00:00 (ISO weeks). Months are calendar months.
"""

import pandas as pd
import polars as pl

from models import CohortPeriod

from .exceptions import InvalidRequestError

_POLARS_EVERY = {"hour": "1h", "day": "1d", "week": "1w", "month": "1mo"}


def _period_value(period) -> str:
    value = period.value if isinstance(period, CohortPeriod) else str(period)
    if value not in _POLARS_EVERY:
        raise InvalidRequestError(f"Unknown period granularity: {value}")
    return value


def truncate_expr(column: str, period) -> pl.Expr:
    """Truncate a Polars datetime column to the start of its period"""
    return pl.col(column).dt.truncate(_POLARS_EVERY[_period_value(period)])


def truncate_series(series: pd.Series, period) -> pd.Series:
    """Truncate a Pandas datetime series to the start of its period"""
    value = _period_value(period)
    if value == "hour":
        return series.dt.floor("h")
    if value == "day":
        return series.dt.normalize()
    if value == "week":
        return series.dt.normalize() - pd.to_timedelta(series.dt.weekday, unit="D")
    return series.dt.normalize() - pd.to_timedelta(series.dt.day - 1, unit="D")


def _time_of_day_expr(column: str) -> pl.Expr:
    return pl.col(column) - pl.col(column).dt.truncate("1d")


def period_index_expr(ts_column: str, start_column: str, unit) -> pl.Expr:
    """
    Number of whole units between a period-aligned start and a later timestamp.

    Callers must filter ``ts >= start`` first; the duration is then floored.
    Month ``d`` runs from the start's day of month in the ``d``-th following
    calendar month, so a week cohort starting on the 29th keeps the first
    days of the next month in month 0.
    """
    value = _period_value(unit)
    if value == "month":
        ts, start = pl.col(ts_column), pl.col(start_column)
        months = (ts.dt.year().cast(pl.Int64) * 12 + ts.dt.month().cast(pl.Int64)) - (
            start.dt.year().cast(pl.Int64) * 12 + start.dt.month().cast(pl.Int64)
        )
        ts_day, start_day = ts.dt.day(), start.dt.day()
        before_anniversary = (ts_day < start_day) | (
            (ts_day == start_day) & (_time_of_day_expr(ts_column) < _time_of_day_expr(start_column))
        )
        return months - before_anniversary.cast(pl.Int64)
    days = (pl.col(ts_column) - pl.col(start_column)).dt.total_days()
    if value == "week":
        return days // 7
    if value == "day":
        return days
    return (pl.col(ts_column) - pl.col(start_column)).dt.total_hours()


def period_index_series(ts: pd.Series, start: pd.Series, unit) -> pd.Series:
    """Pandas counterpart of ``period_index_expr``"""
    value = _period_value(unit)
    if value == "month":
        months = (ts.dt.year * 12 + ts.dt.month) - (start.dt.year * 12 + start.dt.month)
        before_anniversary = (ts.dt.day < start.dt.day) | (
            (ts.dt.day == start.dt.day)
            & ((ts - ts.dt.normalize()) < (start - start.dt.normalize()))
        )
        return (months - before_anniversary.astype("int64")).astype("int64")
    delta = ts - start
    if value == "week":
        return delta.dt.days // 7
    if value == "day":
        return delta.dt.days
    return (delta // pd.Timedelta(hours=1)).astype("int64")
