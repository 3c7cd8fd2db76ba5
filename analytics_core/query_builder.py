"""
Typed, parameterized event scans for both backends.

An ``EventScan`` describes which events an analysis needs. The builders turn it
into a ``QueryPlan`` (SQL text plus bound parameters) for ClickHouse or
TimescaleDB. Every user supplied value is a bound parameter; table names are
validated identifiers. Property filters are not pushed down: the calculators
apply them identically on every backend.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from models import EventMatcher, TimeRange

from .exceptions import InvalidRequestError

SCAN_COLUMNS = ["user_id", "event_type", "event_name", "timestamp", "properties", "site_id"]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass(frozen=True)
class EventScan:
    """Time-ranged, organization-scoped scan over the event log"""

    organization_id: str
    time_range: TimeRange
    matchers: tuple[EventMatcher, ...] = ()
    site_id: Optional[str] = None

    @property
    def matches_all(self) -> bool:
        """True when any matcher places no type/name constraint"""
        if not self.matchers:
            return True
        return any(m.event_type is None and m.event_name is None for m in self.matchers)


@dataclass(frozen=True)
class QueryPlan:
    sql: str
    params: dict[str, Any] = field(default_factory=dict)


def _validate_table(table: str) -> str:
    if not _IDENTIFIER.match(table):
        raise InvalidRequestError(f"Invalid table name: {table!r}")
    return table


def _matcher_terms(scan: EventScan, placeholder) -> tuple[list[str], dict[str, Any]]:
    """Build one OR-term per distinct (type, name) pair"""
    terms = []
    params = {}
    seen = set()
    for matcher in scan.matchers:
        key = (matcher.event_type, matcher.event_name)
        if key in seen:
            continue
        seen.add(key)
        idx = len(seen) - 1
        parts = []
        if matcher.event_type is not None:
            parts.append(f"event_type = {placeholder(f'event_type_{idx}', 'String')}")
            params[f"event_type_{idx}"] = matcher.event_type
        if matcher.event_name is not None:
            parts.append(f"event_name = {placeholder(f'event_name_{idx}', 'String')}")
            params[f"event_name_{idx}"] = matcher.event_name
        terms.append("(" + " AND ".join(parts) + ")")
    return terms, params


def build_clickhouse_query(scan: EventScan, table: str = "analytics_events") -> QueryPlan:
    """ClickHouse plan using server-side ``{name:Type}`` parameters"""

    def placeholder(name: str, ch_type: str) -> str:
        return f"{{{name}:{ch_type}}}"

    params: dict[str, Any] = {
        "organization_id": scan.organization_id,
        "start_date": scan.time_range.start,
        "end_date": scan.time_range.end,
    }
    where = [
        "organization_id = {organization_id:String}",
        "timestamp >= {start_date:DateTime64(3)}",
        "timestamp <= {end_date:DateTime64(3)}",
        "user_id != ''",
    ]
    if not scan.matches_all:
        terms, term_params = _matcher_terms(scan, placeholder)
        where.append("(" + " OR ".join(terms) + ")")
        params.update(term_params)
    if scan.site_id:
        where.append("site_id = {site_id:String}")
        params["site_id"] = scan.site_id

    sql = (
        f"SELECT {', '.join(SCAN_COLUMNS)}\n"
        f"FROM {_validate_table(table)}\n"
        f"WHERE {' AND '.join(where)}\n"
        "ORDER BY user_id, timestamp"
    )
    return QueryPlan(sql=sql, params=params)


def build_timescale_query(scan: EventScan, table: str = "analytics_events") -> QueryPlan:
    """PostgreSQL/TimescaleDB plan using SQLAlchemy ``:name`` bind parameters"""

    def placeholder(name: str, _pg_type: str) -> str:
        return f":{name}"

    params: dict[str, Any] = {
        "organization_id": scan.organization_id,
        "start_date": scan.time_range.start,
        "end_date": scan.time_range.end,
    }
    where = [
        "organization_id = :organization_id",
        "timestamp >= :start_date",
        "timestamp <= :end_date",
        "user_id IS NOT NULL",
    ]
    if not scan.matches_all:
        terms, term_params = _matcher_terms(scan, placeholder)
        where.append("(" + " OR ".join(terms) + ")")
        params.update(term_params)
    if scan.site_id:
        where.append("site_id = :site_id")
        params["site_id"] = scan.site_id

    columns = [c if c != "properties" else "properties::text AS properties" for c in SCAN_COLUMNS]
    sql = (
        f"SELECT {', '.join(columns)}\n"
        f"FROM {_validate_table(table)}\n"
        f"WHERE {' AND '.join(where)}\n"
        "ORDER BY user_id, timestamp"
    )
    return QueryPlan(sql=sql, params=params)
