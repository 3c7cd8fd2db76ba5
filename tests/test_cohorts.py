"""
Cohort assignment and retention on both engines, plus the analyses derived
from a cohort result (curves, size trends, comparison, users, export).
"""

import json
from datetime import datetime, timedelta

import pandas as pd
import pytest

from analytics_core.cohorts import (
    build_cohort_result,
    cohort_size_trends,
    compare_cohorts,
    export_cohort_data,
    retention_curves,
)
from analytics_core.exceptions import InvalidRequestError
from conftest import EventFactory
from models import CohortDefinition, CohortPeriod, CohortType, EventMatcher

SIGNUP = EventMatcher(event_type="auth", event_name="signup")
LOGIN = EventMatcher(event_type="session", event_name="login")

WEEK_1 = datetime(2024, 1, 1)
WEEK_2 = datetime(2024, 1, 8)


def _signup(user_id, ts):
    return EventFactory.event(user_id, "auth", "signup", ts)


def _login(user_id, ts):
    return EventFactory.event(user_id, "session", "login", ts)


@pytest.fixture
def weekly_day_retention():
    return CohortDefinition(
        cohort_type=CohortType.ACQUISITION,
        cohort_period=CohortPeriod.WEEK,
        retention_unit=CohortPeriod.DAY,
        period_offsets=[0, 7],
        entry_event=SIGNUP,
        return_event=LOGIN,
    )


@pytest.fixture
def ten_user_cohort(base_timestamp):
    """10 signups in the week of 2024-01-01; 4 log in on day 7, one on day 8."""
    rows = [_signup(f"user_{i}", base_timestamp + timedelta(hours=i)) for i in range(10)]
    rows += [_login(f"user_{i}", datetime(2024, 1, 8, 12, 0)) for i in range(4)]
    rows.append(_login("user_4", datetime(2024, 1, 9, 12, 0)))
    return EventFactory.frame(rows)


@pytest.mark.cohort
class TestCohortAssignment:
    def test_week_starts_on_monday(self, cohort_calculator_factory, use_polars):
        data = EventFactory.frame(
            [
                _signup("sunday", datetime(2024, 1, 7, 23, 59)),
                _signup("monday", datetime(2024, 1, 8, 0, 0)),
            ]
        )
        calculator = cohort_calculator_factory(
            CohortDefinition(entry_event=SIGNUP, return_event=LOGIN), use_polars
        )

        assignments = calculator.assign_cohorts(data)
        if use_polars:
            assignments = assignments.to_pandas()
        by_user = dict(zip(assignments["user_id"], pd.to_datetime(assignments["cohort_date"])))

        assert by_user["sunday"] == pd.Timestamp(WEEK_1)
        assert by_user["monday"] == pd.Timestamp(WEEK_2)

    def test_user_lands_in_one_cohort(self, cohort_calculator_factory, use_polars):
        data = EventFactory.frame(
            [
                _signup("u1", datetime(2024, 1, 3)),
                _signup("u1", datetime(2024, 1, 10)),
                _signup("u2", datetime(2024, 1, 10)),
            ]
        )
        calculator = cohort_calculator_factory(
            CohortDefinition(entry_event=SIGNUP, return_event=LOGIN, retention_periods=1),
            use_polars,
        )

        result = calculator.calculate_cohorts(data)

        assert [(b.cohort_date, b.cohort_size) for b in result.cohorts] == [
            (WEEK_1, 1),
            (WEEK_2, 1),
        ]
        assert result.summary["total_users"] == 2

    @pytest.mark.parametrize(
        "period, expected",
        [
            (CohortPeriod.DAY, datetime(2024, 1, 17)),
            (CohortPeriod.WEEK, datetime(2024, 1, 15)),
            (CohortPeriod.MONTH, datetime(2024, 1, 1)),
        ],
    )
    def test_period_truncation(self, cohort_calculator_factory, use_polars, period, expected):
        data = EventFactory.frame([_signup("u1", datetime(2024, 1, 17, 15, 30))])
        calculator = cohort_calculator_factory(
            CohortDefinition(cohort_period=period, entry_event=SIGNUP, retention_periods=0),
            use_polars,
        )

        result = calculator.calculate_cohorts(data)

        assert result.cohorts[0].cohort_date == expected


@pytest.mark.cohort
class TestRetention:
    def test_ten_users_four_return_on_day_seven(
        self, cohort_calculator_factory, use_polars, weekly_day_retention, ten_user_cohort
    ):
        result = cohort_calculator_factory(weekly_day_retention, use_polars).calculate_cohorts(
            ten_user_cohort
        )

        assert len(result.cohorts) == 1
        bucket = result.cohorts[0]
        assert bucket.cohort_date == WEEK_1
        assert bucket.cohort_size == 10
        assert list(bucket.periods) == ["day_0", "day_7"]
        assert bucket.periods["day_7"].retained_users == 4
        assert bucket.periods["day_7"].retention_rate == 40.0
        assert bucket.periods["day_0"].retention_rate == 0.0
        assert result.retention_rates == {"day_0": 0.0, "day_7": 40.0}
        assert result.revenue_metrics is None

    def test_default_offsets_use_cohort_period(self, cohort_calculator_factory, use_polars):
        data = EventFactory.frame(
            [
                _signup("u1", datetime(2024, 1, 2)),
                _signup("u2", datetime(2024, 1, 3)),
                _login("u1", datetime(2024, 1, 3)),
                _login("u1", datetime(2024, 1, 9)),
                _login("u2", datetime(2024, 1, 22)),
            ]
        )
        definition = CohortDefinition(
            cohort_period=CohortPeriod.WEEK,
            retention_periods=2,
            entry_event=SIGNUP,
            return_event=LOGIN,
        )

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(data)

        periods = result.cohorts[0].periods
        assert list(periods) == ["week_0", "week_1", "week_2"]
        assert [periods[k].retained_users for k in periods] == [1, 1, 0]
        assert periods["week_0"].retention_rate == 50.0

    def test_calendar_month_offsets(self, cohort_calculator_factory, use_polars):
        data = EventFactory.frame(
            [
                _signup("u1", datetime(2024, 1, 31, 12, 0)),
                _login("u1", datetime(2024, 2, 1, 1, 0)),
                _signup("u2", datetime(2024, 1, 5)),
                _login("u2", datetime(2024, 1, 30)),
            ]
        )
        definition = CohortDefinition(
            cohort_period=CohortPeriod.MONTH,
            retention_periods=1,
            entry_event=SIGNUP,
            return_event=LOGIN,
        )

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(data)

        periods = result.cohorts[0].periods
        assert periods["month_0"].retained_users == 1
        assert periods["month_1"].retained_users == 1

    def test_month_offsets_count_from_week_start(self, cohort_calculator_factory, use_polars):
        """A week starting on Jan 29 keeps Feb 1 in month 0; month 1 opens on Feb 29."""
        data = EventFactory.frame(
            [
                _signup("u1", datetime(2024, 1, 29, 9, 0)),
                _login("u1", datetime(2024, 2, 1, 10, 0)),
                _signup("u2", datetime(2024, 1, 30, 9, 0)),
                _login("u2", datetime(2024, 2, 28, 23, 0)),
                _signup("u3", datetime(2024, 1, 31, 9, 0)),
                _login("u3", datetime(2024, 2, 29, 0, 0)),
            ]
        )
        definition = CohortDefinition(
            cohort_period=CohortPeriod.WEEK,
            retention_unit=CohortPeriod.MONTH,
            retention_periods=1,
            entry_event=SIGNUP,
            return_event=LOGIN,
        )

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(data)

        cohort = result.cohorts[0]
        assert cohort.cohort_date == datetime(2024, 1, 29)
        assert cohort.periods["month_0"].retained_users == 2
        assert cohort.periods["month_1"].retained_users == 1

    def test_any_event_returns_when_return_matcher_is_open(
        self, cohort_calculator_factory, use_polars
    ):
        """With an unconstrained return matcher the entry event itself counts for offset 0."""
        data = EventFactory.frame(
            [_signup("u1", datetime(2024, 1, 2)), _signup("u2", datetime(2024, 1, 3))]
        )
        definition = CohortDefinition(entry_event=SIGNUP, retention_periods=1)

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(data)

        assert result.retention_rates == {"week_0": 100.0, "week_1": 0.0}

    def test_weighted_retention_across_cohorts(self, cohort_calculator_factory, use_polars):
        rows = [_signup(f"a{i}", datetime(2024, 1, 2)) for i in range(3)]
        rows += [_signup(f"b{i}", datetime(2024, 1, 9)) for i in range(1)]
        rows += [_login("a0", datetime(2024, 1, 10)), _login("b0", datetime(2024, 1, 16))]
        definition = CohortDefinition(entry_event=SIGNUP, return_event=LOGIN, retention_periods=1)

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(
            EventFactory.frame(rows)
        )

        # week_1: 1 of 3 and 1 of 1 -> 2 of 4
        assert result.retention_rates["week_1"] == 50.0
        assert result.summary["total_cohorts"] == 2
        assert result.summary["average_cohort_size"] == 2.0


@pytest.mark.edge_case
class TestCohortEdgeCases:
    def test_empty_offsets(self, cohort_calculator_factory, use_polars, ten_user_cohort):
        definition = CohortDefinition(entry_event=SIGNUP, return_event=LOGIN, period_offsets=[])

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(ten_user_cohort)

        assert result.cohorts[0].cohort_size == 10
        assert result.cohorts[0].periods == {}
        assert result.retention_rates == {}

    def test_no_entry_events(self, cohort_calculator_factory, use_polars):
        data = EventFactory.frame([_login("u1", datetime(2024, 1, 2))])
        definition = CohortDefinition(entry_event=SIGNUP, return_event=LOGIN)

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(data)

        assert result.cohorts == []
        assert result.summary["total_users"] == 0
        assert result.summary["average_cohort_size"] == 0.0

    def test_no_events(self, cohort_calculator_factory, use_polars):
        definition = CohortDefinition(entry_event=SIGNUP, return_event=LOGIN)

        result = cohort_calculator_factory(definition, use_polars).calculate_cohorts(
            EventFactory.frame([])
        )

        assert result.cohorts == []


@pytest.mark.cohort
class TestCohortUsers:
    def test_paginated_users(
        self, cohort_calculator_factory, use_polars, weekly_day_retention, ten_user_cohort
    ):
        calculator = cohort_calculator_factory(weekly_day_retention, use_polars)

        page = calculator.cohort_users(ten_user_cohort, WEEK_1, limit=3, offset=2)

        assert [u.user_id for u in page] == ["user_2", "user_3", "user_4"]
        assert page[0].retention_periods == [7]
        assert page[0].is_retained
        assert page[0].events == 2
        assert page[0].last_seen == datetime(2024, 1, 8, 12, 0)
        # day 8 is not a requested offset
        assert page[2].retention_periods == []
        assert not page[2].is_retained

    def test_unknown_cohort_date(
        self, cohort_calculator_factory, use_polars, weekly_day_retention, ten_user_cohort
    ):
        calculator = cohort_calculator_factory(weekly_day_retention, use_polars)

        assert calculator.cohort_users(ten_user_cohort, WEEK_2) == []


@pytest.mark.cohort
class TestDerivedCohortAnalyses:
    @pytest.fixture
    def two_cohort_result(self):
        definition = CohortDefinition(entry_event=SIGNUP, return_event=LOGIN, retention_periods=1)
        sizes = {WEEK_1: 100, WEEK_2: 150}
        activity = {
            (WEEK_1, 0): (100, None),
            (WEEK_1, 1): (60, None),
            (WEEK_2, 0): (150, None),
            (WEEK_2, 1): (30, None),
        }
        return build_cohort_result(definition, sizes, activity)

    def test_retention_curves(self, two_cohort_result):
        curves, average_curve = retention_curves(two_cohort_result)

        assert [c.retention_data for c in curves] == [[100.0, 60.0], [100.0, 20.0]]
        assert curves[0].average_retention == 80.0
        assert average_curve == [100.0, 36.0]

    def test_size_trends(self, two_cohort_result):
        trends = cohort_size_trends(two_cohort_result)

        assert [t.cohort_size for t in trends] == [100, 150]
        assert [t.growth_rate for t in trends] == [0.0, 50.0]
        assert [t.cumulative_size for t in trends] == [100, 250]

    def test_compare_cohorts(self, two_cohort_result):
        test = compare_cohorts(two_cohort_result, WEEK_1, WEEK_2, "week_1")

        assert test.segment_a == "2024-01-01"
        assert test.segment_b == "2024-01-08"
        assert test.is_significant

    def test_compare_unknown_cohort(self, two_cohort_result):
        with pytest.raises(InvalidRequestError):
            compare_cohorts(two_cohort_result, WEEK_1, datetime(2023, 1, 2), "week_1")
        with pytest.raises(InvalidRequestError):
            compare_cohorts(two_cohort_result, WEEK_1, WEEK_2, "week_9")

    def test_export_csv(self, two_cohort_result):
        csv_text = export_cohort_data(two_cohort_result, "csv")

        lines = csv_text.strip().splitlines()
        assert lines[0] == "cohort_date,cohort_size,period,retained_users,retention_rate"
        assert lines[1] == "2024-01-01,100,week_0,100,100.0"
        assert len(lines) == 5

    def test_export_json_records(self, two_cohort_result):
        records = export_cohort_data(two_cohort_result, "json")

        assert records[-1] == {
            "cohort_date": "2024-01-08",
            "cohort_size": 150,
            "period": "week_1",
            "retained_users": 30,
            "retention_rate": 20.0,
        }
        json.dumps(records)

    def test_export_unknown_format(self, two_cohort_result):
        with pytest.raises(InvalidRequestError):
            export_cohort_data(two_cohort_result, "xlsx")

    def test_result_to_dict(self, two_cohort_result):
        data = two_cohort_result.to_dict()

        assert data["cohort_period"] == "week"
        assert data["cohorts"][0]["cohort_date"] == "2024-01-01"
        assert data["cohorts"][0]["periods"]["week_1"] == {
            "retained_users": 60,
            "retention_rate": 60.0,
        }
        assert data["status"] == "ok"
        assert "revenue_metrics" not in data
