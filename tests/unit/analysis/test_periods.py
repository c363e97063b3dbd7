from datetime import datetime, timezone
from decimal import Decimal

import pytest

from costlens.schemas.costs import ProviderId
from costlens.shared.analysis.periods import (
    change_percentage,
    classify_change,
    compare_period_costs,
    compare_services,
    service_change_percentage,
    summarize_period,
)
from costlens.shared.core.exceptions import ValidationError
from tests.utils import make_cost_data, make_item

FEB_1 = datetime(2024, 2, 1, tzinfo=timezone.utc)
MAR_2 = datetime(2024, 3, 2, tzinfo=timezone.utc)


def _period2(items, **kwargs):
    return make_cost_data(items, start=FEB_1, end=MAR_2, **kwargs)


def test_fifty_percent_growth():
    """1000 -> 1500: difference 500, +50%, increase."""
    p1 = make_cost_data([make_item("EC2", 600), make_item("S3", 400)])
    p2 = _period2([make_item("EC2", 1000), make_item("Lambda", 500)])

    comparison = compare_period_costs(p1, p2)

    assert comparison.absolute_difference == Decimal("500")
    assert comparison.percentage_change == pytest.approx(50.0)
    assert comparison.trend == "increase"
    assert comparison.period1.days == comparison.period2.days == 30


def test_service_rows_are_ordered_by_absolute_change():
    p1 = make_cost_data([make_item("EC2", 600), make_item("S3", 400)])
    p2 = _period2([make_item("EC2", 1000), make_item("Lambda", 500)])

    services = compare_period_costs(p1, p2).services

    assert [s.service for s in services] == ["Lambda", "EC2", "S3"]
    lambda_row, ec2_row, s3_row = services
    assert lambda_row.is_new and lambda_row.percentage_change == 100.0
    assert s3_row.is_discontinued and s3_row.percentage_change == -100.0
    assert ec2_row.percentage_change == pytest.approx(66.666, abs=0.01)


def test_insights_for_service_shifts():
    p1 = make_cost_data([make_item("EC2", 600), make_item("S3", 400)])
    p2 = _period2([make_item("EC2", 1000), make_item("Lambda", 500)])

    insights = compare_period_costs(p1, p2).insights

    assert insights[0] == "Costs increased by $500.00 (50.0%)"
    assert "Largest increase: Lambda (+100.0%)" in insights
    assert "Largest decrease: S3 (-100.0%)" in insights
    assert "New services in period 2: Lambda" in insights
    assert "Services discontinued: S3" in insights
    assert "Consider an AWS cost optimization review due to the significant increase" in insights


def test_breakdown_can_be_skipped():
    p1 = make_cost_data([make_item("EC2", 100)])
    p2 = _period2([make_item("EC2", 100)])
    comparison = compare_period_costs(p1, p2, include_breakdown=False)
    assert comparison.services is None
    assert comparison.trend == "stable"
    assert comparison.insights[0] == "Costs remained stable between periods"


def test_zero_baseline_total_reports_zero_percent():
    p1 = make_cost_data([])
    p2 = _period2([make_item("EC2", 100)])
    comparison = compare_period_costs(p1, p2)
    assert comparison.percentage_change == 0.0
    assert comparison.trend == "stable"
    assert comparison.services[0].is_new


def test_daily_average_shift_for_unequal_periods():
    p1 = make_cost_data([make_item("EC2", 300)])
    p2 = make_cost_data(
        [make_item("EC2", 300)],
        start=datetime(2024, 2, 1, tzinfo=timezone.utc),
        end=datetime(2024, 2, 11, tzinfo=timezone.utc),
    )

    comparison = compare_period_costs(p1, p2)

    assert comparison.period1.daily_average == Decimal("10")
    assert comparison.period2.daily_average == Decimal("30")
    assert comparison.daily_average_difference == Decimal("20")
    assert "Daily average increased from $10.00 to $30.00" in comparison.insights


def test_mismatched_providers_rejected():
    p1 = make_cost_data([make_item("EC2", 1)], provider=ProviderId.AWS)
    p2 = _period2([make_item("x", 1)], provider=ProviderId.GCP)
    with pytest.raises(ValidationError):
        compare_period_costs(p1, p2)


def test_mismatched_currencies_rejected():
    p1 = make_cost_data([make_item("EC2", 1)], currency="USD")
    p2 = _period2([make_item("EC2", 1)], currency="EUR")
    with pytest.raises(ValidationError):
        compare_period_costs(p1, p2)


@pytest.mark.parametrize(
    "before, after, expected",
    [("100", "150", 50.0), ("100", "50", -50.0), ("0", "10", 0.0), ("0", "0", 0.0)],
)
def test_change_percentage(before, after, expected):
    assert change_percentage(Decimal(before), Decimal(after)) == pytest.approx(expected)


def test_service_change_percentage_for_new_service():
    assert service_change_percentage(Decimal("0"), Decimal("10")) == 100.0
    assert service_change_percentage(Decimal("0"), Decimal("0")) == 0.0


@pytest.mark.parametrize("pct, expected", [(5.0, "stable"), (5.1, "increase"), (-5.0, "stable"), (-6.0, "decrease")])
def test_classify_change(pct, expected):
    assert classify_change(pct) == expected


def test_summarize_period_rounds_partial_days_up():
    data = make_cost_data(
        [make_item("EC2", 30)],
        start=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end=datetime(2024, 1, 2, 12, tzinfo=timezone.utc),
    )
    summary = summarize_period(data)
    assert summary.days == 2
    assert summary.daily_average == Decimal("15")


def test_compare_services_merges_unlabelled_items():
    rows = compare_services([make_item(None, 5)], [make_item(None, 7)])
    assert rows[0].service == "Unknown Service"
    assert rows[0].difference == Decimal("2")
