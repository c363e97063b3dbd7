"""
Cost time-series analysis.

Bucket dated line items, compute point-over-point deltas and summarize
direction, volatility and spikes.
"""

import calendar
import statistics
from collections.abc import Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import assert_never

import structlog

from costlens.schemas.analytics import (
    TrendAnalysis,
    TrendDirection,
    TrendGranularity,
    TrendPeriod,
    TrendPoint,
    TrendSummary,
    VolatilityLevel,
)
from costlens.schemas.costs import CostBreakdownItem, DateRange, Granularity, UnifiedCostData
from costlens.shared.analysis.insights import render_insights, trend_facts

logger = structlog.get_logger()

SPIKE_THRESHOLD_PERCENT = 50.0
TREND_UPPER = Decimal("1.1")
TREND_LOWER = Decimal("0.9")
HIGH_VOLATILITY_CV = 50.0
MEDIUM_VOLATILITY_CV = 20.0


def bucket_date(day: date, granularity: TrendGranularity) -> date:
    if granularity is TrendGranularity.DAILY:
        return day
    elif granularity is TrendGranularity.WEEKLY:
        return day - timedelta(days=day.weekday())
    elif granularity is TrendGranularity.MONTHLY:
        return day.replace(day=1)
    else:
        assert_never(granularity)


def provider_granularity(granularity: TrendGranularity) -> Granularity:
    """Weekly buckets are built locally from daily provider data."""
    if granularity is TrendGranularity.MONTHLY:
        return Granularity.MONTHLY
    return Granularity.DAILY


def _shift_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def resolve_trend_period(period: TrendPeriod, now: datetime) -> DateRange:
    """Date range ending at `now` for a named lookback period."""
    if period is TrendPeriod.LAST_30_DAYS:
        start = now - timedelta(days=30)
    elif period is TrendPeriod.LAST_60_DAYS:
        start = now - timedelta(days=60)
    elif period is TrendPeriod.LAST_90_DAYS:
        start = now - timedelta(days=90)
    elif period is TrendPeriod.LAST_6_MONTHS:
        start = _shift_months(now, 6)
    elif period is TrendPeriod.LAST_YEAR:
        start = _shift_months(now, 12)
    else:
        assert_never(period)
    return DateRange(start=start, end=now)


def build_trend_points(series: Sequence[tuple[date, Decimal]]) -> tuple[TrendPoint, ...]:
    """Deltas against the previous point; the first point always has zero deltas."""
    points: list[TrendPoint] = []
    previous: Decimal | None = None
    for day, cost in series:
        change = Decimal("0")
        change_pct = 0.0
        if previous is not None:
            change = cost - previous
            change_pct = float(change / previous * 100) if previous != 0 else 0.0
        points.append(
            TrendPoint(date=day, cost=cost, change_from_previous=change, change_percentage=change_pct)
        )
        previous = cost
    return tuple(points)


def calculate_trends(
    items: Sequence[CostBreakdownItem], granularity: TrendGranularity = TrendGranularity.DAILY
) -> tuple[TrendPoint, ...]:
    """Undated items are ignored."""
    buckets: dict[date, Decimal] = {}
    for item in items:
        if item.date is None:
            continue
        key = bucket_date(item.date, granularity)
        buckets[key] = buckets.get(key, Decimal("0")) + item.amount
    return build_trend_points(sorted(buckets.items()))


def _mean(values: Sequence[Decimal]) -> Decimal:
    return sum(values, Decimal("0")) / len(values)


def classify_direction(costs: Sequence[Decimal]) -> TrendDirection:
    if len(costs) < 2:
        return "stable"
    middle = len(costs) // 2
    first, second = _mean(costs[:middle]), _mean(costs[middle:])
    if second > first * TREND_UPPER:
        return "increasing"
    if second < first * TREND_LOWER:
        return "decreasing"
    return "stable"


def coefficient_of_variation(costs: Sequence[Decimal]) -> float:
    """Population stddev / mean * 100; 0 for empty or zero-mean series."""
    if not costs:
        return 0.0
    values = [float(c) for c in costs]
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return statistics.pstdev(values) / mean * 100


def classify_volatility(cv: float) -> VolatilityLevel:
    if cv > HIGH_VOLATILITY_CV:
        return "high"
    if cv > MEDIUM_VOLATILITY_CV:
        return "medium"
    return "low"


def summarize_trends(points: Sequence[TrendPoint]) -> TrendSummary:
    if not points:
        return TrendSummary(total_cost=Decimal("0"), average_cost=Decimal("0"), point_count=0)

    costs = [p.cost for p in points]
    total = sum(costs, Decimal("0"))
    highest = points[0]
    lowest = points[0]
    for point in points[1:]:
        # strict comparisons keep the first occurrence on ties
        if point.cost > highest.cost:
            highest = point
        if point.cost < lowest.cost:
            lowest = point

    cv = coefficient_of_variation(costs)
    return TrendSummary(
        total_cost=total,
        average_cost=total / len(points),
        point_count=len(points),
        highest=highest,
        lowest=lowest,
        trend=classify_direction(costs),
        volatility=classify_volatility(cv),
        coefficient_of_variation=cv,
        spikes=tuple(p for p in points if p.change_percentage > SPIKE_THRESHOLD_PERCENT),
    )


def analyze_trends(
    data: UnifiedCostData, granularity: TrendGranularity = TrendGranularity.DAILY
) -> TrendAnalysis:
    points = calculate_trends(data.costs.breakdown, granularity)
    summary = summarize_trends(points)
    facts = trend_facts(points, summary, data.provider)
    logger.debug(
        "trends_analyzed",
        provider=data.provider.value,
        points=len(points),
        trend=summary.trend,
        volatility=summary.volatility,
    )
    return TrendAnalysis(
        provider=data.provider,
        period=data.period,
        granularity=granularity,
        currency=data.costs.currency,
        points=points,
        summary=summary,
        insights=tuple(render_insights(facts, data.costs.currency)),
    )
