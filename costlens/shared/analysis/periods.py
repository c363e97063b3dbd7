from collections.abc import Sequence
from decimal import Decimal

import structlog

from costlens.schemas.analytics import ChangeDirection, PeriodComparison, PeriodSummary, ServiceComparison
from costlens.schemas.costs import FALLBACK_SERVICE, CostBreakdownItem, UnifiedCostData
from costlens.shared.analysis.insights import period_facts, render_insights
from costlens.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

CHANGE_BAND_PERCENT = 5.0


def change_percentage(before: Decimal, after: Decimal) -> float:
    """Relative change for totals. A zero baseline yields 0."""
    if before <= 0:
        return 0.0
    return float((after - before) / before * 100)


def service_change_percentage(before: Decimal, after: Decimal) -> float:
    """Relative change per service. A service appearing from nothing counts as +100%."""
    if before == 0:
        return 100.0 if after > 0 else 0.0
    return float((after - before) / before * 100)


def classify_change(percentage: float) -> ChangeDirection:
    if percentage > CHANGE_BAND_PERCENT:
        return "increase"
    if percentage < -CHANGE_BAND_PERCENT:
        return "decrease"
    return "stable"


def summarize_period(data: UnifiedCostData) -> PeriodSummary:
    days = data.period.days
    return PeriodSummary(
        period=data.period,
        total=data.costs.total,
        days=days,
        daily_average=data.costs.total / days,
    )


def _service_totals(items: Sequence[CostBreakdownItem]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for item in items:
        key = item.service or FALLBACK_SERVICE
        totals[key] = totals.get(key, Decimal("0")) + item.amount
    return totals


def compare_services(
    before: Sequence[CostBreakdownItem], after: Sequence[CostBreakdownItem]
) -> tuple[ServiceComparison, ...]:
    """Union of services from both periods, largest absolute movement first."""
    totals1 = _service_totals(before)
    totals2 = _service_totals(after)
    names = list(dict.fromkeys([*totals1, *totals2]))

    rows = []
    for name in names:
        cost1 = totals1.get(name, Decimal("0"))
        cost2 = totals2.get(name, Decimal("0"))
        rows.append(
            ServiceComparison(
                service=name,
                period1_cost=cost1,
                period2_cost=cost2,
                difference=cost2 - cost1,
                percentage_change=service_change_percentage(cost1, cost2),
                is_new=name not in totals1,
                is_discontinued=name not in totals2,
            )
        )
    return tuple(sorted(rows, key=lambda row: abs(row.difference), reverse=True))


def compare_period_costs(
    period1: UnifiedCostData,
    period2: UnifiedCostData,
    include_breakdown: bool = True,
) -> PeriodComparison:
    if period1.provider != period2.provider:
        raise ValidationError(
            "Cannot compare periods from different providers",
            {"period1": period1.provider.value, "period2": period2.provider.value},
        )
    if period1.costs.currency != period2.costs.currency:
        raise ValidationError(
            "Cannot compare periods reported in different currencies",
            {"period1": period1.costs.currency, "period2": period2.costs.currency},
        )

    summary1 = summarize_period(period1)
    summary2 = summarize_period(period2)
    pct = change_percentage(summary1.total, summary2.total)
    services = (
        compare_services(period1.costs.breakdown, period2.costs.breakdown)
        if include_breakdown
        else None
    )

    comparison = PeriodComparison(
        provider=period1.provider,
        currency=period1.costs.currency,
        period1=summary1,
        period2=summary2,
        absolute_difference=summary2.total - summary1.total,
        percentage_change=pct,
        daily_average_difference=summary2.daily_average - summary1.daily_average,
        trend=classify_change(pct),
        services=services,
    )
    facts = period_facts(comparison)
    logger.debug(
        "periods_compared",
        provider=period1.provider.value,
        percentage_change=round(pct, 2),
        trend=comparison.trend,
    )
    return comparison.model_copy(
        update={"insights": tuple(render_insights(facts, comparison.currency))}
    )
