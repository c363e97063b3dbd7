"""
Multi-dimensional cost breakdown.

Greedy top-down grouping: the first dimension is grouped, filtered and
truncated, then each retained group is broken down by the next dimension
over its own items. The result is a bounded summary, not a full partition.
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Optional, assert_never

import structlog

from costlens.schemas.analytics import BreakdownAnalysis, BreakdownDimension, BreakdownItem
from costlens.schemas.costs import (
    FALLBACK_DATE,
    FALLBACK_REGION,
    FALLBACK_SERVICE,
    FALLBACK_TAG,
    CostBreakdownItem,
    UnifiedCostData,
)
from costlens.shared.analysis.insights import breakdown_facts, render_insights
from costlens.shared.core.exceptions import ValidationError

logger = structlog.get_logger()

DEFAULT_TOP_N = 10
NESTED_TOP_N = 5
DEFAULT_TAG_KEY = "project"


def percentage_of(amount: Decimal, total: Decimal) -> float:
    if total <= 0:
        return 0.0
    return float(amount / total * 100)


def dimension_value(
    item: CostBreakdownItem, dimension: BreakdownDimension, tag_key: str = DEFAULT_TAG_KEY
) -> str:
    if dimension is BreakdownDimension.SERVICE:
        return item.service or FALLBACK_SERVICE
    elif dimension is BreakdownDimension.REGION:
        return item.region or FALLBACK_REGION
    elif dimension is BreakdownDimension.DATE:
        return item.date.isoformat() if item.date else FALLBACK_DATE
    elif dimension is BreakdownDimension.TAG:
        return item.tag(tag_key) or FALLBACK_TAG
    else:
        assert_never(dimension)


def validate_window(top_n: int, threshold: Optional[float]) -> None:
    if not 1 <= top_n <= 100:
        raise ValidationError("top_n must be between 1 and 100", {"top_n": top_n})
    if threshold is not None and not 0 <= threshold <= 100:
        raise ValidationError("threshold must be between 0 and 100", {"threshold": threshold})


def calculate_breakdown(
    items: Sequence[CostBreakdownItem],
    dimensions: Sequence[BreakdownDimension],
    top_n: int = DEFAULT_TOP_N,
    threshold: Optional[float] = None,
    tag_key: str = DEFAULT_TAG_KEY,
) -> tuple[BreakdownItem, ...]:
    """
    Group `items` by `dimensions[0]`, largest first.

    `threshold` (minimum percentage) is applied before the `top_n` slice.
    Nested levels use NESTED_TOP_N and no threshold, and their percentages
    are relative to the parent group.
    """
    validate_window(top_n, threshold)
    if not dimensions or not items:
        return ()

    primary = dimensions[0]
    groups: dict[str, list[CostBreakdownItem]] = {}
    for item in items:
        groups.setdefault(dimension_value(item, primary, tag_key), []).append(item)

    total = sum((item.amount for item in items), Decimal("0"))
    ranked = sorted(
        (
            (key, sum((i.amount for i in members), Decimal("0")))
            for key, members in groups.items()
        ),
        key=lambda row: row[1],
        reverse=True,
    )
    rows = [(key, amount, percentage_of(amount, total)) for key, amount in ranked]
    if threshold is not None:
        rows = [row for row in rows if row[2] >= threshold]
    rows = rows[:top_n]

    remaining = dimensions[1:]
    result = []
    for key, amount, percentage in rows:
        sub = None
        if remaining:
            sub = calculate_breakdown(groups[key], remaining, NESTED_TOP_N, None, tag_key)
        result.append(BreakdownItem(key=key, value=amount, percentage=percentage, sub_breakdown=sub))
    return tuple(result)


def coverage_percentage(items: Sequence[BreakdownItem], total: Decimal) -> float:
    """Share of `total` represented by the retained top-level items."""
    included = sum((item.value for item in items), Decimal("0"))
    return percentage_of(included, total)


def analyze_breakdown(
    data: UnifiedCostData,
    dimensions: Sequence[BreakdownDimension] = (BreakdownDimension.SERVICE,),
    top_n: int = DEFAULT_TOP_N,
    threshold: Optional[float] = None,
    tag_key: str = DEFAULT_TAG_KEY,
) -> BreakdownAnalysis:
    if not dimensions:
        raise ValidationError("At least one breakdown dimension is required")

    items = calculate_breakdown(data.costs.breakdown, dimensions, top_n, threshold, tag_key)
    facts = breakdown_facts(items, data.costs.total, data.provider)
    analysis = BreakdownAnalysis(
        provider=data.provider,
        period=data.period,
        currency=data.costs.currency,
        total_cost=data.costs.total,
        dimensions=tuple(dimensions),
        items=items,
        coverage_percentage=coverage_percentage(items, data.costs.total),
        insights=tuple(render_insights(facts, data.costs.currency)),
    )
    logger.debug(
        "breakdown_analyzed",
        provider=data.provider.value,
        dimensions=[d.value for d in dimensions],
        items=len(items),
        coverage=round(analysis.coverage_percentage, 2),
    )
    return analysis
