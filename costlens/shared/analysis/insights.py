"""
Insight generation.

Fact builders inspect analytics results and return structured InsightFact
records; `render_insights` turns them into text. Facts carry every number the
text needs so rules can be tested without string matching.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, assert_never

from costlens.schemas.analytics import (
    BreakdownAnalysis,
    BreakdownDimension,
    BreakdownItem,
    PeriodComparison,
    ProviderShare,
    TrendAnalysis,
    TrendPoint,
    TrendSummary,
)
from costlens.schemas.costs import ProviderId

CONCENTRATION_PERCENT = 80.0
LONG_TAIL_ITEM_PERCENT = 5.0
LONG_TAIL_MIN_ITEMS = 5
UNEVEN_CV = 100.0
EVEN_CV = 30.0
WIDE_RANGE_PERCENT = 200.0
SERVICE_SHIFT_PERCENT = 20.0
DAILY_AVERAGE_BAND = Decimal("0.1")
AWS_REVIEW_PERCENT = 30.0
OPENAI_REVIEW_ABSOLUTE = Decimal("100")
SIGNIFICANT_PROVIDER_PERCENT = 10.0
LOCK_IN_SHARE_PERCENT = 70.0
AWS_COMMITMENT_ABSOLUTE = Decimal("500")
OPENAI_MODEL_TIER_ABSOLUTE = Decimal("100")
CHART_BAR_WIDTH = 40
CHART_LABEL_WIDTH = 12
CHART_RULE = "═" * 60


class InsightKind(str, Enum):
    TOP_DRIVER = "top_driver"
    HIGH_CONCENTRATION = "high_concentration"
    LONG_TAIL = "long_tail"
    UNEVEN_DISTRIBUTION = "uneven_distribution"
    EVEN_DISTRIBUTION = "even_distribution"
    PROVIDER_HINT = "provider_hint"
    TREND_UP = "trend_up"
    TREND_DOWN = "trend_down"
    HIGH_VOLATILITY = "high_volatility"
    SPIKES = "spikes"
    WIDE_RANGE = "wide_range"
    PERIOD_CHANGE = "period_change"
    DAILY_AVERAGE_SHIFT = "daily_average_shift"
    LARGEST_INCREASE = "largest_increase"
    LARGEST_DECREASE = "largest_decrease"
    NEW_SERVICES = "new_services"
    DISCONTINUED_SERVICES = "discontinued_services"
    TOTAL_ACROSS_PROVIDERS = "total_across_providers"
    COMMON_TOP_SERVICES = "common_top_services"
    INCREASING_PROVIDERS = "increasing_providers"
    VOLATILE_PROVIDERS = "volatile_providers"
    OVERALL_PERIOD_CHANGE = "overall_period_change"
    SIGNIFICANT_INCREASES = "significant_increases"
    SIGNIFICANT_DECREASES = "significant_decreases"
    TOP_PROVIDER = "top_provider"
    VENDOR_LOCK_IN = "vendor_lock_in"


@dataclass(frozen=True, slots=True)
class InsightFact:
    kind: InsightKind
    data: Mapping[str, Any] = field(default_factory=dict)


# Hint keys rendered by PROVIDER_HINT facts
HINT_RESERVED_INSTANCES = "reserved_instances"
HINT_SMALLER_GPT_MODEL = "smaller_gpt_model"
HINT_SMALLER_CLAUDE_MODEL = "smaller_claude_model"
HINT_COMMITTED_USE = "committed_use"
HINT_AWS_REVIEW = "aws_review"
HINT_API_USAGE_REVIEW = "api_usage_review"
HINT_AWS_COMMITMENTS = "aws_commitments"
HINT_CHEAPER_GPT_TIER = "cheaper_gpt_tier"

_HINT_TEXT = {
    HINT_RESERVED_INSTANCES: "EC2 is your largest cost - consider Reserved Instances or Savings Plans",
    HINT_SMALLER_GPT_MODEL: "GPT-4 usage is high - consider a smaller model for suitable tasks",
    HINT_SMALLER_CLAUDE_MODEL: "Opus usage is high - consider Sonnet or Haiku for suitable tasks",
    HINT_COMMITTED_USE: "Compute Engine dominates - consider committed use discounts",
    HINT_AWS_REVIEW: "Consider an AWS cost optimization review due to the significant increase",
    HINT_API_USAGE_REVIEW: "Review API usage patterns for potential optimization",
    HINT_AWS_COMMITMENTS: "Your AWS costs are significant - consider Reserved Instances or Savings Plans",
    HINT_CHEAPER_GPT_TIER: "Consider using GPT-3.5 Turbo instead of GPT-4 for non-critical tasks",
}


def _provider_breakdown_hint(provider: ProviderId, top_key: str) -> str | None:
    if provider is ProviderId.AWS:
        return HINT_RESERVED_INSTANCES if "EC2" in top_key else None
    elif provider is ProviderId.OPENAI:
        return HINT_SMALLER_GPT_MODEL if "gpt-4" in top_key.lower() else None
    elif provider is ProviderId.ANTHROPIC:
        return HINT_SMALLER_CLAUDE_MODEL if "opus" in top_key.lower() else None
    elif provider is ProviderId.GCP:
        return HINT_COMMITTED_USE if "Compute Engine" in top_key else None
    else:
        assert_never(provider)


def _population_cv(values: Sequence[Decimal], mean: Decimal) -> float:
    if mean <= 0:
        return 0.0
    variance = sum(((v - mean) ** 2 for v in values), Decimal("0")) / len(values)
    return float(variance.sqrt() / mean * 100)


def breakdown_facts(
    items: Sequence[BreakdownItem], total: Decimal, provider: ProviderId
) -> list[InsightFact]:
    facts: list[InsightFact] = []
    if not items:
        return facts

    top = items[0]
    facts.append(
        InsightFact(
            InsightKind.TOP_DRIVER,
            {"key": top.key, "value": top.value, "percentage": top.percentage},
        )
    )

    top3 = sum(item.percentage for item in items[:3])
    if top3 > CONCENTRATION_PERCENT:
        facts.append(InsightFact(InsightKind.HIGH_CONCENTRATION, {"percentage": top3}))

    small = sum(1 for item in items if item.percentage < LONG_TAIL_ITEM_PERCENT)
    if small > LONG_TAIL_MIN_ITEMS:
        facts.append(
            InsightFact(InsightKind.LONG_TAIL, {"count": small, "below_percentage": LONG_TAIL_ITEM_PERCENT})
        )

    if len(items) > 1:
        cv = _population_cv([item.value for item in items], total / len(items))
        if cv > UNEVEN_CV:
            facts.append(InsightFact(InsightKind.UNEVEN_DISTRIBUTION, {"cv": cv}))
        elif cv < EVEN_CV:
            facts.append(InsightFact(InsightKind.EVEN_DISTRIBUTION, {"cv": cv}))

    hint = _provider_breakdown_hint(provider, top.key)
    if hint:
        facts.append(InsightFact(InsightKind.PROVIDER_HINT, {"hint": hint, "provider": provider.value}))
    return facts


def trend_facts(
    points: Sequence[TrendPoint], summary: TrendSummary, provider: ProviderId
) -> list[InsightFact]:
    facts: list[InsightFact] = []
    if summary.trend == "increasing" and points:
        facts.append(
            InsightFact(InsightKind.TREND_UP, {"provider": provider.value, "latest": points[-1].cost})
        )
    elif summary.trend == "decreasing":
        facts.append(InsightFact(InsightKind.TREND_DOWN, {"provider": provider.value}))

    if summary.volatility == "high":
        facts.append(
            InsightFact(InsightKind.HIGH_VOLATILITY, {"cv": summary.coefficient_of_variation})
        )

    if summary.spikes:
        facts.append(
            InsightFact(
                InsightKind.SPIKES,
                {"count": len(summary.spikes), "dates": [p.date for p in summary.spikes]},
            )
        )

    if summary.highest and summary.lowest and summary.average_cost > 0:
        spread = summary.highest.cost - summary.lowest.cost
        range_pct = float(spread / summary.average_cost * 100)
        if range_pct > WIDE_RANGE_PERCENT:
            facts.append(
                InsightFact(
                    InsightKind.WIDE_RANGE,
                    {"low": summary.lowest.cost, "high": summary.highest.cost, "range_percentage": range_pct},
                )
            )
    return facts


def period_facts(comparison: PeriodComparison) -> list[InsightFact]:
    facts: list[InsightFact] = [
        InsightFact(
            InsightKind.PERIOD_CHANGE,
            {
                "difference": comparison.absolute_difference,
                "percentage": comparison.percentage_change,
            },
        )
    ]

    p1, p2 = comparison.period1, comparison.period2
    if p1.days != p2.days:
        if p2.daily_average > p1.daily_average * (1 + DAILY_AVERAGE_BAND):
            facts.append(
                InsightFact(
                    InsightKind.DAILY_AVERAGE_SHIFT,
                    {"direction": "increase", "before": p1.daily_average, "after": p2.daily_average},
                )
            )
        elif p2.daily_average < p1.daily_average * (1 - DAILY_AVERAGE_BAND):
            facts.append(
                InsightFact(
                    InsightKind.DAILY_AVERAGE_SHIFT,
                    {"direction": "decrease", "before": p1.daily_average, "after": p2.daily_average},
                )
            )

    services = comparison.services or ()
    increase = next((s for s in services if s.difference > 0), None)
    if increase and increase.percentage_change > SERVICE_SHIFT_PERCENT:
        facts.append(
            InsightFact(
                InsightKind.LARGEST_INCREASE,
                {"service": increase.service, "percentage": increase.percentage_change},
            )
        )
    decrease = next((s for s in services if s.difference < 0), None)
    if decrease and abs(decrease.percentage_change) > SERVICE_SHIFT_PERCENT:
        facts.append(
            InsightFact(
                InsightKind.LARGEST_DECREASE,
                {"service": decrease.service, "percentage": decrease.percentage_change},
            )
        )

    new = [s.service for s in services if s.period1_cost == 0 and s.period2_cost > 0]
    if new:
        facts.append(InsightFact(InsightKind.NEW_SERVICES, {"services": new}))
    gone = [s.service for s in services if s.period1_cost > 0 and s.period2_cost == 0]
    if gone:
        facts.append(InsightFact(InsightKind.DISCONTINUED_SERVICES, {"services": gone}))

    if comparison.provider is ProviderId.AWS and comparison.percentage_change > AWS_REVIEW_PERCENT:
        facts.append(InsightFact(InsightKind.PROVIDER_HINT, {"hint": HINT_AWS_REVIEW, "provider": "aws"}))
    elif comparison.provider is ProviderId.OPENAI and comparison.absolute_difference > OPENAI_REVIEW_ABSOLUTE:
        facts.append(
            InsightFact(InsightKind.PROVIDER_HINT, {"hint": HINT_API_USAGE_REVIEW, "provider": "openai"})
        )
    return facts


def cross_breakdown_facts(analyses: Sequence[BreakdownAnalysis]) -> list[InsightFact]:
    total = sum((a.total_cost for a in analyses), Decimal("0"))
    facts = [InsightFact(InsightKind.TOTAL_ACROSS_PROVIDERS, {"total": total})]

    counts: dict[str, int] = {}
    for analysis in analyses:
        if analysis.dimensions and analysis.dimensions[0] is BreakdownDimension.SERVICE:
            for item in analysis.items[:3]:
                counts[item.key] = counts.get(item.key, 0) + 1
    common = [key for key, count in counts.items() if count > 1]
    if common:
        facts.append(InsightFact(InsightKind.COMMON_TOP_SERVICES, {"services": common}))
    return facts


def cross_trend_facts(analyses: Sequence[TrendAnalysis]) -> list[InsightFact]:
    total = sum((a.summary.total_cost for a in analyses), Decimal("0"))
    facts = [InsightFact(InsightKind.TOTAL_ACROSS_PROVIDERS, {"total": total})]

    increasing = [a.provider.value for a in analyses if a.summary.trend == "increasing"]
    if increasing:
        facts.append(InsightFact(InsightKind.INCREASING_PROVIDERS, {"providers": increasing}))
    volatile = [a.provider.value for a in analyses if a.summary.volatility == "high"]
    if volatile:
        facts.append(InsightFact(InsightKind.VOLATILE_PROVIDERS, {"providers": volatile}))
    return facts


def cross_period_facts(
    comparisons: Sequence[PeriodComparison], total1: Decimal, total2: Decimal, percentage: float
) -> list[InsightFact]:
    facts = [
        InsightFact(
            InsightKind.OVERALL_PERIOD_CHANGE,
            {"before": total1, "after": total2, "percentage": percentage},
        )
    ]
    ups = [c.provider.value for c in comparisons if c.percentage_change > SIGNIFICANT_PROVIDER_PERCENT]
    if ups:
        facts.append(InsightFact(InsightKind.SIGNIFICANT_INCREASES, {"providers": ups}))
    downs = [c.provider.value for c in comparisons if c.percentage_change < -SIGNIFICANT_PROVIDER_PERCENT]
    if downs:
        facts.append(InsightFact(InsightKind.SIGNIFICANT_DECREASES, {"providers": downs}))
    return facts


def provider_share_facts(shares: Sequence[ProviderShare]) -> list[InsightFact]:
    facts: list[InsightFact] = []
    if not shares:
        return facts
    top = max(shares, key=lambda s: s.total)
    if top.total > 0:
        facts.append(
            InsightFact(InsightKind.TOP_PROVIDER, {"provider": top.provider.value, "total": top.total})
        )
    dominant = [s for s in shares if s.percentage > LOCK_IN_SHARE_PERCENT]
    if dominant:
        facts.append(
            InsightFact(
                InsightKind.VENDOR_LOCK_IN,
                {"provider": dominant[0].provider.value, "percentage": dominant[0].percentage},
            )
        )

    totals = {s.provider: s.total for s in shares}
    if totals.get(ProviderId.AWS, Decimal("0")) > AWS_COMMITMENT_ABSOLUTE:
        facts.append(InsightFact(InsightKind.PROVIDER_HINT, {"hint": HINT_AWS_COMMITMENTS, "provider": "aws"}))
    if totals.get(ProviderId.OPENAI, Decimal("0")) > OPENAI_MODEL_TIER_ABSOLUTE:
        facts.append(
            InsightFact(InsightKind.PROVIDER_HINT, {"hint": HINT_CHEAPER_GPT_TIER, "provider": "openai"})
        )
    return facts


def render_share_chart(shares: Sequence[ProviderShare], currency: str = "USD") -> str:
    """Horizontal bar chart of provider totals, largest first, bars scaled to the largest."""
    if not shares:
        return "No data to display"

    ordered = sorted(shares, key=lambda s: s.total, reverse=True)
    peak = ordered[0].total
    lines = ["", "Cost Comparison Chart:", CHART_RULE, ""]
    for share in ordered:
        width = 0
        if peak > 0:
            scaled = share.total / peak * CHART_BAR_WIDTH
            width = int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        label = share.provider.value.ljust(CHART_LABEL_WIDTH)
        lines.append(f"{label} │ {'█' * width} {format_money(share.total, currency)}")
    lines.extend(["", CHART_RULE])
    return "\n".join(lines)


def format_money(amount: Decimal, currency: str = "USD") -> str:
    if currency == "USD":
        return f"${amount:,.2f}"
    return f"{amount:,.2f} {currency}"


def _render(fact: InsightFact, currency: str) -> str:
    d = fact.data
    kind = fact.kind

    def money(value: Decimal) -> str:
        return format_money(value, currency)

    if kind is InsightKind.TOP_DRIVER:
        return f"Top cost driver: {d['key']} ({money(d['value'])}, {d['percentage']:.1f}%)"
    elif kind is InsightKind.HIGH_CONCENTRATION:
        return f"High concentration: top 3 items account for {d['percentage']:.1f}% of costs"
    elif kind is InsightKind.LONG_TAIL:
        return f"Long tail: {d['count']} items each contribute <{d['below_percentage']:g}% of total cost"
    elif kind is InsightKind.UNEVEN_DISTRIBUTION:
        return "Highly uneven cost distribution across items"
    elif kind is InsightKind.EVEN_DISTRIBUTION:
        return "Relatively even cost distribution"
    elif kind is InsightKind.PROVIDER_HINT:
        return _HINT_TEXT[d["hint"]]
    elif kind is InsightKind.TREND_UP:
        return f"{d['provider']} costs are trending upward, latest: {money(d['latest'])}"
    elif kind is InsightKind.TREND_DOWN:
        return f"{d['provider']} costs are decreasing"
    elif kind is InsightKind.HIGH_VOLATILITY:
        return "High cost volatility detected - consider investigating spikes"
    elif kind is InsightKind.SPIKES:
        return f"{d['count']} cost spike(s) detected (>50% increase)"
    elif kind is InsightKind.WIDE_RANGE:
        return f"Wide cost range: {money(d['low'])} - {money(d['high'])}"
    elif kind is InsightKind.PERIOD_CHANGE:
        diff = d["difference"]
        if diff > 0:
            return f"Costs increased by {money(diff)} ({d['percentage']:.1f}%)"
        if diff < 0:
            return f"Costs decreased by {money(abs(diff))} ({abs(d['percentage']):.1f}%)"
        return "Costs remained stable between periods"
    elif kind is InsightKind.DAILY_AVERAGE_SHIFT:
        verb = "increased" if d["direction"] == "increase" else "decreased"
        return f"Daily average {verb} from {money(d['before'])} to {money(d['after'])}"
    elif kind is InsightKind.LARGEST_INCREASE:
        return f"Largest increase: {d['service']} (+{d['percentage']:.1f}%)"
    elif kind is InsightKind.LARGEST_DECREASE:
        return f"Largest decrease: {d['service']} ({d['percentage']:.1f}%)"
    elif kind is InsightKind.NEW_SERVICES:
        return f"New services in period 2: {', '.join(d['services'])}"
    elif kind is InsightKind.DISCONTINUED_SERVICES:
        return f"Services discontinued: {', '.join(d['services'])}"
    elif kind is InsightKind.TOTAL_ACROSS_PROVIDERS:
        return f"Total cost across all providers: {money(d['total'])}"
    elif kind is InsightKind.COMMON_TOP_SERVICES:
        return f"Common high-cost services: {', '.join(d['services'])}"
    elif kind is InsightKind.INCREASING_PROVIDERS:
        return f"Increasing costs detected for: {', '.join(d['providers'])}"
    elif kind is InsightKind.VOLATILE_PROVIDERS:
        return f"High volatility providers: {', '.join(d['providers'])}"
    elif kind is InsightKind.OVERALL_PERIOD_CHANGE:
        sign = "+" if d["percentage"] > 0 else ""
        return f"Overall change: {money(d['before'])} -> {money(d['after'])} ({sign}{d['percentage']:.1f}%)"
    elif kind is InsightKind.SIGNIFICANT_INCREASES:
        return f"Significant increases: {', '.join(d['providers'])}"
    elif kind is InsightKind.SIGNIFICANT_DECREASES:
        return f"Significant decreases: {', '.join(d['providers'])}"
    elif kind is InsightKind.TOP_PROVIDER:
        return f"{d['provider'].upper()} is your highest cost provider at {money(d['total'])}"
    elif kind is InsightKind.VENDOR_LOCK_IN:
        return (
            f"{d['provider'].upper()} carries {d['percentage']:.1f}% of spend - "
            "consider diversifying to avoid vendor lock-in"
        )
    else:
        assert_never(kind)


def render_insights(facts: Sequence[InsightFact], currency: str = "USD") -> list[str]:
    return [_render(fact, currency) for fact in facts]
