from datetime import date as _Date
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from costlens.schemas.costs import DateRange, Granularity, ProviderId, UnifiedCostData

TrendDirection = Literal["increasing", "decreasing", "stable"]
VolatilityLevel = Literal["low", "medium", "high"]
ChangeDirection = Literal["increase", "decrease", "stable"]
ProviderHealth = Literal["active", "invalid_credentials", "error", "not_configured"]


class BreakdownDimension(str, Enum):
    SERVICE = "service"
    REGION = "region"
    DATE = "date"
    TAG = "tag"


class TrendGranularity(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TrendPeriod(str, Enum):
    LAST_30_DAYS = "30d"
    LAST_60_DAYS = "60d"
    LAST_90_DAYS = "90d"
    LAST_6_MONTHS = "6m"
    LAST_YEAR = "1y"


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProviderErrorRecord(_Result):
    provider: str
    error: str
    code: str | None = None


class BreakdownItem(_Result):
    key: str
    value: Decimal
    percentage: float
    sub_breakdown: tuple["BreakdownItem", ...] | None = None


class BreakdownAnalysis(_Result):
    provider: ProviderId
    period: DateRange
    currency: str
    total_cost: Decimal
    dimensions: tuple[BreakdownDimension, ...]
    items: tuple[BreakdownItem, ...]
    coverage_percentage: float
    insights: tuple[str, ...] = ()


class TrendPoint(_Result):
    date: _Date
    cost: Decimal
    change_from_previous: Decimal = Decimal("0")
    change_percentage: float = 0.0


class TrendSummary(_Result):
    total_cost: Decimal
    average_cost: Decimal
    point_count: int
    highest: TrendPoint | None = None
    lowest: TrendPoint | None = None
    trend: TrendDirection = "stable"
    volatility: VolatilityLevel = "low"
    coefficient_of_variation: float = 0.0
    spikes: tuple[TrendPoint, ...] = ()


class TrendAnalysis(_Result):
    provider: ProviderId
    period: DateRange
    granularity: TrendGranularity
    currency: str
    points: tuple[TrendPoint, ...]
    summary: TrendSummary
    insights: tuple[str, ...] = ()


class PeriodSummary(_Result):
    period: DateRange
    total: Decimal
    days: int
    daily_average: Decimal


class ServiceComparison(_Result):
    service: str
    period1_cost: Decimal
    period2_cost: Decimal
    difference: Decimal
    percentage_change: float
    is_new: bool = False
    is_discontinued: bool = False


class PeriodComparison(_Result):
    provider: ProviderId
    currency: str
    period1: PeriodSummary
    period2: PeriodSummary
    absolute_difference: Decimal
    percentage_change: float
    daily_average_difference: Decimal
    trend: ChangeDirection
    services: tuple[ServiceComparison, ...] | None = None
    insights: tuple[str, ...] = ()


class AggregateCostResult(_Result):
    total: Decimal
    currency: str
    providers: dict[str, UnifiedCostData] = Field(default_factory=dict)
    errors: tuple[ProviderErrorRecord, ...] = ()


class MultiProviderBreakdown(_Result):
    providers: dict[str, BreakdownAnalysis] = Field(default_factory=dict)
    insights: tuple[str, ...] = ()
    errors: tuple[ProviderErrorRecord, ...] = ()


class MultiProviderTrends(_Result):
    providers: dict[str, TrendAnalysis] = Field(default_factory=dict)
    insights: tuple[str, ...] = ()
    errors: tuple[ProviderErrorRecord, ...] = ()


class MultiProviderComparison(_Result):
    providers: dict[str, PeriodComparison] = Field(default_factory=dict)
    total_period1: Decimal = Decimal("0")
    total_period2: Decimal = Decimal("0")
    percentage_change: float = 0.0
    insights: tuple[str, ...] = ()
    errors: tuple[ProviderErrorRecord, ...] = ()


class ProviderStatus(_Result):
    provider: ProviderId
    status: ProviderHealth
    message: str | None = None


class ProviderShare(_Result):
    provider: ProviderId
    total: Decimal
    percentage: float
    top_service: str | None = None


class ProviderComparisonResult(_Result):
    period: DateRange
    currency: str
    total: Decimal
    providers: tuple[ProviderShare, ...]
    insights: tuple[str, ...] = ()
    errors: tuple[ProviderErrorRecord, ...] = ()
    chart: str | None = None


class ModelUsage(_Result):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Decimal = Decimal("0")


class UsageReport(_Result):
    provider: ProviderId
    period: DateRange
    granularity: Granularity
    models: tuple[ModelUsage, ...]
    total_cost: Decimal
    total_input_tokens: int
    total_output_tokens: int
