from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TOTAL_TOLERANCE = Decimal("0.01")

_Date = date

FALLBACK_SERVICE = "Unknown Service"
FALLBACK_REGION = "Global"
FALLBACK_DATE = "Unknown Date"
FALLBACK_TAG = "Untagged"


class ProviderId(str, Enum):
    AWS = "aws"
    GCP = "gcp"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class Granularity(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    TOTAL = "total"


def ensure_utc(value: datetime | date) -> datetime:
    """Dates become UTC midnight; naive datetimes are assumed UTC."""
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class DateRange(_Frozen):
    start: datetime
    end: datetime

    @field_validator("start", "end", mode="before")
    @classmethod
    def _coerce_utc(cls, value: object) -> object:
        if isinstance(value, (datetime, date)):
            return ensure_utc(value)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> Self:
        if self.start >= self.end:
            raise ValueError("period start must be before period end")
        return self

    @property
    def days(self) -> int:
        """Whole days covered, rounded up."""
        seconds = (self.end - self.start).total_seconds()
        whole, rest = divmod(seconds, 86400)
        return int(whole) + (1 if rest > 0 else 0)


class UsageInfo(_Frozen):
    quantity: Decimal
    unit: str


class CostBreakdownMetadata(_Frozen):
    region: str | None = None
    tags: dict[str, str] | None = None


class CostBreakdownItem(_Frozen):
    """One line item as reported by a provider after normalization."""

    service: str | None = None
    amount: Decimal
    usage: UsageInfo | None = None
    date: _Date | None = None
    metadata: CostBreakdownMetadata | None = None

    @property
    def region(self) -> str | None:
        return self.metadata.region if self.metadata else None

    def tag(self, key: str) -> str | None:
        if self.metadata is None or not self.metadata.tags:
            return None
        return self.metadata.tags.get(key)


class CostTotals(_Frozen):
    total: Decimal = Field(ge=0)
    currency: str = "USD"
    breakdown: tuple[CostBreakdownItem, ...] = ()

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if not value:
            raise ValueError("currency must not be empty")
        return value

    @model_validator(mode="after")
    def _check_total_matches_breakdown(self) -> Self:
        if self.breakdown:
            summed = sum((item.amount for item in self.breakdown), Decimal("0"))
            if abs(summed - self.total) > TOTAL_TOLERANCE:
                raise ValueError(
                    f"breakdown sum {summed} does not match total {self.total}"
                )
        return self


class CostMetadata(_Frozen):
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: Literal["api", "cache", "manual"] = "api"


class UnifiedCostData(_Frozen):
    """Canonical cross-provider cost record. Immutable once built."""

    provider: ProviderId
    period: DateRange
    costs: CostTotals
    metadata: CostMetadata = Field(default_factory=CostMetadata)

    @classmethod
    def from_items(
        cls,
        provider: ProviderId,
        start: datetime | date,
        end: datetime | date,
        items: list[CostBreakdownItem],
        currency: str = "USD",
    ) -> "UnifiedCostData":
        """Builds an instance whose total is the exact sum of `items`."""
        total = sum((item.amount for item in items), Decimal("0"))
        return cls(
            provider=provider,
            period=DateRange(start=start, end=end),
            costs=CostTotals(total=total, currency=currency, breakdown=tuple(items)),
        )

    def as_cached(self) -> "UnifiedCostData":
        return self.model_copy(
            update={"metadata": self.metadata.model_copy(update={"source": "cache"})}
        )


class CostQueryParams(_Frozen):
    start_date: datetime
    end_date: datetime
    granularity: Granularity = Granularity.TOTAL
    group_by: tuple[str, ...] = ()

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _coerce_utc(cls, value: object) -> object:
        if isinstance(value, (datetime, date)):
            return ensure_utc(value)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> Self:
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self

    def cache_params(self) -> dict[str, str]:
        """Flat, JSON-safe view used for cache key construction."""
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "granularity": self.granularity.value,
            "group_by": ",".join(self.group_by),
        }
