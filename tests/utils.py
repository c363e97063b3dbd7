from collections.abc import Iterable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from costlens.schemas.costs import (
    CostBreakdownItem,
    CostBreakdownMetadata,
    ProviderId,
    UnifiedCostData,
)

PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 1, 31, tzinfo=timezone.utc)


def make_item(
    service: Optional[str],
    amount: Any,
    day: Optional[date] = None,
    region: Optional[str] = None,
    tags: Optional[dict[str, str]] = None,
) -> CostBreakdownItem:
    metadata = None
    if region or tags:
        metadata = CostBreakdownMetadata(region=region, tags=tags)
    return CostBreakdownItem(service=service, amount=Decimal(str(amount)), date=day, metadata=metadata)


def make_cost_data(
    items: Iterable[CostBreakdownItem],
    provider: ProviderId = ProviderId.AWS,
    start: datetime = PERIOD_START,
    end: datetime = PERIOD_END,
    currency: str = "USD",
) -> UnifiedCostData:
    return UnifiedCostData.from_items(provider, start, end, list(items), currency=currency)


def daily_series(costs: Iterable[Any], start: date = date(2024, 1, 1)) -> list[CostBreakdownItem]:
    """One item per consecutive day starting at `start`."""
    return [
        make_item("svc", cost, day=date.fromordinal(start.toordinal() + offset))
        for offset, cost in enumerate(costs)
    ]


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
