"""
Anthropic Admin API adapter.

Costs come from `/v1/organizations/cost_report` (amounts in cents, as
strings). Token usage comes from `/v1/organizations/usage_report/messages`
and is priced locally with a per-million-token table.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from costlens.schemas.analytics import ModelUsage, UsageReport
from costlens.schemas.costs import (
    CostBreakdownItem,
    CostBreakdownMetadata,
    CostQueryParams,
    DateRange,
    Granularity,
    ProviderId,
)
from costlens.shared.adapters.base import BaseCostProvider, to_decimal
from costlens.shared.adapters.http_transport import build_http_client, request_json
from costlens.shared.core.cache import CostCacheManager
from costlens.shared.core.exceptions import (
    AuthenticationError,
    CacheError,
    CostLensException,
    ProviderError,
)
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

ANTHROPIC_API_BASE = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
COST_REPORT_PATH = "/v1/organizations/cost_report"
USAGE_REPORT_PATH = "/v1/organizations/usage_report/messages"
MAX_PAGES = 100
CENTS = Decimal("100")
PER_MILLION = Decimal("1000000")


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD per million tokens."""

    input: Decimal
    output: Decimal
    cache_write: Decimal
    cache_read: Decimal


def _flat(input_rate: str, output_rate: str) -> ModelPricing:
    # Models without prompt caching bill cached tokens as plain input
    return ModelPricing(Decimal(input_rate), Decimal(output_rate), Decimal(input_rate), Decimal(input_rate))


# Longest prefix wins, so dated model ids resolve to their family.
MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5": ModelPricing(Decimal("5"), Decimal("25"), Decimal("6.25"), Decimal("0.50")),
    "claude-opus-4": ModelPricing(Decimal("15"), Decimal("75"), Decimal("18.75"), Decimal("1.50")),
    "claude-sonnet-4": ModelPricing(Decimal("3"), Decimal("15"), Decimal("3.75"), Decimal("0.30")),
    "claude-haiku-4-5": ModelPricing(Decimal("1"), Decimal("5"), Decimal("1.25"), Decimal("0.10")),
    "claude-3-7-sonnet": ModelPricing(Decimal("3"), Decimal("15"), Decimal("3.75"), Decimal("0.30")),
    "claude-3-5-sonnet": ModelPricing(Decimal("3"), Decimal("15"), Decimal("3.75"), Decimal("0.30")),
    "claude-3-5-haiku": ModelPricing(Decimal("1"), Decimal("5"), Decimal("1.25"), Decimal("0.10")),
    "claude-3-opus": ModelPricing(Decimal("15"), Decimal("75"), Decimal("18.75"), Decimal("1.50")),
    "claude-3-sonnet": ModelPricing(Decimal("3"), Decimal("15"), Decimal("3.75"), Decimal("0.30")),
    "claude-3-haiku": ModelPricing(Decimal("0.25"), Decimal("1.25"), Decimal("0.30"), Decimal("0.03")),
    "claude-2.1": _flat("8", "24"),
    "claude-2": _flat("8", "24"),
    "claude-instant-1": _flat("1.63", "5.51"),
}


def pricing_for(model: str) -> Optional[ModelPricing]:
    matches = [prefix for prefix in MODEL_PRICING if model.startswith(prefix)]
    if not matches:
        return None
    return MODEL_PRICING[max(matches, key=len)]


class AnthropicCostEntry(BaseModel):
    workspace_name: Optional[str] = None
    description: Optional[str] = None
    cost_usd: str = "0"


class AnthropicCostBucket(BaseModel):
    bucket_start_time: datetime
    bucket_end_time: datetime
    costs: list[AnthropicCostEntry] = Field(default_factory=list)


class AnthropicUsageEntry(BaseModel):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class AnthropicUsageBucket(BaseModel):
    bucket_start_time: datetime
    bucket_end_time: datetime
    usage: list[AnthropicUsageEntry] = Field(default_factory=list)


class AnthropicPage(BaseModel):
    data: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    next_page: Optional[str] = None


def _date_param(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class AnthropicCostProvider(BaseCostProvider[list[AnthropicCostBucket]]):
    provider_id = ProviderId.ANTHROPIC

    def __init__(
        self,
        api_key: str,
        cache: Optional[CostCacheManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(cache=cache, retry_policy=retry_policy)
        self.client = build_http_client(
            ANTHROPIC_API_BASE,
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            timeout=timeout,
            transport=transport,
        )

    async def _paginate(self, path: str, query: list[tuple[str, str]]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page_query = list(query)
        for _ in range(MAX_PAGES):
            body = await request_json(self.client, self.provider_id.value, path, params=page_query)
            page = AnthropicPage.model_validate(body)
            rows.extend(page.data)
            if not (page.has_more and page.next_page):
                break
            page_query = [*query, ("page", page.next_page)]
        else:
            logger.warning("anthropic_page_limit_reached", path=path, pages=MAX_PAGES)
        return rows

    async def validate_credentials(self) -> bool:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=1)
        try:
            await request_json(
                self.client,
                self.provider_id.value,
                COST_REPORT_PATH,
                params=[("starting_at", _date_param(start)), ("ending_at", _date_param(end))],
            )
        except AuthenticationError:
            logger.warning("anthropic_credentials_rejected")
            return False
        return True

    async def _fetch_raw(self, params: CostQueryParams) -> list[AnthropicCostBucket]:
        query = [
            ("starting_at", _date_param(params.start_date)),
            ("ending_at", _date_param(params.end_date)),
            ("group_by[]", "workspace_id"),
            ("group_by[]", "description"),
        ]
        rows = await self._paginate(COST_REPORT_PATH, query)
        return [AnthropicCostBucket.model_validate(row) for row in rows]

    def _to_items(self, raw: list[AnthropicCostBucket], params: CostQueryParams) -> list[CostBreakdownItem]:
        return map_anthropic_costs(raw)

    async def get_usage_data(self, params: CostQueryParams) -> UsageReport:
        """Token usage per model, priced locally. Cached like cost data."""
        provider = self.provider_id.value
        cache_params = {**params.cache_params(), "type": "usage"}

        try:
            cached = await self.cache.get_cost_data(provider, cache_params)
        except CacheError as exc:
            logger.warning("cache_read_failed", provider=provider, error=exc.message)
            cached = None
        if cached is not None:
            try:
                return UsageReport.model_validate(cached)
            except PydanticValidationError as exc:
                logger.warning("cache_entry_invalid", provider=provider, error=str(exc))

        query = [
            ("starting_at", _date_param(params.start_date)),
            ("ending_at", _date_param(params.end_date)),
            ("bucket_width", "1d"),
            ("group_by[]", "model"),
            ("group_by[]", "workspace_id"),
        ]
        try:
            rows = await self.retry_policy.execute(lambda: self._paginate(USAGE_REPORT_PATH, query))
            buckets = [AnthropicUsageBucket.model_validate(row) for row in rows]
        except CostLensException:
            raise
        except PydanticValidationError as exc:
            raise ProviderError(provider, "Malformed usage report", code="INVALID_RESPONSE") from exc

        report = summarize_anthropic_usage(
            buckets, DateRange(start=params.start_date, end=params.end_date), params.granularity
        )
        logger.info(
            "anthropic_usage_fetched",
            models=len(report.models),
            total_cost=str(report.total_cost),
        )
        try:
            await self.cache.set_cost_data(provider, cache_params, report.model_dump(mode="json"))
        except CacheError as exc:
            logger.warning("cache_write_failed", provider=provider, error=exc.message)
        return report

    async def aclose(self) -> None:
        await self.client.aclose()


def map_anthropic_costs(buckets: list[AnthropicCostBucket]) -> list[CostBreakdownItem]:
    items: list[CostBreakdownItem] = []
    for bucket in buckets:
        day = bucket.bucket_start_time.astimezone(timezone.utc).date()
        for entry in bucket.costs:
            amount = to_decimal(entry.cost_usd) / CENTS
            if amount <= 0:
                continue
            metadata = None
            if entry.workspace_name:
                metadata = CostBreakdownMetadata(tags={"workspace": entry.workspace_name})
            items.append(
                CostBreakdownItem(
                    service=entry.description or entry.workspace_name,
                    amount=amount,
                    date=day,
                    metadata=metadata,
                )
            )
    return items


def usage_cost(entry: AnthropicUsageEntry) -> Optional[Decimal]:
    """USD cost for one usage entry, or None when the model is not priced."""
    pricing = pricing_for(entry.model)
    if pricing is None:
        return None
    return (
        entry.input_tokens * pricing.input
        + entry.output_tokens * pricing.output
        + entry.cache_creation_input_tokens * pricing.cache_write
        + entry.cache_read_input_tokens * pricing.cache_read
    ) / PER_MILLION


def summarize_anthropic_usage(
    buckets: list[AnthropicUsageBucket], period: DateRange, granularity: Granularity
) -> UsageReport:
    totals: dict[str, dict[str, Any]] = {}
    for bucket in buckets:
        for entry in bucket.usage:
            cost = usage_cost(entry)
            if cost is None:
                logger.debug("anthropic_model_unpriced", model=entry.model)
                continue
            acc = totals.setdefault(
                entry.model,
                {"input": 0, "output": 0, "cache_write": 0, "cache_read": 0, "cost": Decimal("0")},
            )
            acc["input"] += entry.input_tokens
            acc["output"] += entry.output_tokens
            acc["cache_write"] += entry.cache_creation_input_tokens
            acc["cache_read"] += entry.cache_read_input_tokens
            acc["cost"] += cost

    models = tuple(
        sorted(
            (
                ModelUsage(
                    model=model,
                    input_tokens=acc["input"],
                    output_tokens=acc["output"],
                    cache_creation_tokens=acc["cache_write"],
                    cache_read_tokens=acc["cache_read"],
                    cost=acc["cost"],
                )
                for model, acc in totals.items()
                if acc["cost"] > 0
            ),
            key=lambda m: m.cost,
            reverse=True,
        )
    )
    return UsageReport(
        provider=ProviderId.ANTHROPIC,
        period=period,
        granularity=granularity,
        models=models,
        total_cost=sum((m.cost for m in models), Decimal("0")),
        total_input_tokens=sum(m.input_tokens for m in models),
        total_output_tokens=sum(m.output_tokens for m in models),
    )

