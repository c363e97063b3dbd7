"""
OpenAI organization costs adapter.

Reads `/v1/organization/costs` with an admin key, one daily bucket per day,
grouped by line item. Pages are followed until `has_more` is false.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from costlens.schemas.costs import CostBreakdownItem, CostQueryParams, ProviderId
from costlens.shared.adapters.base import BaseCostProvider, to_decimal
from costlens.shared.adapters.http_transport import build_http_client, request_json
from costlens.shared.core.cache import CostCacheManager
from costlens.shared.core.exceptions import AuthenticationError
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

OPENAI_API_BASE = "https://api.openai.com"
COSTS_PATH = "/v1/organization/costs"
MAX_PAGES = 100


class OpenAIAmount(BaseModel):
    value: Optional[float] = 0.0
    currency: str = "usd"


class OpenAICostResult(BaseModel):
    amount: OpenAIAmount = Field(default_factory=OpenAIAmount)
    line_item: Optional[str] = None
    project_id: Optional[str] = None


class OpenAICostBucket(BaseModel):
    start_time: int
    end_time: int
    results: list[OpenAICostResult] = Field(default_factory=list)


class OpenAICostPage(BaseModel):
    data: list[OpenAICostBucket] = Field(default_factory=list)
    has_more: bool = False
    next_page: Optional[str] = None


class OpenAICostProvider(BaseCostProvider[list[OpenAICostBucket]]):
    provider_id = ProviderId.OPENAI

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
            OPENAI_API_BASE,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def validate_credentials(self) -> bool:
        now = int(datetime.now(timezone.utc).timestamp())
        try:
            await request_json(
                self.client,
                self.provider_id.value,
                COSTS_PATH,
                params={"start_time": now - 86400, "limit": 1},
            )
        except AuthenticationError:
            logger.warning("openai_credentials_rejected")
            return False
        return True

    async def _fetch_raw(self, params: CostQueryParams) -> list[OpenAICostBucket]:
        query: dict[str, object] = {
            "start_time": int(params.start_date.timestamp()),
            "end_time": int(params.end_date.timestamp()),
            "bucket_width": "1d",
            "group_by": "line_item",
            "limit": 180,
        }
        buckets: list[OpenAICostBucket] = []
        for _ in range(MAX_PAGES):
            body = await request_json(self.client, self.provider_id.value, COSTS_PATH, params=query)
            page = OpenAICostPage.model_validate(body)
            buckets.extend(page.data)
            if not (page.has_more and page.next_page):
                break
            query["page"] = page.next_page
        else:
            logger.warning("openai_page_limit_reached", pages=MAX_PAGES)
        return buckets

    def _to_items(self, raw: list[OpenAICostBucket], params: CostQueryParams) -> list[CostBreakdownItem]:
        return map_openai_costs(raw)

    def _currency(self, raw: list[OpenAICostBucket]) -> str:
        for bucket in raw:
            for result in bucket.results:
                return result.amount.currency.upper()
        return "USD"

    async def aclose(self) -> None:
        await self.client.aclose()


def map_openai_costs(buckets: list[OpenAICostBucket]) -> list[CostBreakdownItem]:
    """One item per (line item, day); non-positive amounts are dropped."""
    items: list[CostBreakdownItem] = []
    for bucket in buckets:
        day = datetime.fromtimestamp(bucket.start_time, tz=timezone.utc).date()
        for result in bucket.results:
            amount = to_decimal(result.amount.value)
            if amount <= Decimal("0"):
                continue
            items.append(
                CostBreakdownItem(
                    service=result.line_item,
                    amount=amount,
                    date=day,
                )
            )
    return items
