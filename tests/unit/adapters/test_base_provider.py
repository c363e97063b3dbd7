"""
Tests for the shared provider pipeline: cache read-through, retries,
line-item merging and error wrapping.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from costlens.schemas.costs import (
    CostBreakdownItem,
    CostBreakdownMetadata,
    CostQueryParams,
    ProviderId,
    UsageInfo,
)
from costlens.shared.adapters.base import BaseCostProvider, merge_line_items, to_decimal
from costlens.shared.core.cache import CostCacheManager, MemoryCache, NoOpCacheManager
from costlens.shared.core.exceptions import (
    AuthenticationError,
    CacheError,
    ProviderError,
)
from costlens.shared.core.retry import RetryPolicy
from tests.utils import make_item


class StrictPayload(BaseModel):
    amount: int


class FakeProvider(BaseCostProvider[list[dict]]):
    """Returns queued raw responses (or raises queued errors) in order."""

    provider_id = ProviderId.AWS

    def __init__(self, responses, **kwargs):
        super().__init__(**kwargs)
        self.responses = list(responses)
        self.fetch_calls = 0

    async def validate_credentials(self) -> bool:
        return True

    async def _fetch_raw(self, params: CostQueryParams) -> list[dict]:
        self.fetch_calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def _to_items(self, raw: list[dict], params: CostQueryParams) -> list[CostBreakdownItem]:
        items = []
        for row in raw:
            if "strict" in row:
                StrictPayload.model_validate(row["strict"])
            items.append(
                CostBreakdownItem(service=row["service"], amount=Decimal(row["amount"]), date=row.get("date"))
            )
        return items


@pytest.mark.asyncio
async def test_get_costs_builds_unified_data(query_params, fast_retry):
    provider = FakeProvider([[{"service": "EC2", "amount": "50"}, {"service": "S3", "amount": "20"}]], retry_policy=fast_retry)

    data = await provider.get_costs(query_params)

    assert data.provider is ProviderId.AWS
    assert data.costs.total == Decimal("70")
    assert [i.service for i in data.costs.breakdown] == ["EC2", "S3"]
    assert data.metadata.source == "api"


@pytest.mark.asyncio
async def test_second_call_is_served_from_cache(query_params, fast_retry, memory_cache_manager):
    """Identical parameters hit the provider API only once."""
    provider = FakeProvider(
        [[{"service": "EC2", "amount": "50"}]],
        cache=memory_cache_manager,
        retry_policy=fast_retry,
    )

    first = await provider.get_costs(query_params)
    second = await provider.get_costs(query_params)

    assert provider.fetch_calls == 1
    assert first.metadata.source == "api"
    assert second.metadata.source == "cache"
    assert second.costs == first.costs


@pytest.mark.asyncio
async def test_cache_failures_fall_back_to_provider(query_params, fast_retry):
    cache = CostCacheManager(MemoryCache())
    cache.get_cost_data = AsyncMock(side_effect=CacheError("read failed"))
    cache.set_cost_data = AsyncMock(side_effect=CacheError("write failed"))
    provider = FakeProvider([[{"service": "EC2", "amount": "5"}]], cache=cache, retry_policy=fast_retry)

    data = await provider.get_costs(query_params)

    assert data.costs.total == Decimal("5")
    cache.set_cost_data.assert_awaited_once()


@pytest.mark.asyncio
async def test_corrupt_cache_entry_is_treated_as_miss(query_params, fast_retry):
    cache = CostCacheManager(MemoryCache())
    await cache.set_cost_data("aws", query_params.cache_params(), {"garbage": True})
    provider = FakeProvider([[{"service": "EC2", "amount": "5"}]], cache=cache, retry_policy=fast_retry)

    data = await provider.get_costs(query_params)

    assert provider.fetch_calls == 1
    assert data.metadata.source == "api"


@pytest.mark.asyncio
async def test_transient_failures_are_retried(query_params, fast_retry, recording_sleep):
    provider = FakeProvider(
        [
            ProviderError("aws", "timeout", code="TIMEOUT"),
            [{"service": "EC2", "amount": "1"}],
        ],
        retry_policy=fast_retry,
    )

    data = await provider.get_costs(query_params)

    assert provider.fetch_calls == 2
    assert recording_sleep.delays == [1.0]
    assert data.costs.total == Decimal("1")


@pytest.mark.asyncio
async def test_taxonomy_errors_propagate_unchanged(query_params, fast_retry):
    error = AuthenticationError("aws")
    provider = FakeProvider([error], retry_policy=fast_retry)

    with pytest.raises(AuthenticationError) as exc_info:
        await provider.get_costs(query_params)

    assert exc_info.value is error
    assert provider.fetch_calls == 1


@pytest.mark.asyncio
async def test_unexpected_errors_are_wrapped(query_params, fast_retry):
    provider = FakeProvider([KeyError("boom")], retry_policy=fast_retry)

    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(query_params)

    assert exc_info.value.code == "PROVIDER_ERROR"
    assert "Failed to fetch costs" in exc_info.value.message
    assert provider.fetch_calls == 1


@pytest.mark.asyncio
async def test_malformed_response_is_invalid_response(query_params, fast_retry):
    provider = FakeProvider([[{"service": "EC2", "amount": "1", "strict": {"amount": "nope"}}]], retry_policy=fast_retry)

    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(query_params)

    assert exc_info.value.code == "INVALID_RESPONSE"


@pytest.mark.asyncio
async def test_default_retry_policy_is_named_after_provider():
    provider = FakeProvider([])
    assert isinstance(provider.retry_policy, RetryPolicy)
    assert provider.retry_policy.operation_name == "aws_get_costs"
    assert isinstance(provider.cache, NoOpCacheManager)
    assert provider.name is ProviderId.AWS


def test_merge_collapses_duplicates_preserving_order():
    items = [
        make_item("EC2", "10", day=date(2024, 1, 1)),
        make_item("S3", "5", day=date(2024, 1, 1)),
        make_item("EC2", "2.5", day=date(2024, 1, 1)),
        make_item("EC2", "7", day=date(2024, 1, 2)),
    ]

    merged = merge_line_items(items)

    assert [(i.service, i.amount, i.date) for i in merged] == [
        ("EC2", Decimal("12.5"), date(2024, 1, 1)),
        ("S3", Decimal("5"), date(2024, 1, 1)),
        ("EC2", Decimal("7"), date(2024, 1, 2)),
    ]


def test_merge_keeps_distinct_regions_and_tags_apart():
    items = [
        make_item("EC2", "1", region="us-east-1"),
        make_item("EC2", "1", region="eu-west-1"),
        make_item("EC2", "1", tags={"team": "a"}),
        make_item("EC2", "1", tags={"team": "b"}),
    ]
    assert len(merge_line_items(items)) == 4


def test_merge_sums_usage_with_matching_units():
    def with_usage(quantity, unit):
        return CostBreakdownItem(
            service="EC2",
            amount=Decimal("1"),
            usage=UsageInfo(quantity=Decimal(quantity), unit=unit),
            metadata=CostBreakdownMetadata(region="us-east-1"),
        )

    merged = merge_line_items([with_usage("3", "Hrs"), with_usage("4", "Hrs")])
    assert merged[0].usage == UsageInfo(quantity=Decimal("7"), unit="Hrs")

    mixed = merge_line_items([with_usage("3", "Hrs"), with_usage("4", "GB")])
    assert mixed[0].usage == UsageInfo(quantity=Decimal("3"), unit="Hrs")
    assert mixed[0].amount == Decimal("2")


@pytest.mark.parametrize(
    "value, expected",
    [(None, Decimal("0")), ("", Decimal("0")), ("1.25", Decimal("1.25")), (0.1, Decimal("0.1")), (3, Decimal("3"))],
)
def test_to_decimal(value, expected):
    assert to_decimal(value) == expected
