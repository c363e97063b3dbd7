from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from costlens.schemas.costs import CostQueryParams, ProviderId
from costlens.shared.adapters.openai import (
    COSTS_PATH,
    OpenAICostBucket,
    OpenAICostProvider,
    map_openai_costs,
)
from costlens.shared.core.exceptions import ProviderError, RateLimitError

JAN_1 = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp())
JAN_2 = int(datetime(2024, 1, 2, tzinfo=timezone.utc).timestamp())
JAN_3 = int(datetime(2024, 1, 3, tzinfo=timezone.utc).timestamp())


def _bucket(start, end, *results):
    return {
        "object": "bucket",
        "start_time": start,
        "end_time": end,
        "results": [
            {"object": "organization.costs.result", "amount": {"value": value, "currency": "usd"}, "line_item": item}
            for item, value in results
        ],
    }


def _provider(handler, **kwargs) -> OpenAICostProvider:
    return OpenAICostProvider("sk-admin-test", transport=httpx.MockTransport(handler), **kwargs)


@pytest.fixture
def params():
    return CostQueryParams(start_date=date(2024, 1, 1), end_date=date(2024, 1, 3))


@pytest.mark.asyncio
async def test_get_costs_follows_pagination(params, fast_retry):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if "page" not in request.url.params:
            return httpx.Response(
                200,
                json={
                    "object": "page",
                    "data": [_bucket(JAN_1, JAN_2, ("gpt-4o, input", 1.5), ("gpt-4o, output", 3.0))],
                    "has_more": True,
                    "next_page": "page_2",
                },
            )
        return httpx.Response(
            200,
            json={"data": [_bucket(JAN_2, JAN_3, ("gpt-4o, input", 2.25))], "has_more": False, "next_page": None},
        )

    provider = _provider(handler, retry_policy=fast_retry)
    data = await provider.get_costs(params)
    await provider.aclose()

    assert len(requests) == 2
    first = requests[0]
    assert first.url.path == COSTS_PATH
    assert first.headers["Authorization"] == "Bearer sk-admin-test"
    assert first.url.params["start_time"] == str(JAN_1)
    assert first.url.params["end_time"] == str(JAN_3)
    assert first.url.params["bucket_width"] == "1d"
    assert first.url.params["group_by"] == "line_item"
    assert requests[1].url.params["page"] == "page_2"

    assert data.provider is ProviderId.OPENAI
    assert data.costs.currency == "USD"
    assert data.costs.total == Decimal("6.75")
    assert [(i.service, i.date) for i in data.costs.breakdown] == [
        ("gpt-4o, input", date(2024, 1, 1)),
        ("gpt-4o, output", date(2024, 1, 1)),
        ("gpt-4o, input", date(2024, 1, 2)),
    ]


@pytest.mark.asyncio
async def test_rate_limit_is_retried(params, fast_retry, recording_sleep):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(429, headers={"retry-after": "3"})
        return httpx.Response(200, json={"data": [_bucket(JAN_1, JAN_2, ("gpt-4o", 1))], "has_more": False})

    provider = _provider(handler, retry_policy=fast_retry)
    data = await provider.get_costs(params)

    assert calls == 2
    assert recording_sleep.delays == [1.0]
    assert data.costs.total == Decimal("1")


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_raises(params, fast_retry):
    provider = _provider(lambda request: httpx.Response(429, headers={"retry-after": "7"}), retry_policy=fast_retry)

    with pytest.raises(RateLimitError) as exc_info:
        await provider.get_costs(params)
    assert exc_info.value.retry_after == 7.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, code",
    [(403, "ACCESS_FORBIDDEN"), (404, "API_NOT_AVAILABLE"), (400, "HTTP_ERROR")],
)
async def test_non_retryable_statuses(params, fast_retry, status, code):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(status, json={"error": {"message": "nope"}})

    provider = _provider(handler, retry_policy=fast_retry)
    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(params)

    assert exc_info.value.code == code
    assert calls == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_until_exhausted(params, fast_retry):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    provider = _provider(handler, retry_policy=fast_retry)
    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(params)

    assert exc_info.value.code == "SERVER_ERROR"
    assert calls == 3


@pytest.mark.asyncio
async def test_network_failure_maps_to_network_error(params, fast_retry):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler, retry_policy=fast_retry)
    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(params)
    assert exc_info.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_malformed_body_is_invalid_response(params, fast_retry):
    provider = _provider(lambda request: httpx.Response(200, json={"data": [{"results": []}]}), retry_policy=fast_retry)

    with pytest.raises(ProviderError) as exc_info:
        await provider.get_costs(params)
    assert exc_info.value.code == "INVALID_RESPONSE"


@pytest.mark.asyncio
async def test_validate_credentials():
    ok = _provider(lambda request: httpx.Response(200, json={"data": []}))
    rejected = _provider(lambda request: httpx.Response(401))

    assert await ok.validate_credentials() is True
    assert await rejected.validate_credentials() is False


@pytest.mark.asyncio
async def test_validate_credentials_propagates_other_errors():
    provider = _provider(lambda request: httpx.Response(500))
    with pytest.raises(ProviderError):
        await provider.validate_credentials()


def test_map_skips_non_positive_amounts():
    buckets = [
        OpenAICostBucket.model_validate(_bucket(JAN_1, JAN_2, ("a", 0), ("b", -1), ("c", 0.5))),
    ]
    items = map_openai_costs(buckets)
    assert [(i.service, i.amount) for i in items] == [("c", Decimal("0.5"))]


