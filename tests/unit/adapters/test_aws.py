"""
Tests for the AWS Cost Explorer adapter.
The aioboto3 session is replaced with a fake whose clients are async context managers.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from costlens.schemas.costs import CostQueryParams, Granularity, ProviderId
from costlens.shared.adapters.aws import (
    AWSCostProvider,
    AWSCostResponse,
    map_aws_costs,
    map_client_error,
)
from costlens.shared.core.exceptions import AuthenticationError, ProviderError, RateLimitError


class FakeClient:
    def __init__(self, **methods):
        for name, mock in methods.items():
            setattr(self, name, mock)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, clients: dict[str, FakeClient]):
        self.clients = clients
        self.calls: list[tuple[str, str]] = []

    def client(self, service_name, region_name=None, config=None):
        self.calls.append((service_name, region_name))
        return self.clients[service_name]


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "test"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "GetCostAndUsage",
    )


def _result(start: str, end: str, *groups):
    return {
        "TimePeriod": {"Start": start, "End": end},
        "Groups": [
            {
                "Keys": keys,
                "Metrics": {
                    "UnblendedCost": {"Amount": amount, "Unit": "USD"},
                    "UsageQuantity": {"Amount": quantity, "Unit": "Hrs"},
                },
            }
            for keys, amount, quantity in groups
        ],
        "Total": {},
    }


def _provider(session, **kwargs) -> AWSCostProvider:
    return AWSCostProvider("AKIATEST", "secret", session=session, **kwargs)


@pytest.mark.asyncio
async def test_get_costs_requests_cost_explorer_and_paginates(fast_retry):
    get_cost_and_usage = AsyncMock(
        side_effect=[
            {
                "ResultsByTime": [_result("2024-01-01", "2024-01-02", (["Amazon EC2"], "50.0", "10"))],
                "NextPageToken": "token-2",
            },
            {"ResultsByTime": [_result("2024-01-02", "2024-01-03", (["Amazon S3"], "20.0", "3"))]},
        ]
    )
    session = FakeSession({"ce": FakeClient(get_cost_and_usage=get_cost_and_usage)})
    params = CostQueryParams(start_date=date(2024, 1, 1), end_date=date(2024, 1, 3), granularity=Granularity.DAILY)

    data = await _provider(session, retry_policy=fast_retry).get_costs(params)

    assert session.calls == [("ce", "us-east-1")]
    first_call = get_cost_and_usage.await_args_list[0].kwargs
    assert first_call["TimePeriod"] == {"Start": "2024-01-01", "End": "2024-01-03"}
    assert first_call["Granularity"] == "DAILY"
    assert first_call["Metrics"] == ["UnblendedCost", "UsageQuantity"]
    assert first_call["GroupBy"] == [{"Type": "DIMENSION", "Key": "SERVICE"}]
    assert get_cost_and_usage.await_args_list[1].kwargs["NextPageToken"] == "token-2"

    assert data.provider is ProviderId.AWS
    assert data.costs.total == Decimal("70.0")
    ec2 = data.costs.breakdown[0]
    assert ec2.service == "Amazon EC2"
    assert ec2.date == date(2024, 1, 1)
    assert ec2.usage.quantity == Decimal("10")
    assert ec2.usage.unit == "Hrs"


@pytest.mark.asyncio
async def test_throttling_is_retried(fast_retry, recording_sleep, query_params):
    get_cost_and_usage = AsyncMock(
        side_effect=[
            _client_error("ThrottlingException"),
            {"ResultsByTime": [_result("2024-01-01", "2024-01-31", (["Amazon EC2"], "1", "1"))]},
        ]
    )
    session = FakeSession({"ce": FakeClient(get_cost_and_usage=get_cost_and_usage)})

    data = await _provider(session, retry_policy=fast_retry).get_costs(query_params)

    assert get_cost_and_usage.await_count == 2
    assert recording_sleep.delays == [1.0]
    assert data.costs.breakdown[0].date is None


@pytest.mark.asyncio
async def test_access_denied_is_fatal(fast_retry, query_params):
    get_cost_and_usage = AsyncMock(side_effect=_client_error("AccessDeniedException", 403))
    session = FakeSession({"ce": FakeClient(get_cost_and_usage=get_cost_and_usage)})

    with pytest.raises(AuthenticationError):
        await _provider(session, retry_policy=fast_retry).get_costs(query_params)
    assert get_cost_and_usage.await_count == 1


def test_group_keys_default_and_limit():
    assert AWSCostProvider._group_keys(()) == ["SERVICE"]
    assert AWSCostProvider._group_keys(("unknown",)) == ["SERVICE"]
    assert AWSCostProvider._group_keys(("service", "region", "usage_type")) == ["SERVICE", "REGION"]


def test_map_groups_with_region_dimension():
    raw = AWSCostResponse.model_validate(
        {
            "group_keys": ["SERVICE", "REGION"],
            "results": [
                _result(
                    "2024-01-01",
                    "2024-02-01",
                    (["Amazon EC2", "us-east-1"], "12.5", "100"),
                    (["Amazon EC2", "eu-west-1"], "0", "0"),
                    (["AWS Lambda", "us-east-1"], "-1", "0"),
                )
            ],
        }
    )
    items = map_aws_costs(raw, Granularity.MONTHLY)

    assert len(items) == 1
    assert items[0].region == "us-east-1"
    assert items[0].date == date(2024, 1, 1)


@pytest.mark.parametrize(
    "error, expected_type, expected_code",
    [
        (_client_error("ThrottlingException"), RateLimitError, "RATE_LIMIT_ERROR"),
        (_client_error("InvalidClientTokenId", 403), AuthenticationError, "AUTH_ERROR"),
        (_client_error("InternalFailure", 500), ProviderError, "SERVER_ERROR"),
        (_client_error("DataUnavailableException"), ProviderError, "DataUnavailableException"),
        (EndpointConnectionError(endpoint_url="https://ce.us-east-1.amazonaws.com"), ProviderError, "NETWORK_ERROR"),
        (ReadTimeoutError(endpoint_url="https://ce.us-east-1.amazonaws.com"), ProviderError, "TIMEOUT"),
    ],
)
def test_map_client_error(error, expected_type, expected_code):
    mapped = map_client_error(error)
    assert isinstance(mapped, expected_type)
    assert mapped.code == expected_code


@pytest.mark.asyncio
async def test_validate_credentials():
    ok = FakeSession({"sts": FakeClient(get_caller_identity=AsyncMock(return_value={"Account": "123"}))})
    denied = FakeSession(
        {"sts": FakeClient(get_caller_identity=AsyncMock(side_effect=_client_error("InvalidClientTokenId", 403)))}
    )
    broken = FakeSession({"sts": FakeClient(get_caller_identity=AsyncMock(side_effect=_client_error("InternalFailure", 500)))})

    assert await _provider(ok).validate_credentials() is True
    assert await _provider(denied).validate_credentials() is False
    with pytest.raises(ProviderError):
        await _provider(broken).validate_credentials()
