"""
AWS Cost Explorer Adapter (Native Async)

Fetches `get_cost_and_usage` pages through aioboto3 and maps grouped
results into cost line items. Socket timeouts are owned by botocore.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Optional

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from pydantic import BaseModel, Field

from costlens.schemas.costs import (
    CostBreakdownItem,
    CostBreakdownMetadata,
    CostQueryParams,
    Granularity,
    ProviderId,
    UsageInfo,
)
from costlens.shared.adapters.base import BaseCostProvider, to_decimal
from costlens.shared.core.cache import CostCacheManager
from costlens.shared.core.exceptions import AuthenticationError, ProviderError, RateLimitError
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

# Retries are handled by RetryPolicy, so botocore makes a single attempt.
BOTO_CONFIG = BotoConfig(
    read_timeout=30,
    connect_timeout=10,
    retries={"max_attempts": 1, "mode": "standard"},
)

MAX_COST_EXPLORER_PAGES = 300
COST_METRIC = "UnblendedCost"
USAGE_METRIC = "UsageQuantity"

AUTH_ERROR_CODES = frozenset(
    {
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "AccessDeniedException",
        "ExpiredTokenException",
        "SignatureDoesNotMatch",
    }
)
THROTTLE_ERROR_CODES = frozenset({"ThrottlingException", "LimitExceededException", "RequestLimitExceeded"})

GROUP_BY_DIMENSIONS = {
    "service": "SERVICE",
    "region": "REGION",
    "usage_type": "USAGE_TYPE",
    "linked_account": "LINKED_ACCOUNT",
    "instance_type": "INSTANCE_TYPE",
}

CE_GRANULARITY = {
    Granularity.DAILY: "DAILY",
    Granularity.MONTHLY: "MONTHLY",
    Granularity.TOTAL: "MONTHLY",
}


class AWSMetricValue(BaseModel):
    Amount: str = "0"
    Unit: str = "USD"


class AWSGroup(BaseModel):
    Keys: list[str]
    Metrics: dict[str, AWSMetricValue] = Field(default_factory=dict)


class AWSTimePeriod(BaseModel):
    Start: date
    End: date


class AWSResultByTime(BaseModel):
    TimePeriod: AWSTimePeriod
    Groups: list[AWSGroup] = Field(default_factory=list)
    Total: dict[str, AWSMetricValue] = Field(default_factory=dict)


class AWSCostResponse(BaseModel):
    group_keys: list[str]
    results: list[AWSResultByTime] = Field(default_factory=list)


def map_client_error(exc: Exception) -> Exception:
    provider = ProviderId.AWS.value
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return ProviderError(provider, f"Cost Explorer request timed out: {exc}", code="TIMEOUT")
    if isinstance(exc, EndpointConnectionError):
        return ProviderError(provider, f"Cost Explorer unreachable: {exc}", code="NETWORK_ERROR")
    if isinstance(exc, NoCredentialsError):
        return AuthenticationError(provider, "No AWS credentials available")
    if isinstance(exc, ClientError):
        error_code = exc.response.get("Error", {}).get("Code", "Unknown")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if error_code in AUTH_ERROR_CODES:
            return AuthenticationError(provider, f"Credentials rejected ({error_code})")
        if error_code in THROTTLE_ERROR_CODES:
            return RateLimitError(provider)
        if status >= 500:
            return ProviderError(provider, f"Cost Explorer server error ({error_code})", code="SERVER_ERROR")
        return ProviderError(provider, f"Cost Explorer failure: {exc}", code=error_code)
    return exc


class AWSCostProvider(BaseCostProvider[AWSCostResponse]):
    provider_id = ProviderId.AWS

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str = "us-east-1",
        cache: Optional[CostCacheManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[Any] = None,
    ):
        super().__init__(cache=cache, retry_policy=retry_policy)
        self.region = region
        self.session = session or aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )

    def _client(self) -> Any:
        # Cost Explorer is served from us-east-1 regardless of workload region
        return self.session.client("ce", region_name="us-east-1", config=BOTO_CONFIG)

    async def validate_credentials(self) -> bool:
        try:
            async with self.session.client("sts", region_name=self.region, config=BOTO_CONFIG) as sts:
                await sts.get_caller_identity()
        except (ClientError, NoCredentialsError) as exc:
            mapped = map_client_error(exc)
            if isinstance(mapped, AuthenticationError):
                logger.warning("aws_credentials_rejected", error=str(exc))
                return False
            raise mapped from exc
        except (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError) as exc:
            raise map_client_error(exc) from exc
        return True

    @staticmethod
    def _group_keys(group_by: tuple[str, ...]) -> list[str]:
        keys = [GROUP_BY_DIMENSIONS[g] for g in group_by if g in GROUP_BY_DIMENSIONS]
        if not keys:
            keys = ["SERVICE"]
        # Cost Explorer accepts at most two group definitions
        return list(dict.fromkeys(keys))[:2]

    async def _fetch_raw(self, params: CostQueryParams) -> AWSCostResponse:
        group_keys = self._group_keys(params.group_by)
        request_params: dict[str, Any] = {
            "TimePeriod": {
                "Start": params.start_date.strftime("%Y-%m-%d"),
                "End": params.end_date.strftime("%Y-%m-%d"),
            },
            "Granularity": CE_GRANULARITY[params.granularity],
            "Metrics": [COST_METRIC, USAGE_METRIC],
            "GroupBy": [{"Type": "DIMENSION", "Key": key} for key in group_keys],
        }

        results: list[AWSResultByTime] = []
        try:
            async with self._client() as client:
                pages_fetched = 0
                while pages_fetched < MAX_COST_EXPLORER_PAGES:
                    response = await client.get_cost_and_usage(**request_params)
                    results.extend(
                        AWSResultByTime.model_validate(r) for r in response.get("ResultsByTime", [])
                    )
                    pages_fetched += 1
                    if "NextPageToken" in response:
                        request_params["NextPageToken"] = response["NextPageToken"]
                    else:
                        break
                else:
                    logger.warning("cost_explorer_page_limit_reached", pages=pages_fetched)
        except (ClientError, NoCredentialsError, ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError) as exc:
            logger.error("aws_cost_fetch_failed", error=str(exc))
            raise map_client_error(exc) from exc

        return AWSCostResponse(group_keys=group_keys, results=results)

    def _to_items(self, raw: AWSCostResponse, params: CostQueryParams) -> list[CostBreakdownItem]:
        return map_aws_costs(raw, params.granularity)


def map_aws_costs(raw: AWSCostResponse, granularity: Granularity) -> list[CostBreakdownItem]:
    """One item per group per time period; groups with no positive cost are dropped."""
    items: list[CostBreakdownItem] = []
    for result in raw.results:
        day = result.TimePeriod.Start if granularity != Granularity.TOTAL else None
        for group in result.Groups:
            cost = group.Metrics.get(COST_METRIC)
            amount = to_decimal(cost.Amount) if cost else Decimal("0")
            if amount <= 0:
                continue

            labels = dict(zip(raw.group_keys, group.Keys))
            usage = None
            quantity = group.Metrics.get(USAGE_METRIC)
            if quantity is not None:
                usage = UsageInfo(quantity=to_decimal(quantity.Amount), unit=quantity.Unit or "units")

            region = labels.get("REGION")
            metadata = CostBreakdownMetadata(region=region) if region else None
            service = labels.get("SERVICE") or next(iter(labels.values()), None)
            items.append(
                CostBreakdownItem(
                    service=service,
                    amount=amount,
                    usage=usage,
                    date=day,
                    metadata=metadata,
                )
            )
    return items
