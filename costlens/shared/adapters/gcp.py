import asyncio
import json
import re
from datetime import date
from decimal import Decimal
from typing import Any, Optional, cast

import structlog
from google.api_core.exceptions import (
    DeadlineExceeded,
    Forbidden,
    GoogleAPICallError,
    InternalServerError,
    ServiceUnavailable,
    TooManyRequests,
    Unauthenticated,
)
from google.auth.credentials import Credentials as GoogleCredentials
from google.cloud import bigquery
from google.oauth2 import service_account
from pydantic import BaseModel, field_validator

from costlens.schemas.costs import (
    CostBreakdownItem,
    CostBreakdownMetadata,
    CostQueryParams,
    ProviderId,
)
from costlens.shared.adapters.base import BaseCostProvider, to_decimal
from costlens.shared.core.cache import CostCacheManager
from costlens.shared.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ProviderError,
    RateLimitError,
)
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

# GCP resource IDs: alphanumerics plus hyphens, underscores and dots
SAFE_IDENTIFIER = re.compile(r"^[a-zA-Z0-9.\-_]+$")

BILLING_QUERY = """
    SELECT
        service.description AS service,
        location.region AS region,
        DATE(usage_start_time) AS day,
        currency,
        SUM(cost) AS cost,
        SUM(IFNULL((SELECT SUM(c.amount) FROM UNNEST(credits) c), 0)) AS credits
    FROM `{table}`
    WHERE usage_start_time >= @start_date AND usage_start_time < @end_date
    GROUP BY service, region, day, currency
    ORDER BY day, service
"""


class GCPBillingRow(BaseModel):
    service: Optional[str] = None
    region: Optional[str] = None
    day: Optional[date] = None
    currency: str = "USD"
    cost: Decimal = Decimal("0")
    credits: Decimal = Decimal("0")

    @field_validator("cost", "credits", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal:
        return to_decimal(value)


def map_google_error(exc: GoogleAPICallError) -> Exception:
    provider = ProviderId.GCP.value
    if isinstance(exc, (Unauthenticated, Forbidden)):
        return AuthenticationError(provider, f"BigQuery access denied: {exc.message}")
    if isinstance(exc, TooManyRequests):
        return RateLimitError(provider)
    if isinstance(exc, DeadlineExceeded):
        return ProviderError(provider, f"BigQuery deadline exceeded: {exc.message}", code="TIMEOUT")
    if isinstance(exc, (ServiceUnavailable, InternalServerError)):
        return ProviderError(provider, f"BigQuery unavailable: {exc.message}", code="SERVER_ERROR")
    return ProviderError(provider, f"BigQuery query failed: {exc.message}", code="QUERY_FAILED")


class GCPCostProvider(BaseCostProvider[list[GCPBillingRow]]):
    """
    Google Cloud costs from the BigQuery billing export.

    The BigQuery client is synchronous, so queries run in a worker thread.
    """

    provider_id = ProviderId.GCP

    def __init__(
        self,
        project_id: str,
        billing_dataset: Optional[str] = None,
        billing_table: Optional[str] = None,
        billing_project_id: Optional[str] = None,
        service_account_json: Optional[str] = None,
        cache: Optional[CostCacheManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[bigquery.Client] = None,
    ):
        super().__init__(cache=cache, retry_policy=retry_policy)
        self.project_id = project_id
        self.billing_project_id = billing_project_id or project_id
        self.billing_dataset = billing_dataset
        self.billing_table = billing_table
        self._service_account_json = service_account_json
        self._client = client

    def _get_credentials(self) -> Optional[GoogleCredentials]:
        if not self._service_account_json:
            return None  # application default credentials
        try:
            info = json.loads(self._service_account_json)
        except ValueError as exc:
            raise ConfigurationError("GCP_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
        return cast(
            GoogleCredentials,
            service_account.Credentials.from_service_account_info(info),  # type: ignore[no-untyped-call]
        )

    def _get_bq_client(self) -> bigquery.Client:
        if self._client is None:
            self._client = bigquery.Client(project=self.project_id, credentials=self._get_credentials())
        return self._client

    def _table_path(self) -> str:
        if not self.billing_dataset or not self.billing_table:
            logger.warning("gcp_bq_export_not_configured", project_id=self.project_id)
            raise ProviderError(
                self.provider_id.value,
                "BigQuery billing export is not configured",
                code="NOT_CONFIGURED",
            )
        parts = [self.billing_project_id, self.billing_dataset, self.billing_table]
        if not all(SAFE_IDENTIFIER.match(p) for p in parts):
            logger.error("gcp_bq_invalid_table_path", parts=parts)
            raise ProviderError(
                self.provider_id.value,
                f"Invalid BigQuery table path: {'.'.join(parts)}",
                code="NOT_CONFIGURED",
            )
        return ".".join(parts)

    async def validate_credentials(self) -> bool:
        client = self._get_bq_client()
        try:
            await asyncio.to_thread(
                lambda: list(client.list_datasets(project=self.billing_project_id, max_results=1))
            )
        except GoogleAPICallError as exc:
            mapped = map_google_error(exc)
            if isinstance(mapped, AuthenticationError):
                logger.warning("gcp_credentials_rejected", error=str(exc))
                return False
            raise mapped from exc
        return True

    def _run_query(self, table: str, params: CostQueryParams) -> list[dict[str, Any]]:
        client = self._get_bq_client()
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("start_date", "TIMESTAMP", params.start_date),
                bigquery.ScalarQueryParameter("end_date", "TIMESTAMP", params.end_date),
            ]
        )
        query_job = client.query(BILLING_QUERY.format(table=table), job_config=job_config)
        return [dict(row.items()) for row in query_job.result()]

    async def _fetch_raw(self, params: CostQueryParams) -> list[GCPBillingRow]:
        table = self._table_path()
        try:
            rows = await asyncio.to_thread(self._run_query, table, params)
        except GoogleAPICallError as exc:
            logger.error("gcp_cost_fetch_failed", error=str(exc))
            raise map_google_error(exc) from exc
        return [GCPBillingRow.model_validate(row) for row in rows]

    def _to_items(self, raw: list[GCPBillingRow], params: CostQueryParams) -> list[CostBreakdownItem]:
        return map_gcp_rows(raw)

    def _currency(self, raw: list[GCPBillingRow]) -> str:
        return raw[0].currency if raw else "USD"


def map_gcp_rows(rows: list[GCPBillingRow]) -> list[CostBreakdownItem]:
    """Credits (reported negative) are netted into the amount; non-positive nets are dropped."""
    items: list[CostBreakdownItem] = []
    for row in rows:
        amount = row.cost + row.credits
        if amount <= 0:
            continue
        items.append(
            CostBreakdownItem(
                service=row.service,
                amount=amount,
                date=row.day,
                metadata=CostBreakdownMetadata(region=row.region) if row.region else None,
            )
        )
    return items
