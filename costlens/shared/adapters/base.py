from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar, Generic, Optional, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from costlens.schemas.costs import (
    CostBreakdownItem,
    CostQueryParams,
    ProviderId,
    UnifiedCostData,
    UsageInfo,
)
from costlens.shared.core.cache import CostCacheManager, NoOpCacheManager
from costlens.shared.core.exceptions import (
    CacheError,
    CostLensException,
    ProviderError,
)
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()

RawT = TypeVar("RawT")


def _line_item_key(item: CostBreakdownItem) -> tuple[Any, ...]:
    tags = tuple(sorted(item.metadata.tags.items())) if item.metadata and item.metadata.tags else ()
    return (item.service, item.date, item.region, tags)


def merge_line_items(items: list[CostBreakdownItem]) -> list[CostBreakdownItem]:
    """
    Collapse entries sharing a label at the same date, region and tag
    coordinates into one, summing amounts. Usage quantities are summed only
    when both sides report the same unit. First-seen order is preserved.
    """
    merged: dict[tuple[Any, ...], CostBreakdownItem] = {}
    for item in items:
        key = _line_item_key(item)
        existing = merged.get(key)
        if existing is None:
            merged[key] = item
            continue

        usage = existing.usage
        if existing.usage and item.usage and existing.usage.unit == item.usage.unit:
            usage = UsageInfo(
                quantity=existing.usage.quantity + item.usage.quantity,
                unit=existing.usage.unit,
            )
        elif existing.usage is None:
            usage = item.usage
        merged[key] = existing.model_copy(
            update={"amount": existing.amount + item.amount, "usage": usage}
        )
    return list(merged.values())


class BaseCostProvider(ABC, Generic[RawT]):
    """
    Contract for every billing data source.

    Subclasses supply the transport (`_fetch_raw`) and one explicit mapping
    from their typed raw response into line items (`_to_items`). The base
    class owns caching, retries, deduplication and error wrapping so that a
    call either returns a complete UnifiedCostData or raises.
    """

    provider_id: ClassVar[ProviderId]

    def __init__(
        self,
        cache: Optional[CostCacheManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.cache = cache or NoOpCacheManager()
        self.retry_policy = retry_policy or RetryPolicy(
            operation_name=f"{self.provider_id.value}_get_costs"
        )

    @property
    def name(self) -> ProviderId:
        return self.provider_id

    @abstractmethod
    async def validate_credentials(self) -> bool:
        """Cheap authenticated call. False for rejected credentials; raises otherwise."""
        raise NotImplementedError()

    @abstractmethod
    async def _fetch_raw(self, params: CostQueryParams) -> RawT:
        raise NotImplementedError()

    @abstractmethod
    def _to_items(self, raw: RawT, params: CostQueryParams) -> list[CostBreakdownItem]:
        raise NotImplementedError()

    def _currency(self, raw: RawT) -> str:
        return "USD"

    async def get_costs(self, params: CostQueryParams) -> UnifiedCostData:
        provider = self.provider_id.value
        cache_params = params.cache_params()

        cached = await self._read_cache(cache_params)
        if cached is not None:
            return cached

        try:
            raw = await self.retry_policy.execute(lambda: self._fetch_raw(params))
            items = merge_line_items(self._to_items(raw, params))
            result = UnifiedCostData.from_items(
                self.provider_id,
                params.start_date,
                params.end_date,
                items,
                currency=self._currency(raw),
            )
        except CostLensException:
            raise
        except PydanticValidationError as exc:
            logger.error("provider_response_invalid", provider=provider, error=str(exc))
            raise ProviderError(
                provider,
                f"Malformed response: {exc.error_count()} validation error(s)",
                code="INVALID_RESPONSE",
            ) from exc
        except Exception as exc:
            logger.error("provider_fetch_failed", provider=provider, error=str(exc))
            raise ProviderError(provider, f"Failed to fetch costs: {exc}") from exc

        logger.info(
            "provider_costs_fetched",
            provider=provider,
            total=str(result.costs.total),
            line_items=len(result.costs.breakdown),
        )
        await self._write_cache(cache_params, result)
        return result

    async def _read_cache(self, cache_params: dict[str, str]) -> Optional[UnifiedCostData]:
        try:
            payload = await self.cache.get_cost_data(self.provider_id.value, cache_params)
        except CacheError as exc:
            logger.warning("cache_read_failed", provider=self.provider_id.value, error=exc.message)
            return None
        if payload is None:
            return None
        try:
            return UnifiedCostData.model_validate(payload).as_cached()
        except PydanticValidationError as exc:
            logger.warning("cache_entry_invalid", provider=self.provider_id.value, error=str(exc))
            return None

    async def _write_cache(self, cache_params: dict[str, str], result: UnifiedCostData) -> None:
        try:
            await self.cache.set_cost_data(
                self.provider_id.value, cache_params, result.model_dump(mode="json")
            )
        except CacheError as exc:
            logger.warning("cache_write_failed", provider=self.provider_id.value, error=exc.message)


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    if value is None or value == "":
        return default
    return Decimal(str(value))
