"""
Cost Analytics Service

Entry point for every analytics operation. A call either targets one
provider (errors propagate) or fans out to every configured provider
concurrently, in which case failures are reported alongside the surviving
results instead of aborting the request.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, TypeVar, Union

import structlog

from costlens.schemas.analytics import (
    AggregateCostResult,
    BreakdownAnalysis,
    BreakdownDimension,
    MultiProviderBreakdown,
    MultiProviderComparison,
    MultiProviderTrends,
    PeriodComparison,
    ProviderComparisonResult,
    ProviderErrorRecord,
    ProviderShare,
    ProviderStatus,
    TrendAnalysis,
    TrendGranularity,
    TrendPeriod,
    UsageReport,
)
from costlens.schemas.costs import (
    CostQueryParams,
    DateRange,
    Granularity,
    ProviderId,
    UnifiedCostData,
    ensure_utc,
)
from costlens.shared.adapters.anthropic import AnthropicCostProvider
from costlens.shared.adapters.base import BaseCostProvider
from costlens.shared.adapters.factory import ProviderFactory
from costlens.shared.analysis.breakdown import (
    DEFAULT_TAG_KEY,
    analyze_breakdown,
    percentage_of,
    validate_window,
)
from costlens.shared.analysis.insights import (
    cross_breakdown_facts,
    cross_period_facts,
    cross_trend_facts,
    provider_share_facts,
    render_insights,
    render_share_chart,
)
from costlens.shared.analysis.periods import change_percentage, compare_period_costs
from costlens.shared.analysis.trends import analyze_trends, provider_granularity, resolve_trend_period
from costlens.shared.core.cache import CostCacheManager, NoOpCacheManager, build_cache_manager
from costlens.shared.core.config import Settings, get_settings
from costlens.shared.core.exceptions import CacheError, CostLensException, ValidationError

logger = structlog.get_logger()

T = TypeVar("T")
DateLike = Union[date, datetime]
PeriodInput = Union[DateRange, tuple[DateLike, DateLike]]
Clock = Callable[[], datetime]

# Dimensions Cost Explorer style APIs can group by natively
_NATIVE_GROUP_BY = (BreakdownDimension.SERVICE, BreakdownDimension.REGION)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _date_range(start: DateLike, end: DateLike) -> DateRange:
    start_utc, end_utc = ensure_utc(start), ensure_utc(end)
    if start_utc >= end_utc:
        raise ValidationError(
            "start date must be before end date",
            {"start": start_utc.isoformat(), "end": end_utc.isoformat()},
        )
    return DateRange(start=start_utc, end=end_utc)


def _as_range(value: PeriodInput) -> DateRange:
    if isinstance(value, DateRange):
        return value
    start, end = value
    return _date_range(start, end)


def _error_record(provider: ProviderId, exc: Exception) -> ProviderErrorRecord:
    code = exc.code if isinstance(exc, CostLensException) else None
    message = exc.message if isinstance(exc, CostLensException) else str(exc)
    return ProviderErrorRecord(provider=provider.value, error=message, code=code)


def _same_currency(
    results: Mapping[ProviderId, UnifiedCostData],
) -> tuple[str, dict[ProviderId, UnifiedCostData]]:
    """The first provider's currency and the results that share it. Others are logged and skipped."""
    currency = next(iter(results.values())).costs.currency if results else "USD"
    summable: dict[ProviderId, UnifiedCostData] = {}
    for provider_id, data in results.items():
        if data.costs.currency != currency:
            logger.warning(
                "aggregate_currency_mismatch",
                provider=provider_id.value,
                currency=data.costs.currency,
                expected=currency,
            )
            continue
        summable[provider_id] = data
    return currency, summable


class CostAnalyticsService:
    """Facade over providers, cache and the analytics engines."""

    def __init__(
        self,
        providers: Mapping[ProviderId, BaseCostProvider],
        cache: Optional[CostCacheManager] = None,
        clock: Optional[Clock] = None,
    ):
        self.providers = dict(providers)
        self.cache = cache or NoOpCacheManager()
        self._clock = clock or _utcnow

    def _resolve(self, provider: Union[ProviderId, str]) -> BaseCostProvider:
        try:
            provider_id = ProviderId(provider)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown provider: {provider}",
                {"provider": str(provider), "known": [p.value for p in ProviderId]},
            ) from exc
        client = self.providers.get(provider_id)
        if client is None:
            raise ValidationError(
                f"Provider '{provider_id.value}' is not configured",
                {"provider": provider_id.value, "configured": [p.value for p in self.providers]},
            )
        return client

    async def _fan_out(
        self, operation: Callable[[BaseCostProvider], Awaitable[T]]
    ) -> tuple[dict[ProviderId, T], list[ProviderErrorRecord]]:
        """Run `operation` against every provider; one failure never cancels the others."""
        results: dict[ProviderId, T] = {}
        errors: list[ProviderErrorRecord] = []

        async def run_single(provider_id: ProviderId, client: BaseCostProvider) -> None:
            try:
                results[provider_id] = await operation(client)
            except Exception as exc:
                logger.error(
                    "provider_operation_failed",
                    provider=provider_id.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                errors.append(_error_record(provider_id, exc))

        await asyncio.gather(*(run_single(pid, client) for pid, client in self.providers.items()))
        # gather completion order is not stable; report in configuration order
        ordered = {pid: results[pid] for pid in self.providers if pid in results}
        order = [p.value for p in self.providers]
        errors.sort(key=lambda e: order.index(e.provider))
        return ordered, errors

    async def get_costs(
        self,
        start: DateLike,
        end: DateLike,
        provider: Optional[Union[ProviderId, str]] = None,
        granularity: Union[Granularity, str] = Granularity.TOTAL,
        group_by: Sequence[str] = (),
    ) -> Union[UnifiedCostData, AggregateCostResult]:
        period = _date_range(start, end)
        params = CostQueryParams(
            start_date=period.start,
            end_date=period.end,
            granularity=Granularity(granularity),
            group_by=tuple(group_by),
        )
        if provider is not None:
            return await self._resolve(provider).get_costs(params)

        results, errors = await self._fan_out(lambda client: client.get_costs(params))
        currency, summable = _same_currency(results)
        total = sum((data.costs.total for data in summable.values()), Decimal("0"))
        return AggregateCostResult(
            total=total,
            currency=currency,
            providers={pid.value: data for pid, data in results.items()},
            errors=tuple(errors),
        )

    async def get_breakdown(
        self,
        start: DateLike,
        end: DateLike,
        provider: Optional[Union[ProviderId, str]] = None,
        dimensions: Sequence[Union[BreakdownDimension, str]] = (BreakdownDimension.SERVICE,),
        top_n: int = 10,
        threshold: Optional[float] = None,
        tag_key: str = DEFAULT_TAG_KEY,
    ) -> Union[BreakdownAnalysis, MultiProviderBreakdown]:
        period = _date_range(start, end)
        validate_window(top_n, threshold)
        try:
            dims = tuple(BreakdownDimension(d) for d in dimensions)
        except ValueError as exc:
            raise ValidationError(f"Unknown breakdown dimension: {exc}") from exc
        if not dims:
            raise ValidationError("At least one breakdown dimension is required")

        params = CostQueryParams(
            start_date=period.start,
            end_date=period.end,
            granularity=Granularity.DAILY if BreakdownDimension.DATE in dims else Granularity.TOTAL,
            group_by=tuple(d.value for d in dims if d in _NATIVE_GROUP_BY),
        )

        async def analyze(client: BaseCostProvider) -> BreakdownAnalysis:
            data = await client.get_costs(params)
            return analyze_breakdown(data, dims, top_n, threshold, tag_key)

        if provider is not None:
            return await analyze(self._resolve(provider))

        results, errors = await self._fan_out(analyze)
        facts = cross_breakdown_facts(list(results.values()))
        return MultiProviderBreakdown(
            providers={pid.value: a for pid, a in results.items()},
            insights=tuple(render_insights(facts)),
            errors=tuple(errors),
        )

    async def get_trends(
        self,
        provider: Optional[Union[ProviderId, str]] = None,
        period: Union[TrendPeriod, str] = TrendPeriod.LAST_30_DAYS,
        granularity: Union[TrendGranularity, str] = TrendGranularity.DAILY,
    ) -> Union[TrendAnalysis, MultiProviderTrends]:
        try:
            trend_period = TrendPeriod(period)
            trend_granularity = TrendGranularity(granularity)
        except ValueError as exc:
            raise ValidationError(str(exc), {"period": str(period), "granularity": str(granularity)}) from exc

        window = resolve_trend_period(trend_period, ensure_utc(self._clock()))
        params = CostQueryParams(
            start_date=window.start,
            end_date=window.end,
            granularity=provider_granularity(trend_granularity),
        )

        async def analyze(client: BaseCostProvider) -> TrendAnalysis:
            data = await client.get_costs(params)
            return analyze_trends(data, trend_granularity)

        if provider is not None:
            return await analyze(self._resolve(provider))

        results, errors = await self._fan_out(analyze)
        facts = cross_trend_facts(list(results.values()))
        return MultiProviderTrends(
            providers={pid.value: a for pid, a in results.items()},
            insights=tuple(render_insights(facts)),
            errors=tuple(errors),
        )

    async def compare_periods(
        self,
        period1: PeriodInput,
        period2: PeriodInput,
        provider: Optional[Union[ProviderId, str]] = None,
        breakdown: bool = True,
    ) -> Union[PeriodComparison, MultiProviderComparison]:
        range1, range2 = _as_range(period1), _as_range(period2)
        params1 = CostQueryParams(start_date=range1.start, end_date=range1.end, group_by=("service",))
        params2 = CostQueryParams(start_date=range2.start, end_date=range2.end, group_by=("service",))

        async def compare(client: BaseCostProvider) -> PeriodComparison:
            data1, data2 = await asyncio.gather(client.get_costs(params1), client.get_costs(params2))
            return compare_period_costs(data1, data2, include_breakdown=breakdown)

        if provider is not None:
            return await compare(self._resolve(provider))

        results, errors = await self._fan_out(compare)
        comparisons = list(results.values())
        total1 = sum((c.period1.total for c in comparisons), Decimal("0"))
        total2 = sum((c.period2.total for c in comparisons), Decimal("0"))
        pct = change_percentage(total1, total2)
        facts = cross_period_facts(comparisons, total1, total2, pct)
        return MultiProviderComparison(
            providers={pid.value: c for pid, c in results.items()},
            total_period1=total1,
            total_period2=total2,
            percentage_change=pct,
            insights=tuple(render_insights(facts)),
            errors=tuple(errors),
        )

    async def list_providers(self) -> list[ProviderStatus]:
        """Credential status for every known provider, configured or not."""

        async def check(provider_id: ProviderId) -> ProviderStatus:
            client = self.providers.get(provider_id)
            if client is None:
                return ProviderStatus(provider=provider_id, status="not_configured")
            try:
                valid = await client.validate_credentials()
            except Exception as exc:
                logger.warning("provider_validation_failed", provider=provider_id.value, error=str(exc))
                message = exc.message if isinstance(exc, CostLensException) else str(exc)
                return ProviderStatus(provider=provider_id, status="error", message=message)
            if not valid:
                return ProviderStatus(
                    provider=provider_id, status="invalid_credentials", message="Credentials were rejected"
                )
            return ProviderStatus(provider=provider_id, status="active")

        return list(await asyncio.gather(*(check(pid) for pid in ProviderId)))

    async def compare_providers(
        self, start: DateLike, end: DateLike, include_chart: bool = False
    ) -> ProviderComparisonResult:
        """Spend per provider over one window with each provider's share of the total."""
        period = _date_range(start, end)
        params = CostQueryParams(start_date=period.start, end_date=period.end, group_by=("service",))
        results, errors = await self._fan_out(lambda client: client.get_costs(params))

        currency, summable = _same_currency(results)
        total = sum((data.costs.total for data in summable.values()), Decimal("0"))
        shares = []
        for provider_id, data in summable.items():
            service_totals: dict[str, Decimal] = {}
            for item in data.costs.breakdown:
                if item.service:
                    service_totals[item.service] = service_totals.get(item.service, Decimal("0")) + item.amount
            top_service = max(service_totals, key=lambda s: service_totals[s]) if service_totals else None
            shares.append(
                ProviderShare(
                    provider=provider_id,
                    total=data.costs.total,
                    percentage=percentage_of(data.costs.total, total),
                    top_service=top_service,
                )
            )
        shares.sort(key=lambda s: s.total, reverse=True)
        facts = provider_share_facts(shares)
        return ProviderComparisonResult(
            period=period,
            currency=currency,
            total=total,
            providers=tuple(shares),
            insights=tuple(render_insights(facts, currency)),
            errors=tuple(errors),
            chart=render_share_chart(shares, currency) if include_chart else None,
        )

    async def get_anthropic_usage(
        self,
        start: DateLike,
        end: DateLike,
        granularity: Union[Granularity, str] = Granularity.DAILY,
    ) -> UsageReport:
        client = self._resolve(ProviderId.ANTHROPIC)
        if not isinstance(client, AnthropicCostProvider):
            raise ValidationError("Configured anthropic provider does not expose usage reports")
        period = _date_range(start, end)
        params = CostQueryParams(
            start_date=period.start, end_date=period.end, granularity=Granularity(granularity)
        )
        return await client.get_usage_data(params)

    async def invalidate_cache(self, provider: Optional[Union[ProviderId, str]] = None) -> int:
        """Drop cached responses for one provider, or everything. Cache failures are logged only."""
        try:
            provider_id = ProviderId(provider) if provider is not None else None
        except ValueError as exc:
            raise ValidationError(f"Unknown provider: {provider}") from exc
        try:
            if provider_id is None:
                return await self.cache.clear_all()
            return await self.cache.invalidate_provider(provider_id.value)
        except CacheError as exc:
            logger.warning("cache_invalidation_failed", provider=str(provider), error=exc.message)
            return 0

    async def aclose(self) -> None:
        for client in self.providers.values():
            close: Any = getattr(client, "aclose", None)
            if close is not None:
                await close()


def build_analytics_service(settings: Optional[Settings] = None) -> CostAnalyticsService:
    """Wire cache and providers from configuration. Called once at startup."""
    settings = settings or get_settings()
    cache = build_cache_manager(settings)
    providers = ProviderFactory.from_settings(settings, cache)
    logger.info("analytics_service_ready", providers=[p.value for p in providers])
    return CostAnalyticsService(providers, cache=cache)
