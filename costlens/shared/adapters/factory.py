"""
Provider Factory

Builds one provider instance per configured billing source, all sharing the
injected cache manager.
"""

from typing import Optional

import structlog

from costlens.schemas.costs import ProviderId
from costlens.shared.adapters.anthropic import AnthropicCostProvider
from costlens.shared.adapters.aws import AWSCostProvider
from costlens.shared.adapters.base import BaseCostProvider
from costlens.shared.adapters.gcp import GCPCostProvider
from costlens.shared.adapters.openai import OpenAICostProvider
from costlens.shared.core.cache import CostCacheManager
from costlens.shared.core.config import Settings
from costlens.shared.core.exceptions import ConfigurationError
from costlens.shared.core.retry import RetryPolicy

logger = structlog.get_logger()


def _secret(value: Optional[object]) -> str:
    if value is None:
        return ""
    getter = getattr(value, "get_secret_value", None)
    return getter() if callable(getter) else str(value)


class ProviderFactory:
    @staticmethod
    def create(
        provider: ProviderId, settings: Settings, cache: CostCacheManager
    ) -> BaseCostProvider:
        """Returns the provider for `provider`, raising ConfigurationError when credentials are absent."""
        if provider.value not in settings.enabled_providers():
            raise ConfigurationError(
                f"Provider '{provider.value}' is not configured", {"provider": provider.value}
            )
        retry_policy = RetryPolicy.from_settings(settings, operation_name=f"{provider.value}_get_costs")

        if provider is ProviderId.AWS:
            return AWSCostProvider(
                access_key_id=settings.AWS_ACCESS_KEY_ID or "",
                secret_access_key=_secret(settings.AWS_SECRET_ACCESS_KEY),
                region=settings.AWS_REGION,
                cache=cache,
                retry_policy=retry_policy,
            )
        elif provider is ProviderId.GCP:
            return GCPCostProvider(
                project_id=settings.GCP_PROJECT_ID or "",
                billing_dataset=settings.GCP_BILLING_DATASET,
                billing_table=settings.GCP_BILLING_TABLE,
                billing_project_id=settings.GCP_BILLING_PROJECT_ID,
                service_account_json=_secret(settings.GCP_SERVICE_ACCOUNT_JSON) or None,
                cache=cache,
                retry_policy=retry_policy,
            )
        elif provider is ProviderId.OPENAI:
            return OpenAICostProvider(
                api_key=_secret(settings.OPENAI_ADMIN_API_KEY),
                cache=cache,
                retry_policy=retry_policy,
                timeout=settings.HTTP_TIMEOUT_SECONDS,
            )
        elif provider is ProviderId.ANTHROPIC:
            return AnthropicCostProvider(
                api_key=_secret(settings.ANTHROPIC_ADMIN_API_KEY),
                cache=cache,
                retry_policy=retry_policy,
                timeout=settings.HTTP_TIMEOUT_SECONDS,
            )
        raise ConfigurationError(f"Unsupported provider: {provider}")

    @classmethod
    def from_settings(
        cls, settings: Settings, cache: CostCacheManager
    ) -> dict[ProviderId, BaseCostProvider]:
        providers = {
            ProviderId(name): cls.create(ProviderId(name), settings, cache)
            for name in settings.enabled_providers()
        }
        logger.info("providers_initialized", providers=[p.value for p in providers])
        return providers
