"""
HTTP transport shared by the REST billing providers (OpenAI, Anthropic).

Maps transport failures and HTTP statuses onto the provider error taxonomy
so RetryPolicy can classify them. Retries are not performed here.
"""

from typing import Any, Optional

import httpx
import structlog

from costlens.shared.core.exceptions import AuthenticationError, ProviderError, RateLimitError

logger = structlog.get_logger()


def build_http_client(
    base_url: str,
    headers: dict[str, str],
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"User-Agent": "CostLens/0.1", **headers},
        timeout=httpx.Timeout(timeout, connect=10.0),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        transport=transport,
    )


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return

    logger.warning("provider_http_error", provider=provider, status_code=status, url=str(response.request.url))
    if status == 401:
        raise AuthenticationError(provider, "Invalid or expired API key")
    if status == 403:
        raise ProviderError(
            provider, "Access forbidden: an admin API key is required", code="ACCESS_FORBIDDEN", status_code=403
        )
    if status == 404:
        raise ProviderError(provider, "Billing API not available for this account", code="API_NOT_AVAILABLE", status_code=404)
    if status == 429:
        raise RateLimitError(provider, retry_after=_retry_after(response))
    if status >= 500:
        raise ProviderError(provider, f"Upstream server error ({status})", code="SERVER_ERROR", details={"status": status})
    raise ProviderError(provider, f"Unexpected HTTP status {status}", code="HTTP_ERROR", details={"status": status})


async def request_json(
    client: httpx.AsyncClient,
    provider: str,
    path: str,
    params: Optional[Any] = None,
) -> dict[str, Any]:
    """GET `path` and return the decoded JSON body, raising taxonomy errors."""
    try:
        response = await client.get(path, params=params)
    except httpx.TimeoutException as exc:
        raise ProviderError(provider, f"Request timed out: {exc}", code="TIMEOUT") from exc
    except httpx.TransportError as exc:
        raise ProviderError(provider, f"Network error: {exc}", code="NETWORK_ERROR") from exc

    raise_for_provider_status(provider, response)
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError(provider, "Response body is not valid JSON", code="INVALID_RESPONSE") from exc
    if not isinstance(body, dict):
        raise ProviderError(provider, "Unexpected response shape", code="INVALID_RESPONSE")
    return body
