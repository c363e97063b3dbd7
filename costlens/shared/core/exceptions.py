from typing import Optional, Dict, Any

RETRYABLE_PROVIDER_CODES = frozenset({"TIMEOUT", "NETWORK_ERROR", "SERVER_ERROR"})


class CostLensException(Exception):
    """Base exception for all CostLens errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": self.details,
        }

class ValidationError(CostLensException):
    """Raised for malformed input such as inverted date ranges or unknown providers."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", status_code=400, details=details)

class ProviderError(CostLensException):
    """Raised when an upstream billing API fails. `code` drives retry classification."""
    def __init__(
        self,
        provider: str,
        message: str,
        code: str = "PROVIDER_ERROR",
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 502,
    ):
        super().__init__(f"[{provider}] {message}", code=code, status_code=status_code, details=details)
        self.provider = provider

class AuthenticationError(CostLensException):
    """Raised when provider credentials are rejected."""
    def __init__(self, provider: str, message: str = "Authentication failed"):
        super().__init__(f"[{provider}] {message}", code="AUTH_ERROR", status_code=401)
        self.provider = provider

class RateLimitError(ProviderError):
    """Raised when a provider throttles requests."""
    def __init__(self, provider: str, retry_after: Optional[float] = None):
        super().__init__(
            provider,
            "Rate limit exceeded",
            code="RATE_LIMIT_ERROR",
            details={"retry_after": retry_after},
            status_code=429,
        )
        self.retry_after = retry_after

class CacheError(CostLensException):
    """Raised by cache backends. Never escapes the cache call sites."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CACHE_ERROR", status_code=500, details=details)

class ConfigurationError(CostLensException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIG_ERROR", status_code=500, details=details)


def is_retryable_error(error: BaseException) -> bool:
    """Rate limits and transient provider failures are retryable; everything else is fatal."""
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, ProviderError):
        return error.code in RETRYABLE_PROVIDER_CODES
    return False
