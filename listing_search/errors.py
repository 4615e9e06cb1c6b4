"""Error types shared by the search and indexing services."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base application error carrying an error code and HTTP status."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        retryable: bool = False,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "statusCode": self.status_code,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    """Invalid input: missing query, malformed filters, bad signature."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, "VALIDATION_ERROR", 400, details=details)


class AuthenticationError(AppError):
    """Missing or wrong admin credentials"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, "AUTH_ERROR", 401)


class EmbeddingError(AppError):
    """An embedding provider was unreachable or rejected the input."""

    def __init__(
        self,
        message: str,
        provider: str = "all",
        code: str = "EMBEDDING_ERROR",
        retryable: bool = False,
    ):
        super().__init__(message, code, 503, retryable=retryable)
        self.provider = provider


class VectorClientError(AppError):
    """Vector store failure; treated like an unavailable search upstream."""

    def __init__(self, message: str, code: str = "VECTOR_ERROR", retryable: bool = False):
        super().__init__(message, code, 503, retryable=retryable)


class CatalogError(AppError):
    """Relational catalog query failure"""

    def __init__(self, message: str, code: str = "SEARCH_ERROR", status_code: int = 503):
        super().__init__(message, code, status_code, retryable=status_code >= 500)


class SearchUnavailable(AppError):
    """Every retrieval branch needed to answer the query failed."""

    def __init__(self, message: str = "Search service temporarily unavailable"):
        super().__init__(message, "SEARCH_FAILED", 503, retryable=True)


class CircuitOpenError(AppError):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, service: str, retry_after_seconds: float):
        super().__init__(
            f"Circuit breaker is OPEN for {service}. Retry after {max(0, round(retry_after_seconds))}s",
            "CIRCUIT_OPEN",
            503,
            retryable=True,
        )
        self.service = service
        self.retry_after_seconds = retry_after_seconds
