"""Error taxonomy and the result envelope returned by every pipeline call.

Failures never unwind the pipeline: network-touching operations return an
``ApiResult`` whose ``error`` holds one of the ``ApiError`` subclasses below,
and each stage decides whether to retry, warn or record the failure.
"""

from dataclasses import dataclass, field
from typing import Generic, List, Optional, TypeVar

import httpx

T = TypeVar("T")


class ApiError(Exception):
    kind = "unknown"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        documentation_url: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.documentation_url = documentation_url

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class NetworkError(ApiError):
    """Connection failure, timeout or 5xx from upstream."""

    kind = "network"
    retryable = True


class RateLimitError(ApiError):
    """Quota exhausted; ``retry_after`` carries the server-directed wait."""

    kind = "rate_limit"
    retryable = True


class AbuseLimitError(ApiError):
    """Secondary (abuse) limit. Requires a long server-dictated wait."""

    kind = "abuse_limit"
    retryable = False


class NotFoundError(ApiError):
    kind = "not_found"


class ValidationError(ApiError):
    """Size, type or shape rejected before any parsing happens."""

    kind = "validation"


class SchemaError(ApiError):
    """Content parsed but did not satisfy the manifest schema."""

    kind = "schema"


class UnknownError(ApiError):
    kind = "unknown"


@dataclass
class ApiResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    warnings: List[str] = field(default_factory=list)
    rate_limit: Optional[dict] = None

    @classmethod
    def ok(cls, data: T, rate_limit: Optional[dict] = None, warnings: Optional[List[str]] = None) -> "ApiResult[T]":
        return cls(success=True, data=data, rate_limit=rate_limit, warnings=list(warnings or []))

    @classmethod
    def fail(cls, error: ApiError, rate_limit: Optional[dict] = None) -> "ApiResult[T]":
        return cls(success=False, error=error, rate_limit=rate_limit)

    @property
    def error_message(self) -> str:
        return self.error.message if self.error else ""


def _parse_retry_after(response: httpx.Response, now: float) -> Optional[float]:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            return None
    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(0.0, float(reset) - now)
        except ValueError:
            return None
    return None


def _response_message(response: httpx.Response) -> tuple[str, Optional[str]]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(payload, dict):
        return str(payload.get("message") or response.reason_phrase), payload.get("documentation_url")
    return response.reason_phrase, None


def classify_response(response: httpx.Response, now: float) -> ApiError:
    """Map a non-2xx GitHub response onto the error taxonomy."""
    status = response.status_code
    message, doc_url = _response_message(response)
    lowered = message.lower()
    retry_after = _parse_retry_after(response, now)

    if status in (403, 429):
        if "secondary rate limit" in lowered or "abuse" in lowered:
            return AbuseLimitError(
                f"GitHub {status}: {message}",
                status_code=status,
                retry_after=retry_after,
                documentation_url=doc_url,
            )
        if (
            status == 429
            or "rate limit" in lowered
            or response.headers.get("x-ratelimit-remaining") == "0"
        ):
            return RateLimitError(
                f"GitHub {status}: {message}",
                status_code=status,
                retry_after=retry_after,
                documentation_url=doc_url,
            )
        return UnknownError(f"GitHub {status}: {message}", status_code=status, documentation_url=doc_url)
    if status == 404:
        return NotFoundError(f"GitHub 404: {message}", status_code=status, documentation_url=doc_url)
    if status in (400, 422):
        return ValidationError(f"GitHub {status}: {message}", status_code=status, documentation_url=doc_url)
    if status >= 500:
        return NetworkError(f"GitHub {status}: {message}", status_code=status, retry_after=retry_after)
    return UnknownError(f"GitHub {status}: {message}", status_code=status, documentation_url=doc_url)


def classify_exception(exc: BaseException) -> ApiError:
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"GitHub request timed out: {type(exc).__name__}")
    if isinstance(exc, httpx.RequestError):
        return NetworkError(f"GitHub request error: {type(exc).__name__} {exc!r}")
    return UnknownError(f"{type(exc).__name__}: {exc}")
