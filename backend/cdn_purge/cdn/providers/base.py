"""Base provider adapter and HTTP outcome classification."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

import requests
from loguru import logger

from cdn_purge.cdn.types import InvalidationBatch, InvalidationResult, ProviderType
from cdn_purge.core.config import settings
from cdn_purge.core.errors import (
    AuthenticationError,
    InvalidationError,
    ProviderError,
    RateLimitError,
    SerializationError,
    TransientNetworkError,
)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form; the backoff schedule covers it.
        return None


def classify_http_error(
    provider_name: str,
    response: requests.Response,
    detail: str | None = None,
) -> InvalidationError:
    """Map a non-success provider response onto the shared error taxonomy."""

    code = response.status_code
    message = f"{provider_name} returned HTTP {code}"
    if detail:
        message = f"{message}: {detail}"
    if code in (401, 403):
        return AuthenticationError(message, status_code=code)
    if code == 429:
        return RateLimitError(
            message,
            status_code=code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if code >= 500:
        return TransientNetworkError(message, status_code=code)
    return ProviderError(message, status_code=code)


class ProviderAdapter(ABC):
    """Translates one batch into one provider's wire format and submits it.

    Adapters run inside worker threads. They hold the frozen provider config
    and a ``requests.Session``; neither is mutated per call.
    """

    provider_type: ClassVar[ProviderType]
    provider_name: ClassVar[str]

    def __init__(
        self,
        config: Any,
        session: requests.Session | None = None,
        *,
        timeout: float | None = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.timeout = timeout or settings.CDN_HTTP_TIMEOUT_SEC

    @abstractmethod
    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> Any:
        """Serialize ``batch`` into the provider's request body."""

    @abstractmethod
    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        """Issue the provider call and return its reference; raise on failure."""

    def submit(self, batch: InvalidationBatch, caller_reference: str) -> InvalidationResult:
        """Submit one batch and classify the outcome into an ``InvalidationResult``."""

        log = logger.bind(
            provider=self.provider_name,
            request=batch.request_id,
            batch=batch.sequence_index,
            paths=len(batch.paths),
        )
        try:
            reference = self.send(batch, caller_reference)
        except SerializationError:
            log.exception("cdn_batch_serialization_failed")
            raise
        except InvalidationError as exc:
            log.bind(error_kind=exc.kind, error=str(exc)).warning("cdn_batch_rejected")
            return InvalidationResult.failed(batch, exc)
        except Exception as exc:
            # A malformed provider response must still settle the batch.
            log.exception("cdn_batch_unexpected_error")
            error = ProviderError(f"{self.provider_name} call failed: {type(exc).__name__}: {exc}")
            return InvalidationResult.failed(batch, error)
        log.bind(provider_reference=reference).info("cdn_batch_accepted")
        return InvalidationResult.succeeded(batch, reference)

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.Timeout as exc:
            raise TransientNetworkError(f"{self.provider_name} request timed out") from exc
        except requests.ConnectionError as exc:
            raise TransientNetworkError(f"{self.provider_name} connection failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"{self.provider_name} request could not be sent: {exc}") from exc
