"""Domain types for invalidation requests, batches and their results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, TypeVar, Union

from cdn_purge.core.errors import InvalidationError

T = TypeVar("T")
E = TypeVar("E")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProviderType(str, Enum):
    CLOUDFRONT = "CloudFront"
    CLOUDFLARE = "Cloudflare"
    AZURE_FRONT_DOOR = "AzureFrontDoor"
    SUCURI = "Sucuri"
    NONE = "None"


class BatchStatus(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.SUCCEEDED, BatchStatus.FAILED})


class RequestStatus(str, Enum):
    CREATED = "Created"
    BATCHING = "Batching"
    SUBMITTING = "Submitting"
    SUCCEEDED = "Succeeded"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_REQUEST_STATUSES = frozenset(
    {
        RequestStatus.SUCCEEDED,
        RequestStatus.PARTIAL_FAILURE,
        RequestStatus.FAILED,
        RequestStatus.CANCELLED,
    }
)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True, slots=True)
class InvalidationRequest:
    id: str
    tenant_id: str
    paths: tuple[str, ...]
    caller_reference: str
    provider_type: ProviderType
    created_at: datetime = field(default_factory=utcnow)
    purge_everything: bool = False


@dataclass(frozen=True, slots=True)
class InvalidationBatch:
    request_id: str
    sequence_index: int
    paths: tuple[str, ...]
    purge_everything: bool = False

    def __len__(self) -> int:
        return len(self.paths)


@dataclass(slots=True)
class InvalidationResult:
    request_id: str
    batch_index: int
    status: BatchStatus = BatchStatus.PENDING
    provider_reference: str = ""
    error_kind: str | None = None
    error_message: str | None = None
    attempt_count: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    # Classified failure kept for the dispatcher's retry policy; never persisted.
    error: InvalidationError | None = field(default=None, repr=False, compare=False)

    @classmethod
    def pending(cls, batch: InvalidationBatch) -> "InvalidationResult":
        return cls(request_id=batch.request_id, batch_index=batch.sequence_index)

    @classmethod
    def succeeded(cls, batch: InvalidationBatch, provider_reference: str = "") -> "InvalidationResult":
        return cls(
            request_id=batch.request_id,
            batch_index=batch.sequence_index,
            status=BatchStatus.SUCCEEDED,
            provider_reference=provider_reference,
        )

    @classmethod
    def failed(cls, batch: InvalidationBatch, error: InvalidationError) -> "InvalidationResult":
        return cls(
            request_id=batch.request_id,
            batch_index=batch.sequence_index,
            status=BatchStatus.FAILED,
            error_kind=error.kind,
            error_message=str(error),
            error=error,
        )

    def evolve(self, **changes) -> "InvalidationResult":
        changes.setdefault("timestamp", utcnow())
        return replace(self, **changes)


@dataclass(slots=True)
class RequestSummary:
    request: InvalidationRequest
    status: RequestStatus
    results: list[InvalidationResult]
    completed_at: datetime | None = None

    @property
    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in BatchStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts

    @property
    def is_complete(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES
