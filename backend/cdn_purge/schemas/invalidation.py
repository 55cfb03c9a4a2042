from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from cdn_purge.cdn.types import RequestSummary


class InvalidationSubmit(BaseModel):
    """Changed paths reported by the publish pipeline.

    Path items are checked by the invalidation validator rather than here, so
    that a bad path yields one consistent error shape.
    """

    tenant_id: str = Field(min_length=1, max_length=128)
    paths: List[Any] = Field(default_factory=list)


class PurgeAllSubmit(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=128)


class InvalidationAccepted(BaseModel):
    request_id: str
    status: str


class BatchResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_index: int
    status: str
    provider_reference: str = ""
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    attempt_count: int = 0
    timestamp: datetime


class InvalidationSummaryOut(BaseModel):
    """Status of one invalidation request and each of its batches."""

    request_id: str
    tenant_id: str
    caller_reference: str
    provider_type: str
    purge_everything: bool
    paths: List[str]
    status: str
    counts: dict[str, int]
    created_at: datetime
    completed_at: Optional[datetime] = None
    batches: List[BatchResultOut]

    @classmethod
    def from_summary(cls, summary: RequestSummary) -> "InvalidationSummaryOut":
        request = summary.request
        return cls(
            request_id=request.id,
            tenant_id=request.tenant_id,
            caller_reference=request.caller_reference,
            provider_type=request.provider_type.value,
            purge_everything=request.purge_everything,
            paths=list(request.paths),
            status=summary.status.value,
            counts=summary.counts,
            created_at=request.created_at,
            completed_at=summary.completed_at,
            batches=[
                BatchResultOut(
                    batch_index=r.batch_index,
                    status=r.status.value,
                    provider_reference=r.provider_reference,
                    error_kind=r.error_kind,
                    error_message=r.error_message,
                    attempt_count=r.attempt_count,
                    timestamp=r.timestamp,
                )
                for r in summary.results
            ],
        )


class CancelOut(BaseModel):
    request_id: str
    cancelled: bool
