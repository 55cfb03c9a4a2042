"""Completion status for invalidation requests."""

from __future__ import annotations

from typing import Iterable

from loguru import logger

from cdn_purge.cdn.store import InvalidationStore
from cdn_purge.cdn.types import BatchStatus, InvalidationResult, RequestStatus, RequestSummary

CANCELLED_KIND = "cancelled"


def aggregate_status(results: Iterable[InvalidationResult]) -> RequestStatus:
    """Fold terminal batch results into the request's final status."""

    results = list(results)
    succeeded = sum(1 for r in results if r.status is BatchStatus.SUCCEEDED)
    if results and succeeded == len(results):
        return RequestStatus.SUCCEEDED
    if any(r.error_kind == CANCELLED_KIND for r in results):
        return RequestStatus.CANCELLED
    if succeeded:
        return RequestStatus.PARTIAL_FAILURE
    return RequestStatus.FAILED


class InvalidationReporter:
    """Reads request outcomes back for callers and records them on the audit trail.

    A failed purge is reported as a status; it never fails the publish that
    triggered it.
    """

    def __init__(self, store: InvalidationStore):
        self.store = store

    async def summarize(self, request_id: str) -> RequestSummary | None:
        record = await self.store.get_request(request_id)
        if record is None:
            return None
        return RequestSummary(
            request=record.request,
            status=record.status,
            results=await self.store.list_results(request_id),
            completed_at=record.completed_at,
        )

    async def report_completion(self, request_id: str) -> RequestSummary | None:
        summary = await self.summarize(request_id)
        if summary is None:
            return None
        request = summary.request
        failures = [
            {
                "batch": r.batch_index,
                "error_kind": r.error_kind,
                "error_message": r.error_message,
            }
            for r in summary.results
            if r.status is BatchStatus.FAILED
        ]
        details = {
            "caller_reference": request.caller_reference,
            "provider": request.provider_type.value,
            "paths": len(request.paths),
            "counts": summary.counts,
            "provider_references": [r.provider_reference for r in summary.results if r.provider_reference],
            "failures": failures,
        }
        await self.store.record_audit(request.tenant_id, request.id, summary.status.value, details)

        log = logger.bind(
            request=request.id,
            tenant_id=request.tenant_id,
            provider=request.provider_type.value,
            status=summary.status.value,
            batches=len(summary.results),
            failed=len(failures),
        )
        if summary.status is RequestStatus.SUCCEEDED:
            log.info("cdn_invalidation_completed")
        else:
            log.warning("cdn_invalidation_completed")
        return summary
