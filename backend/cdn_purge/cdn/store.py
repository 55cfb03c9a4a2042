"""Invalidation ledger: requests, their batches and each batch's latest result.

The ledger is what makes caller references idempotent across retries and
what the reporter reads back. ``MemoryInvalidationStore`` serves tests and
single-process runs; ``SqlInvalidationStore`` is the production store.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cdn_purge.cdn.types import (
    BatchStatus,
    InvalidationBatch,
    InvalidationRequest,
    InvalidationResult,
    ProviderType,
    RequestStatus,
    utcnow,
)
from cdn_purge.core.audit import log_audit
from cdn_purge.core.idempotency import (
    IdempotencyClaim,
    IdempotencyClaimState,
    claim_for_existing,
)
from cdn_purge.models.cdn_invalidation import CdnInvalidationBatch, CdnInvalidationRequest

AUDIT_ENTITY = "cdn_invalidation"


@dataclass(slots=True)
class RequestRecord:
    request: InvalidationRequest
    status: RequestStatus
    completed_at: Optional[datetime] = None


class InvalidationStore(ABC):
    @abstractmethod
    async def claim(self, request: InvalidationRequest) -> IdempotencyClaim:
        """Insert ``request`` unless its caller reference is already known."""

    @abstractmethod
    async def get_request(self, request_id: str) -> RequestRecord | None: ...

    @abstractmethod
    async def add_batches(self, request_id: str, batches: list[InvalidationBatch]) -> None:
        """Persist the batches of a request, each with a Pending result."""

    @abstractmethod
    async def list_batches(self, request_id: str) -> list[InvalidationBatch]: ...

    @abstractmethod
    async def list_results(self, request_id: str) -> list[InvalidationResult]: ...

    @abstractmethod
    async def save_result(self, result: InvalidationResult) -> None: ...

    @abstractmethod
    async def set_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        completed_at: datetime | None = None,
    ) -> None: ...

    @abstractmethod
    async def record_audit(
        self,
        tenant_id: str,
        request_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None: ...


class MemoryInvalidationStore(InvalidationStore):
    def __init__(self) -> None:
        self._requests: dict[str, RequestRecord] = {}
        self._by_reference: dict[str, str] = {}
        self._batches: dict[str, list[InvalidationBatch]] = {}
        self._results: dict[str, dict[int, InvalidationResult]] = {}
        self.audit_events: list[dict[str, Any]] = []

    async def claim(self, request: InvalidationRequest) -> IdempotencyClaim:
        existing_id = self._by_reference.get(request.caller_reference)
        if existing_id is not None:
            return claim_for_existing(existing_id, self._requests[existing_id].status)
        self._requests[request.id] = RequestRecord(request, RequestStatus.CREATED)
        self._by_reference[request.caller_reference] = request.id
        return IdempotencyClaim(IdempotencyClaimState.NEW, request.id)

    async def get_request(self, request_id: str) -> RequestRecord | None:
        return self._requests.get(request_id)

    async def add_batches(self, request_id: str, batches: list[InvalidationBatch]) -> None:
        self._batches[request_id] = list(batches)
        self._results[request_id] = {
            batch.sequence_index: InvalidationResult.pending(batch) for batch in batches
        }

    async def list_batches(self, request_id: str) -> list[InvalidationBatch]:
        return list(self._batches.get(request_id, []))

    async def list_results(self, request_id: str) -> list[InvalidationResult]:
        results = self._results.get(request_id, {})
        return [results[index] for index in sorted(results)]

    async def save_result(self, result: InvalidationResult) -> None:
        # Only what the SQL store can persist; the exception object stays behind.
        self._results[result.request_id][result.batch_index] = result.evolve(
            error=None, timestamp=result.timestamp
        )

    async def set_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        completed_at: datetime | None = None,
    ) -> None:
        record = self._requests[request_id]
        record.status = status
        record.completed_at = completed_at

    async def record_audit(
        self,
        tenant_id: str,
        request_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.audit_events.append(
            {
                "tenant_id": tenant_id,
                "entity": AUDIT_ENTITY,
                "entity_id": request_id,
                "action": action,
                "details": details,
            }
        )


def _request_from_row(row: CdnInvalidationRequest) -> InvalidationRequest:
    return InvalidationRequest(
        id=row.id,
        tenant_id=row.tenant_id,
        paths=tuple(json.loads(row.paths)),
        caller_reference=row.caller_reference,
        provider_type=ProviderType(row.provider_type),
        created_at=row.created_at,
        purge_everything=bool(row.purge_everything),
    )


def _result_from_row(row: CdnInvalidationBatch) -> InvalidationResult:
    return InvalidationResult(
        request_id=row.request_id,
        batch_index=row.sequence_index,
        status=BatchStatus(row.status),
        provider_reference=row.provider_reference or "",
        error_kind=row.error_kind,
        error_message=row.error_message,
        attempt_count=row.attempt_count,
        timestamp=row.updated_at,
    )


class SqlInvalidationStore(InvalidationStore):
    """Ledger on the ``cdn_invalidation_request`` / ``cdn_invalidation_batch`` tables.

    Every call runs in its own short transaction so that batch results are
    visible to readers while the rest of the request is still in flight.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def claim(self, request: InvalidationRequest) -> IdempotencyClaim:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        CdnInvalidationRequest(
                            id=request.id,
                            tenant_id=request.tenant_id,
                            caller_reference=request.caller_reference,
                            provider_type=request.provider_type.value,
                            paths=json.dumps(list(request.paths)),
                            purge_everything=request.purge_everything,
                            status=RequestStatus.CREATED.value,
                            created_at=request.created_at,
                        )
                    )
            return IdempotencyClaim(IdempotencyClaimState.NEW, request.id)
        except IntegrityError:
            async with self._session_factory() as session:
                existing = await session.scalar(
                    select(CdnInvalidationRequest).where(
                        CdnInvalidationRequest.caller_reference == request.caller_reference
                    )
                )
            if existing is None:
                raise
            return claim_for_existing(existing.id, existing.status)

    async def get_request(self, request_id: str) -> RequestRecord | None:
        async with self._session_factory() as session:
            row = await session.get(CdnInvalidationRequest, request_id)
        if row is None:
            return None
        return RequestRecord(
            request=_request_from_row(row),
            status=RequestStatus(row.status),
            completed_at=row.completed_at,
        )

    async def add_batches(self, request_id: str, batches: list[InvalidationBatch]) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(
                    [
                        CdnInvalidationBatch(
                            request_id=request_id,
                            sequence_index=batch.sequence_index,
                            paths=json.dumps(list(batch.paths)),
                            status=BatchStatus.PENDING.value,
                            attempt_count=0,
                            updated_at=now,
                        )
                        for batch in batches
                    ]
                )

    async def _batch_rows(self, request_id: str) -> list[CdnInvalidationBatch]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CdnInvalidationBatch)
                .where(CdnInvalidationBatch.request_id == request_id)
                .order_by(CdnInvalidationBatch.sequence_index)
            )
            return list(result.scalars().all())

    async def list_batches(self, request_id: str) -> list[InvalidationBatch]:
        record = await self.get_request(request_id)
        if record is None:
            return []
        return [
            InvalidationBatch(
                request_id=row.request_id,
                sequence_index=row.sequence_index,
                paths=tuple(json.loads(row.paths)),
                purge_everything=record.request.purge_everything,
            )
            for row in await self._batch_rows(request_id)
        ]

    async def list_results(self, request_id: str) -> list[InvalidationResult]:
        return [_result_from_row(row) for row in await self._batch_rows(request_id)]

    async def save_result(self, result: InvalidationResult) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CdnInvalidationBatch)
                    .where(
                        CdnInvalidationBatch.request_id == result.request_id,
                        CdnInvalidationBatch.sequence_index == result.batch_index,
                    )
                    .values(
                        status=result.status.value,
                        provider_reference=result.provider_reference or None,
                        error_kind=result.error_kind,
                        error_message=result.error_message,
                        attempt_count=result.attempt_count,
                        updated_at=result.timestamp,
                    )
                )

    async def set_status(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        completed_at: datetime | None = None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CdnInvalidationRequest)
                    .where(CdnInvalidationRequest.id == request_id)
                    .values(status=status.value, completed_at=completed_at)
                )

    async def record_audit(
        self,
        tenant_id: str,
        request_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await log_audit(session, tenant_id, AUDIT_ENTITY, request_id, action, details)
