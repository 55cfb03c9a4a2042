import json

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cdn_purge.cdn.dispatcher import InvalidationDispatcher
from cdn_purge.cdn.paths import split_batches
from cdn_purge.cdn.provider_config import NoneConfig
from cdn_purge.cdn.store import SqlInvalidationStore
from cdn_purge.cdn.types import (
    BatchStatus,
    InvalidationRequest,
    InvalidationResult,
    ProviderType,
    RequestStatus,
    utcnow,
)
from cdn_purge.core.config import Settings
from cdn_purge.core.errors import ProviderError
from cdn_purge.core.idempotency import IdempotencyClaimState
from cdn_purge.models import Base, CdnAuditLog
from fakes import RecordingSleep, ScriptedAdapter


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


def _request(request_id="req-1", caller_reference="publish-1", paths=("/a", "/b", "/c")):
    return InvalidationRequest(
        id=request_id,
        tenant_id="tenant-a",
        paths=tuple(paths),
        caller_reference=caller_reference,
        provider_type=ProviderType.CLOUDFLARE,
    )


@pytest.mark.anyio
async def test_request_round_trip(session_factory):
    store = SqlInvalidationStore(session_factory)
    request = _request()

    claim = await store.claim(request)
    record = await store.get_request("req-1")

    assert claim.state is IdempotencyClaimState.NEW
    assert record.request.paths == ("/a", "/b", "/c")
    assert record.request.provider_type is ProviderType.CLOUDFLARE
    assert record.status is RequestStatus.CREATED
    assert await store.get_request("missing") is None


@pytest.mark.anyio
async def test_duplicate_caller_reference_returns_existing_request(session_factory):
    store = SqlInvalidationStore(session_factory)
    await store.claim(_request())

    in_progress = await store.claim(_request(request_id="req-2"))
    await store.set_status("req-1", RequestStatus.PARTIAL_FAILURE, completed_at=utcnow())
    resume = await store.claim(_request(request_id="req-3"))
    await store.set_status("req-1", RequestStatus.SUCCEEDED, completed_at=utcnow())
    replay = await store.claim(_request(request_id="req-4"))

    assert in_progress.state is IdempotencyClaimState.IN_PROGRESS
    assert resume.state is IdempotencyClaimState.RESUME
    assert replay.state is IdempotencyClaimState.REPLAY
    assert {in_progress.request_id, resume.request_id, replay.request_id} == {"req-1"}
    assert await store.get_request("req-2") is None


@pytest.mark.anyio
async def test_batches_and_results(session_factory):
    store = SqlInvalidationStore(session_factory)
    request = _request()
    await store.claim(request)
    batches = split_batches(request.id, request.paths, 2)

    await store.add_batches(request.id, batches)
    pending = await store.list_results(request.id)
    await store.save_result(
        InvalidationResult.succeeded(batches[0], "purge-1").evolve(attempt_count=1)
    )
    await store.save_result(
        InvalidationResult.failed(batches[1], ProviderError("HTTP 400")).evolve(attempt_count=1)
    )

    assert [r.status for r in pending] == [BatchStatus.PENDING, BatchStatus.PENDING]
    assert [b.paths for b in await store.list_batches(request.id)] == [("/a", "/b"), ("/c",)]
    first, second = await store.list_results(request.id)
    assert (first.status, first.provider_reference) == (BatchStatus.SUCCEEDED, "purge-1")
    assert (second.status, second.error_kind) == (BatchStatus.FAILED, "provider")
    assert second.error is None


@pytest.mark.anyio
async def test_audit_row_is_written(session_factory):
    store = SqlInvalidationStore(session_factory)

    await store.record_audit("tenant-a", "req-1", "Succeeded", {"paths": 3})

    async with session_factory() as session:
        row = await session.scalar(select(CdnAuditLog))
    assert row.entity == "cdn_invalidation"
    assert row.entity_id == "req-1"
    assert row.action == "Succeeded"
    assert json.loads(row.details) == {"paths": 3}


@pytest.mark.anyio
async def test_dispatcher_on_sql_ledger(session_factory):
    store = SqlInvalidationStore(session_factory)
    adapter = ScriptedAdapter({1: [ProviderError("HTTP 400")]})
    dispatcher = InvalidationDispatcher(
        NoneConfig(),
        store,
        adapter=adapter,
        config=Settings(NONE_MAX_PATHS=2, CDN_RETRY_JITTER=0.0),
        sleep=RecordingSleep(),
    )

    outcome = await dispatcher.submit_invalidation(
        "tenant-a", ["/a", "/b", "/c"], caller_reference="publish-sql", wait=True, timeout=5
    )
    summary = await dispatcher.wait(outcome.value)
    assert summary.status is RequestStatus.PARTIAL_FAILURE

    again = await dispatcher.submit_invalidation(
        "tenant-a", ["/a", "/b", "/c"], caller_reference="publish-sql", wait=True, timeout=5
    )
    summary = await dispatcher.wait(again.value)

    assert again.value == outcome.value
    assert summary.status is RequestStatus.SUCCEEDED
    assert len(adapter.calls_for(0)) == 1
    assert len(adapter.calls_for(1)) == 2

    async with session_factory() as session:
        actions = (await session.scalars(select(CdnAuditLog.action).order_by(CdnAuditLog.id))).all()
    assert actions == ["PartialFailure", "Succeeded"]
