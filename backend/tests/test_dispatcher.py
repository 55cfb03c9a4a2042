import threading

import anyio
import pytest

from cdn_purge.cdn.dispatcher import InvalidationDispatcher
from cdn_purge.cdn.paths import split_batches
from cdn_purge.cdn.provider_config import AzureFrontDoorConfig, CloudFrontConfig, NoneConfig
from cdn_purge.cdn.providers.azure import AzureFrontDoorAdapter
from cdn_purge.cdn.providers.none import NoneAdapter
from cdn_purge.cdn.store import MemoryInvalidationStore
from cdn_purge.cdn.types import (
    BatchStatus,
    InvalidationRequest,
    InvalidationResult,
    ProviderType,
    RequestStatus,
)
from cdn_purge.core.config import Settings
from cdn_purge.core.errors import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
    SerializationError,
    TransientNetworkError,
)
from fakes import FakeSession, RecordingSleep, ScriptedAdapter, make_response

CLOUDFRONT = CloudFrontConfig(distribution_id="E1", access_key_id="AK", secret_access_key="s")
AZURE = AzureFrontDoorConfig(
    tenant_id="tenant",
    client_id="client",
    client_secret="secret",
    subscription_id="sub",
    resource_group="rg",
    profile_name="profile",
    endpoint_name="site",
)


def _settings(**overrides):
    values = {
        "CDN_MAX_CONCURRENCY": 4,
        "CDN_RETRY_ATTEMPTS": 3,
        "CDN_RETRY_BASE_DELAY": 0.5,
        "CDN_RETRY_MAX_DELAY": 30.0,
        "CDN_RETRY_JITTER": 0.0,
        "NONE_MAX_PATHS": 2,
        "SHUTDOWN_GRACE_SEC": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def _dispatcher(adapter, *, provider_config=None, store=None, sleep=None, **overrides):
    return InvalidationDispatcher(
        provider_config or NoneConfig(),
        store or MemoryInvalidationStore(),
        adapter=adapter,
        config=_settings(**overrides),
        sleep=sleep or RecordingSleep(),
    )


async def _submit_and_wait(dispatcher, paths, **kwargs):
    outcome = await dispatcher.submit_invalidation("tenant-a", paths, wait=True, timeout=5, **kwargs)
    assert outcome.ok
    return await dispatcher.wait(outcome.value)


@pytest.mark.anyio
async def test_submit_returns_before_provider_finishes():
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate)
    dispatcher = _dispatcher(adapter)

    outcome = await dispatcher.submit_invalidation("tenant-a", ["/index.html"])

    assert outcome.ok
    summary = await dispatcher.reporter.summarize(outcome.value)
    assert not summary.is_complete

    gate.set()
    summary = await dispatcher.wait(outcome.value, timeout=5)
    assert summary.status is RequestStatus.SUCCEEDED
    assert summary.completed_at is not None
    await dispatcher.aclose()


@pytest.mark.anyio
async def test_empty_paths_create_nothing():
    store = MemoryInvalidationStore()
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter, store=store)

    outcome = await dispatcher.submit_invalidation("tenant-a", [])

    assert not outcome.ok
    assert outcome.error.kind == "validation"
    assert adapter.calls == []
    assert store.audit_events == []
    assert dispatcher._tasks == {}


@pytest.mark.anyio
async def test_cloudfront_request_is_split_into_provider_batches():
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter, provider_config=CLOUDFRONT)
    paths = [f"/p/{i}" for i in range(7500)]

    summary = await _submit_and_wait(dispatcher, paths, caller_reference="publish-42")

    assert summary.status is RequestStatus.SUCCEEDED
    assert [r.provider_reference for r in summary.results] == ["ref-0", "ref-1", "ref-2"]
    calls = sorted(adapter.calls)
    assert [len(call[2]) for call in calls] == [3000, 3000, 1500]
    assert [call[1] for call in calls] == ["publish-42-0", "publish-42-1", "publish-42-2"]
    assert [p for call in calls for p in call[2]] == paths


@pytest.mark.anyio
async def test_transient_failure_is_retried():
    sleep = RecordingSleep()
    adapter = ScriptedAdapter({0: [TransientNetworkError("HTTP 503"), "I-1"]})
    dispatcher = _dispatcher(adapter, sleep=sleep)

    summary = await _submit_and_wait(dispatcher, ["/index.html"])

    [result] = summary.results
    assert summary.status is RequestStatus.SUCCEEDED
    assert result.provider_reference == "I-1"
    assert result.attempt_count == 2
    assert sleep.delays == [0.5]


@pytest.mark.anyio
async def test_rate_limit_exhausts_attempt_ceiling():
    sleep = RecordingSleep()
    adapter = ScriptedAdapter({0: [RateLimitError("slow down", retry_after=7.0)] * 3})
    dispatcher = _dispatcher(adapter, sleep=sleep)

    summary = await _submit_and_wait(dispatcher, ["/index.html"])

    [result] = summary.results
    assert summary.status is RequestStatus.FAILED
    assert result.error_kind == "rate_limit"
    assert result.attempt_count == 3
    assert len(adapter.calls) == 3
    assert sleep.delays == [7.0, 7.0]


@pytest.mark.anyio
async def test_authentication_failure_is_not_retried():
    sleep = RecordingSleep()
    adapter = ScriptedAdapter({0: [AuthenticationError("HTTP 403")]})
    dispatcher = _dispatcher(adapter, sleep=sleep)

    summary = await _submit_and_wait(dispatcher, ["/index.html"])

    assert summary.status is RequestStatus.FAILED
    assert summary.results[0].error_kind == "authentication"
    assert len(adapter.calls) == 1
    assert sleep.delays == []


@pytest.mark.anyio
async def test_some_batches_failing_is_partial_failure():
    adapter = ScriptedAdapter({1: [ProviderError("HTTP 400")]})
    dispatcher = _dispatcher(adapter)

    summary = await _submit_and_wait(dispatcher, ["/a", "/b", "/c", "/d"])

    assert summary.status is RequestStatus.PARTIAL_FAILURE
    assert [r.status for r in summary.results] == [BatchStatus.SUCCEEDED, BatchStatus.FAILED]
    assert summary.counts["Failed"] == 1


@pytest.mark.anyio
async def test_none_provider_always_succeeds():
    session = FakeSession()
    dispatcher = _dispatcher(NoneAdapter(NoneConfig(), session))

    summary = await _submit_and_wait(dispatcher, ["/a", "/b", "/c"])

    assert summary.status is RequestStatus.SUCCEEDED
    assert all(r.status is BatchStatus.SUCCEEDED for r in summary.results)
    assert session.calls == []


@pytest.mark.anyio
async def test_purge_everything_is_one_wildcard_batch():
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter)

    outcome = await dispatcher.purge_everything("tenant-a", wait=True, timeout=5)

    summary = await dispatcher.wait(outcome.value)
    assert summary.request.purge_everything
    assert summary.request.paths == ("/*",)
    assert summary.status is RequestStatus.SUCCEEDED
    assert len(adapter.calls) == 1


@pytest.mark.anyio
async def test_same_caller_reference_does_not_resend():
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter)

    first = await dispatcher.submit_invalidation(
        "tenant-a", ["/a", "/b", "/c"], caller_reference="publish-7", wait=True, timeout=5
    )
    second = await dispatcher.submit_invalidation(
        "tenant-a", ["/a", "/b", "/c"], caller_reference="publish-7", wait=True, timeout=5
    )

    assert first.value == second.value
    assert len(adapter.calls) == 2


@pytest.mark.anyio
async def test_resubmission_resends_only_failed_batches():
    adapter = ScriptedAdapter({1: [ProviderError("HTTP 400")]})
    dispatcher = _dispatcher(adapter)

    summary = await _submit_and_wait(dispatcher, ["/a", "/b", "/c"], caller_reference="publish-8")
    assert summary.status is RequestStatus.PARTIAL_FAILURE

    summary = await _submit_and_wait(dispatcher, ["/a", "/b", "/c"], caller_reference="publish-8")

    assert summary.status is RequestStatus.SUCCEEDED
    assert len(adapter.calls_for(0)) == 1
    assert [call[1] for call in adapter.calls_for(1)] == ["publish-8-1", "publish-8-1"]
    assert summary.results[1].attempt_count == 2


@pytest.mark.anyio
async def test_retry_reuses_caller_reference():
    adapter = ScriptedAdapter({0: [ProviderError("HTTP 404")]})
    dispatcher = _dispatcher(adapter)
    summary = await _submit_and_wait(dispatcher, ["/a"], caller_reference="publish-9")
    assert summary.status is RequestStatus.FAILED

    summary = await dispatcher.retry(summary.request.id)

    assert summary.status is RequestStatus.SUCCEEDED
    assert [call[1] for call in adapter.calls] == ["publish-9-0", "publish-9-0"]


@pytest.mark.anyio
async def test_retry_unknown_request():
    dispatcher = _dispatcher(ScriptedAdapter())

    with pytest.raises(LookupError):
        await dispatcher.retry("missing")


@pytest.mark.anyio
async def test_cancel_abandons_unsent_batches():
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate)
    dispatcher = _dispatcher(adapter, CDN_MAX_CONCURRENCY=1, NONE_MAX_PATHS=1)

    outcome = await dispatcher.submit_invalidation("tenant-a", ["/a", "/b", "/c"])
    with anyio.fail_after(5):
        while not adapter.calls:
            await anyio.sleep(0.01)

    assert await dispatcher.cancel(outcome.value) is True
    gate.set()
    summary = await dispatcher.wait(outcome.value, timeout=5)

    assert summary.status is RequestStatus.CANCELLED
    assert len(adapter.calls) == 1
    assert summary.results[0].status is BatchStatus.SUCCEEDED
    assert [r.error_kind for r in summary.results[1:]] == ["cancelled", "cancelled"]
    assert await dispatcher.cancel(outcome.value) is False


@pytest.mark.anyio
async def test_cancel_unknown_request():
    dispatcher = _dispatcher(ScriptedAdapter())

    with pytest.raises(LookupError):
        await dispatcher.cancel("missing")


@pytest.mark.anyio
async def test_batches_run_with_bounded_parallelism():
    adapter = ScriptedAdapter(delay=0.05)
    dispatcher = _dispatcher(adapter, CDN_MAX_CONCURRENCY=2, NONE_MAX_PATHS=1)

    summary = await _submit_and_wait(dispatcher, [f"/p{i}" for i in range(6)])

    assert summary.status is RequestStatus.SUCCEEDED
    assert adapter.max_in_flight == 2


@pytest.mark.anyio
async def test_serialization_error_propagates_from_run():
    adapter = ScriptedAdapter({0: [SerializationError("cannot encode"), SerializationError("cannot encode")]})
    dispatcher = _dispatcher(adapter)

    summary = await _submit_and_wait(dispatcher, ["/a"])
    assert summary.status is RequestStatus.FAILED
    assert summary.results[0].error_kind == "serialization"

    with pytest.raises(SerializationError):
        await dispatcher.run(summary.request.id)


@pytest.mark.anyio
async def test_completion_is_recorded_on_audit_trail():
    store = MemoryInvalidationStore()
    adapter = ScriptedAdapter({1: [ProviderError("HTTP 400")]})
    dispatcher = _dispatcher(adapter, store=store)

    summary = await _submit_and_wait(dispatcher, ["/a", "/b", "/c"], caller_reference="publish-10")

    [event] = store.audit_events
    assert event["tenant_id"] == "tenant-a"
    assert event["entity_id"] == summary.request.id
    assert event["action"] == "PartialFailure"
    assert event["details"]["caller_reference"] == "publish-10"
    assert event["details"]["failures"][0]["batch"] == 1


@pytest.mark.anyio
async def test_aclose_waits_for_background_work():
    adapter = ScriptedAdapter(delay=0.05)
    dispatcher = _dispatcher(adapter)

    outcome = await dispatcher.submit_invalidation("tenant-a", ["/a"])
    await dispatcher.aclose()

    summary = await dispatcher.reporter.summarize(outcome.value)
    assert summary.status is RequestStatus.SUCCEEDED
    assert adapter.session.closed


@pytest.mark.anyio
async def test_unexpected_adapter_error_settles_the_batch():
    adapter = ScriptedAdapter({0: [KeyError("Id")]})
    dispatcher = _dispatcher(adapter)

    summary = await _submit_and_wait(dispatcher, ["/a"])

    [result] = summary.results
    assert summary.status is RequestStatus.FAILED
    assert summary.completed_at is not None
    assert result.status is BatchStatus.FAILED
    assert result.error_kind == "provider"
    assert len(adapter.calls) == 1


@pytest.mark.anyio
async def test_garbled_azure_token_response_can_be_retried():
    session = FakeSession(make_response(200, text="<html>oops</html>"))
    dispatcher = _dispatcher(AzureFrontDoorAdapter(AZURE, session), provider_config=AZURE)

    summary = await _submit_and_wait(dispatcher, ["/a"], caller_reference="publish-13")
    assert summary.status is RequestStatus.FAILED
    assert summary.results[0].error_kind == "provider"

    session.responses.extend(
        [
            make_response(200, json_body={"access_token": "arm-token", "expires_in": 3599}),
            make_response(202, headers={"x-ms-request-id": "op-1"}),
        ]
    )
    summary = await dispatcher.retry(summary.request.id)

    assert summary.status is RequestStatus.SUCCEEDED
    assert summary.results[0].provider_reference == "op-1"
    assert session.calls[-1]["headers"]["x-ms-client-request-id"] == "publish-13-0"


@pytest.mark.anyio
async def test_batch_left_submitted_by_lost_driver_is_sent_again():
    store = MemoryInvalidationStore()
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter, store=store)
    request = InvalidationRequest(
        id="req-lost",
        tenant_id="tenant-a",
        paths=("/a", "/b", "/c"),
        caller_reference="publish-11",
        provider_type=ProviderType.NONE,
    )
    await store.claim(request)
    batches = split_batches(request.id, request.paths, 2)
    await store.add_batches(request.id, batches)
    first, _ = await store.list_results(request.id)
    await store.save_result(first.evolve(status=BatchStatus.SUBMITTED))
    await store.save_result(InvalidationResult.succeeded(batches[1], "ref-1"))
    await store.set_status(request.id, RequestStatus.SUBMITTING)

    summary = await dispatcher.retry(request.id)

    assert summary.status is RequestStatus.SUCCEEDED
    assert adapter.calls == [(0, "publish-11-0", ("/a", "/b"))]


@pytest.mark.anyio
@pytest.mark.parametrize("paths", [["/news/today", "/"], ["root"], ["/a", "not-a-path", "Root"]])
async def test_site_root_escalates_to_full_purge(paths):
    adapter = ScriptedAdapter()
    dispatcher = _dispatcher(adapter)

    summary = await _submit_and_wait(dispatcher, paths)

    assert summary.request.purge_everything
    assert summary.request.paths == ("/*",)
    assert [call[2] for call in adapter.calls] == [("/*",)]


@pytest.mark.anyio
async def test_late_cancel_flag_does_not_cancel_resubmission():
    adapter = ScriptedAdapter({0: [ProviderError("HTTP 400")]})
    dispatcher = _dispatcher(adapter)
    summary = await _submit_and_wait(dispatcher, ["/a"], caller_reference="publish-12")
    assert summary.status is RequestStatus.FAILED

    # A cancel that read the status just before the run finished.
    dispatcher._cancelled.add(summary.request.id)
    summary = await _submit_and_wait(dispatcher, ["/a"], caller_reference="publish-12")

    assert summary.status is RequestStatus.SUCCEEDED
    assert summary.results[0].provider_reference == "ref-0"
