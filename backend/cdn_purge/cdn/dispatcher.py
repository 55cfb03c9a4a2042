"""Invalidation dispatcher.

Takes changed paths from the publish pipeline, records an invalidation
request, and drives it in the background through
``Created -> Batching -> Submitting -> Succeeded | PartialFailure | Failed``
(or ``Cancelled``). Publishing never waits on CDN latency unless the caller
asks to.
"""

from __future__ import annotations

import asyncio
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Iterable

import anyio
from loguru import logger

from cdn_purge.cdn.paths import (
    FULL_PURGE_PATH,
    requests_full_purge,
    split_batches,
    validate_paths,
)
from cdn_purge.cdn.provider_config import ProviderConfig, max_paths_for
from cdn_purge.cdn.providers import ProviderAdapter, build_adapter
from cdn_purge.cdn.reporter import CANCELLED_KIND, InvalidationReporter, aggregate_status
from cdn_purge.cdn.store import InvalidationStore
from cdn_purge.cdn.types import (
    TERMINAL_REQUEST_STATUSES,
    BatchStatus,
    InvalidationBatch,
    InvalidationRequest,
    InvalidationResult,
    Ok,
    RequestStatus,
    RequestSummary,
    Result,
    utcnow,
)
from cdn_purge.core.concurrency import run_provider_call
from cdn_purge.core.config import Settings
from cdn_purge.core.config import settings as default_settings
from cdn_purge.core.errors import InvalidationError, SerializationError, ValidationError
from cdn_purge.core.idempotency import (
    IdempotencyClaimState,
    batch_caller_reference,
    new_caller_reference,
)
from cdn_purge.core.retry import with_provider_retry


class InvalidationDispatcher:
    """Owns the provider adapter and every in-flight request of this process.

    The provider config is injected here once and shared read-only by all
    batches; nothing else in the package holds provider state.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        store: InvalidationStore,
        *,
        adapter: ProviderAdapter | None = None,
        reporter: InvalidationReporter | None = None,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ):
        self.settings = config or default_settings
        self.provider_config = provider_config
        self.provider_type = provider_config.provider_type
        self.store = store
        self.adapter = adapter or build_adapter(
            provider_config, timeout=self.settings.CDN_HTTP_TIMEOUT_SEC
        )
        self.reporter = reporter or InvalidationReporter(store)
        self.batch_limit = max_paths_for(self.provider_type, self.settings)
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled: set[str] = set()

    async def submit_invalidation(
        self,
        tenant_id: str,
        paths: Iterable[Any] | None,
        *,
        caller_reference: str | None = None,
        purge_everything: bool = False,
        wait: bool = False,
        timeout: float | None = None,
    ) -> Result[str, ValidationError]:
        """Validate ``paths`` and start purging them; return the request id.

        Nothing is created when validation fails. A ``caller_reference`` seen
        before is a retry of that request: its id comes back and only batches
        that have not succeeded are sent again. A path list naming ``/`` or
        ``root`` purges the whole site.
        """

        if paths is not None and not isinstance(paths, (str, bytes)):
            paths = list(paths)
            if not purge_everything and requests_full_purge(paths):
                logger.bind(tenant_id=tenant_id, paths=len(paths)).info(
                    "cdn_invalidation_escalated_to_full_purge"
                )
                purge_everything = True

        validated = Ok([FULL_PURGE_PATH]) if purge_everything else validate_paths(paths)
        if not validated.ok:
            logger.bind(tenant_id=tenant_id, error=str(validated.error)).info(
                "cdn_invalidation_rejected"
            )
            return validated

        request = InvalidationRequest(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            paths=tuple(validated.value),
            caller_reference=caller_reference
            or new_caller_reference(self.settings.CALLER_REFERENCE_PREFIX),
            provider_type=self.provider_type,
            purge_everything=purge_everything,
        )
        claim = await self.store.claim(request)
        log = logger.bind(
            request=claim.request_id,
            tenant_id=tenant_id,
            caller_reference=request.caller_reference,
        )
        if claim.state is IdempotencyClaimState.NEW:
            log.bind(
                provider=self.provider_type.value,
                paths=len(request.paths),
                purge_everything=purge_everything,
            ).info("cdn_invalidation_submitted")
        else:
            log.bind(claim=claim.state.value).info("cdn_invalidation_resubmitted")

        if claim.state is IdempotencyClaimState.RESUME:
            self._cancelled.discard(claim.request_id)
        # REPLAY is finished; IN_PROGRESS already has a driver.
        if claim.state in (IdempotencyClaimState.NEW, IdempotencyClaimState.RESUME):
            self._schedule(claim.request_id)
        if wait:
            await self.wait(claim.request_id, timeout)
        return Ok(claim.request_id)

    async def purge_everything(
        self,
        tenant_id: str,
        *,
        caller_reference: str | None = None,
        wait: bool = False,
        timeout: float | None = None,
    ) -> Result[str, ValidationError]:
        return await self.submit_invalidation(
            tenant_id,
            [FULL_PURGE_PATH],
            caller_reference=caller_reference,
            purge_everything=True,
            wait=wait,
            timeout=timeout,
        )

    async def run(self, request_id: str) -> RequestSummary:
        """Drive one request to a terminal status and report it.

        Succeeded batches are left alone, so running a request again only
        touches what failed or never finished. A batch still marked Submitted
        here lost its driver mid-call; it is sent again under the same wire
        reference, which providers that dedupe by reference treat as a repeat.
        """

        record = await self.store.get_request(request_id)
        if record is None:
            raise LookupError(f"Unknown invalidation request {request_id}")
        request = record.request

        batches = await self.store.list_batches(request_id)
        if not batches:
            await self.store.set_status(request_id, RequestStatus.BATCHING)
            batches = split_batches(
                request.id,
                request.paths,
                self.batch_limit,
                purge_everything=request.purge_everything,
            )
            await self.store.add_batches(request_id, batches)

        await self.store.set_status(request_id, RequestStatus.SUBMITTING)
        previous = {r.batch_index: r for r in await self.store.list_results(request_id)}
        todo = [b for b in batches if previous[b.sequence_index].status is not BatchStatus.SUCCEEDED]
        stranded = sum(
            1 for b in todo if previous[b.sequence_index].status is BatchStatus.SUBMITTED
        )
        logger.bind(
            request=request_id,
            tenant_id=request.tenant_id,
            batches=len(batches),
            to_send=len(todo),
            stranded=stranded,
            batch_limit=self.batch_limit,
        ).info("cdn_invalidation_dispatching")

        slots = anyio.Semaphore(self.settings.CDN_MAX_CONCURRENCY)
        broken: list[SerializationError] = []
        async with anyio.create_task_group() as tg:
            for batch in todo:
                tg.start_soon(
                    self._dispatch_batch,
                    request,
                    batch,
                    previous[batch.sequence_index],
                    slots,
                    broken,
                )

        status = aggregate_status(await self.store.list_results(request_id))
        await self.store.set_status(request_id, status, completed_at=utcnow())
        self._cancelled.discard(request_id)
        summary = await self.reporter.report_completion(request_id)
        if broken:
            raise broken[0]
        return summary

    async def _dispatch_batch(
        self,
        request: InvalidationRequest,
        batch: InvalidationBatch,
        previous: InvalidationResult,
        slots: anyio.Semaphore,
        broken: list[SerializationError],
    ) -> None:
        wire_reference = batch_caller_reference(request.caller_reference, batch.sequence_index)
        attempts = 0

        async with slots:
            if request.id in self._cancelled:
                await self.store.save_result(
                    previous.evolve(
                        status=BatchStatus.FAILED,
                        error_kind=CANCELLED_KIND,
                        error_message="Cancelled before submission",
                    )
                )
                return

            # Marked before the call; a resubmission leaves it to this driver.
            await self.store.save_result(
                previous.evolve(status=BatchStatus.SUBMITTED, error_kind=None, error_message=None)
            )

            async def attempt() -> InvalidationResult:
                nonlocal attempts
                attempts += 1
                result = await run_provider_call(self.adapter.submit, batch, wire_reference)
                if result.error is not None:
                    raise result.error
                return result

            try:
                result = await with_provider_retry(
                    attempt,
                    attempts=self.settings.CDN_RETRY_ATTEMPTS,
                    base_delay=self.settings.CDN_RETRY_BASE_DELAY,
                    max_delay=self.settings.CDN_RETRY_MAX_DELAY,
                    jitter=self.settings.CDN_RETRY_JITTER,
                    sleep=self._sleep,
                )
            except SerializationError as exc:
                broken.append(exc)
                result = InvalidationResult.failed(batch, exc)
            except InvalidationError as exc:
                logger.bind(
                    request=request.id,
                    batch=batch.sequence_index,
                    attempts=attempts,
                    error_kind=exc.kind,
                ).warning("cdn_batch_failed")
                result = InvalidationResult.failed(batch, exc)

        await self.store.save_result(
            result.evolve(attempt_count=previous.attempt_count + attempts)
        )

    async def retry(self, request_id: str, *, wait: bool = True) -> RequestSummary:
        """Send the failed batches of a request again under its caller reference."""

        record = await self.store.get_request(request_id)
        if record is None:
            raise LookupError(f"Unknown invalidation request {request_id}")
        if record.status is not RequestStatus.SUCCEEDED:
            running = self._tasks.get(request_id)
            if running is not None:
                await asyncio.shield(running)
            self._cancelled.discard(request_id)
            logger.bind(request=request_id, previous_status=record.status.value).info(
                "cdn_invalidation_retry"
            )
            task = self._schedule(request_id)
            if wait:
                await asyncio.shield(task)
        return await self.reporter.summarize(request_id)

    async def cancel(self, request_id: str) -> bool:
        """Abandon batches not yet sent. Returns False once the request has finished.

        Batches already with the provider run to completion.
        """

        record = await self.store.get_request(request_id)
        if record is None:
            raise LookupError(f"Unknown invalidation request {request_id}")
        if record.status in TERMINAL_REQUEST_STATUSES:
            return False
        self._cancelled.add(request_id)
        logger.bind(request=request_id, status=record.status.value).info(
            "cdn_invalidation_cancel_requested"
        )
        running = self._tasks.get(request_id)
        if running is None or running.done():
            # The driver may have finished while the status was being read.
            record = await self.store.get_request(request_id)
            if record.status in TERMINAL_REQUEST_STATUSES:
                self._cancelled.discard(request_id)
                return False
            # No driver in this process; settle the unsent batches here.
            await self._schedule(request_id)
        return True

    async def wait(self, request_id: str, timeout: float | None = None) -> RequestSummary | None:
        """Wait up to ``timeout`` seconds for background work, then summarize."""

        task = self._tasks.get(request_id)
        if task is not None:
            with anyio.move_on_after(timeout):
                await asyncio.shield(task)
        return await self.reporter.summarize(request_id)

    async def aclose(self, grace: float | None = None) -> None:
        """Let in-flight requests finish within the grace period, then stop."""

        grace = self.settings.SHUTDOWN_GRACE_SEC if grace is None else grace
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            logger.bind(pending=len(pending), grace=grace).info("cdn_dispatcher_draining")
            _, unfinished = await asyncio.wait(pending, timeout=grace)
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
                logger.bind(abandoned=len(unfinished)).warning("cdn_dispatcher_abandoned")
        self.adapter.close()

    def _schedule(self, request_id: str) -> asyncio.Task:
        task = self._tasks.get(request_id)
        if task is not None and not task.done():
            return task
        task = asyncio.get_running_loop().create_task(
            self._drive(request_id), name=f"cdn-invalidation-{request_id}"
        )
        self._tasks[request_id] = task
        task.add_done_callback(partial(self._forget, request_id))
        return task

    def _forget(self, request_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(request_id) is task:
            del self._tasks[request_id]

    async def _drive(self, request_id: str) -> RequestSummary | None:
        try:
            return await self.run(request_id)
        except Exception:
            # Background work has no caller to raise to; the ledger keeps the outcome.
            logger.bind(request=request_id).exception("cdn_invalidation_crashed")
            return None
