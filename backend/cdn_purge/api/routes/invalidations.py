"""CDN invalidation endpoints called by the publish pipeline."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from cdn_purge.cdn.dispatcher import InvalidationDispatcher
from cdn_purge.core.config import settings
from cdn_purge.core.idempotency import optional_idempotency_key
from cdn_purge.core.rate_limit import limiter
from cdn_purge.schemas.invalidation import (
    CancelOut,
    InvalidationAccepted,
    InvalidationSubmit,
    InvalidationSummaryOut,
    PurgeAllSubmit,
)

router = APIRouter(prefix="/invalidations", tags=["invalidations"])


def get_dispatcher(request: Request) -> InvalidationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CDN dispatcher is not ready",
        )
    return dispatcher


def _wait_timeout(timeout: Optional[float]) -> float:
    if timeout is None:
        return settings.SUBMIT_MAX_WAIT_SEC
    return min(timeout, settings.SUBMIT_MAX_WAIT_SEC)


def _not_found(request_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Invalidation request {request_id} not found",
    )


async def _respond(
    dispatcher: InvalidationDispatcher,
    request_id: str,
    *,
    wait: bool,
    timeout: Optional[float],
) -> JSONResponse:
    """200 with the full summary once finished and waited on, otherwise 202."""

    if wait:
        summary = await dispatcher.wait(request_id, _wait_timeout(timeout))
    else:
        summary = await dispatcher.reporter.summarize(request_id)
    if summary is None:
        raise _not_found(request_id)
    if wait and summary.is_complete:
        body = InvalidationSummaryOut.from_summary(summary)
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))
    accepted = InvalidationAccepted(request_id=request_id, status=summary.status.value)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump())


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InvalidationAccepted,
    responses={200: {"model": InvalidationSummaryOut}},
)
@limiter.limit(settings.SUBMIT_RATE)
async def submit_invalidation(
    request: Request,
    payload: InvalidationSubmit,
    wait: bool = Query(False),
    timeout: Optional[float] = Query(None, ge=0),
    idempotency_key: Optional[str] = Depends(optional_idempotency_key),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    outcome = await dispatcher.submit_invalidation(
        payload.tenant_id,
        payload.paths,
        caller_reference=idempotency_key,
    )
    if not outcome.ok:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(outcome.error),
        )
    return await _respond(dispatcher, outcome.value, wait=wait, timeout=timeout)


@router.post(
    "/purge-all",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InvalidationAccepted,
    responses={200: {"model": InvalidationSummaryOut}},
)
@limiter.limit(settings.SUBMIT_RATE)
async def purge_all(
    request: Request,
    payload: PurgeAllSubmit,
    wait: bool = Query(False),
    timeout: Optional[float] = Query(None, ge=0),
    idempotency_key: Optional[str] = Depends(optional_idempotency_key),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    outcome = await dispatcher.purge_everything(payload.tenant_id, caller_reference=idempotency_key)
    return await _respond(dispatcher, outcome.value, wait=wait, timeout=timeout)


@router.get("/{request_id}", response_model=InvalidationSummaryOut)
async def get_invalidation(
    request_id: str,
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
) -> InvalidationSummaryOut:
    summary = await dispatcher.reporter.summarize(request_id)
    if summary is None:
        raise _not_found(request_id)
    return InvalidationSummaryOut.from_summary(summary)


@router.post(
    "/{request_id}/retry",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InvalidationAccepted,
    responses={200: {"model": InvalidationSummaryOut}},
)
async def retry_invalidation(
    request_id: str,
    wait: bool = Query(False),
    timeout: Optional[float] = Query(None, ge=0),
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
):
    try:
        await dispatcher.retry(request_id, wait=False)
    except LookupError:
        raise _not_found(request_id) from None
    return await _respond(dispatcher, request_id, wait=wait, timeout=timeout)


@router.delete("/{request_id}", response_model=CancelOut)
async def cancel_invalidation(
    request_id: str,
    dispatcher: InvalidationDispatcher = Depends(get_dispatcher),
) -> CancelOut:
    try:
        cancelled = await dispatcher.cancel(request_id)
    except LookupError:
        raise _not_found(request_id) from None
    return CancelOut(request_id=request_id, cancelled=cancelled)
