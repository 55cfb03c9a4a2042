"""Helpers for caller references, the idempotency token of an invalidation request."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from fastapi import HTTPException, Request, status

from cdn_purge.core.config import settings

# Leaves room for the per-batch suffix inside a 128 character column.
MAX_KEY_LENGTH = 120


class IdempotencyClaimState(str, Enum):
    NEW = "new"
    REPLAY = "replay"
    IN_PROGRESS = "in_progress"
    RESUME = "resume"


@dataclass(slots=True)
class IdempotencyClaim:
    """Represents the result of presenting a caller reference to the dispatcher."""

    state: IdempotencyClaimState
    request_id: str | None = None


def claim_for_existing(request_id: str, status: str) -> IdempotencyClaim:
    """Classify a caller reference that is already on the ledger.

    Finished successes replay; requests still moving are in progress; failed,
    partially failed and cancelled requests resume their unsent batches.
    """

    if status == "Succeeded":
        return IdempotencyClaim(IdempotencyClaimState.REPLAY, request_id)
    if status in ("Created", "Batching", "Submitting"):
        return IdempotencyClaim(IdempotencyClaimState.IN_PROGRESS, request_id)
    return IdempotencyClaim(IdempotencyClaimState.RESUME, request_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def optional_idempotency_key(request: Request) -> str | None:
    """Extract and validate the optional Idempotency-Key header."""

    key = request.headers.get("Idempotency-Key", "").strip()
    if not key:
        return None
    if len(key) > MAX_KEY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Idempotency-Key must be {MAX_KEY_LENGTH} characters or fewer.",
        )
    return key


def new_caller_reference(prefix: str | None = None) -> str:
    """Mint a reference that is never reused across logical requests."""

    prefix = prefix or settings.CALLER_REFERENCE_PREFIX
    return f"{prefix}-{_utcnow():%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex}"


def batch_caller_reference(caller_reference: str, sequence_index: int) -> str:
    """Reference sent on the wire for one batch; stable across retries."""

    return f"{caller_reference}-{sequence_index}"
