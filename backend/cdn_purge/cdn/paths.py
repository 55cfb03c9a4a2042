"""Path validation and provider-sized batch splitting.

Both functions are pure: no I/O, no provider knowledge beyond the numeric
batch limit handed in by the caller.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, Sequence
from urllib.parse import urlsplit

from cdn_purge.cdn.types import Err, InvalidationBatch, Ok, Result
from cdn_purge.core.errors import ValidationError

FULL_PURGE_PATH = "/*"
# Paths that stand for the whole site.
FULL_PURGE_MARKERS = frozenset({"/", FULL_PURGE_PATH})
# Control characters, lone surrogates and the U+FFFE/U+FFFF noncharacters
# cannot travel in a URL or an XML body.
_UNSENDABLE_CHARS = re.compile("[\x00-\x1f\x7f\ud800-\udfff\ufffe\uffff]")


def normalize_path(raw: Any) -> str:
    """Return the canonical form of one path or raise ``ValidationError``."""

    if not isinstance(raw, str):
        raise ValidationError(f"Path must be a string, got {type(raw).__name__}")
    path = raw.strip()
    if path.startswith(("http://", "https://")):
        parts = urlsplit(path)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
    if not path:
        raise ValidationError("Path must not be blank")
    if not path.startswith("/"):
        raise ValidationError(f"Path must start with '/': {raw!r}")
    if _UNSENDABLE_CHARS.search(path):
        raise ValidationError(f"Path contains characters a CDN cannot accept: {raw!r}")
    return path


def validate_paths(raw_paths: Iterable[Any] | None) -> Result[list[str], ValidationError]:
    """Validate and de-duplicate the changed paths reported by the publish pipeline.

    Returns ``Ok(paths)`` with duplicates collapsed (first occurrence wins,
    order preserved) or ``Err(ValidationError)`` for an empty sequence or a
    malformed path.
    """

    if raw_paths is None or isinstance(raw_paths, (str, bytes)):
        return Err(ValidationError("Paths must be a sequence of strings"))

    seen: set[str] = set()
    paths: list[str] = []
    try:
        for raw in raw_paths:
            path = normalize_path(raw)
            if path in seen:
                continue
            seen.add(path)
            paths.append(path)
    except ValidationError as exc:
        return Err(exc)

    if not paths:
        return Err(ValidationError("At least one path is required"))
    return Ok(paths)


def requests_full_purge(raw_paths: Iterable[Any]) -> bool:
    """True when any entry is ``/``, ``/*`` or ``root`` (any case).

    Publishing the site root changes every page, so the publish pipeline
    reports it this way instead of listing each path.
    """

    for raw in raw_paths:
        if not isinstance(raw, str):
            continue
        marker = raw.strip()
        if marker.lower() == "root":
            return True
        try:
            marker = normalize_path(marker)
        except ValidationError:
            continue
        if marker in FULL_PURGE_MARKERS:
            return True
    return False


def batch_count(total: int, limit: int) -> int:
    return math.ceil(total / limit)


def split_batches(
    request_id: str,
    paths: Sequence[str],
    limit: int,
    *,
    purge_everything: bool = False,
) -> list[InvalidationBatch]:
    """Split validated paths into ordered batches of at most ``limit`` paths."""

    if limit < 1:
        raise ValueError(f"Batch limit must be positive, got {limit}")
    return [
        InvalidationBatch(
            request_id=request_id,
            sequence_index=index,
            paths=tuple(paths[start : start + limit]),
            purge_everything=purge_everything,
        )
        for index, start in enumerate(range(0, len(paths), limit))
    ]
