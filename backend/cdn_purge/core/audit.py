"""Audit logging utilities."""

from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from cdn_purge.models.cdn_audit import CdnAuditLog


async def log_audit(
    session: AsyncSession,
    tenant_id: str,
    entity: str,
    entity_id: Optional[str],
    action: str,
    details: Optional[dict[str, Any]] = None,
) -> None:
    payload = {
        "tenant_id": tenant_id,
        "entity": entity,
        "entity_id": entity_id,
        "action": action,
        "details": json.dumps(details) if details is not None else None,
    }
    await session.execute(insert(CdnAuditLog).values(**payload))
