"""ORM model exports for convenient imports elsewhere in the app."""

from cdn_purge.models.base import Base
from cdn_purge.models.cdn_audit import CdnAuditLog
from cdn_purge.models.cdn_invalidation import CdnInvalidationBatch, CdnInvalidationRequest

__all__ = [
    "Base",
    "CdnAuditLog",
    "CdnInvalidationBatch",
    "CdnInvalidationRequest",
]
