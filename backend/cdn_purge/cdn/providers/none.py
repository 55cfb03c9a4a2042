"""No-op adapter used when no CDN sits in front of the site."""

from __future__ import annotations

from cdn_purge.cdn.providers.base import ProviderAdapter
from cdn_purge.cdn.providers.registry import AdapterRegistry
from cdn_purge.cdn.types import InvalidationBatch, ProviderType


@AdapterRegistry.register(ProviderType.NONE)
class NoneAdapter(ProviderAdapter):
    provider_name = "None"

    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> None:
        return None

    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        return ""
