"""CDN provider adapters.

Importing this package registers every adapter with ``AdapterRegistry``.
"""

from __future__ import annotations

import requests

from cdn_purge.cdn.providers import azure, cloudflare, cloudfront, none, sucuri  # noqa: F401
from cdn_purge.cdn.providers.base import ProviderAdapter, classify_http_error
from cdn_purge.cdn.providers.registry import AdapterRegistry


def build_adapter(config, session: requests.Session | None = None, **kwargs) -> ProviderAdapter:
    """Instantiate the adapter registered for ``config.provider_type``."""

    adapter_class = AdapterRegistry.get(config.provider_type)
    return adapter_class(config, session, **kwargs)


__all__ = ["AdapterRegistry", "ProviderAdapter", "build_adapter", "classify_http_error"]
