"""Cloudflare zone cache purge adapter."""

from __future__ import annotations

import json
from urllib.parse import quote

from cdn_purge.cdn.provider_config import CloudflareConfig
from cdn_purge.cdn.providers.base import ProviderAdapter, classify_http_error
from cdn_purge.cdn.providers.registry import AdapterRegistry
from cdn_purge.cdn.types import InvalidationBatch, ProviderType
from cdn_purge.core.errors import AuthenticationError, ProviderError

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"
# Cloudflare API error codes for bad or under-scoped tokens.
_AUTH_ERROR_CODES = {9103, 9109, 10000}


@AdapterRegistry.register(ProviderType.CLOUDFLARE)
class CloudflareAdapter(ProviderAdapter):
    provider_name = "Cloudflare"
    config: CloudflareConfig

    def _file_url(self, path: str) -> str:
        if self.config.site_url:
            return f"{self.config.site_url.rstrip('/')}{path}"
        return path

    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> str:
        # Cloudflare has no idempotency token; the dispatcher ledger dedupes instead.
        if batch.purge_everything:
            body = {"purge_everything": True}
        else:
            body = {"files": [self._file_url(path) for path in batch.paths]}
        return json.dumps(body, ensure_ascii=False)

    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        url = f"{CLOUDFLARE_API}/zones/{quote(self.config.zone_id, safe='')}/purge_cache"
        headers = {
            "Authorization": f"Bearer {self.config.api_token.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        body = self.build_payload(batch, caller_reference).encode("utf-8")
        response = self._request("POST", url, data=body, headers=headers)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        errors = data.get("errors") or []
        detail = "; ".join(
            f"{err.get('code')}: {err.get('message')}" for err in errors if isinstance(err, dict)
        ) or None

        if response.status_code >= 300:
            raise classify_http_error(self.provider_name, response, detail)
        if not data.get("success", False):
            codes = {err.get("code") for err in errors if isinstance(err, dict)}
            if codes & _AUTH_ERROR_CODES:
                raise AuthenticationError(
                    f"Cloudflare rejected the API token: {detail}",
                    status_code=response.status_code,
                )
            raise ProviderError(
                f"Cloudflare purge was not successful: {detail or 'no error detail'}",
                status_code=response.status_code,
            )
        result = data.get("result") or {}
        return str(result.get("id", ""))
