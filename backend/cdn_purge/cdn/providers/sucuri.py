"""Sucuri WAF cache clearing adapter.

Sucuri clears one file per API call (or the whole site cache when no file
is given), so a batch becomes one form-encoded POST per path.
"""

from __future__ import annotations

from cdn_purge.cdn.provider_config import SucuriConfig
from cdn_purge.cdn.providers.base import ProviderAdapter, classify_http_error
from cdn_purge.cdn.providers.registry import AdapterRegistry
from cdn_purge.cdn.types import InvalidationBatch, ProviderType
from cdn_purge.core.errors import AuthenticationError, ProviderError

SUCURI_API = "https://waf.sucuri.net/api?v2"


def _is_credential_message(message: str) -> bool:
    lowered = message.lower()
    return "invalid" in lowered and any(word in lowered for word in ("key", "secret", "api"))


@AdapterRegistry.register(ProviderType.SUCURI)
class SucuriAdapter(ProviderAdapter):
    provider_name = "Sucuri"
    config: SucuriConfig

    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> list[dict[str, str]]:
        base = {
            "k": self.config.api_key.get_secret_value(),
            "s": self.config.api_secret.get_secret_value(),
            "a": "clear_cache",
        }
        if batch.purge_everything:
            return [base]
        return [{**base, "file": path} for path in batch.paths]

    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        forms = self.build_payload(batch, caller_reference)
        for form in forms:
            self._clear(form)
        return f"{self.config.domain}:{len(forms)}"

    def _clear(self, form: dict[str, str]) -> None:
        response = self._request("POST", SUCURI_API, data=form)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        messages = [str(m) for m in data.get("messages") or []]
        detail = "; ".join(messages) or None
        if response.status_code >= 300:
            raise classify_http_error(self.provider_name, response, detail)
        if str(data.get("status")) != "1":
            if any(_is_credential_message(m) for m in messages):
                raise AuthenticationError(
                    f"Sucuri rejected the API credentials for {self.config.domain}: {detail}",
                    status_code=response.status_code,
                )
            raise ProviderError(
                f"Sucuri could not clear cache for {self.config.domain}: {detail or 'no error detail'}",
                status_code=response.status_code,
            )
