"""Azure Front Door (and classic Azure CDN) purge adapter.

Authenticates with an Entra ID client-credentials token for the Azure
Resource Manager scope, then calls the endpoint's ``purge`` action. The purge
is asynchronous on Azure's side: ``202 Accepted`` means the purge was queued.
"""

from __future__ import annotations

import json
import threading
import time
from urllib.parse import quote

from cdn_purge.cdn.paths import FULL_PURGE_PATH
from cdn_purge.cdn.provider_config import AzureFrontDoorConfig
from cdn_purge.cdn.providers.base import ProviderAdapter, classify_http_error
from cdn_purge.cdn.providers.registry import AdapterRegistry
from cdn_purge.cdn.types import InvalidationBatch, ProviderType
from cdn_purge.core.errors import AuthenticationError, ProviderError

AZURE_LOGIN = "https://login.microsoftonline.com"
AZURE_MANAGEMENT = "https://management.azure.com"
MANAGEMENT_SCOPE = f"{AZURE_MANAGEMENT}/.default"
CDN_API_VERSION = "2024-02-01"
# Refresh tokens this many seconds before Azure says they expire.
TOKEN_EXPIRY_MARGIN_SEC = 300


def _error_detail(response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return None
    return ": ".join(p for p in (error.get("code"), error.get("message")) if p) or None


@AdapterRegistry.register(ProviderType.AZURE_FRONT_DOOR)
class AzureFrontDoorAdapter(ProviderAdapter):
    config: AzureFrontDoorConfig

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def provider_name(self) -> str:  # type: ignore[override]
        return "Azure Front Door" if self.config.is_front_door else "Azure CDN"

    @property
    def token_endpoint(self) -> str:
        return f"{AZURE_LOGIN}/{quote(self.config.tenant_id, safe='')}/oauth2/v2.0/token"

    def endpoint(self) -> str:
        cfg = self.config
        kind = "afdEndpoints" if cfg.is_front_door else "endpoints"
        return (
            f"{AZURE_MANAGEMENT}/subscriptions/{quote(cfg.subscription_id, safe='')}"
            f"/resourceGroups/{quote(cfg.resource_group, safe='')}"
            f"/providers/Microsoft.Cdn/profiles/{quote(cfg.profile_name, safe='')}"
            f"/{kind}/{quote(cfg.endpoint_name, safe='')}/purge"
            f"?api-version={CDN_API_VERSION}"
        )

    def build_payload(self, batch: InvalidationBatch, caller_reference: str) -> str:
        paths = [FULL_PURGE_PATH] if batch.purge_everything else list(batch.paths)
        body: dict[str, list[str]] = {"contentPaths": paths}
        if self.config.is_front_door and self.config.domains:
            body["domains"] = list(self.config.domains)
        return json.dumps(body, ensure_ascii=False)

    def access_token(self) -> str:
        """Return a cached ARM bearer token, fetching a new one when close to expiry."""

        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            response = self._request(
                "POST",
                self.token_endpoint,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret.get_secret_value(),
                    "scope": MANAGEMENT_SCOPE,
                },
            )
            if response.status_code in (400, 401, 403):
                raise AuthenticationError(
                    f"Azure token request rejected: HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code >= 300:
                raise classify_http_error("Azure token endpoint", response)
            try:
                data = response.json()
            except ValueError:
                raise ProviderError(
                    "Azure token endpoint returned a non-JSON body",
                    status_code=response.status_code,
                ) from None
            if not isinstance(data, dict):
                raise ProviderError("Azure token endpoint returned an unexpected body")
            token = data.get("access_token")
            if not token:
                raise AuthenticationError("Azure token response carried no access_token")
            try:
                expires_in = float(data.get("expires_in", 3600))
            except (TypeError, ValueError):
                expires_in = 3600.0
            self._token = token
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SEC)
            return token

    def send(self, batch: InvalidationBatch, caller_reference: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
            "x-ms-client-request-id": caller_reference,
        }
        body = self.build_payload(batch, caller_reference).encode("utf-8")
        response = self._request("POST", self.endpoint(), data=body, headers=headers)
        if response.status_code == 401:
            # Token revoked or rotated early; the next batch fetches a fresh one.
            with self._token_lock:
                self._token = None
        if response.status_code not in (200, 202):
            raise classify_http_error(self.provider_name, response, _error_detail(response))
        reference = (
            response.headers.get("Azure-AsyncOperation")
            or response.headers.get("x-ms-request-id")
            or response.headers.get("Location")
        )
        if not reference:
            raise ProviderError(
                f"{self.provider_name} accepted the purge but returned no operation reference",
                status_code=response.status_code,
            )
        return reference
