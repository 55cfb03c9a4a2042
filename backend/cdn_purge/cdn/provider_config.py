"""Provider configuration: one frozen settings model per CDN provider.

The CMS keeps the active provider's settings as a JSON blob (PascalCase keys,
e.g. ``{"DistributionId": "...", "AccessKeyId": "..."}``); snake_case keys are
accepted as well.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_pascal

from cdn_purge.cdn.types import ProviderType
from cdn_purge.core.config import Settings, settings
from cdn_purge.core.errors import ProviderConfigError

RequiredStr = Annotated[str, Field(min_length=1)]


class _ProviderConfigBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_pascal,
        populate_by_name=True,
    )


class CloudFrontConfig(_ProviderConfigBase):
    provider_type: Literal[ProviderType.CLOUDFRONT] = ProviderType.CLOUDFRONT
    distribution_id: RequiredStr
    access_key_id: RequiredStr
    secret_access_key: SecretStr
    session_token: SecretStr | None = None
    region: RequiredStr = "us-east-1"


class CloudflareConfig(_ProviderConfigBase):
    provider_type: Literal[ProviderType.CLOUDFLARE] = ProviderType.CLOUDFLARE
    zone_id: RequiredStr
    api_token: SecretStr
    # Cloudflare purges by absolute URL; relative paths are joined to this.
    site_url: str | None = None


class AzureFrontDoorConfig(_ProviderConfigBase):
    provider_type: Literal[ProviderType.AZURE_FRONT_DOOR] = ProviderType.AZURE_FRONT_DOOR
    tenant_id: RequiredStr
    client_id: RequiredStr
    client_secret: SecretStr
    subscription_id: RequiredStr
    resource_group: RequiredStr
    profile_name: RequiredStr
    endpoint_name: RequiredStr
    # False targets a classic Azure CDN endpoint instead of a Front Door endpoint.
    is_front_door: bool = True
    domains: tuple[str, ...] = ()


class SucuriConfig(_ProviderConfigBase):
    provider_type: Literal[ProviderType.SUCURI] = ProviderType.SUCURI
    api_key: SecretStr
    api_secret: SecretStr
    domain: RequiredStr


class NoneConfig(_ProviderConfigBase):
    provider_type: Literal[ProviderType.NONE] = ProviderType.NONE


ProviderConfig = Annotated[
    Union[CloudFrontConfig, CloudflareConfig, AzureFrontDoorConfig, SucuriConfig, NoneConfig],
    Field(discriminator="provider_type"),
]

CONFIG_MODELS: dict[ProviderType, type[_ProviderConfigBase]] = {
    ProviderType.CLOUDFRONT: CloudFrontConfig,
    ProviderType.CLOUDFLARE: CloudflareConfig,
    ProviderType.AZURE_FRONT_DOOR: AzureFrontDoorConfig,
    ProviderType.SUCURI: SucuriConfig,
    ProviderType.NONE: NoneConfig,
}

# Names the CMS has used for providers over time.
_PROVIDER_ALIASES = {
    "": ProviderType.NONE,
    "none": ProviderType.NONE,
    "cloudfront": ProviderType.CLOUDFRONT,
    "cloudflare": ProviderType.CLOUDFLARE,
    "azurefrontdoor": ProviderType.AZURE_FRONT_DOOR,
    "azurecdn": ProviderType.AZURE_FRONT_DOOR,
    "sucuri": ProviderType.SUCURI,
}


def _provider_key(name: str | None) -> str:
    return (name or "").replace("_", "").replace(" ", "").lower()


def parse_provider_type(name: str | ProviderType | None) -> ProviderType:
    if isinstance(name, ProviderType):
        return name
    try:
        return _PROVIDER_ALIASES[_provider_key(name)]
    except KeyError:
        raise ProviderConfigError(f"Unknown CDN provider: {name!r}") from None


def parse_provider_config(
    provider: str | ProviderType | None, data: dict[str, Any] | None
) -> ProviderConfig:
    """Build the frozen config model for ``provider`` from a settings mapping."""

    provider_type = parse_provider_type(provider)
    values = dict(data or {})
    if not isinstance(provider, ProviderType) and _provider_key(provider) == "azurecdn":
        values.setdefault("IsFrontDoor", False)
    values.pop("ProviderType", None)
    values.pop("provider_type", None)
    try:
        return CONFIG_MODELS[provider_type].model_validate(values)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ProviderConfigError(
            f"{provider_type.value} settings are not complete: {fields}"
        ) from exc


def load_provider_config(config: Settings | None = None) -> ProviderConfig:
    """Resolve the active provider from ``CDN_PROVIDER`` and ``CDN_CONFIG_JSON``."""

    config = config or settings
    data: dict[str, Any] = {}
    if config.CDN_CONFIG_JSON:
        try:
            data = json.loads(config.CDN_CONFIG_JSON)
        except json.JSONDecodeError as exc:
            raise ProviderConfigError(f"CDN_CONFIG_JSON is not valid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ProviderConfigError("CDN_CONFIG_JSON must be a JSON object")
    return parse_provider_config(config.CDN_PROVIDER, data)


def max_paths_for(provider_type: ProviderType, config: Settings | None = None) -> int:
    config = config or settings
    return {
        ProviderType.CLOUDFRONT: config.CLOUDFRONT_MAX_PATHS,
        ProviderType.CLOUDFLARE: config.CLOUDFLARE_MAX_PATHS,
        ProviderType.AZURE_FRONT_DOOR: config.AZURE_FRONT_DOOR_MAX_PATHS,
        ProviderType.SUCURI: config.SUCURI_MAX_PATHS,
        ProviderType.NONE: config.NONE_MAX_PATHS,
    }[provider_type]
