"""Which adapter class serves which ``ProviderType``.

Adapter modules register themselves at import time; ``build_adapter`` looks
the class up from the provider config's ``provider_type``.
"""

from typing import Dict, Type

from cdn_purge.cdn.providers.base import ProviderAdapter
from cdn_purge.cdn.types import ProviderType


class AdapterRegistry:
    _adapters: Dict[ProviderType, Type[ProviderAdapter]] = {}

    @classmethod
    def register(cls, provider_type: ProviderType):
        """Class decorator binding an adapter to ``provider_type``.

        One adapter per provider; a second registration is a wiring mistake.
        """

        def bind(adapter_class: Type[ProviderAdapter]) -> Type[ProviderAdapter]:
            existing = cls._adapters.get(provider_type)
            if existing is not None and existing is not adapter_class:
                raise ValueError(
                    f"{provider_type.value} is already served by {existing.__name__}"
                )
            adapter_class.provider_type = provider_type
            cls._adapters[provider_type] = adapter_class
            return adapter_class

        return bind

    @classmethod
    def get(cls, provider_type: ProviderType) -> Type[ProviderAdapter]:
        try:
            return cls._adapters[provider_type]
        except KeyError:
            raise LookupError(f"No adapter registered for {provider_type.value}") from None

    @classmethod
    def list_types(cls) -> list[ProviderType]:
        return list(cls._adapters)
