"""Provider type registry.

Maps a provider type to the factory that builds it. Provider modules
register their factory once at import time. The registry seals itself on
the first lookup; after that it is read-only and lookups are plain dict
reads.
"""

import logging

from identityprovider.base import ProviderFactory
from identityprovider.errors import DuplicateProviderTypeError, RegistryClosedError

logger = logging.getLogger(__name__)


class TypeRegistry:
    """Registry of provider factories keyed by type."""

    def __init__(self, allow_late_registration: bool = False):
        self._factories: dict[str, ProviderFactory] = {}
        self._sealed = False
        # Test and extension registries may keep registering after lookups
        self._allow_late_registration = allow_late_registration

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(self, factory: ProviderFactory) -> None:
        """Register a provider factory.

        Raises:
            DuplicateProviderTypeError: If the type is already registered
            RegistryClosedError: If the registry was already sealed
        """
        provider_type = factory.type
        if self._sealed and not self._allow_late_registration:
            raise RegistryClosedError(
                f"Cannot register provider type {provider_type!r}: registry is sealed"
            )
        if provider_type in self._factories:
            raise DuplicateProviderTypeError(
                f"Provider type {provider_type!r} is already registered "
                f"by {type(self._factories[provider_type]).__name__}"
            )
        self._factories[provider_type] = factory
        logger.info(f"Registered identity provider type: {provider_type}")

    def lookup(self, provider_type: str) -> ProviderFactory | None:
        """Get the factory for a provider type, or None if unregistered."""
        self._sealed = True
        return self._factories.get(provider_type)

    def seal(self) -> None:
        """Close the registry for writes."""
        self._sealed = True

    def types(self) -> list[str]:
        """List registered provider types."""
        return sorted(self._factories)

    def __contains__(self, provider_type: str) -> bool:
        return provider_type in self._factories


# Process-wide registry
default_registry = TypeRegistry()


def register_factory(factory: ProviderFactory) -> None:
    """Register a provider factory with the process-wide registry."""
    default_registry.register(factory)


def lookup_factory(provider_type: str) -> ProviderFactory | None:
    """Get a factory from the process-wide registry."""
    return default_registry.lookup(provider_type)
