"""Provider manager.

Holds one live provider per configured provider name and keeps that set
consistent with the latest configuration snapshot.

The name -> provider mapping is copy-on-write: configure() builds a new
mapping off to the side and publishes it with a single reference swap.
Readers never lock and always observe either the previous or the new,
fully constructed instance. Writers are serialized by a lock.
"""

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

import identityprovider.providers  # noqa: F401  registers built-in provider types
from identityprovider.base import OAuthProvider
from identityprovider.errors import (
    IdentityProviderError,
    ProviderConstructionError,
    UnknownProviderTypeError,
)
from identityprovider.metrics import metrics
from identityprovider.options import ProviderConfig
from identityprovider.registry import TypeRegistry, default_registry
from identityprovider.state import StateStore, create_state_store

logger = logging.getLogger(__name__)


@dataclass
class ConfigureReport:
    """Outcome of applying one configuration snapshot."""

    built: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[IdentityProviderError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class _Entry:
    config: ProviderConfig
    provider: OAuthProvider


class ProviderManager:
    """Name-keyed cache of configured providers."""

    def __init__(
        self,
        registry: TypeRegistry | None = None,
        state_store: StateStore | None = None,
    ):
        self._registry = registry or default_registry
        self.state_store = state_store or create_state_store()
        self._entries: Mapping[str, _Entry] = MappingProxyType({})
        self._write_lock = threading.Lock()

    def get(self, name: str) -> OAuthProvider | None:
        """Get a configured provider by name."""
        entry = self._entries.get(name)
        return entry.provider if entry is not None else None

    def names(self) -> list[str]:
        """List configured provider names."""
        return sorted(self._entries)

    def providers(self) -> dict[str, OAuthProvider]:
        """Snapshot of all configured providers."""
        return {name: entry.provider for name, entry in self._entries.items()}

    def config_for(self, name: str) -> ProviderConfig | None:
        """Configuration the live provider was built from."""
        entry = self._entries.get(name)
        return entry.config if entry is not None else None

    def configure(
        self,
        configs: Iterable[ProviderConfig | Mapping[str, Any]],
    ) -> ConfigureReport:
        """Apply a configuration snapshot.

        Each entry is processed independently: an unknown type or a rejected
        construction is recorded in the report and logged, the prior instance
        under that name (if any) is kept, and the remaining entries are still
        applied. Entries whose configuration is unchanged are not rebuilt.
        Providers missing from the snapshot are removed.

        Args:
            configs: Provider configurations (models or plain dicts)

        Returns:
            Report of built, unchanged and removed providers and errors
        """
        with self._write_lock:
            current = self._entries
            entries: dict[str, _Entry] = {}
            seen: set[str] = set()
            report = ConfigureReport()

            for raw in configs:
                config, name = self._parse(raw, report)
                if name is None or name in seen:
                    if name is not None:
                        self._record_error(
                            report,
                            ProviderConstructionError(
                                f"Duplicate provider name: {name}", provider_name=name
                            ),
                        )
                    continue
                seen.add(name)
                prior = current.get(name)

                if config is None:
                    self._retain(entries, prior)
                    continue

                if prior is not None and prior.config == config:
                    entries[name] = prior
                    report.unchanged.append(name)
                    continue

                provider = self._build(config, report)
                if provider is None:
                    self._retain(entries, prior)
                    continue

                entries[name] = _Entry(config=config, provider=provider)
                report.built.append(name)
                logger.info(
                    f"{'Rebuilt' if prior else 'Built'} identity provider {name} "
                    f"(type {config.type})"
                )

            report.removed = sorted(n for n in current if n not in seen)
            for name in report.removed:
                logger.info(f"Removed identity provider {name}")

            self._entries = MappingProxyType(entries)
            metrics.record_configure(len(entries), report.errors)

        if report.errors:
            logger.warning(
                f"Configured {len(entries)} identity providers with "
                f"{len(report.errors)} errors"
            )
        return report

    def _parse(
        self,
        raw: ProviderConfig | Mapping[str, Any],
        report: ConfigureReport,
    ) -> tuple[Optional[ProviderConfig], Optional[str]]:
        if isinstance(raw, ProviderConfig):
            return raw, raw.name
        name = raw.get("name") if isinstance(raw, Mapping) else None
        name = name if isinstance(name, str) and name else None
        try:
            config = ProviderConfig.model_validate(raw)
        except ValidationError as e:
            self._record_error(
                report,
                ProviderConstructionError(
                    f"Invalid provider configuration: {e.error_count()} errors",
                    provider_name=name,
                ),
            )
            return None, name
        return config, config.name

    def _build(self, config: ProviderConfig, report: ConfigureReport) -> OAuthProvider | None:
        factory = self._registry.lookup(config.type)
        if factory is None:
            self._record_error(report, UnknownProviderTypeError(config.type, config.name))
            return None
        try:
            return factory.create(config.name, config.options, self.state_store)
        except ProviderConstructionError as e:
            self._record_error(report, e)
        except Exception as e:
            # A faulty factory must not take the other providers down with it
            error = ProviderConstructionError(
                f"Provider {config.name} failed to construct: {type(e).__name__}: {e}",
                provider_name=config.name,
            )
            error.__cause__ = e
            self._record_error(report, error)
        return None

    @staticmethod
    def _retain(entries: dict[str, _Entry], prior: _Entry | None) -> None:
        if prior is not None:
            entries[prior.config.name] = prior
            logger.warning(f"Keeping previous instance of identity provider {prior.config.name}")

    @staticmethod
    def _record_error(report: ConfigureReport, error: IdentityProviderError) -> None:
        report.errors.append(error)
        logger.warning(
            f"Identity provider {error.provider_name or '<unnamed>'} not configured: "
            f"{error.message}"
        )


_provider_manager: Optional[ProviderManager] = None


def get_provider_manager() -> ProviderManager:
    """Get the global provider manager instance."""
    global _provider_manager
    if _provider_manager is None:
        _provider_manager = ProviderManager()
    return _provider_manager


def set_provider_manager(manager: ProviderManager | None) -> None:
    """Set the global provider manager instance (for testing)."""
    global _provider_manager
    _provider_manager = manager
