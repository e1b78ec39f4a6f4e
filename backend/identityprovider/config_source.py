"""Provider configuration sources.

A configuration source supplies snapshots of the configured providers
and notifies about changes. The core only reads snapshots; persisting
provider configuration is the configuration store's business.

Sources:
- In-memory push source (tests, embedding applications)
- JSON file polled for changes
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from identityprovider.manager import ConfigureReport, ProviderManager
from identityprovider.options import ProviderConfig

logger = logging.getLogger(__name__)

# Records are validated one at a time by the manager
ProviderSnapshot = list[ProviderConfig | dict[str, Any]]


class ConfigSourceError(Exception):
    """Configuration snapshot could not be read."""


class ConfigSource(ABC):
    """Abstract source of provider configuration snapshots."""

    @abstractmethod
    async def load(self) -> ProviderSnapshot:
        """Read the current snapshot."""
        pass

    @abstractmethod
    def watch(self) -> AsyncIterator[ProviderSnapshot]:
        """Yield a snapshot every time the configuration changes."""
        pass


class InMemoryConfigSource(ConfigSource):
    """Configuration pushed by the embedding application."""

    def __init__(self, configs: Optional[ProviderSnapshot] = None):
        self._configs = list(configs or [])
        self._changes: asyncio.Queue[ProviderSnapshot] = asyncio.Queue()

    async def load(self) -> ProviderSnapshot:
        return list(self._configs)

    def publish(self, configs: ProviderSnapshot) -> None:
        """Replace the snapshot and notify watchers."""
        self._configs = list(configs)
        self._changes.put_nowait(list(self._configs))

    async def watch(self) -> AsyncIterator[ProviderSnapshot]:
        while True:
            yield await self._changes.get()


def parse_provider_configs(data: Any) -> ProviderSnapshot:
    """Parse ``{"providers": [...]}`` or a bare list of provider records."""
    if isinstance(data, dict):
        data = data.get("providers", [])
    if not isinstance(data, list):
        raise ConfigSourceError("Provider configuration must be a list")
    return data


class JSONFileConfigSource(ConfigSource):
    """Provider configuration read from a JSON file and polled for changes."""

    def __init__(self, path: str | Path, poll_interval: float = 5.0):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self._mtime: float | None = None

    async def load(self) -> ProviderSnapshot:
        try:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            self._mtime = os.stat(self.path).st_mtime
            return parse_provider_configs(json.loads(raw))
        except (OSError, ValueError) as e:
            raise ConfigSourceError(f"Cannot read provider configuration {self.path}: {e}") from e

    def _changed(self) -> bool:
        try:
            mtime = os.stat(self.path).st_mtime
        except OSError:
            return False
        return mtime != self._mtime

    async def watch(self) -> AsyncIterator[ProviderSnapshot]:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self._changed():
                continue
            try:
                yield await self.load()
            except ConfigSourceError as e:
                # Keep serving the last good configuration
                logger.warning(str(e))


class ProviderConfigWatcher:
    """Applies configuration snapshots from a source to a provider manager."""

    def __init__(self, manager: ProviderManager, source: ConfigSource):
        self.manager = manager
        self.source = source
        self._task: asyncio.Task | None = None

    async def sync(self) -> ConfigureReport:
        """Load the current snapshot and apply it once."""
        configs = await self.source.load()
        return self.manager.configure(configs)

    async def start(self) -> ConfigureReport:
        """Apply the current snapshot, then follow changes in the background."""
        report = await self.sync()
        self._task = asyncio.create_task(self._follow())
        return report

    async def _follow(self) -> None:
        async for configs in self.source.watch():
            report = self.manager.configure(configs)
            logger.info(
                f"Provider configuration changed: built={report.built} "
                f"removed={report.removed} errors={len(report.errors)}"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
