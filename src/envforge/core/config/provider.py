"""
Global configuration provider.

Build defaults (cache registry, destination registry, resources, job
timeout), lifecycle defaults and domain defaults live in an external
store and are read by section name.  The provider fetches each section
once per process and keeps it until :meth:`GlobalConfigProvider.refresh`
is called; it is passed into components explicitly rather than reached
through a module global.

Example:
    >>> provider = GlobalConfigProvider(StaticConfigSource({"build_defaults": {"engine": "buildkit"}}))
    >>> await provider.get("build_defaults")
    {'engine': 'buildkit'}
"""

from __future__ import annotations

import asyncio
from typing import Any

from envforge.core.logging import get_logger
from envforge.protocols import GlobalConfigSource

logger = get_logger(__name__)

BUILD_DEFAULTS = "build_defaults"
LIFECYCLE_DEFAULTS = "lifecycle_defaults"
DOMAIN_DEFAULTS = "domain_defaults"


class StaticConfigSource:
    """GlobalConfigSource backed by a plain dict (tests, local runs)."""

    def __init__(self, sections: dict[str, dict[str, Any]] | None = None):
        self._sections = dict(sections or {})
        self.fetch_count = 0

    async def fetch(self, section: str) -> dict[str, Any]:
        self.fetch_count += 1
        return dict(self._sections.get(section, {}))

    def set(self, section: str, value: dict[str, Any]) -> None:
        self._sections[section] = dict(value)


class GlobalConfigProvider:
    """Process-lifetime cache over a :class:`GlobalConfigSource`."""

    def __init__(self, source: GlobalConfigSource):
        self._source = source
        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, section: str) -> dict[str, Any]:
        """Return a section, fetching it on first use."""
        if section in self._cache:
            return self._cache[section]
        async with self._lock:
            if section not in self._cache:
                self._cache[section] = await self._source.fetch(section) or {}
                logger.debug("global_config.fetched", section=section)
        return self._cache[section]

    def refresh(self, section: str | None = None) -> None:
        """Drop one cached section, or all of them."""
        if section is None:
            self._cache.clear()
        else:
            self._cache.pop(section, None)
        logger.info("global_config.refreshed", section=section or "*")

    async def build_defaults(self) -> dict[str, Any]:
        return await self.get(BUILD_DEFAULTS)

    async def lifecycle_defaults(self) -> dict[str, Any]:
        return await self.get(LIFECYCLE_DEFAULTS)

    async def domain_defaults(self) -> dict[str, Any]:
        return await self.get(DOMAIN_DEFAULTS)
