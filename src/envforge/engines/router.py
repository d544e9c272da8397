"""Build engine router - picks exactly one engine per deploy.

Architecture:

    .. code-block:: text

        select(deploy_type, builder)
            │
            ├── one engine supports it   → that engine
            ├── none                     → ConfigurationError
            └── more than one            → ConfigurationError (ambiguous)

There is deliberately no default engine: an unrecognised builder must
surface as ``CONFIG_ERROR`` on the deploy rather than silently building
with something else.

Example:
    >>> router = BuildEngineRouter()
    >>> router.register(BuildkitEngine(runner, settings))
    >>> router.select(DeployType.GITHUB, "buildkit")
    BuildkitEngine(name='buildkit')
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from envforge.core.errors import ConfigurationError

if TYPE_CHECKING:
    from envforge.engines._base import BaseBuildEngine
    from envforge.models import DeployType

logger = logging.getLogger(__name__)


class BuildEngineRouter:
    """Registry of build engines keyed by ``engine.name``."""

    def __init__(self) -> None:
        self._engines: dict[str, BaseBuildEngine] = {}

    def register(self, engine: BaseBuildEngine) -> None:
        """Register an engine, replacing any engine with the same name."""
        if engine.name in self._engines:
            logger.warning("Replacing existing build engine '%s'", engine.name)
        self._engines[engine.name] = engine
        logger.info("Registered build engine '%s'", engine.name)

    def unregister(self, name: str) -> bool:
        if name not in self._engines:
            return False
        del self._engines[name]
        logger.info("Unregistered build engine '%s'", name)
        return True

    def get(self, name: str) -> BaseBuildEngine | None:
        return self._engines.get(name)

    def list_engines(self) -> list[str]:
        return sorted(self._engines)

    def select(self, deploy_type: DeployType, builder: str | None) -> BaseBuildEngine:
        """Return the single engine supporting ``(deploy_type, builder)``.

        Raises:
            ConfigurationError: If zero or several engines match.
        """
        matches = [e for e in self._engines.values() if e.supports(deploy_type, builder)]
        if len(matches) == 1:
            return matches[0]

        kind = getattr(deploy_type, "value", deploy_type)
        if not matches:
            available = ", ".join(self.list_engines()) or "(none)"
            raise ConfigurationError(
                f"No build engine for type={kind!r} builder={builder!r}. Available: {available}"
            )
        raise ConfigurationError(
            f"Ambiguous build engine for type={kind!r} builder={builder!r}: "
            f"{', '.join(sorted(e.name for e in matches))}"
        )

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, name: str) -> bool:
        return name in self._engines

    def __repr__(self) -> str:
        return f"BuildEngineRouter([{', '.join(self.list_engines())}])"
