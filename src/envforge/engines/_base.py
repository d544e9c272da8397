"""Base build engine with shared logging and error wrapping.

Provides ``BaseBuildEngine`` and ``StubBuildEngine`` for unit tests.

Architecture:

    .. code-block:: text

        BaseBuildEngine (Abstract Base)
        ├── supports(deploy_type, builder)  ← subclass implements
        └── build(deploy, options)          → logging + error wrapping → _do_build()
              │
        ┌─────┼──────────────┬──────────────────┬─────────────────┐
        ▼     ▼              ▼                  ▼                 ▼
     Buildkit Kaniko   RemoteCIEngine   ContainerImage/External   StubBuildEngine
     (NativeBuildEngine)                 /DatastoreRestore         (tests)

Error contract:
    ``build()`` returns a :class:`BuildAttemptResult` for ordinary build
    failures.  Envforge errors raised by ``_do_build`` propagate as-is;
    any other exception is wrapped in ``BuildExecutionError`` so the
    orchestrator sees one error family.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import TYPE_CHECKING

from envforge.core.errors import BuildExecutionError, EnvforgeError
from envforge.engines._types import BuildOptions
from envforge.models import BuildAttemptResult, DeployType

if TYPE_CHECKING:
    from envforge.models import Deploy

logger = logging.getLogger(__name__)


class BaseBuildEngine:
    """Base class for build engines.

    Subclasses set ``name`` and implement ``supports`` and ``_do_build``.
    """

    name: str = "base"

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        raise NotImplementedError

    async def build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        """Run the build with logging and error wrapping."""
        logger.info("Building '%s' with %s (tag=%s)", deploy.uuid, self.name, options.tag or "-")
        started = time.monotonic()
        try:
            result = await self._do_build(deploy, options)
        except EnvforgeError:
            raise
        except Exception as exc:
            logger.error("Engine %s crashed building '%s': %s", self.name, deploy.uuid, exc)
            raise BuildExecutionError(f"{self.name} build failed: {exc}", cause=exc).with_context(
                deploy_uuid=deploy.uuid, engine=self.name
            ) from exc

        logger.info(
            "Build of '%s' with %s finished: success=%s job=%s (%.1fs)",
            deploy.uuid,
            self.name,
            result.success,
            result.job_identifier or "-",
            time.monotonic() - started,
        )
        return result

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class StubBuildEngine(BaseBuildEngine):
    """In-memory build engine for unit tests.

    .. code-block:: text

        build(deploy, options)
          ├── fail_build=True   → BuildAttemptResult(success=False)
          ├── raise_error set   → raises it
          └── otherwise         → BuildAttemptResult(success=True, logs=auto_logs)

        Track usage:
          engine.build_count    → number of build calls
          engine.builds         → (deploy uuid, options) per call

    Example:
        >>> engine = StubBuildEngine(auto_logs="built v1.2.3")
        >>> result = await engine.build(deploy, BuildOptions(tag="t"))
        >>> assert result.success and engine.build_count == 1
    """

    def __init__(
        self,
        *,
        name: str = "stub",
        deploy_types: tuple[DeployType, ...] = (DeployType.GITHUB,),
        builder: str | None = None,
        auto_logs: str = "[stub] build complete",
        delay_seconds: float = 0.0,
    ) -> None:
        self.name = name
        self.deploy_types = deploy_types
        self.builder = builder
        self.auto_logs = auto_logs
        self.delay_seconds = delay_seconds

        self.builds: list[tuple[str, BuildOptions]] = []
        self.build_count: int = 0

        # Inject failures
        self.fail_build: bool = False
        self.raise_error: Exception | None = None

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        if deploy_type not in self.deploy_types:
            return False
        return self.builder is None or builder == self.builder

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        self.build_count += 1
        self.builds.append((deploy.uuid, options))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.raise_error is not None:
            raise self.raise_error
        job_id = f"stub-{uuid.uuid4().hex[:8]}"
        if self.fail_build:
            return BuildAttemptResult(success=False, logs="[stub] build failed", job_identifier=job_id)
        return BuildAttemptResult(success=True, logs=self.auto_logs, job_identifier=job_id)
