"""Shared types for build engines."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

# Token-guarded deploy patch handed to engines; returns False when the
# attempt has been superseded.
ReportFn = Callable[[dict[str, Any]], Awaitable[bool]]


async def _noop_report(fields: dict[str, Any]) -> bool:
    return True


@dataclass(frozen=True)
class BuildOptions:
    """Everything an engine needs to build one deploy's image(s).

    ``env`` is the fully resolved environment (static values plus any
    cross-service values extracted before the build).
    """

    sha: str = ""
    branch: str = ""
    repository: str = ""
    registry_domain: str = ""
    repo_path: str = ""
    tag: str = ""
    init_tag: str | None = None
    dockerfile_path: str = "Dockerfile"
    init_dockerfile_path: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    init_env: dict[str, str] = field(default_factory=dict)
    cache_registry: str = ""
    pipeline_name: str | None = None
    resources: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: int = 2100
    report: ReportFn = _noop_report

    @property
    def image(self) -> str:
        return f"{self.registry_domain}/{self.repo_path}:{self.tag}"

    @property
    def init_image(self) -> str | None:
        if not self.init_tag:
            return None
        return f"{self.registry_domain}/{self.repo_path}:{self.init_tag}"
