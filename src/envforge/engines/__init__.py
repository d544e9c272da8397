"""Build engines: one strategy per build technology, selected by the router."""

from envforge.engines._base import BaseBuildEngine, StubBuildEngine
from envforge.engines._types import BuildOptions
from envforge.engines.kubectl import KubectlJobRunner
from envforge.engines.native import BuildkitEngine, KanikoEngine, NativeBuildEngine
from envforge.engines.passthrough import ContainerImageEngine, DatastoreRestoreEngine, ExternalHostEngine
from envforge.engines.remote_ci import RemoteCIEngine
from envforge.engines.router import BuildEngineRouter

__all__ = [
    "BaseBuildEngine",
    "BuildEngineRouter",
    "BuildOptions",
    "BuildkitEngine",
    "ContainerImageEngine",
    "DatastoreRestoreEngine",
    "ExternalHostEngine",
    "KanikoEngine",
    "KubectlJobRunner",
    "NativeBuildEngine",
    "RemoteCIEngine",
    "StubBuildEngine",
]
