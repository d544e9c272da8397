"""Tests for StubBuildEngine and the base engine error wrapping."""

from __future__ import annotations

import pytest

from envforge.core.errors import BuildExecutionError, ConfigurationError
from envforge.engines import BuildOptions, StubBuildEngine
from envforge.models import Deploy, DeployType


@pytest.fixture()
def deploy() -> Deploy:
    return Deploy(uuid="api-b1", build_id=1, build_uuid="b1", name="api")


class TestStubBuildEngine:
    @pytest.mark.asyncio
    async def test_records_builds(self, deploy):
        engine = StubBuildEngine(auto_logs="built v1.2.3")

        result = await engine.build(deploy, BuildOptions(tag="t1"))

        assert result.success
        assert result.logs == "built v1.2.3"
        assert result.job_identifier.startswith("stub-")
        assert engine.build_count == 1
        assert engine.builds[0][0] == "api-b1"
        assert engine.builds[0][1].tag == "t1"

    @pytest.mark.asyncio
    async def test_fail_build(self, deploy):
        engine = StubBuildEngine()
        engine.fail_build = True
        result = await engine.build(deploy, BuildOptions())
        assert not result.success

    @pytest.mark.asyncio
    async def test_foreign_exception_is_wrapped(self, deploy):
        engine = StubBuildEngine()
        engine.raise_error = RuntimeError("oom killed")

        with pytest.raises(BuildExecutionError) as exc_info:
            await engine.build(deploy, BuildOptions())

        assert "oom killed" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_envforge_errors_propagate_unchanged(self, deploy):
        engine = StubBuildEngine()
        engine.raise_error = ConfigurationError("bad pipeline")
        with pytest.raises(ConfigurationError):
            await engine.build(deploy, BuildOptions())

    def test_supports_filters_on_builder(self):
        engine = StubBuildEngine(builder="buildkit")
        assert engine.supports(DeployType.GITHUB, "buildkit")
        assert not engine.supports(DeployType.GITHUB, "kaniko")
        assert not engine.supports(DeployType.DOCKER, "buildkit")
