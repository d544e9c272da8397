"""Tests for the image, external-host and datastore-restore engines."""

from __future__ import annotations

import pytest

from envforge.core.errors import BuildExecutionError, ConfigurationError
from envforge.engines import BuildOptions, ContainerImageEngine, DatastoreRestoreEngine, ExternalHostEngine
from envforge.models import Deploy, Deployable, DeployType


def _deploy(name: str, type_: DeployType, **deployable_fields) -> Deploy:
    deploy = Deploy(uuid=f"{name}-b1", build_id=1, build_uuid="b1", name=name)
    deploy.deployable = Deployable(name=name, build_id=1, build_uuid="b1", type=type_, **deployable_fields)
    return deploy


class TestContainerImageEngine:
    @pytest.mark.asyncio
    async def test_reference_includes_tag(self):
        deploy = _deploy("cache", DeployType.DOCKER, docker_image="redis")
        result = await ContainerImageEngine().build(deploy, BuildOptions(tag="7"))
        assert result.success
        assert result.job_identifier == "redis:7"

    @pytest.mark.asyncio
    async def test_untagged_image(self):
        deploy = _deploy("cache", DeployType.DOCKER, docker_image="redis")
        result = await ContainerImageEngine().build(deploy, BuildOptions())
        assert result.job_identifier == "redis"

    @pytest.mark.asyncio
    async def test_missing_image(self):
        deploy = _deploy("cache", DeployType.DOCKER)
        with pytest.raises(ConfigurationError):
            await ContainerImageEngine().build(deploy, BuildOptions())


class TestExternalHostEngine:
    @pytest.mark.asyncio
    async def test_nothing_to_build(self):
        deploy = _deploy("docs", DeployType.EXTERNAL_HTTP)
        deploy.public_url = "https://docs.example.com"
        result = await ExternalHostEngine().build(deploy, BuildOptions())
        assert result.success
        assert result.job_identifier == "https://docs.example.com"

    def test_supports(self):
        engine = ExternalHostEngine()
        assert engine.supports(DeployType.EXTERNAL_HTTP, None)
        assert not engine.supports(DeployType.DOCKER, None)


class TestDatastoreRestoreEngine:
    @pytest.mark.asyncio
    async def test_restores_with_build_tags(self, restorer):
        deploy = _deploy("db", DeployType.AURORA_RESTORE, restore={"snapshot": "nightly"})

        result = await DatastoreRestoreEngine(restorer).build(deploy, BuildOptions())

        assert result.success
        assert result.job_identifier == "db-b1.cluster.rds.example.com"
        assert restorer.restores == [{"BuildUUID": "b1", "ServiceName": "db"}]

    @pytest.mark.asyncio
    async def test_second_attempt_reuses_restore(self, restorer):
        deploy = _deploy("db", DeployType.AURORA_RESTORE)
        engine = DatastoreRestoreEngine(restorer)

        first = await engine.build(deploy, BuildOptions())
        second = await engine.build(deploy, BuildOptions())

        assert first.job_identifier == second.job_identifier
        assert len(restorer.restores) == 1

    @pytest.mark.asyncio
    async def test_restore_error_is_wrapped(self, restorer):
        restorer.error = RuntimeError("snapshot not found")
        deploy = _deploy("db", DeployType.AURORA_RESTORE)
        with pytest.raises(BuildExecutionError, match="snapshot not found"):
            await DatastoreRestoreEngine(restorer).build(deploy, BuildOptions())
