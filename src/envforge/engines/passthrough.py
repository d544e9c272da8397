"""Pass-through engines for services that are not built from source.

* ``ContainerImageEngine`` - image already exists; result carries ``image:tag``.
* ``ExternalHostEngine``   - service lives outside the cluster; nothing to do.
* ``DatastoreRestoreEngine`` - find-or-restore a managed datastore tagged
  with the build and service, so repeated attempts reuse one restore.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from envforge.core.errors import ConfigurationError
from envforge.engines._base import BaseBuildEngine
from envforge.models import BuildAttemptResult, DeployType

if TYPE_CHECKING:
    from envforge.engines._types import BuildOptions
    from envforge.models import Deploy
    from envforge.protocols import DatastoreRestorer

logger = logging.getLogger(__name__)


class ContainerImageEngine(BaseBuildEngine):
    name = "container-image"

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        return deploy_type == DeployType.DOCKER

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        image = deploy.deployable.docker_image if deploy.deployable else None
        if not image:
            raise ConfigurationError(f"No docker image configured for {deploy.name}").with_context(
                deploy_uuid=deploy.uuid, engine=self.name
            )
        reference = f"{image}:{options.tag}" if options.tag else image
        return BuildAttemptResult(success=True, logs=f"Using image {reference}", job_identifier=reference)


class ExternalHostEngine(BaseBuildEngine):
    name = "external-host"

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        return deploy_type == DeployType.EXTERNAL_HTTP

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        return BuildAttemptResult(success=True, logs="", job_identifier=deploy.public_url or "")


class DatastoreRestoreEngine(BaseBuildEngine):
    """Idempotent datastore restore.

    The job identifier of a successful result is the datastore endpoint.
    """

    name = "datastore-restore"

    def __init__(self, restorer: DatastoreRestorer) -> None:
        self._restorer = restorer

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        return deploy_type == DeployType.AURORA_RESTORE

    @staticmethod
    def resource_tags(deploy: Deploy) -> dict[str, str]:
        return {"BuildUUID": deploy.build_uuid, "ServiceName": deploy.name}

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        tags = self.resource_tags(deploy)
        existing = await self._restorer.find_existing(tags)
        if existing:
            logger.info("Reusing restored datastore for '%s': %s", deploy.uuid, existing)
            return BuildAttemptResult(success=True, logs=f"Reusing existing datastore {existing}", job_identifier=existing)

        config = dict(deploy.deployable.restore) if deploy.deployable else {}
        endpoint = await self._restorer.restore(tags, config)
        return BuildAttemptResult(success=True, logs=f"Restored datastore {endpoint}", job_identifier=endpoint)
