"""Remote CI build engine.

Triggers a named pipeline with the build arguments, records the
pipeline's log URL on the deploy, waits for completion and then pulls the
full logs.  A failed log fetch keeps the completion result.  There is no
local job object.

Selected for ``codefresh`` services, and for source-build services whose
builder is ``codefresh``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from envforge.core.errors import ConfigurationError, TransientInfrastructureError
from envforge.engines._base import BaseBuildEngine
from envforge.models import BuildAttemptResult, DeployType

if TYPE_CHECKING:
    from envforge.core.config.settings import EnvforgeSettings
    from envforge.engines._types import BuildOptions
    from envforge.models import Deploy
    from envforge.protocols import RemoteCIClient

logger = logging.getLogger(__name__)


class RemoteCIEngine(BaseBuildEngine):
    """Build through a remote CI service."""

    name = "codefresh"

    def __init__(self, client: RemoteCIClient, settings: EnvforgeSettings) -> None:
        self._client = client
        self._settings = settings

    def supports(self, deploy_type: DeployType, builder: str | None) -> bool:
        if deploy_type == DeployType.CODEFRESH:
            return True
        return deploy_type == DeployType.GITHUB and builder == self.name

    def log_url(self, build_id: str) -> str:
        return self._settings.remote_ci_log_url_template.format(id=build_id)

    async def _do_build(self, deploy: Deploy, options: BuildOptions) -> BuildAttemptResult:
        if not options.pipeline_name:
            raise ConfigurationError(f"No build pipeline configured for {deploy.name}").with_context(
                deploy_uuid=deploy.uuid, engine=self.name
            )

        build_args = {
            **options.env,
            "TAG": options.tag,
            "SHA": options.sha,
            "IMAGE": options.image,
        }
        if options.init_image:
            build_args["INIT_IMAGE"] = options.init_image

        try:
            build_id = await self._client.trigger(options.pipeline_name, options.branch, build_args)
        except Exception as exc:
            raise TransientInfrastructureError(
                f"Failed to trigger pipeline {options.pipeline_name}: {exc}", cause=exc
            ).with_context(deploy_uuid=deploy.uuid, engine=self.name) from exc

        await options.report({"build_logs_url": self.log_url(build_id)})
        logger.info("Pipeline %s triggered for '%s': build_id=%s", options.pipeline_name, deploy.uuid, build_id)

        success = await self._client.wait_for_completion(build_id, self._settings.remote_ci_timeout_seconds)

        try:
            logs = await self._client.fetch_logs(build_id)
        except Exception as exc:
            logger.warning("Fetching logs for pipeline build %s failed (%s); using completion result", build_id, exc)
            message = "completed" if success else "failed"
            logs = f"Log retrieval failed but pipeline {message}"

        return BuildAttemptResult(success=success, logs=logs, job_identifier=build_id)
