"""Deploy registrar - idempotent Deploy records for resolved Deployables.

One Deploy exists per ``(Deployable, build)`` pair.  Its uuid is derived
from the service name and build uuid, so calling :meth:`DeployRegistrar.upsert`
again for the same build patches the existing rows in place instead of
creating new ones.  Status is never touched here; it belongs to the
orchestrator's token-guarded attempts.

Example:
    >>> registrar = DeployRegistrar(ledger)
    >>> deploys = registrar.upsert(deployables, build)
    >>> deploys[0].uuid
    'api-b1'
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from envforge.core.logging import get_logger
from envforge.models import Deploy, DeployStatus, DeployType, deploy_uuid

if TYPE_CHECKING:
    from envforge.ledger import DeployLedger
    from envforge.models import Build, Deployable

logger = get_logger(__name__)


def public_url_for(deployable: Deployable, uuid_: str, existing: Deploy | None = None) -> str | None:
    """Public URL of a deploy: external hosts keep theirs, others hang off the host."""
    if deployable.type == DeployType.EXTERNAL_HTTP:
        return (existing.public_url if existing else None) or deployable.default_public_url
    if deployable.host:
        return f"{uuid_}.{deployable.host}"
    return None


class DeployRegistrar:
    """Create or patch the Deploys of one build."""

    def __init__(self, ledger: DeployLedger):
        self._ledger = ledger

    def upsert(self, deployables: list[Deployable], build: Build) -> list[Deploy]:
        """Create missing Deploys and patch identity fields of existing ones.

        The returned Deploys carry in-memory ``deployable`` / ``build``
        references for the caller.
        """
        deploys: list[Deploy] = []
        for deployable in deployables:
            deploy = self._upsert_one(deployable, build)
            deploy.deployable = deployable
            deploy.build = build
            deploys.append(deploy)

        count = self._ledger.count_deploys(build.id)
        if count != len(deployables):
            logger.warning(
                "registrar.count_mismatch",
                build_uuid=build.uuid,
                deployables=len(deployables),
                deploys=count,
            )
        return deploys

    def _upsert_one(self, deployable: Deployable, build: Build) -> Deploy:
        uuid_ = deploy_uuid(deployable.name, build.uuid)
        existing = self._ledger.find_deploy(
            build.id, service_id=deployable.service_id, deployable_id=deployable.id
        )
        if existing is None:
            existing = self._ledger.get_deploy(uuid_)

        identity = self._identity_fields(deployable, uuid_, existing)

        if existing is not None:
            self._ledger.update_deploy(existing.uuid, identity)
            logger.debug("registrar.deploy.updated", build_uuid=build.uuid, deploy_uuid=existing.uuid)
            return self._ledger.get_deploy(existing.uuid)

        deploy = Deploy(
            uuid=uuid_,
            build_id=build.id,
            build_uuid=build.uuid,
            name=deployable.name,
            status=DeployStatus.QUEUED,
            **identity,
        )
        self._ledger.create_deploy(deploy)
        logger.info("registrar.deploy.created", build_uuid=build.uuid, deploy_uuid=uuid_)
        return deploy

    @staticmethod
    def _identity_fields(deployable: Deployable, uuid_: str, existing: Deploy | None) -> dict[str, Any]:
        return {
            "deployable_id": deployable.id,
            "service_id": deployable.service_id,
            "repository": deployable.repository,
            "branch_name": deployable.effective_branch,
            "tag": deployable.default_tag,
            "active": deployable.active,
            "env": dict(deployable.env),
            "public_url": public_url_for(deployable, uuid_, existing),
            "internal_hostname": uuid_,
        }
