"""
Deployable resolver - merge the database template with per-branch YAML.

A build's service graph comes from two independent sources: the
database-backed environment template and the ``lifecycle.yaml`` file on
the triggering branch (plus the files of any other repository it points
at).  The resolver flattens both into one ``{name: Deployable}`` map and
persists it.

Architecture:
    ::

        resolve(build)
          │
          ├─ 1. DB baseline
          │     optional_service_ids  → active=False
          │     default_service_ids   → active=True
          │     + one level of dependents (depends_on_service_id)
          │     + remote lifecycle.yaml overlay for DB services in other repos
          │
          ├─ 2. lifecycle.yaml on the PR branch (unless classic_mode_only)
          │     environment.optionalServices → active=False
          │     environment.defaultServices  → active=True
          │       serviceId   → DB service
          │       repository  → that repo's lifecycle.yaml @ branch
          │       otherwise   → local services[]
          │     no environment block → every services[] entry, active
          │     requires: one level, inserted before the main service
          │
          ├─ 3. comment overrides (branch / tag / active)
          │
          └─ 4. lifecycle defaults (builder, pipeline) for unset fields

Merge rule:
    When both sources define a service the YAML attributes replace the
    baseline, except ``env`` / ``init_env`` which are shallow-merged with
    YAML winning on key collisions.

Failure handling:
    A config that cannot be fetched or parsed degrades to the baseline for
    the services it would have defined.  A YAML service that cannot be
    resolved at all is recorded with status ``CONFIG_ERROR``; resolution of
    its siblings carries on.

Example:
    >>> resolver = DeployableResolver(ledger, scm, provider)
    >>> deployables = await resolver.upsert_deployables(build)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from envforge.core.errors import ConfigurationError
from envforge.core.logging import get_logger
from envforge.models import Deployable, DeployStatus, DeployType
from envforge.yaml_config import DependencyServiceSpec, LifecycleConfig, ServiceSpec

if TYPE_CHECKING:
    from envforge.core.config.provider import GlobalConfigProvider
    from envforge.ledger import DeployLedger
    from envforge.models import Build, ServiceTemplate
    from envforge.protocols import SourceControl

logger = get_logger(__name__)

DEFAULT_BRANCH = "main"


@dataclass
class _Resolution:
    """Working state of one ``resolve`` call."""

    build: Build
    default_host: str | None
    default_branch: str
    services: dict[str, Deployable] = field(default_factory=dict)
    configs: dict[tuple[str, str], LifecycleConfig | None] = field(default_factory=dict)


def merge_deployables(baseline: Deployable, overlay: Deployable) -> Deployable:
    """Overlay a YAML-derived deployable on its database baseline."""
    overlay.env = {**baseline.env, **overlay.env}
    overlay.init_env = {**baseline.init_env, **overlay.init_env}
    if overlay.service_id is None:
        overlay.service_id = baseline.service_id
    if overlay.depends_on_deployable_name is None:
        overlay.depends_on_deployable_name = baseline.depends_on_deployable_name
    return overlay


class DeployableResolver:
    """Resolve the Deployables of one build."""

    def __init__(self, ledger: DeployLedger, scm: SourceControl, config: GlobalConfigProvider):
        self._ledger = ledger
        self._scm = scm
        self._config = config

    async def resolve(self, build: Build) -> dict[str, Deployable]:
        """Return the merged ``{name: Deployable}`` map for *build*.

        Raises:
            ValueError: If *build* has no identity.
        """
        if build is None or not build.uuid:
            raise ValueError("Cannot resolve deployables without a build uuid")

        domain = await self._config.domain_defaults()
        lifecycle = await self._config.lifecycle_defaults()
        state = _Resolution(
            build=build,
            default_host=domain.get("host"),
            default_branch=lifecycle.get("default_branch") or DEFAULT_BRANCH,
        )
        logger.info("resolver.start", build_uuid=build.uuid, environment=build.environment.name)

        self._resolve_db_services(state)
        await self._overlay_remote_db_services(state)

        pr = build.pull_request
        if build.environment.classic_mode_only:
            logger.debug("resolver.config.skipped", build_uuid=build.uuid, reason="classic_mode_only")
        elif pr.branch_name:
            await self._resolve_local_config(state)

        self._apply_overrides(state)
        self._apply_lifecycle_defaults(state, lifecycle)

        logger.info(
            "resolver.complete",
            build_uuid=build.uuid,
            services=sorted(state.services),
            config_errors=sorted(n for n, d in state.services.items() if d.status == DeployStatus.CONFIG_ERROR),
        )
        return state.services

    async def upsert_deployables(self, build: Build) -> list[Deployable]:
        """Resolve and persist the Deployables of *build*."""
        resolved = await self.resolve(build)
        deployables = []
        for deployable in resolved.values():
            self._ledger.upsert_deployable(deployable)
            logger.debug(
                "deployable.upserted",
                build_uuid=build.uuid,
                service=deployable.name,
                deployable_id=deployable.id,
                active=deployable.active,
            )
            deployables.append(deployable)
        return deployables

    # ── Database template ────────────────────────────────────────────────

    def _resolve_db_services(self, state: _Resolution) -> None:
        env = state.build.environment
        # Defaults run last so a service listed in both sets stays active.
        for service_id in env.optional_service_ids:
            self._add_db_service(state, service_id, active=False)
        for service_id in env.default_service_ids:
            self._add_db_service(state, service_id, active=True)

    def _add_db_service(self, state: _Resolution, service_id: int, *, active: bool) -> Deployable | None:
        service = self._ledger.get_service(service_id)
        if service is None:
            logger.warning("resolver.service.missing", build_uuid=state.build.uuid, service_id=service_id)
            return None

        deployable = self._from_template(state, service, active=active)
        state.services[service.name] = deployable

        # One level only: dependents of dependents are not expanded.
        for dependent in self._ledger.list_dependents(service.id):
            existing = state.services.get(dependent.name)
            if existing is not None and existing.active and not active:
                continue
            child = self._from_template(state, dependent, active=active)
            child.depends_on_deployable_name = service.name
            state.services[dependent.name] = child
        return deployable

    def _from_template(self, state: _Resolution, service: ServiceTemplate, *, active: bool) -> Deployable:
        pr = state.build.pull_request
        if service.repository and service.repository == pr.repository and pr.branch_name:
            branch = pr.branch_name
        else:
            branch = service.branch_name
        return Deployable(
            name=service.name,
            build_id=state.build.id,
            build_uuid=state.build.uuid,
            type=service.type,
            service_id=service.id,
            repository=service.repository,
            branch_name=branch,
            default_tag=service.default_tag,
            docker_image=service.docker_image,
            registry_repository=service.registry_repository,
            dockerfile_path=service.dockerfile_path,
            init_dockerfile_path=service.init_dockerfile_path,
            build_pipeline_name=service.build_pipeline_name,
            after_build_pipeline_name=service.after_build_pipeline_name,
            detach_after_build_pipeline=service.detach_after_build_pipeline,
            builder=service.builder,
            env=dict(service.env),
            init_env=dict(service.init_env),
            resources=dict(service.resources),
            readiness=dict(service.readiness),
            host=service.host or state.default_host,
            port=service.port,
            default_public_url=service.default_public_url,
            restore=dict(service.restore),
            active=active,
        )

    async def _overlay_remote_db_services(self, state: _Resolution) -> None:
        """Apply other repositories' lifecycle.yaml to DB services they own."""
        pr = state.build.pull_request
        for name, baseline in list(state.services.items()):
            if not baseline.type.is_source_build or not baseline.repository:
                continue
            if baseline.repository == pr.repository:
                continue
            branch = self._override_branch(state, name) or baseline.branch_name
            if not branch:
                continue
            config = await self._fetch_config(state, baseline.repository, branch)
            service = config.get_service(name) if config else None
            if service is None:
                continue
            self._merge_yaml_service(
                state,
                service,
                repository=baseline.repository,
                branch_name=branch,
                active=baseline.active,
                depends_on=baseline.depends_on_deployable_name,
            )

    # ── Declarative config ───────────────────────────────────────────────

    async def _resolve_local_config(self, state: _Resolution) -> None:
        pr = state.build.pull_request
        local = await self._fetch_config(state, pr.repository, pr.branch_name)
        if local is None:
            logger.warning(
                "resolver.config.absent",
                build_uuid=state.build.uuid,
                repository=pr.repository,
                branch=pr.branch_name,
            )
            return

        if local.has_environment_services:
            for entry in local.environment.optionalServices:
                await self._apply_env_entry(state, entry, local, active=False)
            for entry in local.environment.defaultServices:
                await self._apply_env_entry(state, entry, local, active=True)
            return

        # Older files: no environment block, every service is active.
        for service in local.services:
            self._add_yaml_service(
                state, service, local, repository=pr.repository, branch_name=pr.branch_name, active=True
            )

    async def _apply_env_entry(
        self,
        state: _Resolution,
        entry: DependencyServiceSpec,
        local: LifecycleConfig,
        *,
        active: bool,
    ) -> None:
        if entry.serviceId is not None:
            self._add_db_service(state, entry.serviceId, active=active)
            return

        pr = state.build.pull_request
        if entry.repository and entry.repository != pr.repository:
            branch = self._override_branch(state, entry.name) or entry.branch or state.default_branch
            config = await self._fetch_config(state, entry.repository, branch)
            if config is None:
                self._record_unresolved(
                    state,
                    entry.name,
                    f"Could not load lifecycle config for {entry.name} from {entry.repository}@{branch}",
                    active=active,
                )
                return
            repository, branch_name = entry.repository, branch
        else:
            config, repository, branch_name = local, pr.repository, pr.branch_name

        service = config.get_service(entry.name)
        if service is None:
            self._record_unresolved(
                state,
                entry.name,
                f"Service {entry.name} is not defined in the lifecycle config of {repository}",
                active=active,
            )
            return
        self._add_yaml_service(state, service, config, repository=repository, branch_name=branch_name, active=active)

    def _add_yaml_service(
        self,
        state: _Resolution,
        service: ServiceSpec,
        config: LifecycleConfig,
        *,
        repository: str | None,
        branch_name: str | None,
        active: bool,
    ) -> None:
        # One level of requires, resolved into the map before the main service.
        for required in service.requires:
            inner = config.get_service(required.name)
            if inner is None:
                logger.warning(
                    "resolver.requires.missing",
                    build_uuid=state.build.uuid,
                    service=service.name,
                    requires=required.name,
                )
                continue
            self._merge_yaml_service(
                state, inner, repository=repository, branch_name=branch_name, active=active, depends_on=service.name
            )
        self._merge_yaml_service(state, service, repository=repository, branch_name=branch_name, active=active)

    def _merge_yaml_service(
        self,
        state: _Resolution,
        service: ServiceSpec,
        *,
        repository: str | None,
        branch_name: str | None,
        active: bool,
        depends_on: str | None = None,
    ) -> None:
        try:
            deployable = service.to_deployable(
                state.build,
                repository=repository,
                branch_name=branch_name,
                active=active,
                depends_on=depends_on,
                default_host=state.default_host,
            )
        except ConfigurationError as exc:
            logger.warning(
                "resolver.service.config_error",
                build_uuid=state.build.uuid,
                service=service.name,
                error=exc.message,
            )
            state.services[service.name] = self._config_error(state, service.name, exc.message, service.type, active)
            return

        baseline = state.services.get(service.name)
        if baseline is not None and baseline.status != DeployStatus.CONFIG_ERROR:
            deployable = merge_deployables(baseline, deployable)
        state.services[service.name] = deployable

    def _record_unresolved(self, state: _Resolution, name: str, message: str, *, active: bool) -> None:
        if name in state.services:
            logger.warning(
                "resolver.service.baseline_kept",
                build_uuid=state.build.uuid,
                service=name,
                reason=message,
            )
            return
        logger.warning("resolver.service.config_error", build_uuid=state.build.uuid, service=name, error=message)
        state.services[name] = self._config_error(state, name, message, DeployType.GITHUB, active)

    @staticmethod
    def _config_error(
        state: _Resolution, name: str, message: str, deploy_type: DeployType, active: bool
    ) -> Deployable:
        return Deployable(
            name=name,
            build_id=state.build.id,
            build_uuid=state.build.uuid,
            type=deploy_type,
            active=active,
            status=DeployStatus.CONFIG_ERROR,
            status_message=message,
        )

    async def _fetch_config(self, state: _Resolution, repository: str, branch: str) -> LifecycleConfig | None:
        """Fetch and parse a lifecycle file; None when absent or unusable."""
        key = (repository, branch)
        if key in state.configs:
            return state.configs[key]

        config: LifecycleConfig | None = None
        try:
            text = await self._scm.fetch_declarative_config(repository, branch)
        except Exception as exc:
            logger.warning(
                "resolver.config.fetch_failed",
                build_uuid=state.build.uuid,
                repository=repository,
                branch=branch,
                error=str(exc),
            )
            text = None

        if text:
            try:
                config = LifecycleConfig.from_yaml(text)
            except ConfigurationError as exc:
                logger.warning(
                    "resolver.config.invalid",
                    build_uuid=state.build.uuid,
                    repository=repository,
                    branch=branch,
                    error=exc.message,
                )
        state.configs[key] = config
        return config

    # ── Overrides and defaults ───────────────────────────────────────────

    @staticmethod
    def _override_branch(state: _Resolution, name: str) -> str | None:
        override = state.build.overrides.get(name)
        return override.branch_name if override else None

    def _apply_overrides(self, state: _Resolution) -> None:
        for name, override in state.build.overrides.items():
            deployable = state.services.get(name)
            if deployable is None:
                logger.warning("resolver.override.unknown_service", build_uuid=state.build.uuid, service=name)
                continue
            if override.branch_name:
                deployable.comment_branch_name = override.branch_name
            if override.tag:
                deployable.default_tag = override.tag
            if override.active is not None:
                deployable.active = override.active

    @staticmethod
    def _apply_lifecycle_defaults(state: _Resolution, lifecycle: dict[str, Any]) -> None:
        builder = lifecycle.get("default_builder")
        pipeline = lifecycle.get("default_pipeline")
        for deployable in state.services.values():
            if deployable.status == DeployStatus.CONFIG_ERROR:
                continue
            if deployable.type == DeployType.GITHUB and not deployable.builder and builder:
                deployable.builder = builder
            if deployable.type == DeployType.CODEFRESH and not deployable.build_pipeline_name and pipeline:
                deployable.build_pipeline_name = pipeline
