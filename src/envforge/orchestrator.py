"""
Deploy orchestrator - the per-deploy build state machine.

Drives each Deploy of a build from ``QUEUED`` to ``BUILT`` (or a failure
state), picking a build engine, skipping builds whose image already
exists, and waiting on cross-service bindings before building.  Every
status change is a token-guarded patch: a worker whose ``run_uuid`` has
been superseded stops at its next transition and its result is dropped.

Architecture:
    ::

        resolve_and_build(build_uuid)
          ├── DeployableResolver.upsert_deployables(build)
          ├── DeployRegistrar.upsert(deployables, build)
          ├── configuration deploys → BUILT
          └── WorkerPool: build_deploy(deploy) for every active deploy,
                binding sources dispatched before their dependents

        build_deploy(deploy)
          run_uuid = ledger.start_attempt(uuid)   (status → QUEUED, output cleared)
          │
          ├── configuration   → BUILT
          ├── externalHTTP    → READY
          ├── docker          → BUILT  (docker_image = image:tag)
          ├── aurora-restore  → BUILDING → BUILT (cname)  | skip if restored
          └── github / codefresh
                router.select(type, builder)    unknown → CONFIG_ERROR
                CLONING      sha for branch     missing → ERROR
                tag = {prefix}-{sha7}-{env_hash}
                tag exists?  → BUILT (skip, previous output kept)
                WAITING      bindings → CrossServiceDependencyResolver (pool slot released)
                BUILDING     engine.build(deploy, options)
                             after-build pipeline, if configured
                BUILT | BUILD_FAILED

Error mapping:
    ConfigurationError           → CONFIG_ERROR
    DependencyTimeoutError       → ERROR
    TransientInfrastructureError → ERROR
    BuildExecutionError          → BUILD_FAILED (engine logs kept)
    anything else                → BUILD_FAILED
    StaleAttemptError            → nothing written; a newer attempt owns the deploy

Example:
    >>> orchestrator = DeployOrchestrator(
    ...     ledger, router, scm, registry, provider, settings, notifier=notifier
    ... )
    >>> deploys = await orchestrator.resolve_and_build("b1")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from envforge.core.errors import (
    BuildExecutionError,
    ConfigurationError,
    DependencyTimeoutError,
    EnvforgeError,
    StaleAttemptError,
    TransientInfrastructureError,
)
from envforge.core.hashing import compute_env_hash
from envforge.core.logging import LogContext, get_logger
from envforge.dependencies import CrossServiceDependencyResolver, parse_bindings
from envforge.engines import (
    BuildEngineRouter,
    BuildkitEngine,
    BuildOptions,
    ContainerImageEngine,
    DatastoreRestoreEngine,
    ExternalHostEngine,
    KanikoEngine,
    RemoteCIEngine,
)
from envforge.models import Deploy, DeployStatus, DeployType, InvalidTransitionError, validate_deploy_transition
from envforge.pool import WorkerPool, released_slot
from envforge.registrar import DeployRegistrar
from envforge.resolver import DeployableResolver
from envforge.tags import construct_repo_path, generate_deploy_tag, image_reference

if TYPE_CHECKING:
    from envforge.core.config.provider import GlobalConfigProvider
    from envforge.core.config.settings import EnvforgeSettings
    from envforge.ledger import DeployLedger
    from envforge.models import Build, Deployable
    from envforge.protocols import (
        ClusterJobRunner,
        DatastoreRestorer,
        LogArchival,
        Notifier,
        RegistryClient,
        RemoteCIClient,
        SourceControl,
    )

logger = get_logger(__name__)

# Bound on a single source-control or registry call.
EXTERNAL_CALL_TIMEOUT_SECONDS = 30.0

# Written into the hashed env when an init image is configured.
INIT_MARKER_KEY = "__init_dockerfile__"


def tag_env(deployable: Deployable, build: Build | None) -> dict[str, str]:
    """Environment hashed into the deploy tag."""
    env = {**deployable.env, **(build.comment_runtime_env if build else {})}
    if deployable.init_dockerfile_path:
        env[INIT_MARKER_KEY] = deployable.init_dockerfile_path
        env.update({f"__init__{key}": value for key, value in deployable.init_env.items()})
    return env


def build_default_router(
    settings: EnvforgeSettings,
    *,
    runner: ClusterJobRunner | None = None,
    ci_client: RemoteCIClient | None = None,
    restorer: DatastoreRestorer | None = None,
    archival: LogArchival | None = None,
) -> BuildEngineRouter:
    """Router with every engine whose collaborator is available."""
    router = BuildEngineRouter()
    if runner is not None:
        router.register(BuildkitEngine(runner, settings, archival=archival))
        router.register(KanikoEngine(runner, settings, archival=archival))
    if ci_client is not None:
        router.register(RemoteCIEngine(ci_client, settings))
    if restorer is not None:
        router.register(DatastoreRestoreEngine(restorer))
    router.register(ContainerImageEngine())
    router.register(ExternalHostEngine())
    return router


def dispatch_order(deploys: list[Deploy]) -> list[Deploy]:
    """Order *deploys* so every binding source comes before its dependents.

    Stable for deploys at the same depth.  Bindings to services outside
    *deploys* are ignored, and a binding cycle is cut where it is first
    revisited.
    """
    sources: dict[str, set[str]] = {}
    for deploy in deploys:
        env = deploy.deployable.env if deploy.deployable else {}
        sources[deploy.name] = {b.source_service_name for b in parse_bindings(env)[1]}

    depths: dict[str, int] = {}

    def depth(name: str, visiting: frozenset[str]) -> int:
        if name in depths:
            return depths[name]
        if name in visiting or name not in sources:
            return -1
        value = 1 + max((depth(s, visiting | {name}) for s in sources[name]), default=-1)
        depths[name] = value
        return value

    return sorted(deploys, key=lambda d: depth(d.name, frozenset()))


@dataclass
class _Attempt:
    """One worker's hold on a Deploy: the token plus the last status it wrote."""

    deploy: Deploy
    run_uuid: str
    status: DeployStatus = DeployStatus.QUEUED
    prior_status: DeployStatus | None = None
    prior_cname: str | None = None
    prior_output: str | None = None
    prior_logs_url: str | None = None


class DeployOrchestrator:
    """Build every deploy of a build attempt."""

    def __init__(
        self,
        ledger: DeployLedger,
        router: BuildEngineRouter,
        scm: SourceControl,
        registry: RegistryClient,
        config: GlobalConfigProvider,
        settings: EnvforgeSettings,
        *,
        dependencies: CrossServiceDependencyResolver | None = None,
        resolver: DeployableResolver | None = None,
        registrar: DeployRegistrar | None = None,
        notifier: Notifier | None = None,
        ci_client: RemoteCIClient | None = None,
    ):
        self._ledger = ledger
        self._router = router
        self._scm = scm
        self._registry = registry
        self._config = config
        self._settings = settings
        self._dependencies = dependencies or CrossServiceDependencyResolver(ledger, settings)
        self._resolver = resolver or DeployableResolver(ledger, scm, config)
        self._registrar = registrar or DeployRegistrar(ledger)
        self._notifier = notifier
        self._ci_client = ci_client
        self._background: set[asyncio.Task] = set()

    # ── Build-level driver ───────────────────────────────────────────────

    async def resolve_and_build(self, build_uuid: str) -> list[Deploy]:
        """Resolve, register and build every deploy of a build.

        Safe to call again for the same build: deploys are upserted and
        unchanged images are skipped by the tag check.

        Raises:
            ValueError: If no build exists for *build_uuid*.
        """
        build = self._ledger.get_build(build_uuid) if build_uuid else None
        if build is None:
            raise ValueError(f"Unknown build: {build_uuid!r}")

        async with LogContext(build_uuid=build.uuid):
            deployables = await self._resolver.upsert_deployables(build)
            deploys = self._registrar.upsert(deployables, build)

            pool = WorkerPool(self._settings.max_concurrency)
            for deploy in dispatch_order(deploys):
                if deploy.deployable.type == DeployType.CONFIGURATION:
                    await self.build_deploy(deploy)
                elif deploy.active:
                    pool.submit(deploy.uuid, self.build_deploy, deploy)
                else:
                    logger.debug("deploy.skipped.inactive", deploy_uuid=deploy.uuid)

            summary = (await pool.run_all()).to_dict()
            for item in summary["items"]:
                if item["status"] == "failed":
                    logger.error("deploy.dispatch_failed", deploy_uuid=item["name"], error=item["error"])
            logger.info(
                "build.dispatched",
                deploys=len(deploys),
                dispatched=summary["total"],
                failed=summary["failed"],
            )
        return self._ledger.list_deploys(build.id)

    # ── Per-deploy state machine ─────────────────────────────────────────

    async def build_deploy(self, deploy: Deploy) -> Deploy:
        """Run one attempt for *deploy* and return its persisted state."""
        if deploy.deployable is None:
            deploy.deployable = self._ledger.find_deployable(deploy.build_id, deploy.name)
        if deploy.build is None:
            deploy.build = self._ledger.get_build(deploy.build_uuid)

        async with LogContext(build_uuid=deploy.build_uuid, deploy_uuid=deploy.uuid):
            prior = self._ledger.get_deploy(deploy.uuid)
            attempt = _Attempt(
                deploy=deploy,
                run_uuid=self._ledger.start_attempt(deploy.uuid),
                prior_status=prior.status if prior else None,
                prior_cname=prior.cname if prior else None,
                prior_output=prior.build_output if prior else None,
                prior_logs_url=prior.build_logs_url if prior else None,
            )
            deploy.run_uuid = attempt.run_uuid
            logger.info("deploy.attempt.start", run_uuid=attempt.run_uuid)

            try:
                await self._run(attempt)
            except StaleAttemptError:
                logger.info("deploy.attempt.superseded", run_uuid=attempt.run_uuid)
            except ConfigurationError as exc:
                await self._fail(attempt, DeployStatus.CONFIG_ERROR, exc)
            except (DependencyTimeoutError, TransientInfrastructureError) as exc:
                await self._fail(attempt, DeployStatus.ERROR, exc)
            except BuildExecutionError as exc:
                await self._fail(attempt, DeployStatus.BUILD_FAILED, exc, build_output=exc.logs or None)
            except Exception as exc:
                logger.exception("deploy.attempt.crashed", error=str(exc))
                await self._fail(attempt, DeployStatus.BUILD_FAILED, exc)

        return self._ledger.get_deploy(deploy.uuid)

    async def _run(self, attempt: _Attempt) -> None:
        deploy = attempt.deploy
        deployable = deploy.deployable
        if deployable is None:
            raise ConfigurationError(f"No deployable resolved for {deploy.name}")
        if deployable.status == DeployStatus.CONFIG_ERROR:
            raise ConfigurationError(deployable.status_message or f"Service {deploy.name} could not be resolved")

        deploy_type = deployable.type
        if deploy_type == DeployType.CONFIGURATION:
            await self._transition(attempt, DeployStatus.BUILT, "Configuration service; nothing to build")
        elif deploy_type == DeployType.EXTERNAL_HTTP:
            await self._run_external(attempt)
        elif deploy_type == DeployType.DOCKER:
            await self._run_container_image(attempt)
        elif deploy_type == DeployType.AURORA_RESTORE:
            await self._run_restore(attempt)
        else:
            await self._run_source_build(attempt)

    async def _run_external(self, attempt: _Attempt) -> None:
        engine = self._router.select(DeployType.EXTERNAL_HTTP, None)
        await engine.build(attempt.deploy, BuildOptions())
        await self._transition(attempt, DeployStatus.READY, "External service")

    async def _run_container_image(self, attempt: _Attempt) -> None:
        deployable = attempt.deploy.deployable
        engine = self._router.select(DeployType.DOCKER, deployable.builder)
        tag = deployable.default_tag or ""
        result = await engine.build(attempt.deploy, BuildOptions(tag=tag))
        await self._transition(
            attempt,
            DeployStatus.BUILT,
            "Using pre-built image",
            docker_image=result.job_identifier,
            tag=tag or None,
        )

    async def _run_restore(self, attempt: _Attempt) -> None:
        if attempt.prior_status in (DeployStatus.BUILT, DeployStatus.READY) and attempt.prior_cname:
            await self._transition(
                attempt,
                DeployStatus.BUILT,
                "Datastore already restored",
                cname=attempt.prior_cname,
                build_output=attempt.prior_output,
            )
            return

        engine = self._router.select(DeployType.AURORA_RESTORE, None)
        await self._transition(attempt, DeployStatus.BUILDING, "Restoring datastore")
        try:
            result = await engine.build(attempt.deploy, BuildOptions())
        except BuildExecutionError as exc:
            await self._fail(attempt, DeployStatus.ERROR, exc)
            return

        if not result.success or not result.job_identifier:
            await self._transition(
                attempt, DeployStatus.ERROR, "Datastore restore failed", build_output=result.logs or None
            )
            return
        await self._transition(
            attempt,
            DeployStatus.BUILT,
            "Datastore restored",
            cname=result.job_identifier,
            build_output=result.logs or None,
        )

    async def _run_source_build(self, attempt: _Attempt) -> None:
        deploy = attempt.deploy
        deployable = deploy.deployable
        build_defaults = await self._config.build_defaults()

        builder = deployable.builder
        if deployable.type == DeployType.GITHUB and not builder:
            builder = build_defaults.get("engine")
        engine = self._router.select(deployable.type, builder)
        if deployable.after_build_pipeline_name and self._ci_client is None:
            raise ConfigurationError(
                f"Service {deploy.name} has an after-build pipeline but no remote CI client is configured"
            )

        branch = deployable.effective_branch
        if not deployable.repository or not branch:
            raise ConfigurationError(f"Service {deploy.name} has no repository/branch to build from")

        await self._transition(attempt, DeployStatus.CLONING, f"Resolving {deployable.repository}@{branch}")
        sha = await self._resolve_sha(deployable.repository, branch)
        if not sha:
            await self._transition(
                attempt, DeployStatus.ERROR, f"Branch {branch} not found in {deployable.repository}"
            )
            return

        registry = build_defaults.get("registry") or {}
        registry_domain = registry.get("domain")
        registry_repository = deployable.registry_repository or registry.get("repository")
        if not registry_domain or not registry_repository:
            raise ConfigurationError(f"No destination registry configured for {deploy.name}")

        repo_path = construct_repo_path(registry_repository, deploy.name, registry_domain)
        env_hash = compute_env_hash(tag_env(deployable, deploy.build))
        tag = generate_deploy_tag(sha, env_hash, self._settings.tag_prefix)
        init_tag = (
            generate_deploy_tag(sha, env_hash, self._settings.init_tag_prefix)
            if deployable.init_dockerfile_path
            else None
        )
        image = image_reference(registry_domain, repo_path, tag)
        init_image = image_reference(registry_domain, repo_path, init_tag) if init_tag else None

        if await self._images_exist(registry_domain, repo_path, tag, init_tag):
            logger.info("deploy.build.skipped", tag=tag, image=image)
            await self._transition(
                attempt,
                DeployStatus.BUILT,
                "Image already exists; skipping build",
                docker_image=image,
                init_docker_image=init_image,
                tag=tag,
                sha=sha,
                build_output=attempt.prior_output,
                build_logs_url=attempt.prior_logs_url,
            )
            return

        runtime_env = deploy.build.comment_runtime_env if deploy.build else {}
        static_env, bindings = parse_bindings(deployable.env)
        env = {**static_env, **runtime_env}
        if bindings:
            names = ", ".join(sorted({b.source_service_name for b in bindings}))
            await self._transition(attempt, DeployStatus.WAITING, f"Waiting for {names} to finish building.", sha=sha)
            async with released_slot():
                env.update(await self._dependencies.wait(deploy, bindings))

        await self._transition(attempt, DeployStatus.BUILDING, f"Building {image}", env=env, sha=sha)

        async def report(fields: dict[str, Any]) -> bool:
            return self._ledger.patch_deploy(deploy.uuid, attempt.run_uuid, fields)

        options = BuildOptions(
            sha=sha,
            branch=branch,
            repository=deployable.repository,
            registry_domain=registry_domain,
            repo_path=repo_path,
            tag=tag,
            init_tag=init_tag,
            dockerfile_path=deployable.dockerfile_path or "Dockerfile",
            init_dockerfile_path=deployable.init_dockerfile_path,
            env=env,
            init_env=dict(deployable.init_env),
            cache_registry=build_defaults.get("cache_registry") or "",
            pipeline_name=deployable.build_pipeline_name,
            resources=deployable.resources or build_defaults.get("resources") or {},
            timeout_seconds=int(build_defaults.get("job_timeout") or self._settings.build_job_timeout_seconds),
            report=report,
        )
        result = await engine.build(deploy, options)

        if result.success and deployable.after_build_pipeline_name:
            pipeline = deployable.after_build_pipeline_name
            if not await self._run_after_build_pipeline(
                pipeline, branch, {**env, "TAG": image}, detach=deployable.detach_after_build_pipeline
            ):
                await self._transition(
                    attempt,
                    DeployStatus.BUILD_FAILED,
                    f"After-build pipeline {pipeline} failed",
                    build_output=result.logs or None,
                )
                return

        if result.success:
            await self._transition(
                attempt,
                DeployStatus.BUILT,
                "Successfully built image",
                docker_image=image,
                init_docker_image=init_image,
                tag=tag,
                build_output=result.logs,
            )
        else:
            await self._transition(
                attempt, DeployStatus.BUILD_FAILED, "Build failed", build_output=result.logs or None
            )

    # ── External calls ───────────────────────────────────────────────────

    async def _run_after_build_pipeline(
        self, pipeline: str, branch: str, build_args: dict[str, str], *, detach: bool
    ) -> bool:
        """Trigger the post-build pipeline; wait for it unless *detach*."""
        try:
            build_id = await self._ci_client.trigger(pipeline, branch, build_args)
            logger.info("deploy.after_build.triggered", pipeline=pipeline, pipeline_build_id=build_id, detached=detach)
            if detach:
                return True
            return await self._ci_client.wait_for_completion(build_id, self._settings.remote_ci_timeout_seconds)
        except Exception as exc:
            raise TransientInfrastructureError(f"After-build pipeline {pipeline} errored: {exc}", cause=exc) from exc

    async def _resolve_sha(self, repository: str, branch: str) -> str | None:
        try:
            return await asyncio.wait_for(
                self._scm.get_sha_for_branch(repository, branch), timeout=EXTERNAL_CALL_TIMEOUT_SECONDS
            )
        except Exception as exc:
            raise TransientInfrastructureError(
                f"Failed to resolve {repository}@{branch}: {exc}", cause=exc
            ) from exc

    async def _images_exist(self, domain: str, repo_path: str, tag: str, init_tag: str | None) -> bool:
        tags = [tag] + ([init_tag] if init_tag else [])
        try:
            for candidate in tags:
                exists = await asyncio.wait_for(
                    self._registry.tag_exists(domain, repo_path, candidate), timeout=EXTERNAL_CALL_TIMEOUT_SECONDS
                )
                if not exists:
                    return False
        except Exception as exc:
            raise TransientInfrastructureError(f"Registry check failed for {domain}/{repo_path}: {exc}", cause=exc) from exc
        return True

    # ── Status patches ───────────────────────────────────────────────────

    async def _transition(
        self,
        attempt: _Attempt,
        status: DeployStatus,
        message: str | None = None,
        **fields: Any,
    ) -> None:
        """Apply a status change under the attempt's token.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
            StaleAttemptError: If a newer attempt owns the deploy.
        """
        validate_deploy_transition(attempt.status, status)
        if status != DeployStatus.BUILT and ({"docker_image", "init_docker_image"} & fields.keys()):
            raise ValueError("Image references are only written on a BUILT transition")

        patch = {"status": status, "status_message": message, **fields}
        if not self._ledger.patch_deploy(attempt.deploy.uuid, attempt.run_uuid, patch):
            raise StaleAttemptError(f"Attempt {attempt.run_uuid} on {attempt.deploy.uuid} was superseded").with_context(
                deploy_uuid=attempt.deploy.uuid, build_uuid=attempt.deploy.build_uuid
            )

        logger.info("deploy.status.patched", previous=attempt.status.value, status=status.value, message=message)
        attempt.status = status
        self._notify(attempt.deploy)

    async def _fail(self, attempt: _Attempt, status: DeployStatus, exc: Exception, **fields: Any) -> None:
        message = exc.message if isinstance(exc, EnvforgeError) else str(exc) or type(exc).__name__
        logger.warning(
            "deploy.attempt.failed",
            status=status.value,
            error=message,
            error_type=type(exc).__name__,
        )
        try:
            await self._transition(attempt, status, message, **fields)
        except StaleAttemptError:
            logger.info("deploy.attempt.superseded", run_uuid=attempt.run_uuid)
        except InvalidTransitionError as e:
            logger.error("deploy.status.invalid_transition", current=e.current, target=e.target)

    # ── Notifications ────────────────────────────────────────────────────

    def _notify(self, deploy: Deploy) -> None:
        if self._notifier is None:
            return
        snapshot = self._ledger.get_deploy(deploy.uuid)
        task = asyncio.create_task(self._notify_safely(snapshot, deploy.build))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_safely(self, deploy: Deploy, build: Build | None) -> None:
        try:
            await self._notifier.on_status_change(deploy, build)
        except Exception as exc:
            logger.warning("deploy.notify_failed", deploy_uuid=deploy.uuid, status=deploy.status.value, error=str(exc))

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifier calls (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
