"""
Domain models for envforge.

Defines the value objects that flow between the resolver, registrar,
orchestrator and build engines, plus the Deploy status state machine.

Architecture:
    ::

        Build (one PR-triggered attempt)
          │  pull_request: PullRequestContext
          │  environment:  EnvironmentTemplate (default + optional services)
          │  overrides:    {service name → ServiceOverride}
          │
          ├── Deployable  (resolved definition, unique per build + name)
          │       │
          │       └── Deploy  (uuid = "{name}-{build_uuid}", status, run_uuid)
          │
          └── BuildAttemptResult (ephemeral engine output)

Deploy status graph::

    QUEUED   → CLONING | WAITING | BUILDING | BUILT | READY | CONFIG_ERROR | ERROR | BUILD_FAILED
    CLONING  → WAITING | BUILDING | BUILT | READY | CONFIG_ERROR | ERROR | BUILD_FAILED
    WAITING  → BUILDING | BUILT | CONFIG_ERROR | ERROR | BUILD_FAILED
    BUILDING → BUILT | CONFIG_ERROR | ERROR | BUILD_FAILED
    BUILT    → DEPLOYING | READY | DEPLOYED | QUEUED
    DEPLOYING → READY | DEPLOYED | DEPLOY_FAILED | ERROR
    READY | DEPLOYED → DEPLOYING | QUEUED
    ERROR | BUILD_FAILED | DEPLOY_FAILED | CONFIG_ERROR → QUEUED (retry)

A new attempt always restarts at QUEUED with a fresh ``run_uuid``; see
:meth:`envforge.ledger.DeployLedger.start_attempt`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InvalidTransitionError(ValueError):
    """Raised when a Deploy status transition is not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid DeployStatus transition: {current} → {target}")


class DeployType(str, Enum):
    """Source type of a service."""

    DOCKER = "docker"  # pre-built container image
    GITHUB = "github"  # built from source in-cluster
    CODEFRESH = "codefresh"  # built by the remote CI backend
    AURORA_RESTORE = "aurora-restore"  # managed datastore restore
    EXTERNAL_HTTP = "externalHTTP"  # external host, nothing to build
    CONFIGURATION = "configuration"  # config only, nothing to build

    @property
    def is_source_build(self) -> bool:
        return self in (DeployType.GITHUB, DeployType.CODEFRESH)


class DeployStatus(str, Enum):
    """Status of a Deploy."""

    QUEUED = "queued"
    CLONING = "cloning"
    WAITING = "waiting"
    BUILDING = "building"
    BUILT = "built"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    READY = "ready"
    ERROR = "error"
    BUILD_FAILED = "build_failed"
    DEPLOY_FAILED = "deploy_failed"
    CONFIG_ERROR = "config_error"

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES


FAILURE_STATUSES = frozenset({
    DeployStatus.ERROR,
    DeployStatus.BUILD_FAILED,
    DeployStatus.DEPLOY_FAILED,
    DeployStatus.CONFIG_ERROR,
})

_BUILD_FAILURES = frozenset({
    DeployStatus.CONFIG_ERROR,
    DeployStatus.ERROR,
    DeployStatus.BUILD_FAILED,
})

DEPLOY_VALID_TRANSITIONS: dict[DeployStatus, frozenset[DeployStatus]] = {
    DeployStatus.QUEUED: frozenset({
        DeployStatus.CLONING,
        DeployStatus.WAITING,
        DeployStatus.BUILDING,
        DeployStatus.BUILT,
        DeployStatus.READY,
    }) | _BUILD_FAILURES,
    DeployStatus.CLONING: frozenset({
        DeployStatus.WAITING,
        DeployStatus.BUILDING,
        DeployStatus.BUILT,
        DeployStatus.READY,  # external host
    }) | _BUILD_FAILURES,
    DeployStatus.WAITING: frozenset({
        DeployStatus.BUILDING,
        DeployStatus.BUILT,
    }) | _BUILD_FAILURES,
    DeployStatus.BUILDING: frozenset({
        DeployStatus.BUILT,
    }) | _BUILD_FAILURES,
    DeployStatus.BUILT: frozenset({
        DeployStatus.DEPLOYING,
        DeployStatus.READY,
        DeployStatus.DEPLOYED,
        DeployStatus.QUEUED,  # redeploy
    }),
    DeployStatus.DEPLOYING: frozenset({
        DeployStatus.READY,
        DeployStatus.DEPLOYED,
        DeployStatus.DEPLOY_FAILED,
        DeployStatus.ERROR,
    }),
    DeployStatus.READY: frozenset({DeployStatus.DEPLOYING, DeployStatus.QUEUED}),
    DeployStatus.DEPLOYED: frozenset({DeployStatus.DEPLOYING, DeployStatus.QUEUED}),
    DeployStatus.ERROR: frozenset({DeployStatus.QUEUED}),  # retry
    DeployStatus.BUILD_FAILED: frozenset({DeployStatus.QUEUED}),  # retry
    DeployStatus.DEPLOY_FAILED: frozenset({DeployStatus.QUEUED}),  # retry
    DeployStatus.CONFIG_ERROR: frozenset({DeployStatus.QUEUED}),  # retry
}


def validate_deploy_transition(current: DeployStatus, target: DeployStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_deploy_transition(DeployStatus.BUILDING, DeployStatus.BUILT)
        >>> validate_deploy_transition(DeployStatus.BUILT, DeployStatus.CLONING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid DeployStatus transition: built → cloning
    """
    allowed = DEPLOY_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value)


# ── Configuration inputs ─────────────────────────────────────────────────


@dataclass
class ServiceTemplate:
    """A service as defined in the database-backed environment template."""

    id: int
    name: str
    type: DeployType
    repository: str | None = None
    branch_name: str | None = None
    depends_on_service_id: int | None = None
    docker_image: str | None = None
    default_tag: str | None = None
    registry_repository: str | None = None
    dockerfile_path: str | None = None
    init_dockerfile_path: str | None = None
    build_pipeline_name: str | None = None
    after_build_pipeline_name: str | None = None
    detach_after_build_pipeline: bool = False
    builder: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    init_env: dict[str, str] = field(default_factory=dict)
    resources: dict[str, Any] = field(default_factory=dict)
    readiness: dict[str, Any] = field(default_factory=dict)
    host: str | None = None
    port: int | None = None
    default_public_url: str | None = None
    restore: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EnvironmentTemplate:
    """Named set of default (active) and optional (inactive) DB services."""

    name: str
    default_service_ids: tuple[int, ...] = ()
    optional_service_ids: tuple[int, ...] = ()
    classic_mode_only: bool = False


@dataclass(frozen=True)
class ServiceOverride:
    """Comment-driven override for one service in one build."""

    branch_name: str | None = None
    tag: str | None = None
    active: bool | None = None


@dataclass(frozen=True)
class PullRequestContext:
    """The pull request that triggered a build."""

    repository: str
    branch_name: str | None
    number: int | None = None


@dataclass
class Build:
    """One PR-triggered provisioning cycle."""

    id: int
    uuid: str
    pull_request: PullRequestContext
    environment: EnvironmentTemplate
    overrides: dict[str, ServiceOverride] = field(default_factory=dict)
    comment_runtime_env: dict[str, str] = field(default_factory=dict)


# ── Resolved records ─────────────────────────────────────────────────────


@dataclass
class Deployable:
    """Resolved, buildable definition of one service within one build.

    Identity is unique within ``(build_id, name)``.
    """

    name: str
    build_id: int
    build_uuid: str
    type: DeployType
    service_id: int | None = None
    repository: str | None = None
    branch_name: str | None = None
    comment_branch_name: str | None = None
    default_tag: str | None = None
    docker_image: str | None = None
    registry_repository: str | None = None
    dockerfile_path: str | None = None
    init_dockerfile_path: str | None = None
    build_pipeline_name: str | None = None
    after_build_pipeline_name: str | None = None
    detach_after_build_pipeline: bool = False
    builder: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    init_env: dict[str, str] = field(default_factory=dict)
    resources: dict[str, Any] = field(default_factory=dict)
    readiness: dict[str, Any] = field(default_factory=dict)
    host: str | None = None
    port: int | None = None
    default_public_url: str | None = None
    restore: dict[str, Any] = field(default_factory=dict)
    depends_on_deployable_name: str | None = None
    deployment_depends_on: list[str] = field(default_factory=list)
    active: bool = True
    status: DeployStatus | None = None
    status_message: str | None = None
    id: int | None = None

    @property
    def effective_branch(self) -> str | None:
        return self.comment_branch_name or self.branch_name


@dataclass
class Deploy:
    """Stateful build+deploy unit for one Deployable in one build.

    ``deployable`` and ``build`` are in-memory references attached by the
    registrar; they are never persisted.
    """

    uuid: str
    build_id: int
    build_uuid: str
    name: str
    status: DeployStatus = DeployStatus.QUEUED
    status_message: str | None = None
    active: bool = True
    deployable_id: int | None = None
    service_id: int | None = None
    repository: str | None = None
    run_uuid: str | None = None
    branch_name: str | None = None
    tag: str | None = None
    sha: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    docker_image: str | None = None
    init_docker_image: str | None = None
    public_url: str | None = None
    internal_hostname: str | None = None
    build_output: str | None = None
    build_logs_url: str | None = None
    cname: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    id: int | None = None
    deployable: Deployable | None = field(default=None, repr=False, compare=False)
    build: Build | None = field(default=None, repr=False, compare=False)


def deploy_uuid(service_name: str, build_uuid: str) -> str:
    """Stable Deploy identity for ``(service, build)``."""
    return f"{service_name}-{build_uuid}"


# ── Engine / dependency value objects ────────────────────────────────────


@dataclass(frozen=True)
class BuildAttemptResult:
    """Outcome of one engine invocation."""

    success: bool
    logs: str = ""
    job_identifier: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "logs": self.logs, "job_identifier": self.job_identifier}


@dataclass(frozen=True)
class CrossServiceEnvBinding:
    """Wait for ``source_service_name`` and extract a value into ``target_env_key``.

    An empty ``extraction_pattern`` only sequences the build.
    """

    source_service_name: str
    target_env_key: str
    extraction_pattern: str = ""
