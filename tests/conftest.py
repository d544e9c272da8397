"""
Shared pytest fixtures for envforge tests.

This module provides:
- An in-memory sqlite ledger with the envforge schema
- Settings with a zero poll interval so dependency waits never sleep
- In-memory fakes for every collaborator protocol
- Factories for builds and DB service templates

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    def test_something(ledger, make_build, scm):
        build = make_build(default_service_ids=(1,))
"""

import sqlite3
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure envforge package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from envforge.core.config import (
    BUILD_DEFAULTS,
    DOMAIN_DEFAULTS,
    EnvforgeSettings,
    GlobalConfigProvider,
    StaticConfigSource,
)
from envforge.ledger import DeployLedger
from envforge.models import (
    Build,
    DeployType,
    EnvironmentTemplate,
    PullRequestContext,
    ServiceOverride,
    ServiceTemplate,
)
from envforge.protocols import JobCompletion
from envforge.schema import create_schema

PR_REPO = "org/api"
PR_BRANCH = "feature/login"
REGISTRY_DOMAIN = "registry.internal:5000"


# =============================================================================
# Fakes
# =============================================================================


class FakeSourceControl:
    """SourceControl backed by dicts keyed on ``(repository, branch)``."""

    def __init__(self) -> None:
        self.shas: dict[tuple[str, str], str] = {}
        self.configs: dict[tuple[str, str], str] = {}
        self.failing: set[tuple[str, str]] = set()
        self.config_calls: list[tuple[str, str]] = []
        self.sha_calls: list[tuple[str, str]] = []
        self.sha_error: Exception | None = None

    async def get_sha_for_branch(self, repository: str, branch: str) -> str | None:
        self.sha_calls.append((repository, branch))
        if self.sha_error is not None:
            raise self.sha_error
        return self.shas.get((repository, branch))

    async def fetch_declarative_config(self, repository: str, branch: str) -> str | None:
        self.config_calls.append((repository, branch))
        if (repository, branch) in self.failing:
            raise RuntimeError(f"source control unavailable for {repository}@{branch}")
        return self.configs.get((repository, branch))


class FakeRegistry:
    """RegistryClient holding a set of ``domain/repo:tag`` references."""

    def __init__(self) -> None:
        self.images: set[str] = set()
        self.checks: list[str] = []
        self.error: Exception | None = None

    async def tag_exists(self, registry_domain: str, repository: str, tag: str) -> bool:
        ref = f"{registry_domain}/{repository}:{tag}"
        self.checks.append(ref)
        if self.error is not None:
            raise self.error
        return ref in self.images


class FakeNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.fail = False

    async def on_status_change(self, deploy, build) -> None:
        if self.fail:
            raise RuntimeError("notifier down")
        self.events.append((deploy.uuid, deploy.status.value))


class FakeJobRunner:
    """ClusterJobRunner that records applied jobs and returns a canned outcome."""

    def __init__(self) -> None:
        self.applied: list[dict[str, Any]] = []
        self.completion: JobCompletion | Exception = JobCompletion(success=True, logs="built ok")
        self.probe: bool | None = True
        self.apply_error: Exception | None = None

    async def apply(self, job: dict[str, Any]) -> str:
        if self.apply_error is not None:
            raise self.apply_error
        self.applied.append(job)
        return job["metadata"]["name"]

    async def await_completion(self, job_name: str, timeout_seconds: int) -> JobCompletion:
        if isinstance(self.completion, Exception):
            raise self.completion
        return self.completion

    async def probe_status(self, job_name: str) -> bool | None:
        return self.probe


class FakeCIClient:
    def __init__(self) -> None:
        self.triggered: list[tuple[str, str, dict[str, str]]] = []
        self.success = True
        self.logs = "pipeline finished"
        self.trigger_error: Exception | None = None
        self.logs_error: Exception | None = None

    async def trigger(self, pipeline_name: str, branch: str, build_args: dict[str, str]) -> str:
        if self.trigger_error is not None:
            raise self.trigger_error
        self.triggered.append((pipeline_name, branch, build_args))
        return f"cf-{len(self.triggered)}"

    async def wait_for_completion(self, build_id: str, timeout_seconds: int) -> bool:
        return self.success

    async def fetch_logs(self, build_id: str) -> str:
        if self.logs_error is not None:
            raise self.logs_error
        return self.logs


class FakeRestorer:
    def __init__(self) -> None:
        self.existing: dict[tuple[tuple[str, str], ...], str] = {}
        self.restores: list[dict[str, str]] = []
        self.error: Exception | None = None

    async def find_existing(self, tags: dict[str, str]) -> str | None:
        return self.existing.get(tuple(sorted(tags.items())))

    async def restore(self, tags: dict[str, str], config: dict[str, Any]) -> str:
        if self.error is not None:
            raise self.error
        self.restores.append(tags)
        endpoint = f"{tags['ServiceName']}-{tags['BuildUUID']}.cluster.rds.example.com"
        self.existing[tuple(sorted(tags.items()))] = endpoint
        return endpoint


class FakeArchival:
    def __init__(self) -> None:
        self.archived: list[tuple[dict[str, Any], str]] = []
        self.fail = False

    async def archive(self, metadata: dict[str, Any], logs: str) -> None:
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.archived.append((metadata, logs))


# =============================================================================
# Ledger / settings / config
# =============================================================================


@pytest.fixture()
def conn():
    connection = sqlite3.connect(":memory:")
    create_schema(connection)
    yield connection
    connection.close()


@pytest.fixture()
def ledger(conn) -> DeployLedger:
    return DeployLedger(conn)


@pytest.fixture()
def settings() -> EnvforgeSettings:
    return EnvforgeSettings(
        dependency_poll_attempts=3,
        dependency_poll_interval_seconds=0,
        max_concurrency=4,
    )


@pytest.fixture()
def config_source() -> StaticConfigSource:
    return StaticConfigSource(
        {
            BUILD_DEFAULTS: {
                "engine": "buildkit",
                "registry": {"domain": REGISTRY_DOMAIN, "repository": "team/apps"},
                "cache_registry": "cache.internal:5000",
            },
            DOMAIN_DEFAULTS: {"host": "preview.example.dev"},
        }
    )


@pytest.fixture()
def provider(config_source) -> GlobalConfigProvider:
    return GlobalConfigProvider(config_source)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture()
def scm() -> FakeSourceControl:
    return FakeSourceControl()


@pytest.fixture()
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def runner() -> FakeJobRunner:
    return FakeJobRunner()


@pytest.fixture()
def ci_client() -> FakeCIClient:
    return FakeCIClient()


@pytest.fixture()
def restorer() -> FakeRestorer:
    return FakeRestorer()


@pytest.fixture()
def archival() -> FakeArchival:
    return FakeArchival()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture()
def make_build(ledger):
    """Persist and return a Build for the default PR context."""

    def _make(
        *,
        id: int = 1,
        uuid: str = "b1",
        default_service_ids: tuple[int, ...] = (),
        optional_service_ids: tuple[int, ...] = (),
        classic_mode_only: bool = False,
        overrides: dict[str, ServiceOverride] | None = None,
        comment_runtime_env: dict[str, str] | None = None,
        repository: str = PR_REPO,
        branch_name: str | None = PR_BRANCH,
    ) -> Build:
        build = Build(
            id=id,
            uuid=uuid,
            pull_request=PullRequestContext(repository=repository, branch_name=branch_name, number=42),
            environment=EnvironmentTemplate(
                name="preview",
                default_service_ids=default_service_ids,
                optional_service_ids=optional_service_ids,
                classic_mode_only=classic_mode_only,
            ),
            overrides=overrides or {},
            comment_runtime_env=comment_runtime_env or {},
        )
        return ledger.save_build(build)

    return _make


@pytest.fixture()
def add_service(ledger):
    """Persist and return a DB service template."""

    def _add(id: int, name: str, type: DeployType = DeployType.GITHUB, **kwargs: Any) -> ServiceTemplate:
        if type == DeployType.GITHUB:
            kwargs.setdefault("repository", PR_REPO)
            kwargs.setdefault("branch_name", "main")
        return ledger.save_service(ServiceTemplate(id=id, name=name, type=type, **kwargs))

    return _add
