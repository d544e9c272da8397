"""
Collaborator contracts consumed by envforge.

These are the narrow seams to systems outside the orchestration core:
global configuration, source control, the cluster job API, the remote CI
service, the image registry, the notifier, log archival and the managed
datastore.  Components receive implementations through their
constructors; tests pass small in-memory fakes.

Architecture:
    ::

        protocols.py
        ├── GlobalConfigSource  — fetch a named config section
        ├── SourceControl       — branch → sha, declarative config text
        ├── ClusterJobRunner    — apply job, await completion, probe status
        ├── RemoteCIClient      — trigger pipeline, wait, fetch logs
        ├── RegistryClient      — does an image tag exist
        ├── Notifier            — status-change hook (fire-and-forget)
        ├── LogArchival         — archive build logs (best effort)
        └── DatastoreRestorer   — find-or-restore a tagged datastore

Guardrails:
    ❌ DON'T: Put implementation logic in protocol classes
    ✅ DO: Keep fakes in tests and real adapters in their own modules
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from envforge.models import Build, Deploy


@dataclass(frozen=True)
class JobCompletion:
    """Result of waiting on a cluster job."""

    success: bool
    logs: str = ""


@runtime_checkable
class GlobalConfigSource(Protocol):
    async def fetch(self, section: str) -> dict[str, Any]: ...


@runtime_checkable
class SourceControl(Protocol):
    async def get_sha_for_branch(self, repository: str, branch: str) -> str | None:
        """Return the head sha of *branch*, or None if it does not exist."""
        ...

    async def fetch_declarative_config(self, repository: str, branch: str) -> str | None:
        """Return the raw lifecycle YAML text on *branch*, or None if absent."""
        ...


@runtime_checkable
class ClusterJobRunner(Protocol):
    async def apply(self, job: dict[str, Any]) -> str:
        """Create the job and return its name."""
        ...

    async def await_completion(self, job_name: str, timeout_seconds: int) -> JobCompletion:
        """Wait for the job and collect its logs.

        Raises LogRetrievalError when the wait or log fetch itself fails.
        """
        ...

    async def probe_status(self, job_name: str) -> bool | None:
        """Return True if the job reports Complete, False if Failed, None if unknown."""
        ...


@runtime_checkable
class RemoteCIClient(Protocol):
    async def trigger(self, pipeline_name: str, branch: str, build_args: dict[str, str]) -> str:
        """Start a pipeline run and return its build id."""
        ...

    async def wait_for_completion(self, build_id: str, timeout_seconds: int) -> bool: ...

    async def fetch_logs(self, build_id: str) -> str: ...


@runtime_checkable
class RegistryClient(Protocol):
    async def tag_exists(self, registry_domain: str, repository: str, tag: str) -> bool: ...


@runtime_checkable
class Notifier(Protocol):
    async def on_status_change(self, deploy: Deploy, build: Build | None) -> None: ...


@runtime_checkable
class LogArchival(Protocol):
    async def archive(self, metadata: dict[str, Any], logs: str) -> None: ...


@runtime_checkable
class DatastoreRestorer(Protocol):
    async def find_existing(self, tags: dict[str, str]) -> str | None:
        """Return the endpoint of a datastore carrying *tags*, if any."""
        ...

    async def restore(self, tags: dict[str, str], config: dict[str, Any]) -> str:
        """Restore a datastore tagged with *tags* and return its endpoint."""
        ...
