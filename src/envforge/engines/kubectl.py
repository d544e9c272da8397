"""Cluster job runner backed by ``kubectl`` subprocesses.

Implements :class:`~envforge.protocols.ClusterJobRunner` with
``asyncio.create_subprocess_exec``:

    .. code-block:: text

        apply(job)            kubectl apply -f -            (JSON on stdin)
        await_completion()    poll probe_status until Complete or Failed
                              kubectl logs job/<name> --all-containers
        probe_status()        kubectl get job <name> -o jsonpath=...

Running past the wait budget or a failed ``kubectl logs`` raises
:class:`LogRetrievalError`, leaving the Complete/Failed decision to the
engine's status probe.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from envforge.core.errors import LogRetrievalError, TransientInfrastructureError
from envforge.protocols import JobCompletion

logger = logging.getLogger(__name__)


class KubectlJobRunner:
    """Run build Jobs through the ``kubectl`` binary."""

    def __init__(
        self,
        namespace: str,
        *,
        kubectl: str = "kubectl",
        context: str | None = None,
        poll_interval_seconds: float = 10.0,
    ) -> None:
        self._namespace = namespace
        self._kubectl = kubectl
        self._context = context
        self._poll_interval = poll_interval_seconds

    def _base_cmd(self) -> list[str]:
        cmd = [self._kubectl, "-n", self._namespace]
        if self._context:
            cmd += ["--context", self._context]
        return cmd

    async def _run(self, *args: str, stdin: bytes | None = None, timeout: float | None = None) -> tuple[int, str, str]:
        cmd = [*self._base_cmd(), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TransientInfrastructureError(f"kubectl not found: {self._kubectl}", cause=exc) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(stdin), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def apply(self, job: dict[str, Any]) -> str:
        name = job["metadata"]["name"]
        code, _, stderr = await self._run("apply", "-f", "-", stdin=json.dumps(job).encode())
        if code != 0:
            raise TransientInfrastructureError(f"kubectl apply failed for job {name}: {stderr.strip()}")
        logger.info("Applied job %s in %s", name, self._namespace)
        return name

    async def await_completion(self, job_name: str, timeout_seconds: int) -> JobCompletion:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        state: bool | None = None
        while state is None:
            if loop.time() >= deadline:
                raise LogRetrievalError(f"Timed out waiting for job {job_name} after {timeout_seconds}s")
            await asyncio.sleep(self._poll_interval)
            try:
                state = await self.probe_status(job_name)
            except TimeoutError:
                logger.warning("Status poll for job %s timed out", job_name)

        logs = await self._fetch_logs(job_name)
        return JobCompletion(success=state, logs=logs)

    async def _fetch_logs(self, job_name: str) -> str:
        try:
            code, stdout, stderr = await self._run(
                "logs", f"job/{job_name}", "--all-containers", "--prefix", timeout=120
            )
        except TimeoutError as exc:
            raise LogRetrievalError(f"Timed out fetching logs for job {job_name}", cause=exc) from exc
        if code != 0:
            raise LogRetrievalError(f"kubectl logs failed for job {job_name}: {stderr.strip()}")
        return stdout

    async def probe_status(self, job_name: str) -> bool | None:
        code, stdout, _ = await self._run(
            "get",
            "job",
            job_name,
            "-o",
            "jsonpath={.status.conditions[?(@.type=='Complete')].status},"
            "{.status.conditions[?(@.type=='Failed')].status}",
            timeout=30,
        )
        if code != 0:
            return None
        complete, _, failed = stdout.strip().partition(",")
        if complete == "True":
            return True
        if failed == "True":
            return False
        return None
