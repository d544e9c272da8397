"""Tests for KubectlJobRunner with a faked subprocess layer."""

from __future__ import annotations

import asyncio
import json

import pytest

from envforge.core.errors import LogRetrievalError, TransientInfrastructureError
from envforge.engines import KubectlJobRunner


class FakeProcess:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()
        self.stdin: bytes | None = None

    async def communicate(self, stdin=None):
        self.stdin = stdin
        return self._stdout, self._stderr

    def kill(self) -> None:
        pass

    async def wait(self) -> int:
        return self.returncode


@pytest.fixture()
def kubectl(monkeypatch):
    """Route subprocess calls to canned processes chosen by kubectl verb."""
    calls: list[list[str]] = []
    responses: dict[str, list[FakeProcess]] = {}

    async def fake_exec(*cmd, **kwargs):
        calls.append(list(cmd))
        verb = cmd[3]
        queue = responses.get(verb) or [FakeProcess()]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return calls, responses


@pytest.fixture()
def job_runner() -> KubectlJobRunner:
    return KubectlJobRunner("builds", poll_interval_seconds=0)


def _status(complete: str = "", failed: str = "") -> FakeProcess:
    return FakeProcess(stdout=f"{complete},{failed}")


class TestApply:
    @pytest.mark.asyncio
    async def test_pipes_job_json(self, job_runner, kubectl):
        calls, responses = kubectl
        process = FakeProcess()
        responses["apply"] = [process]
        job = {"metadata": {"name": "api-b1-build-x"}}

        assert await job_runner.apply(job) == "api-b1-build-x"
        assert calls[0] == ["kubectl", "-n", "builds", "apply", "-f", "-"]
        assert json.loads(process.stdin) == job

    @pytest.mark.asyncio
    async def test_failure_is_transient(self, job_runner, kubectl):
        _, responses = kubectl
        responses["apply"] = [FakeProcess(returncode=1, stderr="forbidden")]
        with pytest.raises(TransientInfrastructureError, match="forbidden"):
            await job_runner.apply({"metadata": {"name": "j"}})

    @pytest.mark.asyncio
    async def test_context_flag(self, kubectl):
        calls, _ = kubectl
        await KubectlJobRunner("builds", context="staging").apply({"metadata": {"name": "j"}})
        assert calls[0][:5] == ["kubectl", "-n", "builds", "--context", "staging"]


class TestProbeStatus:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("process", "expected"),
        [
            (_status(complete="True"), True),
            (_status(failed="True"), False),
            (_status(), None),
            (FakeProcess(returncode=1), None),
        ],
        ids=["complete", "failed", "running", "kubectl-error"],
    )
    async def test_states(self, job_runner, kubectl, process, expected):
        _, responses = kubectl
        responses["get"] = [process]
        assert await job_runner.probe_status("j") is expected


class TestAwaitCompletion:
    @pytest.mark.asyncio
    async def test_polls_until_done_then_fetches_logs(self, job_runner, kubectl):
        calls, responses = kubectl
        responses["get"] = [_status(), _status(complete="True")]
        responses["logs"] = [FakeProcess(stdout="[build] pushed v1.2.3\n")]

        completion = await job_runner.await_completion("j", timeout_seconds=60)

        assert completion.success is True
        assert completion.logs == "[build] pushed v1.2.3\n"
        assert [c[3] for c in calls] == ["get", "get", "logs"]

    @pytest.mark.asyncio
    async def test_failed_job_still_returns_logs(self, job_runner, kubectl):
        _, responses = kubectl
        responses["get"] = [_status(failed="True")]
        responses["logs"] = [FakeProcess(stdout="error: exit 1")]

        completion = await job_runner.await_completion("j", timeout_seconds=60)

        assert completion.success is False
        assert completion.logs == "error: exit 1"

    @pytest.mark.asyncio
    async def test_log_fetch_failure(self, job_runner, kubectl):
        _, responses = kubectl
        responses["get"] = [_status(complete="True")]
        responses["logs"] = [FakeProcess(returncode=1, stderr="container not found")]
        with pytest.raises(LogRetrievalError):
            await job_runner.await_completion("j", timeout_seconds=60)

    @pytest.mark.asyncio
    async def test_deadline(self, job_runner, kubectl):
        _, responses = kubectl
        responses["get"] = [_status()]
        with pytest.raises(LogRetrievalError, match="Timed out"):
            await job_runner.await_completion("j", timeout_seconds=0)
