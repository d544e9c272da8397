"""Tests for envforge domain models and the Deploy status graph."""

from __future__ import annotations

import pytest

from envforge.models import (
    DEPLOY_VALID_TRANSITIONS,
    BuildAttemptResult,
    Deployable,
    DeployStatus,
    DeployType,
    InvalidTransitionError,
    deploy_uuid,
    validate_deploy_transition,
)


class TestDeployStatusTransitions:
    def test_happy_path(self):
        path = [
            DeployStatus.QUEUED,
            DeployStatus.CLONING,
            DeployStatus.WAITING,
            DeployStatus.BUILDING,
            DeployStatus.BUILT,
            DeployStatus.DEPLOYING,
            DeployStatus.READY,
        ]
        for current, target in zip(path, path[1:]):
            validate_deploy_transition(current, target)

    @pytest.mark.parametrize("start", [DeployStatus.QUEUED, DeployStatus.CLONING, DeployStatus.WAITING])
    def test_skip_to_built(self, start):
        validate_deploy_transition(start, DeployStatus.BUILT)

    def test_config_error_reachable_from_queued(self):
        validate_deploy_transition(DeployStatus.QUEUED, DeployStatus.CONFIG_ERROR)

    @pytest.mark.parametrize(
        "failure",
        [DeployStatus.ERROR, DeployStatus.BUILD_FAILED, DeployStatus.DEPLOY_FAILED, DeployStatus.CONFIG_ERROR],
    )
    def test_failures_only_retry_to_queued(self, failure):
        assert DEPLOY_VALID_TRANSITIONS[failure] == frozenset({DeployStatus.QUEUED})
        assert failure.is_failure

    def test_built_cannot_go_back_to_cloning(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_deploy_transition(DeployStatus.BUILT, DeployStatus.CLONING)
        assert exc_info.value.current == "built"
        assert exc_info.value.target == "cloning"

    def test_invalid_transition_is_value_error(self):
        with pytest.raises(ValueError):
            validate_deploy_transition(DeployStatus.BUILDING, DeployStatus.READY)

    def test_every_status_has_an_entry(self):
        assert set(DEPLOY_VALID_TRANSITIONS) == set(DeployStatus)


class TestDeployType:
    def test_values(self):
        assert DeployType("externalHTTP") is DeployType.EXTERNAL_HTTP
        assert DeployType("aurora-restore") is DeployType.AURORA_RESTORE

    def test_is_source_build(self):
        assert DeployType.GITHUB.is_source_build
        assert DeployType.CODEFRESH.is_source_build
        assert not DeployType.DOCKER.is_source_build


class TestIdentity:
    def test_deploy_uuid(self):
        assert deploy_uuid("api", "b1") == "api-b1"

    def test_effective_branch_prefers_comment_branch(self):
        d = Deployable(name="api", build_id=1, build_uuid="b1", type=DeployType.GITHUB, branch_name="main")
        assert d.effective_branch == "main"
        d.comment_branch_name = "hotfix"
        assert d.effective_branch == "hotfix"

    def test_build_attempt_result_to_dict(self):
        result = BuildAttemptResult(success=True, logs="ok", job_identifier="job-1")
        assert result.to_dict() == {"success": True, "logs": "ok", "job_identifier": "job-1"}
