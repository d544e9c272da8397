"""Tests for DeployLedger persistence and the run_uuid staleness guard."""

from __future__ import annotations

import pytest

from envforge.models import Deploy, Deployable, DeployStatus, DeployType, ServiceOverride, ServiceTemplate


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture()
def deploy(ledger, make_build) -> Deploy:
    build = make_build()
    return ledger.create_deploy(
        Deploy(uuid="api-b1", build_id=build.id, build_uuid=build.uuid, name="api", service_id=7)
    )


# ── Templates and builds ─────────────────────────────────────────────────


class TestTemplates:
    def test_service_round_trip_keeps_attributes(self, ledger):
        ledger.save_service(
            ServiceTemplate(
                id=1,
                name="api",
                type=DeployType.GITHUB,
                repository="org/api",
                env={"PORT": "8080"},
                builder="kaniko",
            )
        )
        service = ledger.get_service(1)
        assert service.name == "api"
        assert service.env == {"PORT": "8080"}
        assert service.builder == "kaniko"

    def test_list_dependents(self, ledger):
        ledger.save_service(ServiceTemplate(id=1, name="api", type=DeployType.GITHUB))
        ledger.save_service(ServiceTemplate(id=2, name="worker", type=DeployType.GITHUB, depends_on_service_id=1))
        ledger.save_service(ServiceTemplate(id=3, name="cron", type=DeployType.GITHUB, depends_on_service_id=2))
        assert [s.name for s in ledger.list_dependents(1)] == ["worker"]

    def test_build_round_trip(self, ledger, make_build):
        make_build(
            default_service_ids=(1, 2),
            optional_service_ids=(3,),
            overrides={"api": ServiceOverride(branch_name="hotfix", active=True)},
            comment_runtime_env={"DEBUG": "1"},
        )
        build = ledger.get_build("b1")
        assert build.environment.default_service_ids == (1, 2)
        assert build.environment.optional_service_ids == (3,)
        assert build.overrides["api"].branch_name == "hotfix"
        assert build.comment_runtime_env == {"DEBUG": "1"}

    def test_missing_build(self, ledger):
        assert ledger.get_build("nope") is None


class TestDeployables:
    def test_upsert_is_keyed_on_build_and_name(self, ledger):
        d = Deployable(name="api", build_id=1, build_uuid="b1", type=DeployType.GITHUB, env={"A": "1"})
        ledger.upsert_deployable(d)
        first_id = d.id

        again = Deployable(name="api", build_id=1, build_uuid="b1", type=DeployType.GITHUB, env={"A": "2"})
        ledger.upsert_deployable(again)

        assert again.id == first_id
        stored = ledger.list_deployables(1)
        assert len(stored) == 1
        assert stored[0].env == {"A": "2"}

    def test_status_persists(self, ledger):
        d = Deployable(
            name="auth",
            build_id=1,
            build_uuid="b1",
            type=DeployType.GITHUB,
            status=DeployStatus.CONFIG_ERROR,
            status_message="no config",
        )
        ledger.upsert_deployable(d)
        stored = ledger.find_deployable(1, "auth")
        assert stored.status == DeployStatus.CONFIG_ERROR
        assert stored.status_message == "no config"


# ── Deploys ──────────────────────────────────────────────────────────────


class TestDeploys:
    def test_create_and_get(self, ledger, deploy):
        stored = ledger.get_deploy("api-b1")
        assert stored.id == deploy.id
        assert stored.status == DeployStatus.QUEUED
        assert stored.env == {}

    def test_find_by_service_then_deployable(self, ledger, deploy):
        assert ledger.find_deploy(1, service_id=7).uuid == "api-b1"
        assert ledger.find_deploy(1, service_id=99) is None

    def test_update_deploy_rejects_status(self, ledger, deploy):
        with pytest.raises(ValueError):
            ledger.update_deploy("api-b1", {"status": DeployStatus.BUILT})

    def test_update_deploy_rejects_identity_columns(self, ledger, deploy):
        with pytest.raises(ValueError):
            ledger.update_deploy("api-b1", {"uuid": "other"})

    def test_count(self, ledger, deploy):
        assert ledger.count_deploys(1) == 1


class TestStalenessGuard:
    def test_start_attempt_issues_token_and_resets_status(self, ledger, deploy):
        token = ledger.start_attempt("api-b1")
        assert ledger.patch_deploy("api-b1", token, {"status": DeployStatus.CLONING})

        new_token = ledger.start_attempt("api-b1")
        stored = ledger.get_deploy("api-b1")
        assert new_token != token
        assert stored.run_uuid == new_token
        assert stored.status == DeployStatus.QUEUED

    def test_stale_patch_is_dropped(self, ledger, deploy):
        t1 = ledger.start_attempt("api-b1")
        t2 = ledger.start_attempt("api-b1")

        assert ledger.patch_deploy("api-b1", t2, {"status": DeployStatus.BUILT, "tag": "new"})
        assert not ledger.patch_deploy("api-b1", t1, {"status": DeployStatus.BUILD_FAILED, "tag": "old"})

        stored = ledger.get_deploy("api-b1")
        assert stored.status == DeployStatus.BUILT
        assert stored.tag == "new"

    def test_start_attempt_unknown_deploy(self, ledger):
        with pytest.raises(KeyError):
            ledger.start_attempt("ghost-b1")

    def test_build_output(self, ledger, deploy):
        token = ledger.start_attempt("api-b1")
        assert ledger.get_build_output("api-b1") is None
        ledger.patch_deploy("api-b1", token, {"build_output": "built v1.2.3"})
        assert ledger.get_build_output("api-b1") == "built v1.2.3"

    def test_start_attempt_clears_previous_output(self, ledger, deploy):
        token = ledger.start_attempt("api-b1")
        ledger.patch_deploy(
            "api-b1",
            token,
            {"status": DeployStatus.BUILT, "build_output": "built v1.2.3", "build_logs_url": "https://ci/1", "tag": "t1"},
        )

        ledger.start_attempt("api-b1")

        stored = ledger.get_deploy("api-b1")
        assert stored.build_output is None
        assert stored.build_logs_url is None
        assert stored.tag == "t1"
