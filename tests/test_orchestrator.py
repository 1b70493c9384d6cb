from __future__ import annotations

import dataclasses
import functools
import os

import httpx
import pytest

from edge_deploy_kit.assessment import AssessmentProvider, AssessmentResult, Finding
from edge_deploy_kit.audit import AuditLedger, AuditSession
from edge_deploy_kit.cf_auth import CredentialProvider, TokenCache
from edge_deploy_kit.cf_secrets import SecretSpec, SecretStore
from edge_deploy_kit.discovery import ResourceDiscovery
from edge_deploy_kit.local_state import SavedConfigStore
from edge_deploy_kit.models import DeploymentStatus
from edge_deploy_kit.orchestrator import (
    PHASES,
    DeploymentPipeline,
    DeployRequest,
    plan_text,
    rollback_deployment,
)
from edge_deploy_kit.prompts import NonInteractiveOperator, ScriptedOperator
from edge_deploy_kit.rollback import (
    DELETE_RESOURCE,
    DELETE_SECRET,
    RollbackPolicy,
    RollbackRegistry,
    plan_path,
)
from edge_deploy_kit.validation import ValidationPipeline
from edge_deploy_kit.verifier import PostDeploymentVerifier


ACCOUNT_ID = "0123456789abcdef0123456789abcdef"
SPECS = [SecretSpec("A_KEY", 32), SecretSpec("B_KEY", 32)]

MANIFEST = """
name = "foo"
main = "src/index.ts"
compatibility_date = "2024-09-01"

[[d1_databases]]
binding = "DB"
database_name = "shop-db"
"""


def _no_remote_client(token):  # noqa: ANN001
    raise AssertionError("명시적 접근 정보가 있으면 원격 조회를 하지 않아야 한다")


def _request(**overrides) -> DeployRequest:
    values = dict(domain="example.com", token="tok-e2e-0000000001", account_id=ACCOUNT_ID, zone_id="zone-1")
    values.update(overrides)
    return DeployRequest(**values)


@pytest.fixture
def http_statuses():
    return {"/health": 200, "/": 200, "/api": 200}


@pytest.fixture
def build(kit_config, wrangler, http_statuses, tmp_path):
    (tmp_path / "wrangler.toml").write_text(MANIFEST, encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(http_statuses.get(request.url.path, 404))

    http = httpx.Client(transport=httpx.MockTransport(handler))

    def make(operator, cfg=None, **kwargs):  # noqa: ANN001, ANN202
        cfg = cfg or kit_config
        store = SavedConfigStore(cfg.state_path)
        audit = AuditLedger(AuditSession(), audit_dir=cfg.audit_path, formats=["json"])
        return DeploymentPipeline(
            cfg,
            operator=operator,
            wrangler=wrangler,
            credentials=CredentialProvider(operator, client_factory=_no_remote_client),
            discovery=ResourceDiscovery(cfg.base_dir, store=store),
            audit=audit,
            secret_store=SecretStore(cfg.secrets_path),
            config_store=store,
            secret_specs=SPECS,
            validation_factory=functools.partial(
                ValidationPipeline,
                http_client=http,
                which=lambda name: None,
                memory_probe=lambda: 8 * 1024 ** 3,
            ),
            verifier_factory=functools.partial(PostDeploymentVerifier, http_client=http),
            environ={},
            **kwargs,
        )

    yield make
    http.close()


def _real_deploys(fake_wrangler):  # noqa: ANN001, ANN202
    return [c for c in fake_wrangler.calls_of("deploy") if "--dry-run" not in c]


def test_first_deployment_end_to_end(build, fake_wrangler, kit_config) -> None:
    pipeline = build(NonInteractiveOperator())

    outcome = pipeline.run(_request())

    assert outcome.exit_code == 0
    state = outcome.state
    assert state.status is DeploymentStatus.SUCCEEDED
    assert state.completed_phases == PHASES
    assert state.config.frozen
    assert state.config.database.created
    assert state.config.database.name == "shop-db"
    assert [a.type for a in state.rollback_actions] == [DELETE_RESOURCE, DELETE_SECRET, DELETE_SECRET]
    assert outcome.result.url == "https://foo.workers.dev"
    assert outcome.verification.passed and len(outcome.verification.checks) == 3
    assert len(_real_deploys(fake_wrangler)) == 1
    # 매니페스트가 있으면 시크릿 등록에 --name 을 붙이지 않는다.
    assert all("--name" not in c for c in fake_wrangler.calls_of("secret", "put"))

    stored = SavedConfigStore(kit_config.state_path).load("example.com", "production")
    assert stored["worker"]["url"] == "https://foo.workers.dev"
    assert stored["database"]["id"] == state.config.database.id
    assert not os.path.exists(plan_path(kit_config.rollback_path, state.deployment_id))

    text = outcome.render()
    assert "# Deploy summary" in text
    assert "- status: succeeded" in text
    assert "## Audit report" in text
    assert set(outcome.report.files) == {"json", "txt", "csv"}


def test_first_deployment_without_manifest(build, fake_wrangler, tmp_path) -> None:
    os.remove(tmp_path / "wrangler.toml")

    outcome = build(NonInteractiveOperator()).run(_request())

    assert outcome.exit_code == 0
    config = outcome.state.config
    assert config.worker.name == "example-com-data-service"
    assert config.database.created
    assert config.database.name == "example-com-auth-db"
    assert [a.type for a in outcome.state.rollback_actions] == [DELETE_RESOURCE, DELETE_SECRET, DELETE_SECRET]
    # 매니페스트가 없으면 시크릿 등록에 워커 이름을 직접 넘긴다.
    puts = fake_wrangler.calls_of("secret", "put")
    assert len(puts) == 2
    assert all(c[c.index("--name") + 1] == "example-com-data-service" for c in puts)
    assert outcome.validation[3].warnings
    assert len(_real_deploys(fake_wrangler)) == 1


def test_second_run_reuses_everything(build, fake_wrangler) -> None:
    build(NonInteractiveOperator()).run(_request())
    fake_wrangler.calls.clear()

    outcome = build(NonInteractiveOperator()).run(_request())

    assert outcome.exit_code == 0
    config = outcome.state.config
    assert config.database.reused
    assert config.secrets.reused
    assert outcome.state.rollback_actions == []
    assert fake_wrangler.calls_of("d1", "create") == []
    assert fake_wrangler.calls_of("secret", "put") == []
    # 이전 배포 URL 이 있으므로 endpoints 검증도 실행된다.
    assert outcome.validation[4].status.value == "passed"


def test_declined_confirmation_cancels_without_rollback(build, fake_wrangler, kit_config) -> None:
    # DB 이름 확인, DB 생성, 시크릿 배포까지 승인하고 최종 배포 확인에서 거절한다.
    operator = ScriptedOperator([True, True, True, False])
    pipeline = build(operator)

    outcome = pipeline.run(_request())

    assert outcome.exit_code == 3
    state = outcome.state
    assert state.status is DeploymentStatus.CANCELLED
    assert state.failed_phase == "confirmation"
    assert _real_deploys(fake_wrangler) == []
    assert fake_wrangler.calls_of("d1", "delete") == []
    assert "shop-db" in fake_wrangler.databases

    cancelled = pipeline.audit.search(event_type="DEPLOYMENT_CANCELLED")
    assert cancelled[0]["details"]["errorType"] == "UserCancelledError"
    assert outcome.rollback_plan == plan_path(kit_config.rollback_path, state.deployment_id)
    assert os.path.exists(outcome.rollback_plan)


def test_failed_deploy_with_automatic_rollback(build, fake_wrangler, kit_config) -> None:
    fake_wrangler.deploy_returncode = 1
    fake_wrangler.deploy_output = "✘ [ERROR] Build failed\n"
    replayed = []
    pipeline = build(NonInteractiveOperator(), rollback_runner=lambda action: replayed.append(action.target))

    outcome = pipeline.run(_request(rollback_policy=RollbackPolicy.AUTOMATIC))

    assert outcome.exit_code == 1
    assert outcome.failed_phase == "execute"
    assert replayed == ["B_KEY", "A_KEY", "shop-db"]
    assert outcome.rollback_report.status == "completed"
    assert outcome.rollback_plan is None
    assert outcome.report.data["errors"][0]["errorType"] == "CommandExecutionError"
    assert "# Rollback summary" in outcome.render()


def test_failed_deploy_saves_plan_for_manual_rollback(build, fake_wrangler, kit_config) -> None:
    fake_wrangler.deploy_returncode = 1
    outcome = build(NonInteractiveOperator()).run(_request())

    assert outcome.exit_code == 1
    assert outcome.rollback_report is None
    path = outcome.rollback_plan
    assert path and os.path.exists(path)
    assert f"deploy-edge rollback {outcome.state.deployment_id}" in outcome.render()

    replayed = []
    report = rollback_deployment(
        kit_config,
        outcome.state.deployment_id,
        operator=NonInteractiveOperator(),
        auto_approve=True,
        runner=lambda action: replayed.append(action.type),
    )

    assert report.status == "completed"
    assert replayed == [DELETE_SECRET, DELETE_SECRET, DELETE_RESOURCE]
    assert not os.path.exists(path)


def test_partial_manual_rollback_keeps_failed_actions(build, fake_wrangler, kit_config) -> None:
    fake_wrangler.deploy_returncode = 1
    outcome = build(NonInteractiveOperator()).run(_request())

    def runner(action):  # noqa: ANN001, ANN202
        if action.target == "shop-db":
            raise RuntimeError("d1 delete failed")

    report = rollback_deployment(
        kit_config, outcome.state.deployment_id, operator=NonInteractiveOperator(), auto_approve=True, runner=runner
    )

    assert report.status == "partial"
    kept = RollbackRegistry.load(outcome.rollback_plan)
    assert [a.target for a in kept.actions] == ["shop-db"]


def test_partial_automatic_rollback_keeps_only_failed_actions(build, fake_wrangler) -> None:
    fake_wrangler.deploy_returncode = 1

    def runner(action):  # noqa: ANN001, ANN202
        if action.target == "shop-db":
            raise RuntimeError("d1 delete failed")

    outcome = build(NonInteractiveOperator(), rollback_runner=runner).run(
        _request(rollback_policy=RollbackPolicy.AUTOMATIC)
    )

    assert outcome.rollback_report.status == "partial"
    kept = RollbackRegistry.load(outcome.rollback_plan)
    # 이미 지운 시크릿은 계획에 다시 넣지 않는다.
    assert [a.target for a in kept.actions] == ["shop-db"]


class _AccountOnlyClient:
    def __init__(self) -> None:
        self.calls = []

    def verify_token(self):  # noqa: ANN201
        self.calls.append("verify")
        return {"status": "active"}

    def list_accounts(self):  # noqa: ANN201
        self.calls.append("accounts")
        return [{"id": ACCOUNT_ID, "name": "Example"}]

    def list_zones(self, account_id=None):  # noqa: ANN001, ANN201
        raise AssertionError("롤백에는 존 조회가 필요 없다")

    def close(self) -> None:
        self.calls.append("close")


def test_manual_rollback_authenticates_wrangler_with_cached_token(build, fake_wrangler, wrangler, kit_config) -> None:
    fake_wrangler.deploy_returncode = 1
    outcome = build(NonInteractiveOperator()).run(_request())
    cache = TokenCache(kit_config.token_cache_path)
    cache.save("tok-cached-0000000001")
    fake_wrangler.envs.clear()
    client = _AccountOnlyClient()

    report = rollback_deployment(
        kit_config,
        outcome.state.deployment_id,
        operator=NonInteractiveOperator(),
        auto_approve=True,
        credentials=CredentialProvider(
            NonInteractiveOperator(), token_cache=cache, client_factory=lambda token: client
        ),
        environ={},
        wrangler=wrangler,
    )

    assert report.status == "completed"
    assert "shop-db" not in fake_wrangler.databases
    assert fake_wrangler.secrets == {}
    assert len(fake_wrangler.envs) == 3
    for env in fake_wrangler.envs:
        assert env["CLOUDFLARE_API_TOKEN"] == "tok-cached-0000000001"
        assert env["CLOUDFLARE_ACCOUNT_ID"] == ACCOUNT_ID
    assert client.calls == ["verify", "accounts", "close"]


def test_secret_failure_leaves_earlier_compensations(build, fake_wrangler) -> None:
    fake_wrangler.fail_secret_at = 2
    outcome = build(NonInteractiveOperator()).run(_request())

    assert outcome.exit_code == 1
    assert outcome.failed_phase == "secrets"
    assert [a.target for a in outcome.state.rollback_actions] == ["shop-db", "A_KEY"]
    assert _real_deploys(fake_wrangler) == []


def test_failed_verification_exits_with_distinct_code(build, http_statuses) -> None:
    http_statuses["/"] = 502

    outcome = build(NonInteractiveOperator()).run(_request())

    assert outcome.exit_code == 4
    assert outcome.state.status is DeploymentStatus.SUCCEEDED
    assert not outcome.verification.passed


def test_dry_run_changes_nothing_remote(build, fake_wrangler, kit_config) -> None:
    outcome = build(NonInteractiveOperator()).run(_request(dry_run=True))

    assert outcome.exit_code == 0
    assert outcome.result.dry_run
    assert outcome.verification.skipped
    assert fake_wrangler.calls_of("d1", "create") == []
    assert fake_wrangler.calls_of("secret", "put") == []
    assert all("--dry-run" in c for c in fake_wrangler.calls_of("deploy"))
    assert SavedConfigStore(kit_config.state_path).load("example.com", "production") is None


def test_blocking_assessment_stops_before_confirmation(build, fake_wrangler) -> None:
    class Blocker(AssessmentProvider):
        name = "blocker"

        def assess(self, config, manifest):  # noqa: ANN001, ANN201
            return AssessmentResult([Finding("no-prod-on-friday", "금요일 배포 금지", blocking=True)])

    pipeline = build(NonInteractiveOperator(), assessment=Blocker())
    outcome = pipeline.run(_request())

    assert outcome.exit_code == 1
    assert outcome.failed_phase == "assessment"
    assert _real_deploys(fake_wrangler) == []
    assert len(pipeline.audit.search(event_type="COMPLIANCE_VIOLATION")) == 1


def test_check_reports_every_category(build, kit_config) -> None:
    text, has_issues = build(NonInteractiveOperator()).check(_request())
    assert not has_issues
    assert "- readiness: passed" in text

    cfg = dataclasses.replace(kit_config, required_commands=["node"])
    text, has_issues = build(NonInteractiveOperator(), cfg=cfg).check(_request())
    assert has_issues
    assert "prerequisites: 필요한 명령을 찾을 수 없습니다: node" in text
    # 실패한 카테고리가 있어도 나머지 카테고리까지 모두 확인한다.
    assert "- readiness: passed" in text


def test_plan_text_makes_no_remote_calls(build, fake_wrangler, kit_config) -> None:
    build(NonInteractiveOperator())

    text = plan_text(kit_config, "example.com")

    assert "- worker: foo" in text
    assert "- database: shop-db" in text
    assert "- first_deployment: True" in text
    assert fake_wrangler.calls == []
