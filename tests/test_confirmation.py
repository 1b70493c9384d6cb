from __future__ import annotations

import pytest

from edge_deploy_kit.audit import AuditLedger, AuditSession
from edge_deploy_kit.confirmation import ConfirmationGate, render_summary
from edge_deploy_kit.errors import UserCancelledError
from edge_deploy_kit.models import DatabaseConfig, DeploymentConfig, DeploymentState, WorkerConfig
from edge_deploy_kit.prompts import ScriptedOperator


@pytest.fixture
def audit(tmp_path) -> AuditLedger:
    ledger = AuditLedger(AuditSession(), audit_dir=str(tmp_path / "audit"), formats=["json"])
    ledger.start_deployment("deploy-1", "example.com")
    return ledger


def _config() -> DeploymentConfig:
    return DeploymentConfig(
        domain="example.com",
        worker=WorkerConfig(name="foo"),
        database=DatabaseConfig(name="db", id="db-id", created=True),
    )


def test_render_summary_marks_unknown_values() -> None:
    text = render_summary("Title", {"worker": "foo", "url": None}, [])

    assert text.splitlines()[0] == "# Title"
    assert "- url: (미정)" in text
    assert text.endswith("- (none)")


def test_approved_deployment_shows_summary_and_is_audited(audit) -> None:
    operator = ScriptedOperator([True])
    gate = ConfirmationGate(operator, audit, deployment_id="deploy-1")
    config = _config()

    gate.confirm_deployment(config, DeploymentState(config, deployment_id="deploy-1"))

    assert operator.prompts == [("confirm", "example.com 에 배포할까요?")]
    assert "D1 데이터베이스 생성됨: db" in operator.messages[0]
    events = audit.search(event_type="CONFIRMATION_GRANTED")
    assert events[0]["details"]["auto"] is False
    assert events[0]["domain"] == "example.com"


def test_declined_confirmation_cancels(audit) -> None:
    gate = ConfirmationGate(ScriptedOperator([False]), audit, deployment_id="deploy-1")
    config = _config()

    with pytest.raises(UserCancelledError) as excinfo:
        gate.confirm_deployment(config, DeploymentState(config, deployment_id="deploy-1"), dry_run=True)

    assert excinfo.value.phase == "confirmation"
    assert excinfo.value.exit_code == 3
    assert len(audit.search(event_type="CONFIRMATION_DECLINED")) == 1


def test_auto_approve_never_asks_but_records(audit) -> None:
    operator = ScriptedOperator()
    gate = ConfirmationGate(operator, audit, auto_approve=True, deployment_id="deploy-1")

    gate.confirm_dangerous("D1 데이터베이스 삭제", "데이터가 모두 사라집니다")

    assert operator.prompts == []
    assert audit.search(event_type="CONFIRMATION_GRANTED")[0]["details"]["auto"] is True


def test_dangerous_action_defaults_to_no() -> None:
    # 응답이 없으면 기본값(아니오)이 쓰인다.
    gate = ConfirmationGate(ScriptedOperator())

    with pytest.raises(UserCancelledError):
        gate.confirm_dangerous("D1 데이터베이스 삭제", "데이터가 모두 사라집니다")
