from __future__ import annotations

import pytest

from edge_deploy_kit.cf_d1 import CHOICE_RECREATE, DatabaseProvisioningWorkflow, default_database_name
from edge_deploy_kit.errors import ResourceConflictError, UserCancelledError
from edge_deploy_kit.prompts import NonInteractiveOperator, ScriptedOperator
from edge_deploy_kit.rollback import DELETE_RESOURCE, RollbackRegistry


class RecordingAudit:
    def __init__(self) -> None:
        self.events = []
        self.security = []

    def domain_of(self, deployment_id):  # noqa: ANN001
        return "example.com"

    def record(self, event_type, domain, details, deployment_id=None):  # noqa: ANN001
        self.events.append(event_type)

    def log_security_event(self, deployment_id, kind, details):  # noqa: ANN001
        self.security.append((kind, details))


def test_default_database_name_uses_domain_slug() -> None:
    assert default_database_name("API.Example.com") == "api-example-com-auth-db"


def test_absent_database_is_created_with_one_compensation(wrangler, fake_wrangler) -> None:
    registry = RollbackRegistry()
    workflow = DatabaseProvisioningWorkflow(wrangler, NonInteractiveOperator(), registry)

    db = workflow.handle_database_setup("example.com", "production")

    assert db.created and not db.reused
    assert db.name == "example-com-auth-db"
    assert fake_wrangler.databases[db.name] == db.id
    assert len(registry) == 1
    action = registry.actions[0]
    assert action.type == DELETE_RESOURCE
    assert action.target == db.name
    assert list(action.command[-3:]) == ["delete", db.name, "--skip-confirmation"]


def test_existing_database_is_reused_without_changes_in_non_interactive_mode(wrangler, fake_wrangler) -> None:
    fake_wrangler.databases["example-com-auth-db"] = "db-existing"
    registry = RollbackRegistry()
    audit = RecordingAudit()
    workflow = DatabaseProvisioningWorkflow(wrangler, NonInteractiveOperator(), registry, audit)

    db = workflow.handle_database_setup("example.com", "production")

    assert db.reused and not db.created
    assert db.id == "db-existing"
    assert len(registry) == 0
    assert fake_wrangler.calls_of("d1", "create") == []
    assert audit.events == ["DATABASE_REUSED"]


def test_declined_recreate_is_a_conflict(wrangler, fake_wrangler) -> None:
    fake_wrangler.databases["example-com-auth-db"] = "db-existing"
    # 이름 확인(예) → 기존 처리 선택(삭제 후 재생성) → 최종 확인(아니오)
    operator = ScriptedOperator([True, CHOICE_RECREATE, False])
    registry = RollbackRegistry()
    audit = RecordingAudit()
    workflow = DatabaseProvisioningWorkflow(wrangler, operator, registry, audit)

    with pytest.raises(ResourceConflictError):
        workflow.handle_database_setup("example.com", "production")

    assert fake_wrangler.calls_of("d1", "delete") == []
    assert fake_wrangler.databases["example-com-auth-db"] == "db-existing"
    assert len(registry) == 0
    assert audit.events == ["CONFIRMATION_DECLINED"]


def test_recreate_registers_only_new_resource_and_security_event(wrangler, fake_wrangler) -> None:
    fake_wrangler.databases["example-com-auth-db"] = "db-existing"
    operator = ScriptedOperator([True, CHOICE_RECREATE, True])
    registry = RollbackRegistry()
    audit = RecordingAudit()
    workflow = DatabaseProvisioningWorkflow(wrangler, operator, registry, audit)

    db = workflow.handle_database_setup("example.com", "production")

    assert db.created
    assert db.id != "db-existing"
    assert len(registry) == 1
    assert "DATABASE_DELETED" in audit.events
    # 파괴적 작업 승인이 삭제보다 먼저 감사 로그에 남는다.
    assert audit.events.index("CONFIRMATION_GRANTED") < audit.events.index("DATABASE_DELETED")
    assert operator.prompts[-1][0] == "confirm"
    assert audit.security[0][0] == "irreversible-database-deletion"


def test_new_name_choice_provisions_under_another_name(wrangler, fake_wrangler) -> None:
    fake_wrangler.databases["example-com-auth-db"] = "db-existing"
    operator = ScriptedOperator([True, 1, "example-com-auth-db-v2", True])
    registry = RollbackRegistry()
    workflow = DatabaseProvisioningWorkflow(wrangler, operator, registry)

    db = workflow.handle_database_setup("example.com", "production")

    assert db.name == "example-com-auth-db-v2"
    assert db.created
    assert fake_wrangler.databases["example-com-auth-db"] == "db-existing"


def test_declining_creation_cancels(wrangler, fake_wrangler) -> None:
    operator = ScriptedOperator([True, False])
    workflow = DatabaseProvisioningWorkflow(wrangler, operator, RollbackRegistry())

    with pytest.raises(UserCancelledError):
        workflow.handle_database_setup("example.com", "production")

    assert fake_wrangler.databases == {}
