from __future__ import annotations

import pytest

from edge_deploy_kit.errors import EdgeDeployError
from edge_deploy_kit.rollback import (
    DELETE_RESOURCE,
    DELETE_SECRET,
    RollbackAction,
    RollbackRegistry,
    plan_path,
)


def _action(kind: str, target: str) -> RollbackAction:
    return RollbackAction(
        type=kind,
        target=target,
        command=("npx", "wrangler", "noop", target),
        description=f"{kind} {target}",
    )


def _registry() -> RollbackRegistry:
    registry = RollbackRegistry(deployment_id="deploy-1")
    registry.register(_action(DELETE_RESOURCE, "db"))
    registry.register(_action(DELETE_SECRET, "A_KEY"))
    registry.register(_action(DELETE_SECRET, "B_KEY"))
    return registry


def test_replay_runs_in_reverse_registration_order() -> None:
    ran = []

    report = _registry().replay(lambda action: ran.append(action.target))

    assert ran == ["B_KEY", "A_KEY", "db"]
    assert report.status == "completed"
    assert len(report.succeeded) == 3


def test_replay_continues_after_a_failing_action() -> None:
    ran = []

    def runner(action: RollbackAction) -> None:
        ran.append(action.target)
        if action.target == "A_KEY":
            raise EdgeDeployError("secret delete failed")

    report = _registry().replay(runner)

    assert ran == ["B_KEY", "A_KEY", "db"]
    assert report.status == "partial"
    assert [o.action.target for o in report.failed] == ["A_KEY"]
    assert "secret delete failed" in report.failed[0].error
    assert "A_KEY: secret delete failed" in report.render()


def test_empty_registry_reports_empty() -> None:
    report = RollbackRegistry().replay(lambda action: None)

    assert report.status == "empty"
    assert "- (none)" in report.render()


def test_shared_action_list_sees_registrations() -> None:
    shared = []
    registry = RollbackRegistry(shared)
    registry.register(_action(DELETE_RESOURCE, "db"))

    assert len(shared) == 1
    assert registry.of_type(DELETE_RESOURCE)[0].target == "db"
    assert registry.of_type(DELETE_SECRET) == []


def test_plan_save_and_load(tmp_path) -> None:
    path = plan_path(str(tmp_path / "rollback"), "deploy-1")
    _registry().save(path)

    loaded = RollbackRegistry.load(path)

    assert loaded.deployment_id == "deploy-1"
    assert [a.target for a in loaded.actions] == ["db", "A_KEY", "B_KEY"]
    assert loaded.actions[0].command == ("npx", "wrangler", "noop", "db")


def test_loading_missing_plan_fails(tmp_path) -> None:
    with pytest.raises(EdgeDeployError) as excinfo:
        RollbackRegistry.load(str(tmp_path / "missing.json"))

    assert excinfo.value.remediation
