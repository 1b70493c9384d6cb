from __future__ import annotations

import json
import os

import pytest

from edge_deploy_kit.cf_secrets import (
    SecretProvisioningWorkflow,
    SecretSpec,
    SecretStore,
    generate_secrets,
    write_distribution,
)
from edge_deploy_kit.errors import CommandExecutionError
from edge_deploy_kit.prompts import NonInteractiveOperator, ScriptedOperator
from edge_deploy_kit.rollback import DELETE_SECRET, RollbackRegistry


SPECS = [SecretSpec("A_KEY", 32), SecretSpec("B_KEY", 32), SecretSpec("C_KEY", 48)]


def _workflow(wrangler, tmp_path, operator=None, **kwargs):  # noqa: ANN001
    registry = RollbackRegistry()
    store = SecretStore(str(tmp_path / "secrets"))
    workflow = SecretProvisioningWorkflow(
        wrangler,
        operator or NonInteractiveOperator(),
        registry,
        store,
        specs=SPECS,
        generate_distribution=kwargs.pop("generate_distribution", False),
        **kwargs,
    )
    return workflow, registry, store


def test_generated_values_have_requested_length_and_minimum() -> None:
    values = generate_secrets([SecretSpec("LONG", 64), SecretSpec("TINY", 4)])

    assert len(values["LONG"]) == 64
    assert len(values["TINY"]) >= 16
    assert all(int(v, 16) >= 0 for v in values.values())


def test_new_secrets_are_saved_then_deployed(wrangler, fake_wrangler, tmp_path) -> None:
    workflow, registry, store = _workflow(wrangler, tmp_path)

    config = workflow.handle_secret_management("example.com", "production", "foo")

    assert config.resolved and not config.reused
    assert sorted(config.keys) == ["A_KEY", "B_KEY", "C_KEY"]
    assert fake_wrangler.secrets == config.keys
    # 값은 명령줄이 아니라 stdin 으로만 전달된다.
    for call in fake_wrangler.calls_of("secret", "put"):
        assert not any(v in call for v in config.keys.values())
        assert call[3:5] == ["--name", "foo"]
        assert "--env" not in call
    assert [a.type for a in registry.actions] == [DELETE_SECRET] * 3

    with open(store.path_for("example.com"), "r", encoding="utf-8") as f:
        saved = json.load(f)
    assert saved["A_KEY"] == config.keys["A_KEY"]
    assert os.stat(store.path_for("example.com")).st_mode & 0o777 == 0o600


def test_failed_put_leaves_only_earlier_compensations(wrangler, fake_wrangler, tmp_path) -> None:
    fake_wrangler.fail_secret_at = 2
    workflow, registry, store = _workflow(wrangler, tmp_path)

    with pytest.raises(CommandExecutionError):
        workflow.handle_secret_management("example.com", "production", None)

    assert len(registry) == 1
    assert registry.actions[0].target == "A_KEY"
    # 로컬 파일은 배포 전에 저장되므로 남아 있다.
    assert store.load("example.com") is not None


def test_existing_secrets_are_reused_without_remote_calls(wrangler, fake_wrangler, tmp_path) -> None:
    workflow, registry, store = _workflow(wrangler, tmp_path)
    store.save("example.com", "production", {"A_KEY": "a" * 32, "B_KEY": "b" * 32})

    config = workflow.handle_secret_management("example.com", "production", "foo")

    assert config.reused
    assert config.keys == {"A_KEY": "a" * 32, "B_KEY": "b" * 32}
    assert fake_wrangler.calls == []
    assert len(registry) == 0


def test_declined_reuse_generates_new_values(wrangler, fake_wrangler, tmp_path) -> None:
    # 재사용(아니오) → 배포 확인(예)
    workflow, registry, store = _workflow(wrangler, tmp_path, ScriptedOperator([False, True]))
    store.save("example.com", "production", {"A_KEY": "a" * 32})

    config = workflow.handle_secret_management("example.com", "staging", None)

    assert not config.reused
    assert config.keys["A_KEY"] != "a" * 32
    assert len(registry) == 3
    for call in fake_wrangler.calls_of("secret", "put"):
        assert call[-2:] == ["--env", "staging"]


def test_distribution_bundle_files(tmp_path) -> None:
    target = write_distribution(
        str(tmp_path), "example.com", "production", {"A_KEY": "abc123"}, worker_name="foo"
    )

    env_text = (tmp_path / "distribution" / "example.com" / ".env").read_text(encoding="utf-8")
    script = (tmp_path / "distribution" / "example.com" / "deploy-secrets.sh").read_text(encoding="utf-8")
    assert target == os.path.join(str(tmp_path), "distribution", "example.com")
    assert "A_KEY=abc123" in env_text
    assert "secret put A_KEY --name foo --env production" in script
    assert os.access(os.path.join(target, "deploy-secrets.sh"), os.X_OK)
