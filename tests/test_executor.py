from __future__ import annotations

import pytest

from edge_deploy_kit.discovery import ManifestInfo, ResourceDiscovery
from edge_deploy_kit.errors import CommandExecutionError, EdgeDeployError
from edge_deploy_kit.executor import (
    DeployOptions,
    DeploymentExecutor,
    UrlContext,
    build_deploy_args,
    collect_forwarded_vars,
    extract_deployment_url,
    is_plausible_deployment_url,
)
from edge_deploy_kit.models import DatabaseConfig, DeploymentConfig, SecretsConfig, WorkerConfig


def _resolved_config() -> DeploymentConfig:
    return DeploymentConfig(
        domain="example.com",
        worker=WorkerConfig(name="foo"),
        database=DatabaseConfig(name="db", id="db-id"),
        secrets=SecretsConfig(keys={"A": "x" * 16}, resolved=True),
    )


def test_forwarded_vars_use_allow_list_only() -> None:
    environ = {
        "CLOUDFLARE_API_TOKEN": "tok-should-not-leak",
        "CLOUDFLARE_ACCOUNT_ID": "acc-1",
        "NODE_ENV": "production",
        "STAGING_URL": "https://staging.example.com",
        "HOME": "/root",
    }

    forwarded = collect_forwarded_vars("staging", environ, {"EXTRA": "1"})

    assert forwarded == {
        "CLOUDFLARE_ACCOUNT_ID": "acc-1",
        "NODE_ENV": "production",
        "STAGING_URL": "https://staging.example.com",
        "EXTRA": "1",
    }


def test_build_deploy_args_for_environment_manifest() -> None:
    manifest = ManifestInfo(config_path="config/wrangler.staging.toml", source="environment-manifest")

    args = build_deploy_args(manifest, "staging", DeployOptions(dry_run=True), {"LOG_LEVEL": "debug"})

    assert args == [
        "deploy",
        "--config",
        "config/wrangler.staging.toml",
        "--env",
        "staging",
        "--dry-run",
        "--var",
        "LOG_LEVEL:debug",
    ]


def test_production_without_env_sections_has_no_env_flag() -> None:
    manifest = ManifestInfo(config_path="wrangler.toml", source="root-manifest")

    assert build_deploy_args(manifest, "production", DeployOptions(), {}) == ["deploy"]


def test_url_strategies_in_order() -> None:
    ctx = UrlContext(environment="production", worker_name="foo", routes=("api.example.com/*",))

    assert extract_deployment_url("Deployed to: https://foo.workers.dev/\n", ctx) == "https://foo.workers.dev"
    assert extract_deployment_url("no url here", ctx) == "https://api.example.com"
    assert extract_deployment_url("no url here", UrlContext("production", "foo")) == "https://foo.workers.dev"
    assert extract_deployment_url("nothing", UrlContext("production")) is None


def test_environment_name_matches_host_labels_not_substrings() -> None:
    ctx = UrlContext(environment="dev", worker_name="shop-api")
    docs = "See https://developers.cloudflare.com/workers/ for details\n"

    assert not is_plausible_deployment_url("https://developers.cloudflare.com/workers", ctx)
    assert is_plausible_deployment_url("https://shop-api-dev.acme.workers.dev", ctx)
    assert is_plausible_deployment_url("https://dev.example.com", ctx)
    assert extract_deployment_url(docs, ctx) == "https://shop-api.workers.dev"


def test_deploy_extracts_url_and_never_forwards_token(wrangler, fake_wrangler, tmp_path) -> None:
    environ = {"CLOUDFLARE_API_TOKEN": "tok-secret-value", "SERVICE_NAME": "foo"}
    executor = DeploymentExecutor(wrangler, ResourceDiscovery(str(tmp_path)), environ=environ)

    result = executor.deploy("production", config=_resolved_config())

    assert result.success
    assert result.url == "https://foo.workers.dev"
    assert result.worker_name == "foo"
    deploy_call = fake_wrangler.calls_of("deploy")[0]
    assert deploy_call == ["deploy", "--var", "SERVICE_NAME:foo"]
    assert not any("tok-secret-value" in part for part in result.command)


def test_deploy_failure_raises_with_output(wrangler, fake_wrangler, tmp_path) -> None:
    fake_wrangler.deploy_returncode = 1
    fake_wrangler.deploy_output = "✘ [ERROR] Build failed\n"
    executor = DeploymentExecutor(wrangler, ResourceDiscovery(str(tmp_path)), environ={})

    with pytest.raises(CommandExecutionError) as excinfo:
        executor.deploy("production", config=_resolved_config())

    assert "Build failed" in excinfo.value.output


def test_unresolved_config_is_refused_but_dry_run_is_allowed(wrangler, fake_wrangler, tmp_path) -> None:
    executor = DeploymentExecutor(wrangler, ResourceDiscovery(str(tmp_path)), environ={})
    config = DeploymentConfig(domain="example.com", worker=WorkerConfig(name="foo"))

    with pytest.raises(EdgeDeployError) as excinfo:
        executor.deploy("production", config=config)
    assert "database" in excinfo.value.message
    assert fake_wrangler.calls_of("deploy") == []

    result = executor.deploy("production", DeployOptions(dry_run=True), config=config)
    assert result.dry_run
    assert result.url is None
