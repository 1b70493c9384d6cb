import sys
from typing import Optional

import click

from .audit import AuditLedger
from .config import KitConfig, load_env_files
from .errors import EXIT_FAILURE, EdgeDeployError
from .logging_utils import get_logger, setup_logging
from .cf_auth import CredentialInput
from .orchestrator import DeployRequest, build_credentials, build_pipeline, plan_text, rollback_deployment
from .prompts import ClickOperator, NonInteractiveOperator, OperatorInterface
from .rollback import RollbackPolicy


logger = get_logger(__name__)


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-vv 는 HTTP 로그까지 출력)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """Cloudflare Workers 배포용 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> KitConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    cfg = KitConfig.from_env(base_dir)
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _load_config_or_exit(ctx: click.Context) -> KitConfig:
    try:
        return _load_config_from_ctx(ctx)
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(EXIT_FAILURE)


def _operator(non_interactive: bool) -> OperatorInterface:
    if non_interactive or not sys.stdin.isatty():
        return NonInteractiveOperator()
    return ClickOperator()


def _credential_options(func):  # noqa: ANN001, ANN202
    func = click.option("--zone-id", default=None, help="Cloudflare 존 ID")(func)
    func = click.option("--account-id", default=None, help="Cloudflare 계정 ID")(func)
    func = click.option("--token", default=None, help="Cloudflare API 토큰 (기본: CLOUDFLARE_API_TOKEN)")(func)
    func = click.option(
        "--non-interactive",
        is_flag=True,
        help="프롬프트 없이 기본값으로 진행합니다. (stdin 이 터미널이 아니면 자동)",
    )(func)
    func = click.option("--environment", "-e", default="production", show_default=True, help="배포 환경")(func)
    func = click.option("--domain", "-d", required=True, help="배포 대상 도메인")(func)
    return func


@main.command(name="deploy")
@_credential_options
@click.option("--dry-run", is_flag=True, help="원격 리소스를 바꾸지 않고 wrangler deploy --dry-run 까지만 실행")
@click.option("--strict", is_flag=True, help="바인딩 불일치를 경고가 아닌 오류로 취급")
@click.option(
    "--first-deployment/--no-first-deployment",
    default=None,
    help="첫 배포 여부 (기본: 저장된 배포 기록으로 판단)",
)
@click.option("--yes", "-y", is_flag=True, help="최종 배포 확인을 자동 승인")
@click.option("--rollback-on-failure", is_flag=True, help="실패 시 보상 작업을 즉시 실행 (기본: 계획만 저장)")
@click.option("--skip-verify", is_flag=True, help="배포 후 엔드포인트 점검을 건너뜀")
@click.option(
    "--verify-mode",
    type=click.Choice(["smoke", "comprehensive"]),
    default="comprehensive",
    show_default=True,
)
@click.pass_context
def deploy(
    ctx: click.Context,
    domain: str,
    environment: str,
    non_interactive: bool,
    token: Optional[str],
    account_id: Optional[str],
    zone_id: Optional[str],
    dry_run: bool,
    strict: bool,
    first_deployment: Optional[bool],
    yes: bool,
    rollback_on_failure: bool,
    skip_verify: bool,
    verify_mode: str,
) -> None:
    """D1 / 시크릿을 준비하고 워커를 배포"""
    cfg = _load_config_or_exit(ctx)
    operator = _operator(non_interactive)
    policy = (
        RollbackPolicy.AUTOMATIC
        if rollback_on_failure or cfg.auto_rollback
        else RollbackPolicy.MANUAL
    )
    request = DeployRequest(
        domain=domain,
        environment=environment,
        dry_run=dry_run,
        token=token,
        account_id=account_id,
        zone_id=zone_id,
        strict=strict,
        first_deployment=first_deployment,
        auto_approve=yes,
        rollback_policy=policy,
        skip_verify=skip_verify,
        verify_mode=verify_mode,
    )

    try:
        pipeline = build_pipeline(cfg, operator=operator)
        outcome = pipeline.run(request)
    except Exception as e:  # noqa: BLE001
        logger.exception("배포 중 예상하지 못한 오류 발생")
        click.echo(f"[ERROR] 배포 실패: {e}", err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(outcome.render())

    if isinstance(outcome.error, EdgeDeployError):
        label = "취소" if outcome.state.status.value == "cancelled" else "배포 실패"
        click.echo(f"[ERROR] {label}: {outcome.error.format_message()}", err=True)
    sys.exit(outcome.exit_code)


@main.command()
@_credential_options
@click.option("--strict", is_flag=True, help="바인딩 불일치를 오류로 취급")
@click.pass_context
def check(
    ctx: click.Context,
    domain: str,
    environment: str,
    non_interactive: bool,
    token: Optional[str],
    account_id: Optional[str],
    zone_id: Optional[str],
    strict: bool,
) -> None:
    """
    접근 정보, 탐색, 6단계 검증만 수행한다.
    (원격 리소스 생성/변경은 하지 않는다)
    """
    cfg = _load_config_or_exit(ctx)
    request = DeployRequest(
        domain=domain,
        environment=environment,
        token=token,
        account_id=account_id,
        zone_id=zone_id,
        strict=strict,
    )
    try:
        pipeline = build_pipeline(cfg, operator=_operator(non_interactive))
        report, has_issues = pipeline.check(request)
    except EdgeDeployError as e:
        click.echo(f"[ERROR] 체크 실패: {e.format_message()}", err=True)
        sys.exit(e.exit_code)

    click.echo(report)

    # 치명적인 이슈가 있으면 exit 1 로 종료하여 CI 등에서 감지 가능하게 한다.
    if has_issues:
        sys.exit(EXIT_FAILURE)


@main.command()
@click.option("--domain", "-d", required=True, help="배포 대상 도메인")
@click.option("--environment", "-e", default="production", show_default=True, help="배포 환경")
@click.pass_context
def plan(ctx: click.Context, domain: str, environment: str) -> None:
    """탐색된 설정과 실행될 단계를 출력 (원격 호출 없음)"""
    cfg = _load_config_or_exit(ctx)
    click.echo(plan_text(cfg, domain, environment))


@main.command()
@click.argument("deployment_id")
@click.option("--yes", "-y", is_flag=True, help="확인 없이 바로 실행")
@click.option("--token", default=None, help="Cloudflare API 토큰 (없으면 환경변수/캐시/입력 순)")
@click.option("--account-id", default=None, help="Cloudflare 계정 ID")
@click.pass_context
def rollback(
    ctx: click.Context,
    deployment_id: str,
    yes: bool,
    token: Optional[str],
    account_id: Optional[str],
) -> None:
    """저장된 롤백 계획을 역순으로 실행"""
    cfg = _load_config_or_exit(ctx)
    operator = _operator(False)
    try:
        report = rollback_deployment(
            cfg,
            deployment_id,
            operator=operator,
            audit=AuditLedger.from_config(cfg),
            auto_approve=yes,
            credentials=build_credentials(cfg, operator),
            explicit=CredentialInput(token=token, account_id=account_id),
        )
    except EdgeDeployError as e:
        click.echo(f"[ERROR] 롤백 실패: {e.format_message()}", err=True)
        sys.exit(e.exit_code)

    click.echo(report.render())
    if report.failed:
        sys.exit(EXIT_FAILURE)
