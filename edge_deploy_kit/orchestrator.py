"""
orchestrator
------------

배포 파이프라인 조립과 실행.

단계 순서 (앞 단계가 끝나기 전에는 다음 단계를 시작하지 않는다)

    credentials -> discovery -> database -> secrets -> validation
    -> assessment -> confirmation -> execute -> verify

- 원격 리소스를 바꾼 단계는 RollbackRegistry 에 보상 작업을 남긴다.
- 치명적 오류가 나면 정책(RollbackPolicy)에 따라 즉시 롤백하거나 계획만 저장한다.
- 운영자 취소(UserCancelledError)는 정상 취소이며 롤백하지 않는다.
- 성공/실패와 관계없이 감사 세션은 항상 end_deployment 로 닫고 보고서를 남긴다.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .assessment import AssessmentProvider, AssessmentResult, NoOpAssessmentProvider
from .audit import AuditLedger, DeploymentReport
from .cf_api import CloudflareClient
from .cf_auth import CredentialInput, CredentialProvider, TokenCache
from .cf_d1 import DatabaseProvisioningWorkflow, default_database_name
from .cf_secrets import DEFAULT_SECRET_SPECS, SecretProvisioningWorkflow, SecretSpec, SecretStore
from .config import KitConfig
from .confirmation import ConfirmationGate
from .discovery import PartialDeploymentConfig, ResourceDiscovery
from .errors import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    EXIT_VERIFICATION_FAILED,
    EdgeDeployError,
    UserCancelledError,
    ValidationPhaseError,
)
from .executor import DeploymentExecutor, DeploymentResult, DeployOptions, needs_env_flag
from .local_state import SavedConfigStore, domain_slug
from .logging_utils import get_logger
from .models import (
    VALIDATION_ORDER,
    DatabaseConfig,
    DeploymentConfig,
    DeploymentState,
    SecretsConfig,
    ValidationResult,
    WorkerConfig,
    merge_worker,
)
from .prompts import OperatorInterface
from .rollback import (
    RollbackPolicy,
    RollbackReport,
    RollbackRegistry,
    Runner,
    plan_path,
)
from .validation import ValidationContext, ValidationPipeline
from .verifier import PostDeploymentVerifier, VerificationReport, skipped_report
from .wrangler import WranglerCLI


logger = get_logger(__name__)

PHASES: List[str] = [
    "credentials",
    "discovery",
    "database",
    "secrets",
    "validation",
    "assessment",
    "confirmation",
    "execute",
    "verify",
]


def default_worker_name(domain: str) -> str:
    return f"{domain_slug(domain)}-data-service"


@dataclass
class DeployRequest:
    domain: str
    environment: str = "production"
    dry_run: bool = False
    token: Optional[str] = None
    account_id: Optional[str] = None
    zone_id: Optional[str] = None
    strict: bool = False
    # None 이면 저장된 배포 기록으로 판단한다.
    first_deployment: Optional[bool] = None
    auto_approve: bool = False
    rollback_policy: RollbackPolicy = RollbackPolicy.MANUAL
    skip_verify: bool = False
    verify_mode: str = "comprehensive"
    vars: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineOutcome:
    exit_code: int
    state: DeploymentState
    result: Optional[DeploymentResult] = None
    validation: List[ValidationResult] = field(default_factory=list)
    assessment: Optional[AssessmentResult] = None
    verification: Optional[VerificationReport] = None
    error: Optional[BaseException] = None
    report: Optional[DeploymentReport] = None
    rollback_report: Optional[RollbackReport] = None
    rollback_plan: Optional[str] = None

    @property
    def failed_phase(self) -> Optional[str]:
        return self.state.failed_phase

    def render(self) -> str:
        state = self.state
        config = state.config
        lines: List[str] = []
        lines.append("# Deploy summary")
        lines.append(f"- deployment_id: {state.deployment_id}")
        lines.append(f"- domain: {config.domain}")
        lines.append(f"- environment: {config.environment}")
        lines.append(f"- status: {state.status.value}")
        if state.failed_phase:
            lines.append(f"- failed_phase: {state.failed_phase}")
        lines.append(f"- worker: {config.worker.name or '(미정)'}")
        lines.append(f"- url: {(self.result.url if self.result else None) or '(없음)'}")
        if config.database.name:
            how = "created" if config.database.created else "reused" if config.database.reused else "planned"
            lines.append(f"- database: {config.database.name} ({config.database.id or '-'}, {how})")
        lines.append(
            f"- secrets: {len(config.secrets.keys)}"
            + (" (reused)" if config.secrets.reused else "")
        )
        lines.append(f"- duration: {state.duration:.1f}s")
        lines.append(f"- exit_code: {self.exit_code}")
        lines.append("")

        lines.append("## Completed phases")
        if state.completed_phases:
            lines.extend(f"- {p}" for p in state.completed_phases)
        else:
            lines.append("- (none)")

        if self.verification is not None:
            lines.append("")
            lines.append(self.verification.render())

        if self.rollback_report is not None:
            lines.append("")
            lines.append(self.rollback_report.render())
        elif self.rollback_plan:
            lines.append("")
            lines.append("## Rollback plan")
            lines.append(f"- saved: {self.rollback_plan}")
            lines.append(f"- run: deploy-edge rollback {state.deployment_id}")

        if self.report is not None and self.report.files:
            lines.append("")
            lines.append("## Audit report")
            lines.extend(f"- {path}" for path in self.report.files.values())
        return "\n".join(lines)


ValidationFactory = Callable[..., ValidationPipeline]
VerifierFactory = Callable[..., PostDeploymentVerifier]
ExecutorFactory = Callable[..., DeploymentExecutor]


class DeploymentPipeline:
    """
    구성 요소는 모두 생성자에서 주입받는다. 배포 ID 가 필요한 워크플로는 run() 안에서 만든다.
    """

    def __init__(
        self,
        cfg: KitConfig,
        *,
        operator: OperatorInterface,
        wrangler: WranglerCLI,
        credentials: CredentialProvider,
        discovery: ResourceDiscovery,
        audit: AuditLedger,
        secret_store: SecretStore,
        config_store: Optional[SavedConfigStore] = None,
        secret_specs: Sequence[SecretSpec] = DEFAULT_SECRET_SPECS,
        assessment: Optional[AssessmentProvider] = None,
        validation_factory: ValidationFactory = ValidationPipeline,
        verifier_factory: VerifierFactory = PostDeploymentVerifier,
        executor_factory: ExecutorFactory = DeploymentExecutor,
        rollback_runner: Optional[Runner] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.cfg = cfg
        self.operator = operator
        self.wrangler = wrangler
        self.credentials = credentials
        self.discovery = discovery
        self.audit = audit
        self.secret_store = secret_store
        self.config_store = config_store
        self.secret_specs = list(secret_specs)
        self.assessment = assessment or NoOpAssessmentProvider()
        self.validation_factory = validation_factory
        self.verifier_factory = verifier_factory
        self.executor_factory = executor_factory
        self.rollback_runner = rollback_runner
        self.environ: Mapping[str, str] = environ if environ is not None else os.environ

    # ------------------------------------------------------------------
    # 공통
    # ------------------------------------------------------------------

    @contextmanager
    def _phase(self, state: DeploymentState, name: str, **details: Any) -> Iterator[None]:
        state.current_phase = name
        logger.info("단계 시작: %s", name)
        self.audit.log_phase(state.deployment_id, name, "start", details)
        try:
            yield
        except BaseException as e:
            if isinstance(e, EdgeDeployError) and not e.phase:
                e.phase = name
            action = "cancelled" if isinstance(e, UserCancelledError) else "failed"
            self.audit.log_phase(state.deployment_id, name, action, {"error": str(e)})
            raise
        state.completed_phases.append(name)
        self.audit.log_phase(state.deployment_id, name, "end")

    def _acquire_credentials(self, request: DeployRequest, deployment_id: Optional[str]):  # noqa: ANN202
        creds = self.credentials.acquire(
            CredentialInput(request.token, request.account_id, request.zone_id),
            self.environ,
            domain=request.domain,
        )
        self.wrangler.use_credentials(creds)
        self.audit.record(
            "CREDENTIALS_RESOLVED",
            request.domain,
            {**creds.to_audit_dict(), "sources": dict(self.credentials.sources)},
            deployment_id=deployment_id,
        )
        return creds

    def _worker_for(self, partial: PartialDeploymentConfig) -> WorkerConfig:
        return merge_worker(None, partial.worker, WorkerConfig(name=default_worker_name(partial.domain)))

    # ------------------------------------------------------------------
    # deploy
    # ------------------------------------------------------------------

    def run(self, request: DeployRequest) -> PipelineOutcome:
        config = DeploymentConfig(domain=request.domain, environment=request.environment)
        state = DeploymentState(config=config)
        deployment_id = state.deployment_id
        rollback = RollbackRegistry(state.rollback_actions, audit=self.audit, deployment_id=deployment_id)
        outcome = PipelineOutcome(exit_code=EXIT_FAILURE, state=state)

        self.audit.start_deployment(
            deployment_id,
            request.domain,
            {
                "environment": request.environment,
                "dry_run": request.dry_run,
                "strict": request.strict,
                "rollback_policy": request.rollback_policy.value,
                "interactive": self.operator.interactive,
            },
        )
        logger.info(
            "배포 시작: %s (%s) id=%s%s",
            request.domain,
            request.environment,
            deployment_id,
            " [dry-run]" if request.dry_run else "",
        )

        try:
            self._run_phases(request, state, rollback, outcome)
        except UserCancelledError as e:
            state.mark_cancelled(e.phase or state.current_phase)
            outcome.error = e
            outcome.exit_code = e.exit_code
            logger.warning("배포가 취소되었습니다: %s", e.action)
            self.audit.record(
                "DEPLOYMENT_CANCELLED",
                request.domain,
                {"errorType": type(e).__name__, "action": e.action, "phase": state.failed_phase},
                deployment_id=deployment_id,
            )
            # 이미 승인된 앞 단계는 되돌리지 않는다. 계획만 남겨 둔다.
            self._save_plan(rollback, outcome)
        except EdgeDeployError as e:
            state.mark_failed(e.phase or state.current_phase)
            outcome.error = e
            outcome.exit_code = e.exit_code
            logger.error("배포 실패 [%s]: %s", state.failed_phase, e.message)
            self.audit.log_error(deployment_id, e, {"phase": state.failed_phase})
            self._after_failure(request, rollback, outcome)
        except Exception as e:
            state.mark_failed(state.current_phase)
            outcome.error = e
            logger.exception("예상하지 못한 오류로 배포가 중단되었습니다 [%s]", state.current_phase)
            self.audit.log_error(deployment_id, e, {"phase": state.failed_phase, "unexpected": True})
            self._save_plan(rollback, outcome)
            raise
        finally:
            outcome.report = self.audit.end_deployment(
                deployment_id, state.status.value, self._summary(outcome)
            )
        return outcome

    def _run_phases(
        self,
        request: DeployRequest,
        state: DeploymentState,
        rollback: RollbackRegistry,
        outcome: PipelineOutcome,
    ) -> None:
        config = state.config
        deployment_id = state.deployment_id
        domain, environment = request.domain, request.environment

        with self._phase(state, "credentials"):
            config.credentials = self._acquire_credentials(request, deployment_id)

        with self._phase(state, "discovery"):
            partial = self.discovery.discover(domain, environment)
            config.worker = self._worker_for(partial)
            first = (
                request.first_deployment
                if request.first_deployment is not None
                else partial.first_deployment
            )

        with self._phase(state, "database", dry_run=request.dry_run):
            if request.dry_run:
                config.database = self._plan_database(partial)
            else:
                workflow = DatabaseProvisioningWorkflow(
                    self.wrangler, self.operator, rollback, self.audit, deployment_id=deployment_id
                )
                config.database = workflow.handle_database_setup(domain, environment, partial.database.name)

        with self._phase(state, "secrets", dry_run=request.dry_run):
            if request.dry_run:
                config.secrets = self._plan_secrets(domain)
            else:
                workflow = SecretProvisioningWorkflow(
                    self.wrangler,
                    self.operator,
                    rollback,
                    self.secret_store,
                    self.audit,
                    specs=self.secret_specs,
                    generate_distribution=self.cfg.generate_secret_distribution,
                    deployment_id=deployment_id,
                )
                # 매니페스트가 있으면 wrangler 가 워커 이름을 직접 읽는다.
                worker_arg = None if partial.manifest is not None else config.worker.name
                config.secrets = workflow.handle_secret_management(
                    domain,
                    environment,
                    worker_arg,
                    env_flag=needs_env_flag(partial.manifest, environment),
                )

        with self._phase(state, "validation", first_deployment=first):
            pipeline = self.validation_factory(
                self.wrangler, self.cfg, self.audit, deployment_id=deployment_id
            )
            ctx = ValidationContext(
                domain=domain,
                environment=environment,
                credentials=config.credentials,
                manifest=partial.manifest,
                first_deployment=first,
                live_url=config.worker.url,
                strict=request.strict or self.cfg.strict_bindings,
                environ=dict(self.environ),
            )
            try:
                outcome.validation = pipeline.run(ctx)
            except ValidationPhaseError as e:
                outcome.validation = list(e.results)
                raise
            finally:
                pipeline.close()

        with self._phase(state, "assessment", provider=self.assessment.name):
            outcome.assessment = self._assess(config, partial, deployment_id)

        with self._phase(state, "confirmation"):
            gate = ConfirmationGate(
                self.operator,
                self.audit,
                auto_approve=request.auto_approve or not self.operator.interactive,
                deployment_id=deployment_id,
            )
            gate.confirm_deployment(config, state, request.dry_run)

        config.freeze()
        with self._phase(state, "execute", dry_run=request.dry_run):
            executor = self.executor_factory(
                self.wrangler,
                self.discovery,
                timeout=self.cfg.deploy_timeout,
                environ=self.environ,
                audit=self.audit,
                deployment_id=deployment_id,
            )
            outcome.result = executor.deploy(
                environment,
                DeployOptions(dry_run=request.dry_run, vars=dict(request.vars)),
                config,
            )

        with self._phase(state, "verify"):
            outcome.verification = self._verify(request, outcome.result, deployment_id)

        state.mark_succeeded()
        if not request.dry_run:
            self._remember(request, config, outcome.result, deployment_id)
        outcome.exit_code = (
            EXIT_SUCCESS if outcome.verification.passed else EXIT_VERIFICATION_FAILED
        )
        if outcome.exit_code == EXIT_VERIFICATION_FAILED:
            logger.warning("배포는 완료되었지만 배포 후 점검에 실패했습니다.")

    def _plan_database(self, partial: PartialDeploymentConfig) -> DatabaseConfig:
        name = partial.database.name or default_database_name(partial.domain)
        existing = self.wrangler.d1_find(name)
        if existing is None:
            logger.info("[dry-run] D1 데이터베이스를 만들 예정입니다: %s", name)
            return DatabaseConfig(name=name)
        logger.info("[dry-run] 기존 D1 데이터베이스를 재사용합니다: %s (%s)", name, existing.id)
        return DatabaseConfig(name=existing.name, id=existing.id, reused=True)

    def _plan_secrets(self, domain: str) -> SecretsConfig:
        stored = self.secret_store.load(domain)
        if stored is None:
            logger.info("[dry-run] 시크릿 %d개를 새로 만들 예정입니다.", len(self.secret_specs))
            return SecretsConfig()
        return SecretsConfig(keys=dict(stored.values), file=stored.path, reused=True, resolved=True)

    def _assess(
        self,
        config: DeploymentConfig,
        partial: PartialDeploymentConfig,
        deployment_id: str,
    ) -> AssessmentResult:
        result = self.assessment.assess(config, partial.manifest)
        for finding in result.findings:
            self.audit.record(
                "COMPLIANCE_VIOLATION" if finding.blocking else "AUDIT_EVENT",
                config.domain,
                {"provider": self.assessment.name, "rule": finding.rule, "message": finding.message},
                deployment_id=deployment_id,
            )
        if result.blocking:
            raise EdgeDeployError(
                "배포를 막는 점검 결과가 있습니다: "
                + "; ".join(f"{f.rule}: {f.message}" for f in result.blocking),
                phase="assessment",
            )
        return result

    def _verify(
        self,
        request: DeployRequest,
        result: Optional[DeploymentResult],
        deployment_id: str,
    ) -> VerificationReport:
        reason = None
        if request.dry_run:
            reason = "dry-run"
        elif request.skip_verify:
            reason = "--skip-verify"
        elif result is None or not result.url:
            reason = "배포 URL 을 알 수 없습니다"
        if reason is not None:
            report = skipped_report(reason, request.verify_mode)
            self.audit.record(
                "VERIFICATION_RESULT", request.domain, report.to_dict(), deployment_id=deployment_id
            )
            return report

        verifier = self.verifier_factory(
            paths=self.cfg.verify_paths,
            timeout=self.cfg.network_timeout,
            audit=self.audit,
            deployment_id=deployment_id,
        )
        try:
            if request.verify_mode == "smoke":
                return verifier.smoke(result.url)
            return verifier.comprehensive(result.url)
        finally:
            verifier.close()

    def _remember(
        self,
        request: DeployRequest,
        config: DeploymentConfig,
        result: Optional[DeploymentResult],
        deployment_id: str,
    ) -> None:
        if self.config_store is None:
            return
        creds = config.credentials
        data = {
            "worker": {
                "name": config.worker.name,
                "url": (result.url if result else None) or config.worker.url,
            },
            "database": {"name": config.database.name, "id": config.database.id},
            "account_id": creds.account_id if creds else None,
            "zone_id": creds.zone_id if creds else None,
            "last_deployment_id": deployment_id,
        }
        try:
            self.config_store.save(request.domain, request.environment, data)
        except OSError as e:
            logger.warning("배포 설정 저장 실패 (배포 자체는 완료): %s", e)

    # ------------------------------------------------------------------
    # 실패 처리
    # ------------------------------------------------------------------

    def _save_plan(self, rollback: RollbackRegistry, outcome: PipelineOutcome) -> None:
        if not len(rollback):
            return
        path = plan_path(self.cfg.rollback_path, outcome.state.deployment_id)
        try:
            outcome.rollback_plan = rollback.save(path)
        except OSError as e:
            logger.error("롤백 계획 저장 실패: %s (%s)", path, e)
            return
        self.operator.show(
            f"롤백 계획을 저장했습니다 ({len(rollback)}개 작업): {path}\n"
            f"되돌리려면 `deploy-edge rollback {outcome.state.deployment_id}` 를 실행하세요."
        )

    def _after_failure(
        self,
        request: DeployRequest,
        rollback: RollbackRegistry,
        outcome: PipelineOutcome,
    ) -> None:
        if not len(rollback):
            return
        if request.rollback_policy is not RollbackPolicy.AUTOMATIC:
            self._save_plan(rollback, outcome)
            return

        logger.warning("자동 롤백을 시작합니다 (%d개 작업)", len(rollback))
        runner = self.rollback_runner or self.wrangler.compensation_runner()
        outcome.rollback_report = rollback.replay(runner)
        if outcome.rollback_report.failed:
            # 이미 되돌린 작업은 다시 실행하지 않도록 실패한 작업만 남긴다.
            self._save_plan(rollback.remaining(outcome.rollback_report), outcome)

    def _summary(self, outcome: PipelineOutcome) -> Dict[str, Any]:
        state = outcome.state
        return {
            "exitCode": outcome.exit_code,
            "failedPhase": state.failed_phase,
            "completedPhases": list(state.completed_phases),
            "url": outcome.result.url if outcome.result else None,
            "config": state.config.to_audit_dict(),
            "rollbackActions": len(state.rollback_actions),
            "rollbackPlan": outcome.rollback_plan,
            "verificationPassed": outcome.verification.passed if outcome.verification else None,
        }

    # ------------------------------------------------------------------
    # check
    # ------------------------------------------------------------------

    def check(self, request: DeployRequest) -> Tuple[str, bool]:
        """
        원격 리소스를 바꾸지 않고 접근 정보/탐색/검증만 수행한다.

        Returns:
            summary: 사람이 읽기 좋은 텍스트 요약
            has_issues: 치명적인 이슈가 있는지 여부
        """
        lines: List[str] = ["# Deploy pre-check", f"- domain: {request.domain}", f"- environment: {request.environment}", ""]
        critical: List[str] = []
        warnings: List[str] = []

        lines.append("## Credentials")
        try:
            creds = self._acquire_credentials(request, None)
            lines.append(f"- account: {creds.account_id}")
            lines.append(f"- zone: {creds.zone_name or creds.zone_id}")
        except EdgeDeployError as e:
            critical.append(f"credentials: {e.message}")
            lines.append(f"- 실패: {e.message}")
            creds = None
        lines.append("")

        partial = self.discovery.discover(request.domain, request.environment)
        worker = self._worker_for(partial)
        lines.append("## Discovery")
        lines.append(f"- manifest: {partial.manifest.config_path if partial.manifest else '(없음)'}")
        lines.append(f"- worker: {worker.name}")
        lines.append(f"- url: {worker.url or '(없음)'}")
        lines.append(f"- database: {partial.database.name or default_database_name(request.domain)}")
        lines.append("")

        lines.append("## Validation")
        if creds is not None:
            pipeline = self.validation_factory(self.wrangler, self.cfg, self.audit, deployment_id=None)
            first = request.first_deployment if request.first_deployment is not None else partial.first_deployment
            ctx = ValidationContext(
                domain=request.domain,
                environment=request.environment,
                credentials=creds,
                manifest=partial.manifest,
                first_deployment=first,
                live_url=worker.url,
                strict=request.strict or self.cfg.strict_bindings,
                tolerate=frozenset(VALIDATION_ORDER),
                environ=dict(self.environ),
            )
            try:
                results = pipeline.run(ctx)
            finally:
                pipeline.close()
            for r in results:
                lines.append(f"- {r.category.value}: {r.status.value}")
                critical.extend(f"{r.category.value}: {msg}" for msg in r.errors)
                warnings.extend(f"{r.category.value}: {msg}" for msg in r.warnings)
        else:
            lines.append("- (접근 정보가 없어 건너뜀)")
        lines.append("")

        lines.append("## Summary")
        if critical:
            lines.append("- 상태: 크리티컬 이슈가 있습니다. 배포 전 반드시 해결해야 합니다.")
        elif warnings:
            lines.append("- 상태: 경고만 있습니다.")
        else:
            lines.append("- 상태: 주요 이슈 없음 (배포 가능 상태로 보입니다)")
        for title, items in (("Critical issues", critical), ("Warnings", warnings)):
            if items:
                lines.append("")
                lines.append(f"### {title}")
                lines.extend(f"- {i}" for i in items)
        return "\n".join(lines), bool(critical)


# ---------------------------------------------------------------------------
# 조립 / plan / rollback
# ---------------------------------------------------------------------------

def build_credentials(cfg: KitConfig, operator: OperatorInterface) -> CredentialProvider:
    return CredentialProvider(
        operator,
        token_cache=TokenCache(cfg.token_cache_path),
        client_factory=lambda token: CloudflareClient(
            token,
            timeout=cfg.network_timeout,
            retry_attempts=cfg.retry_attempts,
            retry_delay=cfg.retry_delay,
        ),
    )


def build_pipeline(
    cfg: KitConfig,
    *,
    operator: OperatorInterface,
    audit: Optional[AuditLedger] = None,
    environ: Optional[Mapping[str, str]] = None,
    assessment: Optional[AssessmentProvider] = None,
) -> DeploymentPipeline:
    store = SavedConfigStore(cfg.state_path)
    return DeploymentPipeline(
        cfg,
        operator=operator,
        wrangler=WranglerCLI.from_config(cfg),
        credentials=build_credentials(cfg, operator),
        discovery=ResourceDiscovery(cfg.base_dir, store=store),
        audit=audit or AuditLedger.from_config(cfg),
        secret_store=SecretStore(cfg.secrets_path),
        config_store=store,
        assessment=assessment,
        environ=environ,
    )


def plan_text(cfg: KitConfig, domain: str, environment: str = "production") -> str:
    """
    탐색된 설정과 실행될 단계를 요약한다. 원격 호출은 하지 않는다.
    """
    store = SavedConfigStore(cfg.state_path)
    partial = ResourceDiscovery(cfg.base_dir, store=store).discover(domain, environment)
    worker = merge_worker(None, partial.worker, WorkerConfig(name=default_worker_name(domain)))
    manifest = partial.manifest
    stored_secrets = SecretStore(cfg.secrets_path).load(domain)

    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- domain: {domain}")
    lines.append(f"- environment: {environment}")
    lines.append(f"- first_deployment: {partial.first_deployment}")
    lines.append("")

    lines.append("## Discovered config")
    lines.append(f"- manifest: {manifest.config_path + ' (' + manifest.source + ')' if manifest else '(없음)'}")
    lines.append(f"- worker: {worker.name}")
    lines.append(f"- url: {worker.url or '(없음)'}")
    lines.append(f"- database: {partial.database.name or default_database_name(domain)}")
    if partial.database.id:
        lines.append(f"- database_id: {partial.database.id}")
    lines.append(
        f"- secrets: {'기존 ' + str(len(stored_secrets.values)) + '개 재사용 가능' if stored_secrets else '새로 생성'}"
    )
    if manifest is not None:
        lines.append(f"- routes: {', '.join(manifest.routes) or '(없음)'}")
        lines.append(f"- d1_bindings: {', '.join(b.binding or '?' for b in manifest.d1_bindings) or '(없음)'}")
    lines.append("")

    lines.append("## Settings")
    lines.append(f"- wrangler: {' '.join(cfg.wrangler_command)}")
    lines.append(f"- state_dir: {cfg.state_path}")
    lines.append(f"- audit_dir: {cfg.audit_path}")
    lines.append(f"- rollback_policy: {'automatic' if cfg.auto_rollback else 'manual'}")
    lines.append(f"- strict_bindings: {cfg.strict_bindings}")
    lines.append("")

    lines.append("## Phases")
    lines.extend(f"- {p}" for p in PHASES)
    return "\n".join(lines)


def rollback_deployment(
    cfg: KitConfig,
    deployment_id: str,
    *,
    operator: OperatorInterface,
    audit: Optional[AuditLedger] = None,
    auto_approve: bool = False,
    runner: Optional[Runner] = None,
    credentials: Optional[CredentialProvider] = None,
    explicit: Optional[CredentialInput] = None,
    environ: Optional[Mapping[str, str]] = None,
    wrangler: Optional[WranglerCLI] = None,
) -> RollbackReport:
    """
    저장된 롤백 계획을 불러와 역순으로 실행한다. 실패한 작업만 계획 파일에 남긴다.

    runner 가 없으면 보상 명령을 wrangler 로 실행한다. credentials 가 주어지면
    배포 때와 같은 순서(인자, 환경변수, 토큰 캐시, 입력)로 토큰과 계정을 확보해
    자식 프로세스 환경에 넣는다. 존은 필요 없으므로 찾지 않는다.
    """
    path = plan_path(cfg.rollback_path, deployment_id)
    registry = RollbackRegistry.load(path, audit=audit)
    if not len(registry):
        logger.info("실행할 롤백 작업이 없습니다: %s", deployment_id)
        return RollbackReport()

    gate = ConfirmationGate(operator, audit, auto_approve=auto_approve, deployment_id=deployment_id)
    gate.confirm(
        "Rollback",
        {"deployment_id": deployment_id, "plan": path, "actions": len(registry)},
        [a.description or f"{a.type} {a.target}" for a in reversed(registry.actions)],
        "위 작업을 실행해 배포를 되돌릴까요?",
        default=False,
    )

    if runner is None:
        wrangler = wrangler or WranglerCLI.from_config(cfg)
        if credentials is not None:
            creds = credentials.acquire(explicit, environ, require_zone=False)
            wrangler.use_credentials(creds)
        runner = wrangler.compensation_runner()

    report = registry.replay(runner)
    if report.failed:
        registry.remaining(report).save(path)
        logger.warning("일부 롤백 작업이 실패해 계획 파일에 남겨 두었습니다: %s", path)
    else:
        os.remove(path)
    return report
