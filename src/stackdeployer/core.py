import enum
import logging
import os
import threading
import uuid
from concurrent.futures import wait as wait_futures
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .constants import LOGS_DIRECTORY, OUTPUT_DIRECTORY
from .errors import (
    AppGroupFailedError,
    BuildExecutionError,
    DeployerError,
    RolloutCancelledError,
)
from .models import (
    AppDeploymentResult,
    BuildJob,
    DeploymentRequest,
    ExecutionContext,
    JobResult,
    RunContext,
    StageConfig,
)
from .services.access_policy import AccessProfile
from .services.app_deployment import AppDeploymentWorkflow
from .services.build_executor import BuildExecutor
from .services.command_runner import CommandRunner
from .services.credentials import StsCredentialProvider
from .services.job_runner import CodeBuildJobRunner, DockerJobRunner
from .services.manifest import ManifestService
from .services.registry import EcrRegistry, HttpRegistry, ImageAvailabilityGate
from .services.secrets import FileSecretStore, SecretsManagerStore
from .services.state import StateService
from .services.workflow_handle import WorkflowHandle

console = Console()
logger = logging.getLogger("stackdeployer")


class RolloutState(str, enum.Enum):
    CHECK_IMAGE_AVAILABLE = "CheckImageAvailable"
    DEPLOY_DEPLOYER_TOOL = "DeployDeployerTool"
    DEPLOY_APPLICATIONS = "DeployApplications"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class DeployerRollout:
    """Top-level rollout: image gate, deployer self-update, then the app deployment workflow."""

    BACKENDS = ("local", "aws")

    def __init__(
        self,
        request: DeploymentRequest,
        stage_config: StageConfig,
        backend: str = "local",
        registry=None,
        runner=None,
        secret_store=None,
        registry_url: Optional[str] = None,
        aws_region: Optional[str] = None,
        output_dir: Optional[str] = None,
        logs_dir: Optional[str] = None,
        state_file: Optional[str] = None,
        manifest_file: Optional[str] = None,
        secrets_file: Optional[str] = None,
        resume: bool = False,
        verbose: bool = False,
        retry_count: int = 2,
        retry_backoff_seconds: float = 2.0,
        job_timeout_minutes: Optional[int] = None,
        poll_interval_seconds: float = 10.0,
        dry_run: bool = False,
        credentials_role_arn: Optional[str] = None,
    ):
        if backend not in self.BACKENDS:
            raise DeployerError(f"Unsupported backend '{backend}'. Use one of: {', '.join(self.BACKENDS)}.")

        self.request = request
        self.stage_config = stage_config
        self.backend = backend
        self.registry_url = registry_url
        self.aws_region = aws_region or (stage_config.regions[0] if stage_config.regions else None)
        self.resume = resume
        self.verbose = verbose
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.job_timeout_seconds = job_timeout_minutes * 60 if job_timeout_minutes else None
        self.poll_interval_seconds = poll_interval_seconds
        self.dry_run = dry_run
        self.credentials_role_arn = credentials_role_arn

        self.cwd = os.getcwd()
        self.output_dir = output_dir or os.path.join(self.cwd, OUTPUT_DIRECTORY)
        self.logs_dir = logs_dir or os.path.join(self.output_dir, LOGS_DIRECTORY)
        self.state_file = state_file or os.path.join(self.output_dir, "rollout-state.json")
        self.manifest_file = manifest_file or os.path.join(self.output_dir, "run-manifest.json")
        self.secrets_file = secrets_file or os.path.join(self.output_dir, "secrets.json")
        self.state_service = StateService(state_file=self.state_file, logger=logger)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.state: Optional[Dict[str, Any]] = None

        self.status = RolloutState.CHECK_IMAGE_AVAILABLE
        self.failed_state: Optional[RolloutState] = None
        self.error: Optional[BaseException] = None
        self.cancel_event = threading.Event()
        self.deployer_result: Optional[JobResult] = None
        self.app_result: Optional[AppDeploymentResult] = None
        self._app_handle: Optional[WorkflowHandle] = None

        if registry is None or runner is None or secret_store is None:
            default_registry, default_runner, default_secrets = self._create_backends()
            registry = registry or default_registry
            runner = runner or default_runner
            secret_store = secret_store or default_secrets

        self.registry = registry
        self.runner = runner
        self.secret_store = secret_store
        self.gate = ImageAvailabilityGate(
            registry=self.registry,
            logger=logger,
            console=console,
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
        )
        try:
            profiles = {
                context: AccessProfile.for_context(
                    context,
                    project=stage_config.project,
                    stage=stage_config.stage,
                    account_id=stage_config.account_id,
                )
                for context in ExecutionContext
            }
        except ValueError as exc:
            raise DeployerError(str(exc)) from exc
        self.executors = {
            context: BuildExecutor(
                profile=profile,
                stage_config=stage_config,
                runner=self.runner,
                logs_dir=self.logs_dir,
                logger=logger,
                console=console,
                secret_store=self.secret_store,
            )
            for context, profile in profiles.items()
        }
        self.run_context = self._build_run_context()

    def _create_backends(self):
        if self.backend == "aws":
            from .services.aws_clients import get_client

            project_names = CodeBuildJobRunner.project_names_for(self.stage_config.project, self.stage_config.stage)
            return (
                EcrRegistry(get_client("ecr", self.aws_region)),
                CodeBuildJobRunner(
                    client=get_client("codebuild", self.aws_region),
                    logger=logger,
                    console=console,
                    project_names=project_names,
                    poll_interval_seconds=self.poll_interval_seconds,
                    job_timeout_seconds=self.job_timeout_seconds,
                ),
                SecretsManagerStore(get_client("secretsmanager", self.aws_region), logger=logger),
            )

        credential_provider = None
        if self.credentials_role_arn:
            from .services.aws_clients import get_client

            credential_provider = StsCredentialProvider(
                get_client("sts", self.aws_region),
                self.credentials_role_arn,
                logger=logger,
                duration_seconds=min(43200, max(3600, int(self.job_timeout_seconds or 0))),
            )

        return (
            HttpRegistry(self._resolve_registry_url()),
            DockerJobRunner(
                logger=logger,
                console=console,
                command_runner=CommandRunner(logger=logger),
                pull_retry_count=self.retry_count,
                pull_retry_backoff_seconds=self.retry_backoff_seconds,
                job_timeout_seconds=self.job_timeout_seconds,
                verbose=self.verbose,
                credential_provider=credential_provider,
            ),
            FileSecretStore(self.secrets_file, logger=logger),
        )

    def _resolve_registry_url(self) -> str:
        if self.registry_url:
            return self.registry_url
        host, _, rest = self.stage_config.deployer_repository.partition("/")
        if rest and ("." in host or ":" in host or host == "localhost"):
            return f"https://{host}"
        raise DeployerError(
            "Cannot derive the registry URL from the deployer repository. "
            "Set `registry_url` in the configuration."
        )

    def _build_run_context(self) -> RunContext:
        return RunContext(
            run_id=uuid.uuid4().hex[:10],
            stage=self.stage_config.stage,
            version=self.request.version,
            request_fingerprint=self.request.fingerprint(),
        )

    def _build_resume_metadata(self) -> Dict[str, Any]:
        return {
            "project": self.stage_config.project,
            "stage": self.stage_config.stage,
            "request_fingerprint": self.request.fingerprint(),
        }

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        metadata = self._build_resume_metadata()
        metadata.update(
            {
                "backend": self.backend,
                "deployer_repository": self.stage_config.deployer_repository,
                "deployer_app": self.stage_config.app_name,
                "deployer_region_code": self.stage_config.deployer_region_code,
                "resume_enabled": self.resume,
                "state_file": self.state_file if self.resume else None,
            }
        )
        return metadata

    def executor_for(self, context: ExecutionContext) -> BuildExecutor:
        return self.executors[ExecutionContext(context)]

    def cancel(self):
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested. In-flight jobs will be stopped.")
        self.cancel_event.set()

    def _initialize_state(self) -> bool:
        if not self.resume:
            return False

        os.makedirs(self.output_dir, exist_ok=True)
        state, resumed = self.state_service.initialize(
            metadata=self._build_resume_metadata(),
            run_context=asdict(self.run_context),
            resume=True,
        )
        self.state = state

        if resumed:
            context_data = state.get("run_context")
            if not isinstance(context_data, dict):
                raise DeployerError("State file is missing run context. Start a fresh rollout without --resume.")
            self.run_context = RunContext(**context_data)
            if state.get("status") == "success":
                raise DeployerError(
                    "The state file already belongs to a successful rollout. "
                    "Remove it or choose another --state-file."
                )
            logger.info(
                "Resuming rollout '%s' from state '%s'.",
                self.run_context.run_id,
                state.get("current_state") or "<none>",
            )
            self.state_service.mark_status(state, "running")
        else:
            logger.info("Resume state initialized at %s", self.state_file)

        return resumed

    def _enter(self, rollout_state: RolloutState):
        self.status = rollout_state
        self.manifest_service.set_state(rollout_state.value)
        if self.state:
            self.state_service.mark_state(self.state, rollout_state.value)

    def _run_step(
        self,
        name: str,
        callback,
        *args,
        skip_when_completed: bool = True,
        **kwargs,
    ):
        if (
            self.resume
            and self.state
            and skip_when_completed
            and self.state_service.is_step_completed(self.state, name)
        ):
            logger.info("Skipping completed step from state: %s", name)
            self.manifest_service.step_started(name, details={"resumed": True})
            self.manifest_service.step_finished(name, "skipped", details={"resumed": True})
            return None, True

        if self.state:
            self.state_service.mark_step_started(self.state, name)
        self.manifest_service.step_started(name)

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            details = None
            if isinstance(exc, BuildExecutionError) and exc.log_path:
                details = {"log_path": exc.log_path}
                self.manifest_service.add_artifact(name, exc.log_path)
            if self.state:
                self.state_service.mark_step_failed(self.state, name, str(exc))
            status = "cancelled" if isinstance(exc, RolloutCancelledError) else "failed"
            self.manifest_service.step_finished(name, status, details=details, error=str(exc))
            raise

        details = None
        if isinstance(result, JobResult):
            details = {"log_path": result.log_path, "exit_code": result.exit_code}
            self.manifest_service.add_artifact(name, result.log_path)
        if self.state:
            self.state_service.mark_step_completed(self.state, name)
        self.manifest_service.step_finished(name, "success", details=details)
        return result, False

    def plan(self) -> List[Dict[str, str]]:
        """Returns the ordered job plan; targets sharing a phase run concurrently."""
        rows = [
            {
                "phase": "0",
                "step": "deploy_deployer_tool",
                "context": ExecutionContext.READ_ONLY.name,
                "app": self.stage_config.app_name,
                "region_code": self.stage_config.deployer_region_code,
            }
        ]
        for index, group in enumerate(self.request.app_groups, start=1):
            for target in group:
                rows.append(
                    {
                        "phase": str(index),
                        "step": AppDeploymentWorkflow.step_name(index, target),
                        "context": ExecutionContext.READ_ONLY.name,
                        "app": target.app,
                        "region_code": target.region_code,
                    }
                )
        return rows

    def print_plan(self):
        table = Table(title=f"Rollout plan: {self.request.command} @ {self.request.version}")
        for column in ("Phase", "Step", "Context", "App", "Region"):
            table.add_column(column)
        for row in self.plan():
            table.add_row(row["phase"], row["step"], row["context"], row["app"], row["region_code"])
        console.print(table)

    def validate_runtime(self):
        validate = getattr(self.runner, "validate_environment", None)
        if validate is None:
            return
        console.print("[blue]Validating job runtime...[/blue]")
        validate()

    def check_image_available(self):
        self.gate.ensure_available(self.stage_config.deployer_repository, self.request.version)

    def deploy_deployer_tool(self) -> JobResult:
        console.print(
            f"[bold blue]Updating deployer tool to {self.request.version} "
            f"({self.stage_config.app_name}/{self.stage_config.deployer_region_code})[/bold blue]"
        )
        job = BuildJob(
            context=ExecutionContext.READ_ONLY,
            app=self.stage_config.app_name,
            region_code=self.stage_config.deployer_region_code,
            version=self.request.version,
            command=self.request.command,
            image=self.stage_config.deployer_repository,
        )
        return self.executor_for(ExecutionContext.READ_ONLY).execute(job, cancel_event=self.cancel_event)

    def deploy_applications(self) -> AppDeploymentResult:
        workflow = AppDeploymentWorkflow(
            executor=self.executor_for(ExecutionContext.READ_ONLY),
            logger=logger,
            console=console,
            run_step=self._run_step,
            cancel_event=self.cancel_event,
        )
        self._app_handle = WorkflowHandle.start(AppDeploymentWorkflow.NAME, workflow.run, self.request)
        return self._app_handle.wait()

    def _record_failure(self, exc: BaseException):
        group_error = self._find_cause(exc, AppGroupFailedError)
        if group_error is not None:
            targets = []
            for target, target_exc in group_error.failures:
                targets.append(
                    {
                        "target": target.label,
                        "log_path": getattr(target_exc, "log_path", None),
                        "error": str(target_exc),
                    }
                )
            self.manifest_service.set_failure(self.status.value, group=group_error.group_index, targets=targets)
            return

        build_error = self._find_cause(exc, BuildExecutionError)
        if build_error is not None and build_error.job is not None:
            target = {
                "target": f"{build_error.job.app}/{build_error.job.region_code}",
                "log_path": build_error.log_path,
                "error": str(build_error),
            }
            self.manifest_service.set_failure(self.status.value, targets=[target])
            return

        self.manifest_service.set_failure(self.status.value)

    @staticmethod
    def _find_cause(exc: Optional[BaseException], error_type):
        seen = set()
        while exc is not None and id(exc) not in seen:
            if isinstance(exc, error_type):
                return exc
            seen.add(id(exc))
            exc = exc.__cause__
        return None

    def _drain_nested_workflow(self):
        if self._app_handle is not None and not self._app_handle.done():
            logger.info("Waiting for in-flight app deployments to stop...")
            wait_futures([self._app_handle.future])

    def _fail(self, exc: BaseException, status: RolloutState = RolloutState.FAILED):
        self.failed_state = self.status
        self.error = exc
        self._record_failure(exc)
        if self.state:
            self.state_service.mark_status(
                self.state,
                "aborted" if status is RolloutState.CANCELLED else "failed",
                str(exc),
            )
        self.status = status
        self.manifest_service.set_state(status.value)

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info(
                "Starting rollout of %s (%s) to %s/%s: %s target(s) in %s app group(s)...",
                self.request.version,
                self.request.command,
                self.stage_config.project,
                self.stage_config.stage,
                self.request.target_count,
                len(self.request.app_groups),
            )
            self._initialize_state()
            self.manifest_service.start_run(
                run_id=self.run_context.run_id,
                metadata=self._build_manifest_metadata(),
                request=self.request.to_dict(),
            )

            if self.dry_run:
                self.print_plan()
                manifest_status = "planned"
                exit_code = 0
                return exit_code

            self._enter(RolloutState.CHECK_IMAGE_AVAILABLE)
            self._run_step("validate_runtime", self.validate_runtime, skip_when_completed=False)
            self._run_step("check_image_available", self.check_image_available, skip_when_completed=False)

            self._enter(RolloutState.DEPLOY_DEPLOYER_TOOL)
            self.deployer_result, _ = self._run_step("deploy_deployer_tool", self.deploy_deployer_tool)

            self._enter(RolloutState.DEPLOY_APPLICATIONS)
            self.app_result, _ = self._run_step(
                "deploy_applications",
                self.deploy_applications,
                skip_when_completed=False,
            )

            self._enter(RolloutState.DONE)
            if self.state:
                self.state_service.mark_status(self.state, "success")
            self.manifest_service.add_artifact("logs_dir", self.logs_dir)
            console.print(f"[bold green]Rollout of {self.request.version} completed.[/bold green]")
            manifest_status = "success"
            exit_code = 0
            return exit_code

        except (KeyboardInterrupt, RolloutCancelledError) as exc:
            self.cancel()
            self._drain_nested_workflow()
            error = exc if isinstance(exc, RolloutCancelledError) else RolloutCancelledError("Operation cancelled by user.")
            console.print("[bold red]Rollout cancelled.[/bold red]")
            logger.info("Rollout cancelled at %s", self.status.value)
            self._fail(error, status=RolloutState.CANCELLED)
            manifest_status = "aborted"
            manifest_error = str(error)
            return exit_code
        except DeployerError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            self._fail(exc)
            manifest_error = str(exc)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self._fail(exc)
            manifest_error = str(exc)
            return exit_code
        finally:
            self.manifest_service.finalize(manifest_status, error=manifest_error)
            if manifest_status == "failed" and self.resume:
                logger.warning(
                    "Rollout state preserved at %s. Run again with --resume to continue "
                    "from the last completed step.",
                    self.state_file,
                )
