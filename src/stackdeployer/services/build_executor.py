"""Build executor: runs one deployment job inside its execution profile."""

import os
import time
from typing import Optional

from stackdeployer.errors import BuildExecutionError, DeployerError, RoleAssumptionError
from stackdeployer.errors_catalog import actionable_error
from stackdeployer.models import BuildJob, JobResult, StageConfig
from stackdeployer.services.secrets import ScopedSecretStore


class BuildExecutor:
    """Submits build jobs to a runner under a fixed access profile.

    The profile is bound when the executor is constructed. Jobs asking for a
    different execution context are rejected instead of being upgraded, and
    the stage and image repository exposed to the job come from the stage
    configuration, never from the job itself.
    """

    def __init__(
        self,
        profile,
        stage_config: StageConfig,
        runner,
        logs_dir: str,
        logger,
        console,
        secret_store=None,
    ):
        if profile.project != stage_config.project or profile.stage != stage_config.stage:
            raise DeployerError(
                f"Access profile scope {profile.project}/{profile.stage} does not match "
                f"stage configuration {stage_config.project}/{stage_config.stage}."
            )
        self.profile = profile
        self.stage_config = stage_config
        self.runner = runner
        self.logs_dir = logs_dir
        self.logger = logger
        self.console = console
        self.secrets: Optional[ScopedSecretStore] = (
            ScopedSecretStore(secret_store, profile, logger) if secret_store is not None else None
        )

    @property
    def context(self):
        return self.profile.context

    def assume_role(self, role_type: str) -> str:
        return self.profile.assume_role(role_type)

    def log_path_for(self, job: BuildJob) -> str:
        return os.path.join(self.logs_dir, job.log_name(self.stage_config.stage))

    def execute(self, job: BuildJob, cancel_event=None) -> JobResult:
        if job.context != self.profile.context:
            raise RoleAssumptionError(
                f"Job {job.app}/{job.region_code} requested the {job.context.name} context, "
                f"but this executor is bound to {self.profile.context.name}."
            )
        if job.image != self.stage_config.deployer_repository:
            raise BuildExecutionError(
                f"Job image {job.image} is not the configured deployer repository "
                f"{self.stage_config.deployer_repository}.",
                job=job,
            )

        os.makedirs(self.logs_dir, exist_ok=True)
        log_path = self.log_path_for(job)
        env = job.env(self.stage_config.stage)
        env["DEPLOYER_IMAGE"] = self.stage_config.deployer_repository
        env["STAGE"] = self.stage_config.stage

        self.logger.info(
            "Running %s for %s/%s at version %s (%s)",
            job.command,
            job.app,
            job.region_code,
            job.version,
            self.profile.context.name,
        )
        started = time.monotonic()

        try:
            exit_code = self.runner.run_job(
                self.profile,
                env,
                job.image_ref,
                log_path,
                cancel_event=cancel_event,
            )
        except BuildExecutionError as exc:
            self._preserve_log(log_path, str(exc))
            exc.job = job
            exc.log_path = log_path
            raise

        duration = time.monotonic() - started
        if exit_code != 0:
            raise BuildExecutionError(
                actionable_error(
                    "build_failed",
                    log_name=job.log_name(self.stage_config.stage),
                    exit_code=exit_code,
                    log_path=log_path,
                ),
                job=job,
                log_path=log_path,
                exit_code=exit_code,
            )

        self.console.print(f"[green]{job.command} {job.app}/{job.region_code} succeeded.[/green]")
        return JobResult(job=job, exit_code=exit_code, log_path=log_path, duration_seconds=duration)

    def _preserve_log(self, log_path: str, message: str):
        if os.path.exists(log_path):
            return
        try:
            with open(log_path, "w", encoding="utf-8") as file_obj:
                file_obj.write(message + "\n")
        except OSError as exc:
            self.logger.warning("Could not write log artifact %s: %s", log_path, exc)
