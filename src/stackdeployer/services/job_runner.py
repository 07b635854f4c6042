"""Job execution backends: local docker and AWS CodeBuild."""

import os
import shlex
import subprocess
import threading
import time
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackdeployer.constants import FORWARDED_CREDENTIAL_VARS, SESSION_CREDENTIAL_VARS
from stackdeployer.errors import BuildExecutionError, DeployerError, RolloutCancelledError
from stackdeployer.errors_catalog import actionable_error
from stackdeployer.models import ExecutionContext


class DockerJobRunner:
    """Pulls the deployer image and runs one command in it, teeing output to the log artifact."""

    def __init__(
        self,
        logger,
        console,
        command_runner,
        subprocess_module=subprocess,
        pull_retry_count: int = 0,
        pull_retry_backoff_seconds: float = 0.0,
        job_timeout_seconds: Optional[float] = None,
        verbose: bool = False,
        watch_interval_seconds: float = 0.5,
        credential_provider=None,
    ):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.subprocess = subprocess_module
        self.pull_retry_count = pull_retry_count
        self.pull_retry_backoff_seconds = pull_retry_backoff_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.verbose = verbose
        self.watch_interval_seconds = watch_interval_seconds
        self.credential_provider = credential_provider

    def validate_environment(self):
        self.command_runner.run(["docker", "version", "--format", "{{.Server.Version}}"], capture_output=True)

    def pull_image(self, image_ref: str):
        try:
            self.command_runner.run(
                ["docker", "pull", image_ref],
                capture_output=True,
                retry_count=self.pull_retry_count,
                retry_backoff_seconds=self.pull_retry_backoff_seconds,
            )
        except DeployerError as exc:
            raise BuildExecutionError(
                f"{actionable_error('image_pull_failed', image=image_ref)} {exc}"
            ) from exc

    def build_run_command(self, image_ref: str, env: Dict[str, str]) -> List[str]:
        """Assignments and target go to the image's own entrypoint, e.g. ``app=api stage=prod regcode=euc1 deploy``."""
        try:
            command = shlex.split(env["CMD"])
        except ValueError as exc:
            raise BuildExecutionError(f"Invalid deployer command {env['CMD']!r}: {exc}") from exc

        cmd = ["docker", "run", "--rm"]
        for name in FORWARDED_CREDENTIAL_VARS:
            cmd.extend(["-e", name])
        cmd.append(image_ref)
        cmd.extend([f"app={env['APP']}", f"stage={env['STAGE']}", f"regcode={env['REGCODE']}"])
        cmd.extend(command)
        return cmd

    def container_env(self, profile) -> Dict[str, str]:
        """Host environment for ``docker run`` with the operator's own keys replaced by scoped ones."""
        process_env = {name: value for name, value in os.environ.items() if name not in SESSION_CREDENTIAL_VARS}
        if self.credential_provider is not None:
            process_env.update(self.credential_provider.credentials_for(profile))
        else:
            self.logger.warning(
                "No credentials role configured; the %s job runs without AWS credentials.",
                profile.context.name,
            )
        return process_env

    def run_job(
        self,
        profile,
        env: Dict[str, str],
        image_ref: str,
        log_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        cmd = self.build_run_command(image_ref, env)
        self.pull_image(image_ref)
        process_env = self.container_env(profile)
        self.logger.debug("Starting %s job: %s", profile.context.name, " ".join(cmd))

        try:
            process = self.subprocess.Popen(
                cmd,
                stdout=self.subprocess.PIPE,
                stderr=self.subprocess.STDOUT,
                text=True,
                bufsize=1,
                env=process_env,
            )
        except OSError as exc:
            raise BuildExecutionError(f"Failed to start deployer container: {exc}", log_path=log_path) from exc

        if not process.stdout:
            raise BuildExecutionError("Deployer container did not expose logs. Aborting.", log_path=log_path)

        stop = threading.Event()
        outcome = {"timed_out": False, "cancelled": False}
        watcher = threading.Thread(
            target=self._watch,
            args=(process, cancel_event, stop, outcome),
            daemon=True,
        )
        watcher.start()

        label = f"{env.get('APP')}/{env.get('REGCODE')}"
        try:
            with open(log_path, "w", encoding="utf-8") as log_file:
                for line in process.stdout:
                    log_file.write(line)
                    cleaned = line.rstrip()
                    if not cleaned:
                        continue
                    self.logger.debug("[%s] %s", label, cleaned)
                    if self.verbose:
                        self.console.print(f"[dim]{label}: {cleaned}[/dim]")
            returncode = process.wait()
        finally:
            stop.set()
            watcher.join()

        if outcome["cancelled"]:
            raise RolloutCancelledError(f"Deployment job {label} was cancelled.")
        if outcome["timed_out"]:
            raise BuildExecutionError(
                f"Deployment job {label} exceeded timeout of {self.job_timeout_seconds:.0f} seconds.",
                log_path=log_path,
            )
        return returncode

    def _watch(self, process, cancel_event, stop: threading.Event, outcome: Dict[str, bool]):
        started = time.monotonic()
        while not stop.wait(self.watch_interval_seconds):
            if cancel_event is not None and cancel_event.is_set():
                outcome["cancelled"] = True
            elif self.job_timeout_seconds and time.monotonic() - started > self.job_timeout_seconds:
                outcome["timed_out"] = True
            else:
                continue

            process.terminate()
            try:
                process.wait(timeout=10)
            except self.subprocess.TimeoutExpired:
                process.kill()
            return


class CodeBuildJobRunner:
    """Runs deployer jobs as CodeBuild builds in the read-only or read-write project."""

    TERMINAL_STATUSES = {"SUCCEEDED", "FAILED", "FAULT", "STOPPED", "TIMED_OUT"}

    def __init__(
        self,
        client,
        logger,
        console,
        project_names: Dict[ExecutionContext, str],
        poll_interval_seconds: float = 10.0,
        job_timeout_seconds: Optional[float] = None,
        sleep=time.sleep,
    ):
        self.client = client
        self.logger = logger
        self.console = console
        self.project_names = project_names
        self.poll_interval_seconds = poll_interval_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.sleep = sleep

    @staticmethod
    def project_names_for(project: str, stage: str) -> Dict[ExecutionContext, str]:
        return {context: f"{project}-{stage}-deployer-{context.value}" for context in ExecutionContext}

    def run_job(
        self,
        profile,
        env: Dict[str, str],
        image_ref: str,
        log_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        project_name = self.project_names[profile.context]
        overrides = [{"name": name, "value": value, "type": "PLAINTEXT"} for name, value in sorted(env.items())]

        try:
            response = self.client.start_build(
                projectName=project_name,
                environmentVariablesOverride=overrides,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BuildExecutionError(
                f"Could not start build in {project_name} for {image_ref}: {exc}",
                log_path=log_path,
            ) from exc

        build_id = response["build"]["id"]
        self.logger.info("Started build %s in %s", build_id, project_name)
        started = time.monotonic()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self._stop_build(build_id)
                self._write_summary(log_path, build_id, project_name, "STOPPED", None)
                raise RolloutCancelledError(f"Build {build_id} was cancelled.")

            if self.job_timeout_seconds and time.monotonic() - started > self.job_timeout_seconds:
                self._stop_build(build_id)
                self._write_summary(log_path, build_id, project_name, "TIMED_OUT", None)
                raise BuildExecutionError(
                    f"Build {build_id} exceeded timeout of {self.job_timeout_seconds:.0f} seconds.",
                    log_path=log_path,
                )

            try:
                builds = self.client.batch_get_builds(ids=[build_id]).get("builds") or []
            except (BotoCoreError, ClientError) as exc:
                self.logger.warning("Could not poll build %s: %s", build_id, exc)
                builds = []

            if builds and builds[0].get("buildStatus") in self.TERMINAL_STATUSES:
                build = builds[0]
                status = build["buildStatus"]
                self._write_summary(log_path, build_id, project_name, status, build)
                return 0 if status == "SUCCEEDED" else 1

            self.sleep(self.poll_interval_seconds)

    def _stop_build(self, build_id: str):
        try:
            self.client.stop_build(id=build_id)
        except (BotoCoreError, ClientError) as exc:
            self.logger.warning("Could not stop build %s: %s", build_id, exc)

    @staticmethod
    def _write_summary(log_path: str, build_id: str, project_name: str, status: str, build):
        lines = [
            f"build_id: {build_id}",
            f"project: {project_name}",
            f"status: {status}",
        ]
        if build:
            for phase in build.get("phases") or []:
                lines.append(f"phase {phase.get('phaseType')}: {phase.get('phaseStatus', 'IN_PROGRESS')}")
            deep_link = (build.get("logs") or {}).get("deepLink")
            if deep_link:
                lines.append(f"logs: {deep_link}")
        with open(log_path, "w", encoding="utf-8") as file_obj:
            file_obj.write("\n".join(lines) + "\n")
