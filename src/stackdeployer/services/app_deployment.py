"""App deployment workflow: sequential app groups, parallel targets within a group."""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple

from stackdeployer.errors import AppGroupFailedError, RolloutCancelledError
from stackdeployer.errors_catalog import actionable_error
from stackdeployer.models import (
    AppDeploymentResult,
    AppGroup,
    BuildJob,
    DeploymentRequest,
    ExecutionContext,
    JobResult,
    Target,
)


def _run_directly(_name, callback, *args, **kwargs):
    return callback(*args, **kwargs), False


class AppDeploymentWorkflow:
    """Deploys app groups strictly one after another, fanning out each group's targets.

    When a target fails, siblings already running in the same group are left
    to finish so every log artifact is complete; the group then fails with
    all of its failed targets, and later groups never start.
    """

    NAME = "app-deployer"

    def __init__(
        self,
        executor,
        logger,
        console,
        run_step: Optional[Callable] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.executor = executor
        self.logger = logger
        self.console = console
        self.run_step = run_step or _run_directly
        self.cancel_event = cancel_event or threading.Event()

    @staticmethod
    def step_name(group_index: int, target: Target) -> str:
        return f"deploy_apps/group_{group_index}/{target.app}-{target.region_code}"

    def run(self, request: DeploymentRequest) -> AppDeploymentResult:
        result = AppDeploymentResult()
        total = len(request.app_groups)
        self.logger.info("Deploying %s app group(s) for version %s", total, request.version)

        for index, group in enumerate(request.app_groups, start=1):
            self._ensure_not_cancelled()
            labels = ", ".join(target.label for target in group)
            self.console.print(f"[bold blue]App group {index}/{total}:[/bold blue] {labels}")
            group_results = self.run_group(index, group, request, result)
            result.groups.append(group_results)

        return result

    def run_group(
        self,
        index: int,
        group: AppGroup,
        request: DeploymentRequest,
        result: AppDeploymentResult,
    ) -> List[JobResult]:
        completed: List[JobResult] = []
        failures: List[Tuple[Target, Exception]] = []

        with ThreadPoolExecutor(max_workers=len(group), thread_name_prefix=f"group-{index}") as pool:
            futures = {pool.submit(self._deploy_target, index, target, request): target for target in group}
            for future in as_completed(futures):
                target = futures[future]
                try:
                    job_result, skipped = future.result()
                except Exception as exc:
                    failures.append((target, exc))
                    self.logger.error("Target %s in app group %s failed: %s", target.label, index, exc)
                    continue

                if skipped:
                    result.skipped.append(target.label)
                elif job_result is not None:
                    completed.append(job_result)

        if failures and all(isinstance(exc, RolloutCancelledError) for _, exc in failures):
            raise RolloutCancelledError(f"App group {index} was cancelled.")

        failures = [(target, exc) for target, exc in failures if not isinstance(exc, RolloutCancelledError)]
        if failures:
            targets = ", ".join(target.label for target, _ in failures)
            self.console.print(f"[bold red]App group {index} failed:[/bold red] {targets}")
            raise AppGroupFailedError(
                actionable_error("app_group_failed", group=index, targets=targets),
                group_index=index,
                failures=failures,
            ) from failures[0][1]

        self.logger.info("App group %s completed (%s target(s)).", index, len(group))
        return completed

    def _deploy_target(self, index: int, target: Target, request: DeploymentRequest):
        self._ensure_not_cancelled()
        job = BuildJob.for_target(
            target,
            request,
            image=self.executor.stage_config.deployer_repository,
            context=ExecutionContext.READ_ONLY,
        )
        return self.run_step(
            self.step_name(index, target),
            self.executor.execute,
            job,
            cancel_event=self.cancel_event,
        )

    def _ensure_not_cancelled(self):
        if self.cancel_event.is_set():
            raise RolloutCancelledError("Rollout was cancelled before all app groups completed.")
