"""Future-backed handle for nested workflow invocations."""

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from stackdeployer.errors import DeployerError, RolloutCancelledError, WorkflowPropagationError
from stackdeployer.errors_catalog import actionable_error


class WorkflowHandle:
    """Tracks a workflow started in the background; ``wait`` blocks until it terminates."""

    def __init__(self, name: str, future: Future):
        self.name = name
        self.future = future

    @classmethod
    def start(cls, name: str, callback: Callable[..., Any], *args, **kwargs) -> "WorkflowHandle":
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        try:
            future = pool.submit(callback, *args, **kwargs)
        finally:
            pool.shutdown(wait=False)
        return cls(name, future)

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> Any:
        try:
            return self.future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            raise DeployerError(f"Nested workflow `{self.name}` did not finish within {timeout}s.") from exc
        except RolloutCancelledError:
            raise
        except Exception as exc:
            raise WorkflowPropagationError(
                actionable_error("nested_workflow_failed", workflow=self.name, cause=exc)
            ) from exc
