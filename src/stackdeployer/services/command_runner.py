"""Short-lived docker commands with retries."""

import subprocess
import time
from typing import List, Optional

from stackdeployer.errors import DeployerError


class CommandRunner:
    """Runs ``docker version`` / ``docker pull`` style commands, retrying failures with linear backoff."""

    def __init__(
        self,
        logger,
        default_timeout: Optional[float] = None,
        subprocess_module=subprocess,
        sleep=time.sleep,
    ):
        self.logger = logger
        self.default_timeout = default_timeout
        self.subprocess = subprocess_module
        self.sleep = sleep

    def run(
        self,
        cmd: List[str],
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        effective_timeout = timeout if timeout is not None else self.default_timeout
        attempts = max(1, retry_count + 1)

        for attempt in range(1, attempts + 1):
            self.logger.debug("Executing (attempt %s/%s): %s", attempt, attempts, cmd_str)
            try:
                result = self.subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                )
            except FileNotFoundError as exc:
                raise DeployerError(f"Required command not found: {cmd[0]}. Is docker installed?") from exc
            except subprocess.TimeoutExpired:
                failure = f"Command timed out after {effective_timeout}s: {cmd_str}"
            except OSError as exc:
                raise DeployerError(f"Failed to execute command: {cmd_str}. {exc}") from exc
            else:
                if result.returncode == 0:
                    if capture_output and result.stdout:
                        self.logger.debug("Command output: %s", result.stdout.strip())
                    return result
                failure = f"Command failed ({result.returncode}): {cmd_str}"
                stderr = (result.stderr or "").strip() if capture_output else ""
                if stderr:
                    failure = f"{failure}\n{stderr}"

            if attempt == attempts:
                raise DeployerError(failure)

            delay = retry_backoff_seconds * attempt
            self.logger.warning("Attempt %s/%s failed, retrying in %.1fs: %s", attempt, attempts, delay, failure)
            self.sleep(delay)

        raise DeployerError(f"Command failed after retries: {cmd_str}")
