"""Domain errors for stackdeployer."""


class DeployerError(RuntimeError):
    """Raised when the rollout cannot continue safely."""


class InvalidRequestError(DeployerError):
    """Raised when a deployment request is malformed."""


class ImageNotFoundError(DeployerError):
    """Raised when the requested deployer image version is absent from the registry."""

    def __init__(self, message: str, repository: str = "", tag: str = ""):
        super().__init__(message)
        self.repository = repository
        self.tag = tag


class RegistryUnavailableError(DeployerError):
    """Raised for transient registry failures that may succeed on retry."""


class BuildExecutionError(DeployerError):
    """Raised when an image pull fails or a deployment command exits non-zero."""

    def __init__(self, message: str, job=None, log_path=None, exit_code=None):
        super().__init__(message)
        self.job = job
        self.log_path = log_path
        self.exit_code = exit_code


class AppGroupFailedError(BuildExecutionError):
    """Raised after an app group drained with one or more failed targets."""

    def __init__(self, message: str, group_index: int, failures):
        super().__init__(message)
        self.group_index = group_index
        self.failures = list(failures)


class RoleAssumptionError(DeployerError):
    """Raised when a role outside the execution profile is requested."""


class SecretAccessError(DeployerError):
    """Raised when a secret operation falls outside the execution profile."""


class WorkflowPropagationError(DeployerError):
    """Raised in a parent workflow when a nested workflow failed."""


class RolloutCancelledError(DeployerError):
    """Raised when a rollout is cancelled by an external signal."""
