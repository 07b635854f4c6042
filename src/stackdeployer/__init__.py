"""
stackdeployer - Hierarchical, rate-limited rollout engine for containerized deployer images
"""

__version__ = "0.3.0"

from .core import DeployerRollout, RolloutState
from .errors import DeployerError

__all__ = ["DeployerRollout", "RolloutState", "DeployerError"]
