"""Configuration loader for stackdeployer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from stackdeployer.errors import DeployerError
from stackdeployer.models import StageConfig, region_to_code


class ConfigLoader:
    """Loads the YAML stage configuration and CLI defaults."""

    SUPPORTED_KEYS = {
        "project",
        "stage",
        "app_name",
        "regions",
        "account_id",
        "deployer_repository",
        "registry_url",
        "backend",
        "aws_region",
        "logs_dir",
        "state_file",
        "manifest_file",
        "secrets_file",
        "retry_count",
        "retry_backoff_seconds",
        "job_timeout_minutes",
        "poll_interval_seconds",
        "verbose",
        "log_file",
        "resume",
        "dry_run",
        "credentials_role_arn",
    }
    REQUIRED_STAGE_KEYS = ("project", "stage", "app_name", "regions", "deployer_repository")
    SCOPE_KEYS = ("project", "stage")
    INVALID_SCOPE_CHARS = "/*?["
    BACKENDS = ("local", "aws")

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise DeployerError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise DeployerError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise DeployerError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise DeployerError(f"Unknown configuration keys: {unknown_list}")

        backend = parsed.get("backend")
        if backend is not None and backend not in self.BACKENDS:
            raise DeployerError(f"Unsupported backend '{backend}'. Use one of: {', '.join(self.BACKENDS)}.")

        return parsed

    def stage_config(self, values: Dict[str, Any]) -> StageConfig:
        missing = [key for key in self.REQUIRED_STAGE_KEYS if not values.get(key)]
        if missing:
            raise DeployerError(f"Missing required configuration keys: {', '.join(missing)}")

        for key in self.SCOPE_KEYS:
            value = str(values[key])
            if any(char in value for char in self.INVALID_SCOPE_CHARS):
                raise DeployerError(
                    f"`{key}` must not contain any of {self.INVALID_SCOPE_CHARS!r}; got {value!r}."
                )

        regions = values["regions"]
        if isinstance(regions, str):
            regions = [regions]
        if not isinstance(regions, list) or not all(isinstance(region, str) for region in regions):
            raise DeployerError("`regions` must be a list of region names.")

        try:
            region_to_code(regions[0])
        except ValueError as exc:
            raise DeployerError(str(exc)) from exc

        return StageConfig(
            project=str(values["project"]),
            stage=str(values["stage"]),
            app_name=str(values["app_name"]),
            regions=tuple(regions),
            deployer_repository=str(values["deployer_repository"]),
            account_id=str(values.get("account_id") or "*"),
        )
