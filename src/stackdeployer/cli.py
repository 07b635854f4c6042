import json
import logging
import os

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE
from .core import DeployerRollout
from .errors import DeployerError
from .models import DeploymentRequest
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _parse_group(value: str):
    targets = []
    for item in value.split(","):
        app, sep, regcode = item.strip().partition(":")
        if not sep or not app.strip() or not regcode.strip():
            raise click.BadParameter(
                f"Invalid target '{item}'. Use APP:REGCODE, e.g. --group api:euc1,web:euc1.",
                param_hint="--group",
            )
        targets.append({"app": app.strip(), "regcode": regcode.strip()})
    return targets


def _load_request_payload(request_file):
    if not request_file:
        return {}
    try:
        with open(request_file, "r", encoding="utf-8") as file_obj:
            return json.load(file_obj)
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read request file '{request_file}': {exc}") from exc


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML stage configuration. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--request",
    "request_file",
    required=False,
    type=click.Path(),
    help="Path to a JSON deployment request: {version, cmd, appGroups}.",
)
@click.option("--version", required=False, help="Deployer image version to roll out.")
@click.option("--cmd", required=False, help="Command run by the deployer for every target.")
@click.option(
    "--group",
    "groups",
    multiple=True,
    help="App group as comma-separated APP:REGCODE targets. Repeat for each group, in order.",
)
@click.option("--project", required=False, help="Project name scoping roles and secrets.")
@click.option("--stage", required=False, help="Stage name scoping roles and secrets.")
@click.option(
    "--backend",
    required=False,
    type=click.Choice(ConfigLoader.BACKENDS),
    help="Execution backend: local docker or aws (ECR, CodeBuild, Secrets Manager).",
)
@click.option("--registry-url", required=False, help="Registry base URL for the local backend.")
@click.option(
    "--credentials-role-arn",
    required=False,
    help="Role assumed with a per-context session policy to issue container credentials (local backend).",
)
@click.option("--logs-dir", required=False, type=click.Path(), help="Directory for job log artifacts.")
@click.option(
    "--state-file",
    required=False,
    type=click.Path(),
    help="Path to the rollout state file (default: output/rollout-state.json).",
)
@click.option(
    "--manifest-file",
    required=False,
    type=click.Path(),
    help="Path to the run manifest (default: output/run-manifest.json).",
)
@click.option(
    "--resume",
    is_flag=True,
    default=None,
    help="Resume a failed or interrupted rollout, skipping jobs that already succeeded.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--retry-count",
    required=False,
    type=int,
    default=None,
    help="Retries for transient registry lookups and image pulls.",
)
@click.option(
    "--retry-backoff-seconds",
    required=False,
    type=float,
    default=None,
    help="Backoff time in seconds between retries.",
)
@click.option(
    "--job-timeout-minutes",
    required=False,
    type=int,
    default=None,
    help="Timeout for each deployment job in minutes.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate inputs and print the rollout plan without running any job.",
)
def main(
    config,
    request_file,
    version,
    cmd,
    groups,
    project,
    stage,
    backend,
    registry_url,
    credentials_role_arn,
    logs_dir,
    state_file,
    manifest_file,
    resume,
    verbose,
    log_file,
    retry_count,
    retry_backoff_seconds,
    job_timeout_minutes,
    dry_run,
):
    """Roll out a deployer version: self-update the deployer, then deploy app groups in order."""
    logger = logging.getLogger("stackdeployer")

    config_loader = ConfigLoader()
    try:
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    if project is not None:
        config_values["project"] = project
    if stage is not None:
        config_values["stage"] = stage

    payload = _load_request_payload(request_file)
    if not isinstance(payload, dict):
        raise click.ClickException("Deployment request must be a JSON object.")
    if version is not None:
        payload["version"] = version
    if cmd is not None:
        payload["cmd"] = cmd
    if groups:
        payload["appGroups"] = [_parse_group(group) for group in groups]

    if not payload.get("version"):
        raise click.ClickException("Missing required option '--version' (or provide it in --request).")
    if not payload.get("cmd"):
        raise click.ClickException("Missing required option '--cmd' (or provide it in --request).")

    try:
        request = DeploymentRequest.from_dict(payload)
        stage_config = config_loader.stage_config(config_values)
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(threadName)s %(message)s"))
        logger.addHandler(file_handler)

    job_timeout_minutes = _resolve_option(job_timeout_minutes, config_values, "job_timeout_minutes")

    try:
        rollout = DeployerRollout(
            request=request,
            stage_config=stage_config,
            backend=_resolve_option(backend, config_values, "backend", default="local"),
            registry_url=_resolve_option(registry_url, config_values, "registry_url"),
            aws_region=config_values.get("aws_region"),
            logs_dir=_resolve_option(logs_dir, config_values, "logs_dir"),
            state_file=_resolve_option(state_file, config_values, "state_file"),
            manifest_file=_resolve_option(manifest_file, config_values, "manifest_file"),
            secrets_file=config_values.get("secrets_file"),
            resume=bool(_resolve_option(resume, config_values, "resume", default=False)),
            verbose=verbose,
            retry_count=int(_resolve_option(retry_count, config_values, "retry_count", default=2)),
            retry_backoff_seconds=float(
                _resolve_option(
                    retry_backoff_seconds,
                    config_values,
                    "retry_backoff_seconds",
                    default=2.0,
                )
            ),
            job_timeout_minutes=int(job_timeout_minutes) if job_timeout_minutes else None,
            poll_interval_seconds=float(config_values.get("poll_interval_seconds", 10.0)),
            dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
            credentials_role_arn=_resolve_option(credentials_role_arn, config_values, "credentials_role_arn"),
        )
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(rollout.run())


if __name__ == "__main__":
    main()
