"""Actionable error catalog for stackdeployer."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "image_not_found": {
        "what": "Deployer image {repository}:{tag} was not found in the registry.",
        "next": "Publish the deployer image for version `{tag}` before starting the rollout.",
    },
    "registry_unavailable": {
        "what": "Registry could not be queried for {repository}:{tag}.",
        "next": "Check registry connectivity and credentials, then retry the rollout.",
    },
    "build_failed": {
        "what": "Deployment job {log_name} exited with code {exit_code}.",
        "next": "Inspect the log artifact at `{log_path}`.",
    },
    "image_pull_failed": {
        "what": "Could not pull deployer image {image}.",
        "next": "Check registry credentials and that the image tag exists.",
    },
    "app_group_failed": {
        "what": "App group {group} failed for target(s): {targets}.",
        "next": "Inspect the log artifacts listed in the run manifest, then rerun with `--resume`.",
    },
    "role_not_permitted": {
        "what": "Role type `{role_type}` is not permitted in the {context} execution context.",
        "next": "Run the job with an executor configured for the read-write context.",
    },
    "secret_read_denied": {
        "what": "Secret `{key}` is outside the readable scope of the {context} execution context.",
        "next": "Read only the `{project}/{stage}/age-key-*` secret from deployment jobs.",
    },
    "secret_write_denied": {
        "what": "Secret `{key}` cannot be written from the {context} execution context.",
        "next": "Secret mutation requires a read-write executor scoped to `{project}/{stage}/*`.",
    },
    "credentials_unavailable": {
        "what": "Could not issue {context} credentials from role `{role_arn}`.",
        "next": "Check that the operator can assume the role and that the role trusts the operator.",
    },
    "nested_workflow_failed": {
        "what": "Nested workflow `{workflow}` failed: {cause}",
        "next": "Review the failed step in the run manifest and the referenced log artifacts.",
    },
}


def actionable_error(code: str, **kwargs) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
