"""Temporary AWS credentials narrowed to one execution profile."""

import json
import re
from typing import Dict

from botocore.exceptions import BotoCoreError, ClientError

from stackdeployer.errors import BuildExecutionError
from stackdeployer.errors_catalog import actionable_error

_INVALID_SESSION_CHARS = re.compile(r"[^\w+=,.@-]")


class StsCredentialProvider:
    """Assumes the operator's deployer role with the profile's session policy attached.

    The effective permissions are the intersection of the role and the inline
    policy, so a read-only job can never reach more than its profile grants.
    """

    def __init__(self, client, role_arn: str, logger, duration_seconds: int = 3600):
        self.client = client
        self.role_arn = role_arn
        self.logger = logger
        self.duration_seconds = duration_seconds

    @staticmethod
    def session_name(profile) -> str:
        name = f"stackdeployer-{profile.project}-{profile.stage}-{profile.context.value}"
        return _INVALID_SESSION_CHARS.sub("-", name)[:64]

    def credentials_for(self, profile) -> Dict[str, str]:
        try:
            response = self.client.assume_role(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name(profile),
                Policy=json.dumps(profile.session_policy(), separators=(",", ":")),
                DurationSeconds=self.duration_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BuildExecutionError(
                f"{actionable_error('credentials_unavailable', role_arn=self.role_arn, context=profile.context.name)}"
                f" {exc}"
            ) from exc

        credentials = response["Credentials"]
        self.logger.debug(
            "Issued %s credentials from %s (expires %s)",
            profile.context.name,
            self.role_arn,
            credentials.get("Expiration"),
        )
        return {
            "AWS_ACCESS_KEY_ID": credentials["AccessKeyId"],
            "AWS_SECRET_ACCESS_KEY": credentials["SecretAccessKey"],
            "AWS_SESSION_TOKEN": credentials["SessionToken"],
        }
