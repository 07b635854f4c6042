"""Execution profiles scoping role assumption and secret access."""

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Tuple

from stackdeployer.constants import (
    AGE_KEY_SECRET_NAME,
    CDK_QUALIFIER,
    READ_ONLY_ROLE_TYPES,
    READ_WRITE_ROLE_TYPES,
)
from stackdeployer.errors import RoleAssumptionError, SecretAccessError
from stackdeployer.errors_catalog import actionable_error
from stackdeployer.models import ExecutionContext


@dataclass(frozen=True)
class AccessProfile:
    """Permission set attached to a build executor at configuration time.

    Only two profiles exist and both are produced by :meth:`for_context`; the
    project and stage come from the stage configuration, never from a request.
    """

    context: ExecutionContext
    project: str
    stage: str
    account_id: str
    role_types: Tuple[str, ...]
    secret_read_patterns: Tuple[str, ...]
    secret_write_patterns: Tuple[str, ...]
    registry_pull: bool = True

    @classmethod
    def for_context(
        cls,
        context: ExecutionContext,
        project: str,
        stage: str,
        account_id: str = "*",
    ) -> "AccessProfile":
        context = ExecutionContext(context)
        if not project or not stage:
            raise ValueError("Access profiles require both a project and a stage.")
        for value in (project, stage):
            if any(char in value for char in "/*?["):
                raise ValueError(f"Invalid scope component: {value!r}")

        read_patterns = (f"{project}/{stage}/{AGE_KEY_SECRET_NAME}",)
        if context is ExecutionContext.READ_WRITE:
            return cls(
                context=context,
                project=project,
                stage=stage,
                account_id=account_id,
                role_types=READ_WRITE_ROLE_TYPES,
                secret_read_patterns=read_patterns,
                secret_write_patterns=(f"{project}/{stage}/*",),
            )

        return cls(
            context=context,
            project=project,
            stage=stage,
            account_id=account_id,
            role_types=READ_ONLY_ROLE_TYPES,
            secret_read_patterns=read_patterns,
            secret_write_patterns=(),
        )

    @property
    def can_write_secrets(self) -> bool:
        return bool(self.secret_write_patterns)

    def role_arn_pattern(self, role_type: str) -> str:
        return (
            f"arn:aws:iam::{self.account_id}:role/"
            f"cdk-{CDK_QUALIFIER}-{role_type}-role-{self.account_id}-*"
        )

    def role_arn_patterns(self) -> Tuple[str, ...]:
        return tuple(self.role_arn_pattern(role_type) for role_type in self.role_types)

    def secret_arn(self, pattern: str) -> str:
        return f"arn:aws:secretsmanager:*:{self.account_id}:secret:{pattern}"

    def session_policy(self) -> Dict[str, Any]:
        """IAM policy document granting exactly what this profile may do."""
        statements: List[Dict[str, Any]] = [
            {
                "Effect": "Allow",
                "Action": ["sts:AssumeRole"],
                "Resource": list(self.role_arn_patterns()),
            },
            {
                "Effect": "Allow",
                "Action": ["secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret"],
                "Resource": [self.secret_arn(pattern) for pattern in self.secret_read_patterns],
            },
        ]
        if self.registry_pull:
            statements.append(
                {
                    "Effect": "Allow",
                    "Action": [
                        "ecr:GetAuthorizationToken",
                        "ecr:BatchCheckLayerAvailability",
                        "ecr:GetDownloadUrlForLayer",
                        "ecr:BatchGetImage",
                    ],
                    "Resource": "*",
                }
            )
        if self.secret_write_patterns:
            statements.append(
                {
                    "Effect": "Allow",
                    "Action": ["secretsmanager:CreateSecret", "secretsmanager:UpdateSecret"],
                    "Resource": [self.secret_arn(pattern) for pattern in self.secret_write_patterns],
                }
            )
        return {"Version": "2012-10-17", "Statement": statements}

    def assume_role(self, role_type: str) -> str:
        if role_type not in self.role_types:
            raise RoleAssumptionError(
                actionable_error(
                    "role_not_permitted",
                    role_type=role_type,
                    context=self.context.name,
                )
            )
        return self.role_arn_pattern(role_type)

    def can_read_secret(self, key: str) -> bool:
        return self._matches(key, self.secret_read_patterns)

    def can_write_secret(self, key: str) -> bool:
        return self._matches(key, self.secret_write_patterns)

    def check_secret_read(self, key: str):
        if not self.can_read_secret(key):
            raise SecretAccessError(
                actionable_error(
                    "secret_read_denied",
                    key=key,
                    context=self.context.name,
                    project=self.project,
                    stage=self.stage,
                )
            )

    def check_secret_write(self, key: str):
        if not self.can_write_secret(key):
            raise SecretAccessError(
                actionable_error(
                    "secret_write_denied",
                    key=key,
                    context=self.context.name,
                    project=self.project,
                    stage=self.stage,
                )
            )

    @staticmethod
    def _matches(key: str, patterns: Tuple[str, ...]) -> bool:
        if not key or ".." in key.split("/"):
            return False
        return any(fnmatchcase(key, pattern) for pattern in patterns)
