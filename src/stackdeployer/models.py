"""Shared domain models for stackdeployer."""

import enum
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .errors import InvalidRequestError

_DIRECTION_CODES = {
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "central": "c",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
}


def region_to_code(region: str) -> str:
    """Compress a region name into its short code, e.g. ``eu-central-1`` -> ``euc1``."""
    parts = [part for part in region.strip().lower().split("-") if part]
    if len(parts) < 2 or not re.fullmatch(r"\d+", parts[-1]):
        raise ValueError(f"Unrecognized region name: {region!r}")

    middle = "".join(_DIRECTION_CODES.get(part, part[:1]) for part in parts[1:-1])
    return f"{parts[0]}{middle}{parts[-1]}"


class ExecutionContext(str, enum.Enum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"


@dataclass(frozen=True)
class Target:
    """One (application, region) deployment unit."""

    app: str
    region_code: str

    @property
    def label(self) -> str:
        return f"{self.app}/{self.region_code}"

    def to_dict(self) -> Dict[str, str]:
        return {"app": self.app, "regcode": self.region_code}


AppGroup = Tuple[Target, ...]


@dataclass(frozen=True)
class DeploymentRequest:
    """Identifies one rollout: a deployer version, a command and ordered app groups."""

    version: str
    command: str
    app_groups: Tuple[AppGroup, ...] = ()

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DeploymentRequest":
        if not isinstance(payload, dict):
            raise InvalidRequestError("Deployment request must be a JSON object.")

        version = payload.get("version")
        command = payload.get("cmd", payload.get("command"))
        if not isinstance(version, str) or not version.strip():
            raise InvalidRequestError("Deployment request requires a non-empty `version`.")
        if not isinstance(command, str) or not command.strip():
            raise InvalidRequestError("Deployment request requires a non-empty `cmd`.")

        raw_groups = payload.get("appGroups", payload.get("app_groups", []))
        if not isinstance(raw_groups, list):
            raise InvalidRequestError("`appGroups` must be a list of target lists.")

        groups: List[AppGroup] = []
        seen = set()
        for index, raw_group in enumerate(raw_groups, start=1):
            if not isinstance(raw_group, list) or not raw_group:
                raise InvalidRequestError(f"App group {index} must be a non-empty list of targets.")

            targets = []
            for raw_target in raw_group:
                if not isinstance(raw_target, dict):
                    raise InvalidRequestError(f"App group {index} contains a non-object target.")
                app = raw_target.get("app")
                region_code = raw_target.get("regcode", raw_target.get("region_code"))
                if not isinstance(app, str) or not app.strip():
                    raise InvalidRequestError(f"Target in app group {index} is missing `app`.")
                if not isinstance(region_code, str) or not region_code.strip():
                    raise InvalidRequestError(f"Target `{app}` in app group {index} is missing `regcode`.")

                target = Target(app=app.strip(), region_code=region_code.strip())
                if target in seen:
                    raise InvalidRequestError(f"Target {target.label} appears more than once in the request.")
                seen.add(target)
                targets.append(target)
            groups.append(tuple(targets))

        return cls(version=version.strip(), command=command.strip(), app_groups=tuple(groups))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "cmd": self.command,
            "appGroups": [[target.to_dict() for target in group] for group in self.app_groups],
        }

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def target_count(self) -> int:
        return sum(len(group) for group in self.app_groups)


@dataclass(frozen=True)
class StageConfig:
    """Static stage configuration shared read-only by every job of a rollout."""

    project: str
    stage: str
    app_name: str
    regions: Tuple[str, ...]
    deployer_repository: str
    account_id: str = "*"

    @property
    def deployer_region_code(self) -> str:
        if not self.regions:
            raise ValueError("Stage configuration requires at least one region.")
        return region_to_code(self.regions[0])


@dataclass(frozen=True)
class BuildJob:
    context: ExecutionContext
    app: str
    region_code: str
    version: str
    command: str
    image: str

    @classmethod
    def for_target(
        cls,
        target: Target,
        request: DeploymentRequest,
        image: str,
        context: ExecutionContext = ExecutionContext.READ_ONLY,
    ) -> "BuildJob":
        return cls(
            context=context,
            app=target.app,
            region_code=target.region_code,
            version=request.version,
            command=request.command,
            image=image,
        )

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.version}"

    def log_name(self, stage: str) -> str:
        return f"{self.command}-{self.app}-{stage}-{self.region_code}.txt"

    def env(self, stage: str) -> Dict[str, str]:
        return {
            "DEPLOYER_IMAGE": self.image,
            "STAGE": stage,
            "VERSION": self.version,
            "CMD": self.command,
            "APP": self.app,
            "REGCODE": self.region_code,
        }


@dataclass
class JobResult:
    job: BuildJob
    exit_code: int
    log_path: str
    duration_seconds: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class AppDeploymentResult:
    groups: List[List[JobResult]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def jobs(self) -> List[JobResult]:
        return [result for group in self.groups for result in group]


@dataclass(frozen=True)
class RunContext:
    """Runtime identifiers isolated per rollout execution."""

    run_id: str
    stage: str
    version: str
    request_fingerprint: str
