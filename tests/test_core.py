import json
import threading
from pathlib import Path

import pytest

import stackdeployer.services.aws_clients as aws_clients_module
from stackdeployer.core import DeployerRollout, RolloutState
from stackdeployer.errors import DeployerError, ImageNotFoundError, RolloutCancelledError, WorkflowPropagationError
from stackdeployer.models import DeploymentRequest, ExecutionContext, StageConfig
from stackdeployer.services.credentials import StsCredentialProvider
from stackdeployer.services.job_runner import CodeBuildJobRunner, DockerJobRunner
from stackdeployer.services.registry import EcrRegistry, HttpRegistry
from stackdeployer.services.secrets import FileSecretStore, SecretsManagerStore


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


class FakeRegistry:
    def __init__(self, available=True):
        self.available = available
        self.lookups = []

    def image_exists(self, repository, tag):
        self.lookups.append((repository, tag))
        return self.available


class RecordingRunner:
    def __init__(self, failing=(), on_job=None):
        self.failing = set(failing)
        self.on_job = on_job
        self.jobs = []
        self._lock = threading.Lock()

    def run_job(self, profile, env, image_ref, log_path, cancel_event=None):
        label = f"{env['APP']}/{env['REGCODE']}"
        with self._lock:
            self.jobs.append({"label": label, "context": profile.context, "image_ref": image_ref})
        if self.on_job:
            self.on_job(label)
        Path(log_path).write_text(f"{env['CMD']} {label}\n", encoding="utf-8")
        return 1 if label in self.failing else 0

    @property
    def labels(self):
        return [job["label"] for job in self.jobs]


STAGE_CONFIG = StageConfig(
    project="shop",
    stage="prod",
    app_name="deployer",
    regions=("us-east-1", "eu-central-1"),
    deployer_repository="registry.example.com/deployer",
)


def _request():
    return DeploymentRequest.from_dict(
        {
            "version": "v1",
            "cmd": "deploy",
            "appGroups": [
                [{"app": "a", "regcode": "us"}],
                [{"app": "b", "regcode": "eu"}, {"app": "c", "regcode": "eu"}],
            ],
        }
    )


def build_rollout(tmp_path, registry=None, runner=None, request=None, **kwargs):
    return DeployerRollout(
        request=request or _request(),
        stage_config=STAGE_CONFIG,
        registry=registry or FakeRegistry(),
        runner=runner or RecordingRunner(),
        secret_store=FileSecretStore(str(tmp_path / "secrets.json"), logger=DummyLogger()),
        output_dir=str(tmp_path / "output"),
        retry_backoff_seconds=0,
        **kwargs,
    )


def _manifest(tmp_path):
    return json.loads((tmp_path / "output" / "run-manifest.json").read_text(encoding="utf-8"))


def test_rollout_runs_self_update_then_groups_in_order(tmp_path):
    registry = FakeRegistry()
    runner = RecordingRunner()
    rollout = build_rollout(tmp_path, registry=registry, runner=runner)

    assert rollout.run() == 0

    assert registry.lookups == [("registry.example.com/deployer", "v1")]
    assert runner.labels[0] == "deployer/use1"
    assert runner.labels[1] == "a/us"
    assert sorted(runner.labels[2:]) == ["b/eu", "c/eu"]
    assert all(job["context"] is ExecutionContext.READ_ONLY for job in runner.jobs)
    assert all(job["image_ref"] == "registry.example.com/deployer:v1" for job in runner.jobs)
    assert rollout.status is RolloutState.DONE
    assert rollout.failed_state is None
    assert len(rollout.app_result.jobs) == 3


def test_rollout_writes_log_artifacts_and_manifest(tmp_path):
    rollout = build_rollout(tmp_path)

    assert rollout.run() == 0

    logs_dir = tmp_path / "output" / "logs"
    assert (logs_dir / "deploy-deployer-prod-use1.txt").exists()
    assert (logs_dir / "deploy-a-prod-us.txt").read_text(encoding="utf-8") == "deploy a/us\n"
    manifest = _manifest(tmp_path)
    assert manifest["status"] == "success"
    assert manifest["state"] == "Done"
    assert manifest["artifacts"]["deploy_apps/group_2/c-eu"].endswith("deploy-c-prod-eu.txt")
    assert manifest["request"]["appGroups"][1][0] == {"app": "b", "regcode": "eu"}


def test_rollout_absent_image_runs_no_jobs(tmp_path):
    runner = RecordingRunner()
    rollout = build_rollout(tmp_path, registry=FakeRegistry(available=False), runner=runner)

    assert rollout.run() == 1

    assert runner.jobs == []
    assert rollout.status is RolloutState.FAILED
    assert rollout.failed_state is RolloutState.CHECK_IMAGE_AVAILABLE
    assert isinstance(rollout.error, ImageNotFoundError)
    manifest = _manifest(tmp_path)
    assert manifest["status"] == "failed"
    assert manifest["failure"]["state"] == "CheckImageAvailable"


def test_rollout_self_update_failure_skips_app_deployment(tmp_path):
    runner = RecordingRunner(failing={"deployer/use1"})
    rollout = build_rollout(tmp_path, runner=runner)

    assert rollout.run() == 1

    assert runner.labels == ["deployer/use1"]
    assert rollout.failed_state is RolloutState.DEPLOY_DEPLOYER_TOOL
    failure = _manifest(tmp_path)["failure"]
    assert failure["targets"][0]["target"] == "deployer/use1"
    assert failure["targets"][0]["log_path"].endswith("deploy-deployer-prod-use1.txt")


def test_rollout_group_failure_reports_failed_targets(tmp_path):
    request = DeploymentRequest.from_dict(
        {
            "version": "v1",
            "cmd": "deploy",
            "appGroups": [
                [{"app": "b", "regcode": "eu"}, {"app": "c", "regcode": "eu"}],
                [{"app": "a", "regcode": "us"}],
            ],
        }
    )
    runner = RecordingRunner(failing={"c/eu"})
    rollout = build_rollout(tmp_path, runner=runner, request=request)

    assert rollout.run() == 1

    assert sorted(runner.labels[1:]) == ["b/eu", "c/eu"]
    assert "a/us" not in runner.labels
    assert rollout.failed_state is RolloutState.DEPLOY_APPLICATIONS
    assert isinstance(rollout.error, WorkflowPropagationError)
    failure = _manifest(tmp_path)["failure"]
    assert failure["group"] == 1
    assert [target["target"] for target in failure["targets"]] == ["c/eu"]
    assert failure["targets"][0]["log_path"].endswith("deploy-c-prod-eu.txt")


def test_rerun_after_success_repeats_every_job(tmp_path):
    first_runner = RecordingRunner()
    second_runner = RecordingRunner()

    assert build_rollout(tmp_path, runner=first_runner).run() == 0
    assert build_rollout(tmp_path, runner=second_runner).run() == 0

    assert first_runner.labels[:2] == second_runner.labels[:2]
    assert sorted(first_runner.labels) == sorted(second_runner.labels)
    assert len(second_runner.labels) == 4


def test_resume_skips_completed_targets(tmp_path):
    failing_runner = RecordingRunner(failing={"c/eu"})
    assert build_rollout(tmp_path, runner=failing_runner, resume=True).run() == 1

    runner = RecordingRunner()
    rollout = build_rollout(tmp_path, runner=runner, resume=True)

    assert rollout.run() == 0
    assert runner.labels == ["c/eu"]
    assert sorted(rollout.app_result.skipped) == ["a/us", "b/eu"]
    state = json.loads((tmp_path / "output" / "rollout-state.json").read_text(encoding="utf-8"))
    assert state["status"] == "success"


def test_resume_rejects_a_different_request(tmp_path):
    assert build_rollout(tmp_path, runner=RecordingRunner(failing={"a/us"}), resume=True).run() == 1

    other = DeploymentRequest.from_dict({"version": "v2", "cmd": "deploy", "appGroups": []})
    runner = RecordingRunner()
    rollout = build_rollout(tmp_path, runner=runner, request=other, resume=True)

    assert rollout.run() == 1
    assert runner.jobs == []
    assert isinstance(rollout.error, DeployerError)
    assert "request_fingerprint" in str(rollout.error)


def test_cancel_stops_before_app_groups(tmp_path):
    holder = {}

    def cancel_after_self_update(label):
        if label == "deployer/use1":
            holder["rollout"].cancel()

    runner = RecordingRunner(on_job=cancel_after_self_update)
    rollout = build_rollout(tmp_path, runner=runner)
    holder["rollout"] = rollout

    assert rollout.run() == 1

    assert runner.labels == ["deployer/use1"]
    assert rollout.status is RolloutState.CANCELLED
    assert rollout.failed_state is RolloutState.DEPLOY_APPLICATIONS
    assert isinstance(rollout.error, RolloutCancelledError)
    assert _manifest(tmp_path)["status"] == "aborted"


def test_dry_run_prints_plan_without_jobs(tmp_path):
    registry = FakeRegistry()
    runner = RecordingRunner()
    rollout = build_rollout(tmp_path, registry=registry, runner=runner, dry_run=True)

    assert rollout.run() == 0

    assert runner.jobs == []
    assert registry.lookups == []
    assert _manifest(tmp_path)["status"] == "planned"
    plan = rollout.plan()
    assert [row["step"] for row in plan] == [
        "deploy_deployer_tool",
        "deploy_apps/group_1/a-us",
        "deploy_apps/group_2/b-eu",
        "deploy_apps/group_2/c-eu",
    ]
    assert [row["phase"] for row in plan] == ["0", "1", "2", "2"]


def test_read_only_executor_cannot_write_secrets(tmp_path):
    rollout = build_rollout(tmp_path)

    with pytest.raises(DeployerError):
        rollout.executor_for(ExecutionContext.READ_ONLY).secrets.put_secret("shop/prod/age-key-abc", "x")
    rollout.executor_for(ExecutionContext.READ_WRITE).secrets.put_secret("shop/prod/age-key-abc", "x")

    assert rollout.executor_for("ro").secrets.get_secret("shop/prod/age-key-abc") == "x"


def test_unknown_backend_is_rejected(tmp_path):
    with pytest.raises(DeployerError, match="Unsupported backend"):
        build_rollout(tmp_path, backend="kubernetes")


def test_local_backend_requires_resolvable_registry(tmp_path):
    stage_config = StageConfig(
        project="shop",
        stage="prod",
        app_name="deployer",
        regions=("us-east-1",),
        deployer_repository="deployer",
    )

    with pytest.raises(DeployerError, match="registry_url"):
        DeployerRollout(request=_request(), stage_config=stage_config, output_dir=str(tmp_path))


def test_aws_backend_uses_ecr_codebuild_and_secrets_manager(tmp_path, monkeypatch):
    monkeypatch.setattr(aws_clients_module, "get_client", lambda name, region=None: (name, region))

    rollout = DeployerRollout(
        request=_request(),
        stage_config=STAGE_CONFIG,
        backend="aws",
        output_dir=str(tmp_path),
    )

    assert isinstance(rollout.registry, EcrRegistry)
    assert rollout.registry.client == ("ecr", "us-east-1")
    assert isinstance(rollout.runner, CodeBuildJobRunner)
    assert rollout.runner.project_names[ExecutionContext.READ_WRITE] == "shop-prod-deployer-rw"
    assert isinstance(rollout.secret_store, SecretsManagerStore)


def test_local_backend_derives_registry_from_repository(tmp_path):
    rollout = DeployerRollout(request=_request(), stage_config=STAGE_CONFIG, output_dir=str(tmp_path))

    assert isinstance(rollout.registry, HttpRegistry)
    assert rollout.registry.registry_url == "https://registry.example.com"
    assert isinstance(rollout.runner, DockerJobRunner)
    assert rollout.secret_store.secrets_file == str(tmp_path / "secrets.json")


def test_local_backend_issues_scoped_container_credentials(tmp_path, monkeypatch):
    monkeypatch.setattr(aws_clients_module, "get_client", lambda name, region=None: (name, region))

    rollout = DeployerRollout(
        request=_request(),
        stage_config=STAGE_CONFIG,
        output_dir=str(tmp_path),
        job_timeout_minutes=90,
        credentials_role_arn="arn:aws:iam::123456789012:role/deployer-operator",
    )

    provider = rollout.runner.credential_provider
    assert isinstance(provider, StsCredentialProvider)
    assert provider.client == ("sts", "us-east-1")
    assert provider.role_arn == "arn:aws:iam::123456789012:role/deployer-operator"
    assert provider.duration_seconds == 5400


def test_invalid_scope_is_a_deployer_error(tmp_path):
    stage_config = StageConfig(
        project="shop/*",
        stage="prod",
        app_name="deployer",
        regions=("us-east-1",),
        deployer_repository="registry.example.com/deployer",
    )

    with pytest.raises(DeployerError, match="Invalid scope component"):
        DeployerRollout(
            request=_request(),
            stage_config=stage_config,
            registry=FakeRegistry(),
            runner=RecordingRunner(),
            secret_store=FileSecretStore(str(tmp_path / "secrets.json"), logger=DummyLogger()),
            output_dir=str(tmp_path / "output"),
        )
