import json
import os

import pytest
from botocore.exceptions import ClientError

from stackdeployer.errors import DeployerError, SecretAccessError
from stackdeployer.models import ExecutionContext
from stackdeployer.services.access_policy import AccessProfile
from stackdeployer.services.secrets import FileSecretStore, ScopedSecretStore, SecretsManagerStore


class DummyLogger:
    def __init__(self):
        self.errors = []

    def debug(self, *_args, **_kwargs):
        return None

    def error(self, message, *args):
        self.errors.append(message % args)


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def test_file_secret_store_round_trip_is_private(tmp_path):
    secrets_file = tmp_path / "secrets.json"
    store = FileSecretStore(str(secrets_file), logger=DummyLogger())

    assert store.get_secret("shop/prod/age-key-abc123") is None
    store.put_secret("shop/prod/age-key-abc123", "AGE-SECRET-KEY-1")

    assert store.get_secret("shop/prod/age-key-abc123") == "AGE-SECRET-KEY-1"
    assert json.loads(secrets_file.read_text(encoding="utf-8")) == {"shop/prod/age-key-abc123": "AGE-SECRET-KEY-1"}
    if os.name == "posix":
        assert (secrets_file.stat().st_mode & 0o777) == 0o600


def test_file_secret_store_rejects_invalid_file(tmp_path):
    secrets_file = tmp_path / "secrets.json"
    secrets_file.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(DeployerError, match="invalid format"):
        FileSecretStore(str(secrets_file), logger=DummyLogger()).get_secret("any")


def test_secrets_manager_store_missing_secret_returns_none():
    class FakeSecretsManager:
        def get_secret_value(self, SecretId):
            raise _client_error("ResourceNotFoundException", "GetSecretValue")

    assert SecretsManagerStore(FakeSecretsManager(), logger=DummyLogger()).get_secret("shop/prod/x") is None


def test_secrets_manager_store_creates_when_update_finds_nothing():
    calls = []

    class FakeSecretsManager:
        def update_secret(self, SecretId, SecretString):
            calls.append(("update", SecretId))
            raise _client_error("ResourceNotFoundException", "UpdateSecret")

        def create_secret(self, Name, SecretString):
            calls.append(("create", Name))
            return {"ARN": "arn"}

    SecretsManagerStore(FakeSecretsManager(), logger=DummyLogger()).put_secret("shop/prod/token", "v")

    assert calls == [("update", "shop/prod/token"), ("create", "shop/prod/token")]


def test_secrets_manager_store_propagates_access_denied():
    class FakeSecretsManager:
        def update_secret(self, SecretId, SecretString):
            raise _client_error("AccessDeniedException", "UpdateSecret")

    with pytest.raises(DeployerError, match="Could not update secret"):
        SecretsManagerStore(FakeSecretsManager(), logger=DummyLogger()).put_secret("shop/prod/token", "v")


def test_scoped_store_blocks_read_only_writes(tmp_path):
    logger = DummyLogger()
    backing = FileSecretStore(str(tmp_path / "secrets.json"), logger=logger)
    profile = AccessProfile.for_context(ExecutionContext.READ_ONLY, project="shop", stage="prod")
    scoped = ScopedSecretStore(backing, profile, logger)

    with pytest.raises(SecretAccessError):
        scoped.put_secret("shop/prod/age-key-abc123", "value")

    assert not (tmp_path / "secrets.json").exists()
    assert "READ_ONLY" in logger.errors[0]


def test_scoped_store_enforces_read_scope(tmp_path):
    backing = FileSecretStore(str(tmp_path / "secrets.json"), logger=DummyLogger())
    backing.put_secret("shop/prod/age-key-abc123", "AGE")
    backing.put_secret("shop/prod/db-password", "pw")
    profile = AccessProfile.for_context(ExecutionContext.READ_WRITE, project="shop", stage="prod")
    scoped = ScopedSecretStore(backing, profile, DummyLogger())

    assert scoped.get_secret("shop/prod/age-key-abc123") == "AGE"
    with pytest.raises(SecretAccessError):
        scoped.get_secret("shop/prod/db-password")

    scoped.put_secret("shop/prod/db-password", "rotated")
    assert backing.get_secret("shop/prod/db-password") == "rotated"
