"""Secret store backends and profile-scoped access."""

import json
import os
import tempfile
import threading
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackdeployer.errors import DeployerError


class FileSecretStore:
    """Keeps secrets in a local JSON document, for the local backend and tests."""

    def __init__(self, secrets_file: str, logger):
        self.secrets_file = secrets_file
        self.logger = logger
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.secrets_file):
            return {}
        try:
            with open(self.secrets_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise DeployerError(f"Could not read secrets file '{self.secrets_file}': {exc}") from exc
        if not isinstance(data, dict):
            raise DeployerError(f"Secrets file '{self.secrets_file}' has invalid format.")
        return data

    def get_secret(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def put_secret(self, key: str, value: str):
        with self._lock:
            data = self._load()
            data[key] = value
            directory = os.path.dirname(self.secrets_file) or "."
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix="secrets-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                    json.dump(data, file_obj, indent=2, sort_keys=True)
                    file_obj.write("\n")
                os.chmod(temp_path, 0o600)
                os.replace(temp_path, self.secrets_file)
            except OSError as exc:
                raise DeployerError(f"Could not write secrets file '{self.secrets_file}': {exc}") from exc
            finally:
                if os.path.exists(temp_path):
                    try:
                        os.remove(temp_path)
                    except OSError:
                        pass
        self.logger.debug("Stored secret %s", key)


class SecretsManagerStore:
    """AWS Secrets Manager backend."""

    def __init__(self, client, logger):
        self.client = client
        self.logger = logger

    def get_secret(self, key: str) -> Optional[str]:
        try:
            response = self.client.get_secret_value(SecretId=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise DeployerError(f"Could not read secret '{key}': {exc}") from exc
        except BotoCoreError as exc:
            raise DeployerError(f"Could not read secret '{key}': {exc}") from exc
        return response.get("SecretString")

    def put_secret(self, key: str, value: str):
        try:
            self.client.update_secret(SecretId=key, SecretString=value)
            self.logger.debug("Updated secret %s", key)
            return
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise DeployerError(f"Could not update secret '{key}': {exc}") from exc
        except BotoCoreError as exc:
            raise DeployerError(f"Could not update secret '{key}': {exc}") from exc

        try:
            self.client.create_secret(Name=key, SecretString=value)
        except (BotoCoreError, ClientError) as exc:
            raise DeployerError(f"Could not create secret '{key}': {exc}") from exc
        self.logger.debug("Created secret %s", key)


class ScopedSecretStore:
    """Secret store view limited to what an access profile grants."""

    def __init__(self, store, profile, logger):
        self.store = store
        self.profile = profile
        self.logger = logger

    def get_secret(self, key: str) -> Optional[str]:
        self.profile.check_secret_read(key)
        return self.store.get_secret(key)

    def put_secret(self, key: str, value: str):
        try:
            self.profile.check_secret_write(key)
        except DeployerError:
            self.logger.error(
                "Denied secret write to %s from %s execution context.",
                key,
                self.profile.context.name,
            )
            raise
        self.store.put_secret(key, value)
