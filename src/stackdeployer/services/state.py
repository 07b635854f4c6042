"""Rollout state persistence for checkpoint/resume support."""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from stackdeployer.errors import DeployerError


class StateService:
    """Persists per-step rollout state so an interrupted rollout can resume.

    Steps are recorded from worker threads during a group fan-out, so every
    mutation and write happens under one lock.
    """

    SCHEMA_VERSION = 1
    RESUME_KEYS = ("project", "stage", "request_fingerprint")

    def __init__(self, state_file: str, logger):
        self.state_file = state_file
        self.logger = logger
        self._lock = threading.RLock()

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.state_file):
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise DeployerError(f"Could not read state file '{self.state_file}': {exc}") from exc

        if not isinstance(data, dict):
            raise DeployerError(f"State file '{self.state_file}' has invalid format.")

        return data

    def save(self, state: Dict[str, Any]):
        with self._lock:
            directory = os.path.dirname(self.state_file) or "."
            os.makedirs(directory, exist_ok=True)
            state["schema_version"] = self.SCHEMA_VERSION
            state["updated_at"] = self._now()

            fd, temp_path = tempfile.mkstemp(prefix="rollout-state-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                    json.dump(state, file_obj, indent=2, sort_keys=True)
                    file_obj.write("\n")
                os.replace(temp_path, self.state_file)
            except OSError as exc:
                raise DeployerError(f"Could not write state file '{self.state_file}': {exc}") from exc
            finally:
                if os.path.exists(temp_path):
                    try:
                        os.remove(temp_path)
                    except OSError:
                        pass

    def initialize(
        self,
        metadata: Dict[str, Any],
        run_context: Dict[str, Any],
        resume: bool,
    ) -> Tuple[Dict[str, Any], bool]:
        existing_state = self.load()

        if resume and existing_state:
            self._validate_resume_compatibility(existing_state, metadata)
            return existing_state, True

        state = {
            "schema_version": self.SCHEMA_VERSION,
            "created_at": self._now(),
            "updated_at": self._now(),
            "status": "running",
            "metadata": metadata,
            "run_context": run_context,
            "completed_steps": [],
            "current_state": None,
            "steps": [],
            "last_error": None,
        }
        self.save(state)
        return state, False

    def mark_step_started(self, state: Dict[str, Any], step_name: str):
        with self._lock:
            state["steps"].append(
                {
                    "name": step_name,
                    "status": "running",
                    "started_at": self._now(),
                    "finished_at": None,
                    "error": None,
                }
            )
            self.save(state)

    def mark_step_completed(self, state: Dict[str, Any], step_name: str):
        with self._lock:
            self._update_step_status(state, step_name, "success")
            if step_name not in state["completed_steps"]:
                state["completed_steps"].append(step_name)
            self.save(state)

    def mark_step_failed(self, state: Dict[str, Any], step_name: str, error: str):
        with self._lock:
            self._update_step_status(state, step_name, "failed", error=error)
            state["last_error"] = error
            self.save(state)

    def mark_state(self, state: Dict[str, Any], state_name: str):
        with self._lock:
            state["current_state"] = state_name
            self.save(state)

    def mark_status(self, state: Dict[str, Any], status: str, error: Optional[str] = None):
        with self._lock:
            state["status"] = status
            if error:
                state["last_error"] = error
            self.save(state)

    def is_step_completed(self, state: Dict[str, Any], step_name: str) -> bool:
        with self._lock:
            return step_name in state.get("completed_steps", [])

    def _validate_resume_compatibility(self, state: Dict[str, Any], metadata: Dict[str, Any]):
        existing_meta = state.get("metadata", {})
        mismatches = [key for key in self.RESUME_KEYS if existing_meta.get(key) != metadata.get(key)]

        if mismatches:
            mismatch_list = ", ".join(mismatches)
            raise DeployerError(
                "Cannot resume rollout with a different request or stage. "
                f"Mismatched fields: {mismatch_list}."
            )

    def _update_step_status(
        self,
        state: Dict[str, Any],
        step_name: str,
        status: str,
        error: Optional[str] = None,
    ):
        for step in reversed(state.get("steps", [])):
            if step.get("name") == step_name and step.get("status") == "running":
                step["status"] = status
                step["finished_at"] = self._now()
                step["error"] = error
                return

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
