"""Lazily constructed boto3 clients shared by the aws backends."""

import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

_CLIENT_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})

_clients: Dict[Tuple[str, Optional[str]], Any] = {}
_lock = threading.Lock()


def get_client(service_name: str, region: Optional[str] = None):
    """Get (or create) the boto3 client for a service and region."""
    key = (service_name, region)
    with _lock:
        client = _clients.get(key)
        if client is None:
            client = boto3.client(service_name, region_name=region, config=_CLIENT_CONFIG)
            _clients[key] = client
    return client


def reset_clients():
    with _lock:
        _clients.clear()
