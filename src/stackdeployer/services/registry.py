"""Container registry lookups and the image availability gate."""

import time
from typing import Optional

import requests
from botocore.exceptions import BotoCoreError, ClientError

from stackdeployer.errors import DeployerError, ImageNotFoundError, RegistryUnavailableError
from stackdeployer.errors_catalog import actionable_error

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
ECR_ABSENT_FAILURE_CODES = {"ImageNotFound", "ImageTagDoesNotMatchDigest"}
ECR_TRANSIENT_ERROR_CODES = {
    "ServerException",
    "ServiceUnavailableException",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestTimeout",
}


def repository_name(repository: str) -> str:
    """Strip a registry host prefix from a repository URI."""
    first, _, rest = repository.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return rest
    return repository


class HttpRegistry:
    """Queries a Docker Registry HTTP API v2 endpoint for manifest existence."""

    def __init__(
        self,
        registry_url: str,
        requests_module=requests,
        token: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.requests = requests_module
        self.token = token
        self.timeout = timeout

    def manifest_url(self, repository: str, tag: str) -> str:
        return f"{self.registry_url}/v2/{repository_name(repository)}/manifests/{tag}"

    def image_exists(self, repository: str, tag: str) -> bool:
        headers = {"Accept": MANIFEST_MEDIA_TYPES}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = self.manifest_url(repository, tag)
        try:
            response = self.requests.request(
                "HEAD",
                url,
                headers=headers,
                allow_redirects=True,
                timeout=self.timeout,
            )
        except self.requests.RequestException as exc:
            raise RegistryUnavailableError(f"Registry request failed for {url}: {exc}") from exc

        try:
            status = response.status_code
        finally:
            response.close()

        if status == 200:
            return True
        if status == 404:
            return False
        if status in TRANSIENT_STATUS_CODES:
            raise RegistryUnavailableError(f"Registry returned HTTP {status} for {url}")
        raise DeployerError(f"Registry rejected manifest lookup for {url} with HTTP {status}.")


class EcrRegistry:
    """Queries Amazon ECR for an image tag with ``batch_get_image``."""

    def __init__(self, client):
        self.client = client

    def image_exists(self, repository: str, tag: str) -> bool:
        name = repository_name(repository)
        try:
            response = self.client.batch_get_image(
                repositoryName=name,
                imageIds=[{"imageTag": tag}],
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code == "RepositoryNotFoundException":
                return False
            if code in ECR_TRANSIENT_ERROR_CODES:
                raise RegistryUnavailableError(f"ECR lookup for {name}:{tag} failed: {code}") from exc
            raise DeployerError(f"ECR lookup for {name}:{tag} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise RegistryUnavailableError(f"ECR lookup for {name}:{tag} failed: {exc}") from exc

        if response.get("images"):
            return True

        failures = response.get("failures") or []
        if all(failure.get("failureCode") in ECR_ABSENT_FAILURE_CODES for failure in failures):
            return False
        reasons = "; ".join(str(failure.get("failureReason", failure)) for failure in failures)
        raise RegistryUnavailableError(f"ECR lookup for {name}:{tag} failed: {reasons}")


class ImageAvailabilityGate:
    """Stops a rollout before any job runs when the deployer image is missing."""

    def __init__(
        self,
        registry,
        logger,
        console,
        retry_count: int = 2,
        retry_backoff_seconds: float = 2.0,
        sleep=time.sleep,
    ):
        self.registry = registry
        self.logger = logger
        self.console = console
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.sleep = sleep

    def ensure_available(self, repository: str, tag: str):
        self.console.print(f"[blue]Checking deployer image {repository}:{tag}...[/blue]")
        max_attempts = max(1, self.retry_count + 1)

        for attempt in range(1, max_attempts + 1):
            try:
                exists = self.registry.image_exists(repository, tag)
            except RegistryUnavailableError as exc:
                if attempt >= max_attempts:
                    raise RegistryUnavailableError(
                        actionable_error("registry_unavailable", repository=repository, tag=tag)
                        + f" Last error: {exc}"
                    ) from exc
                delay = self.retry_backoff_seconds * attempt
                self.logger.warning(
                    "Registry lookup failed on attempt %s/%s, retrying in %.1fs: %s",
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
                continue

            if not exists:
                raise ImageNotFoundError(
                    actionable_error("image_not_found", repository=repository, tag=tag),
                    repository=repository,
                    tag=tag,
                )

            self.logger.info("Deployer image %s:%s is available.", repository, tag)
            self.console.print("[green]Deployer image is available.[/green]")
            return
