# builder.py
from __future__ import annotations

import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import List, Optional

from .cluster import TOOL_HINTS
from .credentials import REGISTRY_PULL, REGISTRY_PUSH, ScopedCredentials
from .errors import ArtifactUnavailableError, BuildFailure, CredentialError
from .model import Artifact, Service

# Accept headers a v2 registry needs before it answers HEAD for a manifest list
MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class RegistryClient:
    """Minimal registry HTTP API v2 client: does a tag exist?"""

    def __init__(self, endpoint: str, *, scheme: str = "https", timeout: float = 10.0):
        endpoint = endpoint.rstrip("/")
        if "://" in endpoint:
            scheme, endpoint = endpoint.split("://", 1)
        self.host = endpoint
        self.scheme = scheme
        self.timeout = timeout

    def manifest_url(self, repository: str, tag: str) -> str:
        return f"{self.scheme}://{self.host}/v2/{repository}/manifests/{tag}"

    def has_tag(self, repository: str, tag: str, token: Optional[str] = None) -> bool:
        headers = {"Accept": MANIFEST_MEDIA_TYPES}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        req = urllib.request.Request(self.manifest_url(repository, tag), headers=headers, method="HEAD")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return 200 <= response.status < 300
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return False
            if e.code in (401, 403):
                raise CredentialError(scope=REGISTRY_PULL, reason=f"registry refused access ({e.code})")
            raise ArtifactUnavailableError(
                reference=f"{self.host}/{repository}:{tag}",
                reason=f"registry error: {e.code} {e.reason}",
            )
        except urllib.error.URLError as e:
            raise ArtifactUnavailableError(
                reference=f"{self.host}/{repository}:{tag}",
                reason=f"registry unreachable: {e.reason}",
            )


# ---------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------

class ArtifactBuilder:
    """Turns a service's source into a pushed image. The toolchain stays external."""

    def build(self, service: Service, *, registry: str, tag: str, credentials: ScopedCredentials) -> Artifact:
        raise NotImplementedError


def _check_docker_available(service: Service, docker: str = "docker") -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run([docker, "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise BuildFailure(
            service=service.name,
            cmd=f"{docker} --version",
            returncode=127,
            output=TOOL_HINTS["docker"],
        )


class DockerBuilder(ArtifactBuilder):
    """
    Build with `docker build`, push with `docker push`.

    The registry:push token is handed to `docker login` on stdin and never
    appears on a command line.
    """

    def __init__(self, repo_root: str | Path = ".", *, docker: str = "docker", username: str = "relm"):
        self.repo_root = Path(repo_root).resolve()
        self.docker = docker
        self.username = username

    def _run(self, service: Service, cmd: List[str], *, stdin: Optional[str] = None) -> None:
        proc = subprocess.run(
            cmd,
            cwd=str(self.repo_root),
            input=stdin,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise BuildFailure(
                service=service.name,
                cmd=" ".join(cmd),
                returncode=proc.returncode,
                output=(proc.stderr or proc.stdout or "").strip(),
            )

    def build_command(self, service: Service, reference: str) -> List[str]:
        context = self.repo_root / service.context
        cmd = [self.docker, "build", "-t", reference, "-f", str(context / service.dockerfile)]
        for key, value in sorted(service.build_args.items()):
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(str(context))
        return cmd

    def build(self, service: Service, *, registry: str, tag: str, credentials: ScopedCredentials) -> Artifact:
        _check_docker_available(service, self.docker)
        token = credentials.token(REGISTRY_PUSH)
        artifact = Artifact(service=service.name, registry=registry, repository=service.repository, tag=tag)

        if registry:
            self._run(
                service,
                [self.docker, "login", registry, "--username", self.username, "--password-stdin"],
                stdin=token,
            )
        self._run(service, self.build_command(service, artifact.reference))
        self._run(service, [self.docker, "push", artifact.reference])
        return artifact
