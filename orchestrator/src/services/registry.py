"""
Image registry clients.

One class per backing registry (GHCR, Docker Hub, ECR, ACR). They share the
push/pull/tag contract and differ in host, credential scheme and naming.
Remote tag state is read through the OCI distribution API; image transport
goes through the docker CLI.
"""

import asyncio
import base64
import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from orchestrator.src.config import Settings
from orchestrator.src.errors import RegistryError, TagImmutabilityError
from orchestrator.src.models.run import Artifact, Environment, TagScheme

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
])

SEMVER_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")
COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")
DOCKER_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
PUSH_DIGEST_PATTERN = re.compile(r"digest: (sha256:[0-9a-f]{64})")
CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

AUTH_FAILURE_MARKERS = ("unauthorized", "denied", "authentication required", "incorrect username")

@dataclass
class RegistryCredentials:
    username: str = ""
    password: str = ""

@dataclass
class RegistrySession:
    host: str
    username: str

@dataclass
class RemoteManifest:
    digest: Optional[str]
    config_digest: Optional[str] = None

class DockerCliTransport:
    """Moves image content with the docker CLI."""

    def __init__(self, binary: str = "docker"):
        self.binary = binary

    async def _docker(self, *args: str, stdin: Optional[str] = None) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise RegistryError(f"'{self.binary}' executable not found", retryable=False)

        output, _ = await process.communicate(stdin.encode() if stdin is not None else None)
        text = output.decode("utf-8", errors="replace")

        if process.returncode != 0:
            lowered = text.lower()
            retryable = not any(marker in lowered for marker in AUTH_FAILURE_MARKERS)
            raise RegistryError(f"docker {args[0]} failed: {text.strip()[-500:]}", retryable=retryable)
        return text

    async def login(self, host: str, username: str, password: str):
        await self._docker("login", host, "--username", username, "--password-stdin", stdin=password)

    async def tag(self, source: str, target: str):
        await self._docker("tag", source, target)

    async def pull(self, reference: str):
        await self._docker("pull", reference)

    async def push(self, reference: str) -> str:
        output = await self._docker("push", reference)
        match = PUSH_DIGEST_PATTERN.search(output)
        if not match:
            raise RegistryError(f"Could not read pushed digest for {reference}", retryable=False)
        return match.group(1)

    async def image_digest(self, reference: str) -> str:
        """Content digest (image config id) of a local image."""
        output = await self._docker("image", "inspect", "--format", "{{.Id}}", reference)
        return output.strip()

class RegistryClient(ABC):
    kind = "generic"

    def __init__(
        self,
        namespace: str = "",
        credentials: Optional[RegistryCredentials] = None,
        transport: Optional[DockerCliTransport] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.namespace = namespace
        self.credentials = credentials or RegistryCredentials()
        self.transport = transport or DockerCliTransport()
        self.timeout = timeout
        self._http = http
        self._login: Optional[Tuple[str, str]] = None
        self._session: Optional[RegistrySession] = None

    @property
    @abstractmethod
    def host(self) -> str:
        """Host used in image references."""

    @property
    def api_host(self) -> str:
        """Host serving the distribution API."""
        return self.host

    # Naming

    def repository_path(self, repository: str) -> str:
        return f"{self.namespace}/{repository}" if self.namespace else repository

    def reference(self, repository: str, tag: str) -> str:
        return f"{self.host}/{self.repository_path(repository)}:{tag}"

    def tag_for(self, environment: Environment, commit_sha: Optional[str], requested: Optional[str] = None) -> str:
        """
        Tag naming convention: commit SHA for pre-prod environments,
        semantic version for environments using the semver scheme.
        """
        if environment.tag_scheme == TagScheme.SEMVER:
            if not requested or not SEMVER_PATTERN.match(requested):
                raise RegistryError(
                    f"Environment '{environment.name}' requires a semantic version tag, got {requested!r}",
                    retryable=False,
                )
            tag = requested
        else:
            tag = requested or commit_sha or ""
            if not COMMIT_SHA_PATTERN.match(tag):
                raise RegistryError(
                    f"Environment '{environment.name}' requires a commit SHA tag, got {tag!r}",
                    retryable=False,
                )
        if not DOCKER_TAG_PATTERN.match(tag):
            raise RegistryError(f"Invalid image tag {tag!r}", retryable=False)
        return tag

    def artifact(self, environment: Environment, tag: str, digest: Optional[str] = None) -> Artifact:
        return Artifact(
            registry=self.kind,
            host=self.host,
            repository=self.repository_path(environment.repository),
            tag=tag,
            digest=digest,
        )

    def scan_reference(self, artifact: Artifact) -> str:
        """Reference a scanner should use; pinned to the pushed digest when known."""
        if artifact.manifest_digest:
            return f"{artifact.host}/{artifact.repository}@{artifact.manifest_digest}"
        return artifact.reference

    # Authentication

    async def fetch_password(self) -> str:
        return self.credentials.password

    def login_username(self) -> str:
        return self.credentials.username

    async def login_credentials(self) -> Tuple[str, str]:
        if self._login is None:
            username = self.login_username()
            password = await self.fetch_password()
            if not username or not password:
                raise RegistryError(f"No credentials configured for {self.kind}", retryable=False)
            self._login = (username, password)
        return self._login

    async def authenticate(self) -> RegistrySession:
        if self._session is None:
            username, password = await self.login_credentials()
            await self.transport.login(self.host, username, password)
            self._session = RegistrySession(host=self.host, username=username)
            logger.info(f"Authenticated to {self.kind} registry {self.host} as {username}")
        return self._session

    @asynccontextmanager
    async def _client(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as http:
                yield http

    async def _authorization(self, http: httpx.AsyncClient, challenge: str) -> str:
        """Answer a WWW-Authenticate challenge from the distribution API."""
        username, password = await self.login_credentials()
        scheme, _, params = challenge.partition(" ")

        if scheme.lower() == "basic":
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
            return f"Basic {encoded}"

        if scheme.lower() == "bearer":
            fields = dict(CHALLENGE_PARAM.findall(params))
            realm = fields.pop("realm", None)
            if not realm:
                raise RegistryError(f"Malformed auth challenge from {self.api_host}: {challenge}")
            response = await http.get(realm, params=fields, auth=(username, password))
            if response.status_code in (401, 403):
                raise RegistryError(f"Authentication rejected by {self.kind}", retryable=False)
            if response.status_code >= 400:
                raise RegistryError(f"Token endpoint returned {response.status_code}")
            body = response.json()
            token = body.get("token") or body.get("access_token")
            if not token:
                raise RegistryError(f"Token endpoint for {self.kind} returned no token")
            return f"Bearer {token}"

        raise RegistryError(f"Unsupported auth scheme '{scheme}' from {self.api_host}", retryable=False)

    # Registry operations

    async def remote_manifest(self, artifact: Artifact) -> Optional[RemoteManifest]:
        """Current manifest behind a tag, or None when the tag does not exist."""
        url = f"https://{self.api_host}/v2/{artifact.repository}/manifests/{artifact.tag}"
        headers = {"Accept": MANIFEST_ACCEPT}

        try:
            async with self._client() as http:
                response = await http.get(url, headers=headers)
                if response.status_code == 401:
                    authorization = await self._authorization(
                        http, response.headers.get("www-authenticate", "")
                    )
                    response = await http.get(url, headers={**headers, "Authorization": authorization})
        except httpx.TransportError as e:
            raise RegistryError(f"Network failure talking to {self.api_host}: {e}")

        if response.status_code == 404:
            return None
        if response.status_code in (401, 403):
            raise RegistryError(f"Authentication rejected by {self.kind}", retryable=False)
        if response.status_code >= 400:
            raise RegistryError(f"{self.api_host} returned {response.status_code} for {artifact.reference}")

        config_digest = None
        try:
            config_digest = (response.json().get("config") or {}).get("digest")
        except ValueError:
            pass
        return RemoteManifest(
            digest=response.headers.get("docker-content-digest"),
            config_digest=config_digest,
        )

    async def tag(self, source_reference: str, artifact: Artifact):
        await self.transport.tag(source_reference, artifact.reference)

    async def pull(self, artifact: Artifact) -> str:
        """Pull an image and return its local content digest."""
        await self.authenticate()
        await self.transport.pull(artifact.reference)
        return await self.local_digest(artifact.reference)

    async def local_digest(self, reference: str) -> str:
        """Content digest of an image already present on this host."""
        return await self.transport.image_digest(reference)

    async def push(self, artifact: Artifact) -> str:
        """
        Push an artifact and return the registry's manifest digest.
        An existing tag with the same content is a no-op; with different
        content it is a TagImmutabilityError.
        """
        remote = await self.remote_manifest(artifact)
        if remote is not None:
            if artifact.digest and artifact.digest in (remote.config_digest, remote.digest):
                logger.info(f"{artifact.reference} already holds this content; skipping push")
                return remote.digest or artifact.digest
            raise TagImmutabilityError(
                f"Tag {artifact.reference} already exists with different content"
            )

        await self.authenticate()
        digest = await self.transport.push(artifact.reference)
        logger.info(f"Pushed {artifact.reference} ({digest})")
        return digest

class GhcrRegistry(RegistryClient):
    kind = "ghcr"

    def __init__(self, namespace: str = "", **kwargs):
        # GHCR rejects upper-case owners in image names
        super().__init__(namespace=namespace.lower(), **kwargs)

    @property
    def host(self) -> str:
        return "ghcr.io"

class DockerHubRegistry(RegistryClient):
    kind = "dockerhub"

    @property
    def host(self) -> str:
        return "docker.io"

    @property
    def api_host(self) -> str:
        return "registry-1.docker.io"

class EcrRegistry(RegistryClient):
    kind = "ecr"

    def __init__(self, account_id: str, region: str, **kwargs):
        super().__init__(**kwargs)
        self.account_id = account_id
        self.region = region

    @property
    def host(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"

    def login_username(self) -> str:
        return "AWS"

    async def fetch_password(self) -> str:
        if self.credentials.password:
            return self.credentials.password
        return await _cli_token(["aws", "ecr", "get-login-password", "--region", self.region], self.kind)

class AcrRegistry(RegistryClient):
    kind = "acr"
    TOKEN_USERNAME = "00000000-0000-0000-0000-000000000000"

    def __init__(self, registry_name: str, **kwargs):
        super().__init__(**kwargs)
        self.registry_name = registry_name

    @property
    def host(self) -> str:
        return f"{self.registry_name}.azurecr.io"

    def login_username(self) -> str:
        return self.credentials.username or self.TOKEN_USERNAME

    async def fetch_password(self) -> str:
        if self.credentials.password:
            return self.credentials.password
        return await _cli_token(
            ["az", "acr", "login", "--name", self.registry_name, "--expose-token",
             "--output", "tsv", "--query", "accessToken"],
            self.kind,
        )

async def _cli_token(command, kind: str) -> str:
    """Obtain a short-lived registry password from a cloud CLI."""
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise RegistryError(f"'{command[0]}' CLI not found for {kind} login", retryable=False)

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise RegistryError(
            f"{kind} login failed: {stderr.decode('utf-8', errors='replace').strip()}",
            retryable=False,
        )
    return stdout.decode().strip()

def build_registry_clients(settings: Settings) -> Dict[str, RegistryClient]:
    """Registry clients keyed by the names used in pipeline definitions."""
    return {
        "ghcr": GhcrRegistry(
            namespace=settings.ghcr_username,
            credentials=RegistryCredentials(settings.ghcr_username, settings.ghcr_token),
        ),
        "dockerhub": DockerHubRegistry(
            namespace=settings.dockerhub_username,
            credentials=RegistryCredentials(settings.dockerhub_username, settings.dockerhub_password),
        ),
        "ecr": EcrRegistry(account_id=settings.ecr_account_id, region=settings.ecr_region),
        "acr": AcrRegistry(registry_name=settings.acr_name),
    }
