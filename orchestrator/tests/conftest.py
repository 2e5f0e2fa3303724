"""Shared fakes and fixtures for orchestrator tests."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from orchestrator.src.errors import ApprovalTimeout
from orchestrator.src.models.run import (
    Environment,
    PipelineRunState,
    PromotionPolicy,
    RunContext,
    TagScheme,
    TriggerEvent,
    TriggerKind,
)
from orchestrator.src.models.stage import Stage, StageOutcome
from orchestrator.src.services.executor import StageRunner
from orchestrator.src.services.registry import RegistryClient, RemoteManifest, RegistryCredentials
from orchestrator.src.services.signals import EnvironmentLocks

COMMIT_SHA = "3f2c1ab9d0e4"
IMAGE_CONFIG = "sha256:" + "c" * 64

MANIFEST = """apiVersion: argoproj.io/v1alpha1
kind: Rollout
metadata:
  name: pharma
spec:
  template:
    spec:
      containers:
        - name: pharma
          image: {image}
          ports:
            - containerPort: 8080
"""

class FakeTransport:
    """Stands in for the docker CLI; pushes land in `published`."""

    def __init__(self, published: Dict[str, str], local_digest: str = IMAGE_CONFIG):
        self.published = published
        self.local_digest = local_digest
        self.logins: List[str] = []
        self.tags: List[tuple] = []
        self.pushes: List[str] = []
        self.pulls: List[str] = []

    async def login(self, host: str, username: str, password: str):
        self.logins.append(host)

    async def tag(self, source: str, target: str):
        self.tags.append((source, target))

    async def pull(self, reference: str):
        self.pulls.append(reference)

    async def push(self, reference: str) -> str:
        self.pushes.append(reference)
        self.published[reference] = self.local_digest
        return "sha256:" + format(len(self.pushes), "064x")

    async def image_digest(self, reference: str) -> str:
        return self.published.get(reference, self.local_digest)

class FakeRegistry(RegistryClient):
    """In-memory registry keyed by image reference."""

    def __init__(self, kind: str, host: str, namespace: str = "acme"):
        self.published: Dict[str, str] = {}
        super().__init__(
            namespace=namespace,
            credentials=RegistryCredentials("bot", "secret"),
            transport=FakeTransport(self.published),
        )
        self.kind = kind
        self._host = host

    @property
    def host(self) -> str:
        return self._host

    async def remote_manifest(self, artifact) -> Optional[RemoteManifest]:
        config = self.published.get(artifact.reference)
        if config is None:
            return None
        return RemoteManifest(digest="sha256:" + "d" * 64, config_digest=config)

class FakeApprovals:
    def __init__(self, approver: Optional[str] = "release-manager"):
        self.approver = approver
        self.requests = []

    async def wait(self, request, timeout: float) -> str:
        self.requests.append(request)
        if self.approver is None:
            raise ApprovalTimeout(f"Promotion to '{request.environment}' not approved within {timeout:g}s")
        return self.approver

class ScriptedRunner(StageRunner):
    """Returns canned outcomes per stage name and records start order."""

    def __init__(self, outcomes: Optional[Dict[str, StageOutcome]] = None, delays: Optional[Dict[str, float]] = None):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.started: List[str] = []
        self.events: List[tuple] = []
        self.environments: Dict[str, Dict[str, str]] = {}

    async def run(self, stage: Stage, context: RunContext) -> StageOutcome:
        self.started.append(stage.name)
        self.events.append(("start", stage.name))
        self.environments[stage.name] = dict(context.env)
        await asyncio.sleep(self.delays.get(stage.name, 0))
        self.events.append(("end", stage.name))
        return self.outcomes.get(stage.name, StageOutcome(exit_code=0, logs=""))

@pytest.fixture
def environments() -> Dict[str, Environment]:
    return {
        "dev": Environment(
            name="dev", registry="ghcr", repository="pharma-dev",
            manifest_path="environments/dev/rollout-patch.yaml",
        ),
        "qa": Environment(
            name="qa", registry="dockerhub", repository="csi-pharma-qa",
            manifest_path="environments/qa/rollout-patch.yaml",
        ),
        "staging": Environment(
            name="staging", registry="acr", repository="pharma-staging",
            manifest_path="environments/staging/rollout-patch.yaml",
        ),
        "prod": Environment(
            name="prod", registry="acr", repository="pharma-prod",
            manifest_path="environments/prod/rollout-patch.yaml",
            promotion=PromotionPolicy.APPROVAL, tag_scheme=TagScheme.SEMVER,
        ),
    }

@pytest.fixture
def manifest_root(tmp_path: Path, environments) -> Path:
    root = tmp_path / "gitops"
    for env in environments.values():
        path = root / env.manifest_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(MANIFEST.format(image=f"registry.test/acme/pharma-{env.name}:0000000"))
    return root

@pytest.fixture
def registries() -> Dict[str, FakeRegistry]:
    return {
        "ghcr": FakeRegistry("ghcr", "ghcr.io"),
        "dockerhub": FakeRegistry("dockerhub", "docker.io"),
        "acr": FakeRegistry("acr", "pharmaregistry.azurecr.io", namespace=""),
    }

@pytest.fixture
def locks() -> EnvironmentLocks:
    return EnvironmentLocks()

def make_trigger(kind: TriggerKind = TriggerKind.PULL_REQUEST_OPENED, base_branch: str = "develop", **kwargs) -> TriggerEvent:
    values = dict(
        kind=kind,
        repository="acme/pharma-service",
        branch="feature/login",
        base_branch=base_branch,
        commit_sha=COMMIT_SHA,
        author="jdoe",
    )
    values.update(kwargs)
    return TriggerEvent(**values)

def make_run(trigger: TriggerEvent, run_id: str = "run-1") -> PipelineRunState:
    return PipelineRunState(run_id=run_id, trigger=trigger)

def make_context(trigger: TriggerEvent, workspace: Path, environments, run_id: str = "run-1") -> RunContext:
    return RunContext(run_id=run_id, trigger=trigger, workspace=workspace, environments=environments)
