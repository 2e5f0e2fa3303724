"""Tests for the built-in registry and GitOps actions."""

import pytest

from conftest import COMMIT_SHA, FakeRegistry, FakeTransport, make_context, make_trigger
from orchestrator.src.errors import BuildFailure, RegistryError
from orchestrator.src.models.run import TriggerKind
from orchestrator.src.models.stage import Stage
from orchestrator.src.services.actions import ImageActions, ManifestActions
from orchestrator.src.services.promoter import EnvironmentPromoter, FileManifestStore

PUBLISH_DEV = Stage(name="publish-dev", uses="registry/push", params={"environment": "dev"})
DEV_IMAGE = f"ghcr.io/acme/pharma-dev:{COMMIT_SHA}"

class FlakyTransport(FakeTransport):
    """Fails the first `push_failures` pushes the way a dropped connection does."""

    def __init__(self, published, push_failures=0, login_error=None):
        super().__init__(published)
        self.push_failures = push_failures
        self.login_error = login_error
        self.push_attempts = 0
        self.login_attempts = 0

    async def login(self, host, username, password):
        self.login_attempts += 1
        if self.login_error:
            raise self.login_error
        await super().login(host, username, password)

    async def push(self, reference):
        self.push_attempts += 1
        if self.push_attempts <= self.push_failures:
            raise RegistryError(f"docker push failed: connection reset pushing {reference}")
        return await super().push(reference)

def ghcr_with(transport_factory):
    registry = FakeRegistry("ghcr", "ghcr.io")
    registry.transport = transport_factory(registry.published)
    return registry

@pytest.fixture
def context(tmp_path, environments):
    context = make_context(make_trigger(), tmp_path, environments)
    context.env["IMAGE"] = "pharma:ci"
    return context

@pytest.mark.asyncio
async def test_push_without_build_digest_is_idempotent(context):
    registry = FakeRegistry("ghcr", "ghcr.io")
    actions = ImageActions({"ghcr": registry}, retry_backoff=0)

    first = await actions.push(PUBLISH_DEV, context)
    second = await actions.push(PUBLISH_DEV, context)

    assert first.outputs["pushed_image"] == second.outputs["pushed_image"] == DEV_IMAGE
    assert registry.transport.pushes == [DEV_IMAGE]
    assert context.artifacts["dev"].digest == registry.transport.local_digest

@pytest.mark.asyncio
async def test_push_retries_network_failures(context):
    registry = ghcr_with(lambda published: FlakyTransport(published, push_failures=2))
    actions = ImageActions({"ghcr": registry}, retry_attempts=3, retry_backoff=0)

    result = await actions.push(PUBLISH_DEV, context)

    assert result.outputs["pushed_image"] == DEV_IMAGE
    assert registry.transport.push_attempts == 3

@pytest.mark.asyncio
async def test_push_gives_up_after_bounded_attempts(context):
    registry = ghcr_with(lambda published: FlakyTransport(published, push_failures=5))
    actions = ImageActions({"ghcr": registry}, retry_attempts=3, retry_backoff=0)

    with pytest.raises(RegistryError, match="connection reset"):
        await actions.push(PUBLISH_DEV, context)

    assert registry.transport.push_attempts == 3
    assert "dev" not in context.artifacts

@pytest.mark.asyncio
async def test_rejected_login_is_not_retried(context):
    denied = RegistryError("docker login failed: unauthorized", retryable=False)
    registry = ghcr_with(lambda published: FlakyTransport(published, login_error=denied))
    actions = ImageActions({"ghcr": registry}, retry_attempts=3, retry_backoff=0)

    with pytest.raises(RegistryError, match="unauthorized"):
        await actions.push(PUBLISH_DEV, context)

    assert registry.transport.login_attempts == 1
    assert registry.transport.push_attempts == 0

@pytest.mark.asyncio
async def test_push_needs_a_built_image(tmp_path, environments):
    actions = ImageActions({"ghcr": FakeRegistry("ghcr", "ghcr.io")}, retry_backoff=0)
    context = make_context(make_trigger(), tmp_path, environments)

    with pytest.raises(BuildFailure, match="no image to push"):
        await actions.push(PUBLISH_DEV, context)

def test_approval_window_applies_to_gated_environments(tmp_path, environments, manifest_root, locks):
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks, approval_timeout=900)
    manifests = ManifestActions(promoter)
    dispatch = make_context(
        make_trigger(kind=TriggerKind.MANUAL_DISPATCH, image_tag="v1.2.3", promote_from="staging", promote_to="prod"),
        tmp_path,
        environments,
    )
    pull_request = make_context(make_trigger(), tmp_path, environments)

    assert manifests.approval_window(Stage(name="promote", uses="gitops/promote"), dispatch) == 900
    assert manifests.approval_window(
        Stage(name="promote-dev", uses="gitops/promote", params={"environment": "dev"}), pull_request
    ) == 0
