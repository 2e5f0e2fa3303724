"""Tests for registry clients against a mocked distribution API."""

import httpx
import pytest

from conftest import COMMIT_SHA, IMAGE_CONFIG, FakeTransport
from orchestrator.src.errors import RegistryError, TagImmutabilityError
from orchestrator.src.services.registry import (
    DockerHubRegistry,
    GhcrRegistry,
    RegistryCredentials,
)

MANIFEST_DIGEST = "sha256:" + "a" * 64
OTHER_CONFIG = "sha256:" + "b" * 64

def distribution_api(tags, token_status=200):
    """Handler for a registry holding `tags` (repository:tag -> config digest) behind bearer auth."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/token":
            if token_status != 200:
                return httpx.Response(token_status)
            return httpx.Response(200, json={"token": "t0k3n"})

        if request.headers.get("authorization") != "Bearer t0k3n":
            return httpx.Response(401, headers={
                "www-authenticate": (
                    f'Bearer realm="https://{request.url.host}/token",'
                    f'service="{request.url.host}",scope="repository:pull"'
                ),
            })

        _, _, rest = request.url.path.partition("/v2/")
        repository, _, tag = rest.partition("/manifests/")
        config = tags.get(f"{repository}:{tag}")
        if config is None:
            return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
        return httpx.Response(
            200,
            json={"schemaVersion": 2, "config": {"digest": config}},
            headers={"docker-content-digest": MANIFEST_DIGEST},
        )

    return handler, requests

def ghcr(tags, token_status=200):
    handler, requests = distribution_api(tags, token_status)
    transport = FakeTransport({})
    client = GhcrRegistry(
        namespace="Acme",
        credentials=RegistryCredentials("acme-bot", "ghp_secret"),
        transport=transport,
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return client, transport, requests

def test_ghcr_namespace_is_lowercased(environments):
    client, _, _ = ghcr({})
    artifact = client.artifact(environments["dev"], COMMIT_SHA)

    assert artifact.repository == "acme/pharma-dev"
    assert artifact.reference == f"ghcr.io/acme/pharma-dev:{COMMIT_SHA}"

def test_dockerhub_uses_separate_api_host():
    client = DockerHubRegistry(namespace="csi")
    assert client.host == "docker.io"
    assert client.api_host == "registry-1.docker.io"

def test_tag_naming(environments):
    client, _, _ = ghcr({})

    assert client.tag_for(environments["dev"], COMMIT_SHA) == COMMIT_SHA
    assert client.tag_for(environments["prod"], COMMIT_SHA, "v1.2.3") == "v1.2.3"

    with pytest.raises(RegistryError, match="semantic version"):
        client.tag_for(environments["prod"], COMMIT_SHA, COMMIT_SHA)
    with pytest.raises(RegistryError, match="commit SHA"):
        client.tag_for(environments["dev"], None, "latest")

@pytest.mark.asyncio
async def test_remote_manifest_follows_bearer_challenge(environments):
    client, _, requests = ghcr({f"acme/pharma-dev:{COMMIT_SHA}": IMAGE_CONFIG})
    artifact = client.artifact(environments["dev"], COMMIT_SHA)

    remote = await client.remote_manifest(artifact)

    assert remote.digest == MANIFEST_DIGEST
    assert remote.config_digest == IMAGE_CONFIG
    assert [r.url.path for r in requests] == [
        f"/v2/acme/pharma-dev/manifests/{COMMIT_SHA}",
        "/token",
        f"/v2/acme/pharma-dev/manifests/{COMMIT_SHA}",
    ]

@pytest.mark.asyncio
async def test_push_new_tag(environments):
    client, transport, _ = ghcr({})
    artifact = client.artifact(environments["dev"], COMMIT_SHA, digest=IMAGE_CONFIG)

    digest = await client.push(artifact)

    assert digest.startswith("sha256:")
    assert transport.pushes == [artifact.reference]
    assert transport.logins == ["ghcr.io"]

@pytest.mark.asyncio
async def test_push_same_content_is_a_no_op(environments):
    client, transport, _ = ghcr({f"acme/pharma-dev:{COMMIT_SHA}": IMAGE_CONFIG})
    artifact = client.artifact(environments["dev"], COMMIT_SHA, digest=IMAGE_CONFIG)

    digest = await client.push(artifact)

    assert digest == MANIFEST_DIGEST
    assert transport.pushes == []

@pytest.mark.asyncio
async def test_push_different_content_violates_immutability(environments):
    client, transport, _ = ghcr({f"acme/pharma-dev:{COMMIT_SHA}": OTHER_CONFIG})
    artifact = client.artifact(environments["dev"], COMMIT_SHA, digest=IMAGE_CONFIG)

    with pytest.raises(TagImmutabilityError) as excinfo:
        await client.push(artifact)

    assert not excinfo.value.retryable
    assert transport.pushes == []

@pytest.mark.asyncio
async def test_rejected_credentials_are_not_retryable(environments):
    client, _, _ = ghcr({}, token_status=401)
    artifact = client.artifact(environments["dev"], COMMIT_SHA)

    with pytest.raises(RegistryError) as excinfo:
        await client.remote_manifest(artifact)

    assert not excinfo.value.retryable

@pytest.mark.asyncio
async def test_missing_credentials(environments):
    client = GhcrRegistry(namespace="acme", transport=FakeTransport({}))

    with pytest.raises(RegistryError, match="No credentials"):
        await client.authenticate()
