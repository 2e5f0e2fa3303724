"""Tests for manifest patching and environment promotion."""

import asyncio

import pytest

from conftest import FakeApprovals, MANIFEST
from orchestrator.src.errors import ApprovalTimeout, ManifestFormatError, ManifestPatchConflict
from orchestrator.src.models.run import Artifact, PromotionStatus
from orchestrator.src.services.promoter import (
    EnvironmentPromoter,
    FileManifestStore,
    patch_image_reference,
)

NEW_IMAGE = "ghcr.io/acme/pharma-dev:3f2c1ab9d0e4"

def artifact(tag="3f2c1ab9d0e4", host="ghcr.io", repository="acme/pharma-dev"):
    return Artifact(registry="ghcr", host=host, repository=repository, tag=tag)

def test_patch_replaces_only_the_image_value():
    content = MANIFEST.format(image="ghcr.io/acme/pharma-dev:old")
    patched, changed = patch_image_reference(content, NEW_IMAGE)

    assert changed
    assert f"          image: {NEW_IMAGE}\n" in patched
    assert patched.replace(NEW_IMAGE, "ghcr.io/acme/pharma-dev:old") == content

def test_patch_is_idempotent():
    content = MANIFEST.format(image=NEW_IMAGE)
    patched, changed = patch_image_reference(content, NEW_IMAGE)
    assert not changed
    assert patched == content

def test_patch_keeps_quotes_and_comments():
    content = 'spec:\n  image: "ghcr.io/acme/pharma-dev:old"  # pinned by rollgate\n'
    patched, changed = patch_image_reference(content, NEW_IMAGE)
    assert changed
    assert patched == f'spec:\n  image: "{NEW_IMAGE}"  # pinned by rollgate\n'

def test_patch_rejects_ambiguous_manifest():
    content = "image: a:1\nsidecar:\n  image: b:2\n"
    with pytest.raises(ManifestFormatError, match="found 2"):
        patch_image_reference(content, NEW_IMAGE)

def test_patch_rejects_manifest_without_image():
    with pytest.raises(ManifestFormatError, match="found 0"):
        patch_image_reference("kind: Rollout\n", NEW_IMAGE)

@pytest.mark.asyncio
async def test_file_store_detects_concurrent_change(tmp_path):
    path = tmp_path / "rollout-patch.yaml"
    path.write_text("image: a:1\n")
    store = FileManifestStore(str(tmp_path))

    snapshot = await store.read("rollout-patch.yaml")
    path.write_text("image: a:2\n")

    with pytest.raises(ManifestPatchConflict):
        await store.write("rollout-patch.yaml", "image: a:3\n", snapshot.revision, "promote")

@pytest.mark.asyncio
async def test_promote_commits_and_reports_unchanged_on_repeat(manifest_root, environments, locks):
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks)
    dev = environments["dev"]

    first = await promoter.promote(artifact(), dev, run_id="run-1", requested_by="jdoe")
    second = await promoter.promote(artifact(), dev, run_id="run-2")

    assert first.status == PromotionStatus.COMMITTED
    assert first.image_reference == NEW_IMAGE
    assert second.status == PromotionStatus.UNCHANGED
    assert second.revision == first.revision
    assert f"image: {NEW_IMAGE}" in (manifest_root / dev.manifest_path).read_text()

@pytest.mark.asyncio
async def test_promotion_only_touches_its_environment(manifest_root, environments, locks):
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks)
    before = (manifest_root / environments["qa"].manifest_path).read_text()

    await promoter.promote(artifact(), environments["dev"], run_id="run-1")

    assert (manifest_root / environments["qa"].manifest_path).read_text() == before

@pytest.mark.asyncio
async def test_concurrent_promotions_to_one_environment_serialize(manifest_root, environments, locks):
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks)
    dev = environments["dev"]
    images = [artifact(tag=f"{i:07d}abc") for i in range(5)]

    results = await asyncio.gather(*[
        promoter.promote(image, dev, run_id=f"run-{i}") for i, image in enumerate(images)
    ])

    assert all(r.status == PromotionStatus.COMMITTED for r in results)
    content = (manifest_root / dev.manifest_path).read_text()
    # Exactly one image line, holding one of the promoted references
    assert content.count("image:") == 1
    assert any(f"image: {image.reference}" in content for image in images)

@pytest.mark.asyncio
async def test_conflict_is_retried(manifest_root, environments, locks):
    store = FileManifestStore(str(manifest_root))
    dev = environments["dev"]
    original_write = store.write
    calls = []

    async def flaky_write(path, content, expected_revision, message):
        calls.append(path)
        if len(calls) == 1:
            raise ManifestPatchConflict("someone else pushed first")
        return await original_write(path, content, expected_revision, message)

    store.write = flaky_write
    promoter = EnvironmentPromoter(store, locks, retry_attempts=3, retry_backoff=0)

    result = await promoter.promote(artifact(), dev, run_id="run-1")

    assert result.status == PromotionStatus.COMMITTED
    assert len(calls) == 2

@pytest.mark.asyncio
async def test_approval_required_environment_records_approver(manifest_root, environments, locks):
    approvals = FakeApprovals("release-manager")
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks, approvals=approvals)
    prod_image = artifact(tag="v1.2.3", host="pharmaregistry.azurecr.io", repository="pharma-prod")

    result = await promoter.promote(prod_image, environments["prod"], run_id="run-1")

    assert result.approver == "release-manager"
    assert result.status == PromotionStatus.COMMITTED
    assert len(approvals.requests) == 1

@pytest.mark.asyncio
async def test_approval_timeout_leaves_manifest_untouched(manifest_root, environments, locks):
    promoter = EnvironmentPromoter(FileManifestStore(str(manifest_root)), locks, approvals=FakeApprovals(None))
    prod = environments["prod"]
    before = (manifest_root / prod.manifest_path).read_text()

    with pytest.raises(ApprovalTimeout):
        await promoter.promote(artifact(tag="v1.2.3"), prod, run_id="run-1")

    assert (manifest_root / prod.manifest_path).read_text() == before
