"""
Environment promotion - patches an environment's GitOps manifest to point at
a new image and tells the reconciler about it.
"""

import asyncio
import hashlib
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

import httpx

from orchestrator.src.errors import (
    ApprovalTimeout,
    ManifestFormatError,
    ManifestPatchConflict,
    PipelineError,
)
from orchestrator.src.models.run import Artifact, Environment, PromotionRequest, PromotionStatus
from orchestrator.src.services.retry import retry_async
from orchestrator.src.services.signals import ApprovalGate, EnvironmentLocks

logger = logging.getLogger(__name__)

IMAGE_LINE = re.compile(
    r"^(?P<prefix>[ \t]*(?:-[ \t]+)?image:[ \t]*)"
    r"(?P<ref>[^\s#]+)"
    r"(?P<suffix>[ \t]*(?:#[^\r\n]*)?)\r?$",
    re.MULTILINE,
)

PUSH_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")

def patch_image_reference(content: str, image_reference: str) -> Tuple[str, bool]:
    """
    Replace the manifest's single `image:` value.
    Returns the new content and whether anything changed.
    """
    matches = list(IMAGE_LINE.finditer(content))
    if len(matches) != 1:
        raise ManifestFormatError(
            f"Expected exactly one 'image:' line in manifest, found {len(matches)}"
        )

    match = matches[0]
    current = match.group("ref")
    quote = current[0] if current[0] in "'\"" and current[-1] == current[0] else ""
    if current.strip("'\"") == image_reference:
        return content, False

    replacement = f"{quote}{image_reference}{quote}"
    return content[:match.start("ref")] + replacement + content[match.end("ref"):], True

@dataclass
class ManifestSnapshot:
    content: str
    revision: str

class ManifestStore(ABC):
    """Declarative state store holding one manifest per environment."""

    @abstractmethod
    async def read(self, path: str) -> ManifestSnapshot:
        ...

    @abstractmethod
    async def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        """Write `content` if the store is still at `expected_revision`; return the new revision."""

class FileManifestStore(ManifestStore):
    """Manifests in a local directory tree; the revision is the content hash."""

    def __init__(self, root: str):
        self.root = Path(root)

    @staticmethod
    def _revision(content: str) -> str:
        return hashlib.sha256(content.encode()).hexdigest()

    def _path(self, path: str) -> Path:
        return self.root / path

    async def read(self, path: str) -> ManifestSnapshot:
        target = self._path(path)
        if not target.exists():
            raise ManifestFormatError(f"Manifest {path} does not exist")
        content = target.read_text()
        return ManifestSnapshot(content=content, revision=self._revision(content))

    async def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        target = self._path(path)
        current = target.read_text() if target.exists() else ""
        if self._revision(current) != expected_revision:
            raise ManifestPatchConflict(f"Manifest {path} changed since it was read")

        fd, tmp_path = tempfile.mkstemp(prefix=".rollgate-", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_path, target)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info(f"Wrote {path}: {message}")
        return self._revision(content)

class GitManifestStore(ManifestStore):
    """Manifests in a GitOps repository; the revision is the commit SHA."""

    def __init__(
        self,
        repo_url: str,
        checkout_dir: str,
        branch: str = "main",
        token: str = "",
        author_name: str = "Rollgate",
        author_email: str = "rollgate@users.noreply.github.com",
    ):
        self.repo_url = repo_url
        self.checkout_dir = Path(checkout_dir)
        self.branch = branch
        self.token = token
        self.author_name = author_name
        self.author_email = author_email
        # One checkout is shared by every environment
        self._lock = asyncio.Lock()

    def _authenticated_url(self) -> str:
        if not self.token:
            return self.repo_url
        parts = urlparse(self.repo_url)
        return urlunparse(parts._replace(netloc=f"x-access-token:{self.token}@{parts.netloc.rsplit('@', 1)[-1]}"))

    async def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd or self.checkout_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        text = output.decode("utf-8", errors="replace")
        if process.returncode != 0:
            if args[0] == "push" and any(marker in text for marker in PUSH_REJECTED_MARKERS):
                raise ManifestPatchConflict(f"GitOps push rejected: {text.strip()}")
            raise PipelineError(f"git {args[0]} failed: {text.strip()}")
        return text

    async def _ensure_checkout(self):
        if (self.checkout_dir / ".git").exists():
            return
        self.checkout_dir.parent.mkdir(parents=True, exist_ok=True)
        await self._git(
            "clone", "--branch", self.branch, self._authenticated_url(), str(self.checkout_dir),
            cwd=self.checkout_dir.parent,
        )
        await self._git("config", "user.name", self.author_name)
        await self._git("config", "user.email", self.author_email)

    async def _sync(self):
        await self._git("fetch", "origin", self.branch)
        await self._git("reset", "--hard", f"origin/{self.branch}")

    async def read(self, path: str) -> ManifestSnapshot:
        async with self._lock:
            await self._ensure_checkout()
            await self._sync()
            target = self.checkout_dir / path
            if not target.exists():
                raise ManifestFormatError(f"Manifest {path} does not exist in {self.repo_url}")
            revision = (await self._git("rev-parse", "HEAD")).strip()
            return ManifestSnapshot(content=target.read_text(), revision=revision)

    async def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        async with self._lock:
            head = (await self._git("rev-parse", "HEAD")).strip()
            if head != expected_revision:
                raise ManifestPatchConflict(f"GitOps checkout moved from {expected_revision[:8]} to {head[:8]}")

            (self.checkout_dir / path).write_text(content)
            await self._git("add", path)
            await self._git("commit", "-m", message)
            try:
                await self._git("push", "origin", f"HEAD:{self.branch}")
            except ManifestPatchConflict:
                await self._sync()
                raise

            revision = (await self._git("rev-parse", "HEAD")).strip()
            logger.info(f"Committed {path} at {revision[:8]}: {message}")
            return revision

class ArgoCDReconciler:
    """Asks Argo CD to refresh an application after its desired state moved."""

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    async def refresh(self, application: str) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/api/v1/applications/{application}",
                    params={"refresh": "normal"},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.warning(f"Argo CD refresh of '{application}' failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Argo CD refresh of '{application}' returned {response.status_code}")
            return False
        logger.info(f"Requested Argo CD refresh of '{application}'")
        return True

class EnvironmentPromoter:
    def __init__(
        self,
        store: ManifestStore,
        locks: EnvironmentLocks,
        approvals: Optional[ApprovalGate] = None,
        reconciler: Optional[ArgoCDReconciler] = None,
        approval_timeout: float = 3600,
        retry_attempts: int = 3,
        retry_backoff: float = 2.0,
    ):
        self.store = store
        self.locks = locks
        self.approvals = approvals
        self.reconciler = reconciler
        self.approval_timeout = approval_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def promote(
        self,
        artifact: Artifact,
        environment: Environment,
        run_id: str,
        requested_by: Optional[str] = None,
    ) -> PromotionRequest:
        request = PromotionRequest.create(run_id, artifact, environment, requested_by)
        return await self.execute(request, environment)

    async def execute(self, request: PromotionRequest, environment: Environment) -> PromotionRequest:
        if environment.requires_approval:
            if self.approvals is None:
                raise ApprovalTimeout(f"'{environment.name}' requires approval but no approval gate is configured")
            approver = await self.approvals.wait(request, self.approval_timeout)
            request = request.model_copy(update={"approver": approver, "status": PromotionStatus.APPROVED})

        async with self.locks.hold(environment.name):
            revision, changed = await retry_async(
                lambda: self._apply(request),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                retry_on=(ManifestPatchConflict,),
                description=f"Manifest patch for '{environment.name}'",
            )

        request = request.model_copy(update={
            "status": PromotionStatus.COMMITTED if changed else PromotionStatus.UNCHANGED,
            "revision": revision,
            "committed_at": datetime.utcnow(),
        })

        if changed:
            logger.info(f"Promoted {request.image_reference} to '{environment.name}' at {revision[:12]}")
            if self.reconciler and environment.application:
                await self.reconciler.refresh(environment.application)
        else:
            logger.info(f"'{environment.name}' already runs {request.image_reference}; nothing to commit")

        return request

    async def _apply(self, request: PromotionRequest) -> Tuple[str, bool]:
        snapshot = await self.store.read(request.manifest_path)
        patched, changed = patch_image_reference(snapshot.content, request.image_reference)
        if not changed:
            return snapshot.revision, False
        revision = await self.store.write(
            request.manifest_path,
            patched,
            snapshot.revision,
            message=f"chore({request.environment}): promote {request.image_reference}",
        )
        return revision, True
