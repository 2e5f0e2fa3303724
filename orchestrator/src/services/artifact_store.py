"""
Path-addressed store for stage report artifacts.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List

from orchestrator.src.errors import BuildFailure

logger = logging.getLogger(__name__)

class ArtifactStore:
    """
    Artifacts live under <root>/<run_id>/<stage>/<relative path>.
    A stage's artifacts are published all at once or not at all.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def stage_dir(self, run_id: str, stage_name: str) -> Path:
        safe_name = stage_name.lower().replace(" ", "-").replace("/", "-")
        return self.root / run_id / safe_name

    def publish(self, run_id: str, stage_name: str, workspace: Path, paths: List[str]) -> List[str]:
        if not paths:
            return []

        missing = [p for p in paths if not (workspace / p).exists()]
        if missing:
            raise BuildFailure(f"Declared artifacts not produced: {', '.join(missing)}")

        target = self.stage_dir(run_id, stage_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=target.parent))

        try:
            for relative in paths:
                source = workspace / relative
                destination = staging / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                if source.is_dir():
                    shutil.copytree(source, destination)
                else:
                    shutil.copy2(source, destination)

            if target.exists():
                shutil.rmtree(target)
            os.replace(staging, target)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        published = [str(target / p) for p in paths]
        logger.info(f"Published {len(published)} artifact(s) for stage '{stage_name}'")
        return published
