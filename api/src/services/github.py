"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import logging
import tempfile
import subprocess
import os
import shutil
from typing import Optional, Dict, Any

import yaml

from api.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_CONFIG_FILES = (".rollgate.yml", ".rollgate.yaml", "rollgate.yml", "rollgate.yaml")

# pull_request actions that (re)start validation of the head commit
OPENED_ACTIONS = ("opened", "reopened", "synchronize")

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def clone_repository(clone_url: str, commit_sha: Optional[str] = None, branch: Optional[str] = None) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="rollgate_")
    repo_path = os.path.join(temp_dir, "repo")

    clone_cmd = ["git", "clone", "--depth", "1"]
    if branch:
        clone_cmd += ["--branch", branch]

    try:
        subprocess.run(
            clone_cmd + [clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RuntimeError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RuntimeError(f"Failed to clone repository: {e.stderr.decode()}")

def resolve_head(repo_path: str) -> str:
    """Commit SHA currently checked out in a clone."""
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        cwd=repo_path,
        check=True,
        capture_output=True,
        timeout=10
    )
    return result.stdout.decode().strip()

async def fetch_pipeline_config(repo_path: str) -> Optional[Dict[str, Any]]:
    """
    Read .rollgate.yml from repository.
    Returns parsed config or None if not found.
    """
    for filename in PIPELINE_CONFIG_FILES:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return yaml.safe_load(f)

    return None

def parse_pull_request_payload(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract relevant info from a GitHub pull_request webhook payload.
    Returns None for actions that do not trigger a run.
    """
    action = payload.get("action", "")
    pull_request = payload.get("pull_request", {})
    repo = payload.get("repository", {})

    if action in OPENED_ACTIONS:
        trigger_event = "pull_request_opened"
    elif action == "closed" and pull_request.get("merged"):
        trigger_event = "pull_request_merged"
    else:
        return None

    head = pull_request.get("head", {})
    base = pull_request.get("base", {})

    if trigger_event == "pull_request_merged":
        # After a merge the code under test is the merge commit on the base branch
        commit_sha = pull_request.get("merge_commit_sha") or head.get("sha", "")
        branch = base.get("ref", "")
    else:
        commit_sha = head.get("sha", "")
        branch = head.get("ref", "")

    return {
        "trigger_event": trigger_event,
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": commit_sha,
        "branch": branch,
        "base_branch": base.get("ref", ""),
        "pull_request": pull_request.get("number"),
        "author": pull_request.get("user", {}).get("login", "") or payload.get("sender", {}).get("login", ""),
    }

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if repo_path and os.path.exists(os.path.dirname(repo_path)):
        # Remove the parent temp directory
        shutil.rmtree(os.path.dirname(repo_path), ignore_errors=True)
