"""
Turn webhook payloads and dispatch requests into run triggers.
"""

import re
from typing import Dict, Any

from api.src.models.run import ManualDispatchRequest

ENVIRONMENT_ORDER = ("dev", "qa", "staging", "prod")

SEMVER_TAG = re.compile(r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")

class DispatchError(ValueError):
    """Raised when a manual dispatch request cannot be honoured."""
    pass

def pull_request_trigger(webhook_data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "kind": webhook_data["trigger_event"],
        "repository": webhook_data["repo_full_name"],
        "branch": webhook_data["branch"],
        "base_branch": webhook_data["base_branch"],
        "commit_sha": webhook_data["commit_sha"],
        "author": webhook_data["author"],
        "clone_url": webhook_data["clone_url"],
        "pull_request": webhook_data["pull_request"],
    }

def validate_dispatch(request: ManualDispatchRequest, environments: Dict[str, Any]):
    """Dispatches only move forward along dev -> qa -> staging -> prod."""
    for name in (request.promote_from, request.promote_to):
        if name not in ENVIRONMENT_ORDER:
            raise DispatchError(f"Unknown environment '{name}'")
        if name not in environments:
            raise DispatchError(f"Environment '{name}' is not defined in the pipeline")

    if ENVIRONMENT_ORDER.index(request.promote_from) >= ENVIRONMENT_ORDER.index(request.promote_to):
        raise DispatchError(
            f"Cannot promote from '{request.promote_from}' to '{request.promote_to}'"
        )

    if environments[request.promote_to].get("tag_scheme") == "semver" and not SEMVER_TAG.match(request.image_tag):
        raise DispatchError(
            f"'{request.promote_to}' only accepts semantic version tags, got '{request.image_tag}'"
        )

def dispatch_trigger(request: ManualDispatchRequest, clone_url: str, commit_sha: str, branch: str) -> Dict[str, Any]:
    return {
        "kind": "manual_dispatch",
        "repository": request.repository,
        "branch": branch,
        "commit_sha": commit_sha,
        "author": request.requested_by,
        "clone_url": clone_url,
        "image_tag": request.image_tag,
        "source_tag": request.source_tag,
        "promote_from": request.promote_from,
        "promote_to": request.promote_to,
    }
