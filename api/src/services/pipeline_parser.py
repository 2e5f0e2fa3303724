"""
Pipeline YAML parser and validator.

A pipeline file declares the environments images are promoted through and
the stages that build, check, publish and promote them:

    name: pharma-service
    environments:
      dev: {registry: ghcr, repository: pharma-dev, manifest: environments/dev/rollout-patch.yaml}
    stages:
      - name: build
        image: docker:24
        commands: [...]
      - name: publish-dev
        needs: [build]
        uses: registry/push
        with: {environment: dev}
"""

import yaml
from typing import List, Dict, Any, Optional

ENVIRONMENT_NAMES = ("dev", "qa", "staging", "prod")
REGISTRIES = ("ghcr", "dockerhub", "ecr", "acr")
PROMOTION_POLICIES = ("auto", "approval")
TAG_SCHEMES = ("sha", "semver")
FAILURE_POLICIES = ("hard", "advisory")
STAGE_CATEGORIES = ("build", "quality", "security", "publish", "promote", "general")
TRIGGER_EVENTS = ("pull_request_opened", "pull_request_merged", "manual_dispatch")

DEFAULT_STAGE_TIMEOUT = 600  # 10 minutes

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    env = config.get("env", {})
    if not isinstance(env, dict):
        raise PipelineConfigError("Pipeline 'env' must be a mapping")

    environments = validate_environments(config.get("environments", {}))

    if "stages" not in config:
        raise PipelineConfigError("Pipeline must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineConfigError("Pipeline 'stages' must be a list")

    if len(stages) == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")

    validated_stages = [validate_stage(stage, i) for i, stage in enumerate(stages)]
    check_dependencies(validated_stages)

    for stage in validated_stages:
        target = stage["params"].get("environment")
        if target and target not in environments:
            raise PipelineConfigError(
                f"Stage '{stage['name']}' targets undefined environment '{target}'"
            )

    return {
        "name": name,
        "environments": environments,
        "stages": validated_stages,
        "env": {str(k): str(v) for k, v in env.items()},
    }

def validate_environments(environments: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(environments, dict):
        raise PipelineConfigError("Pipeline 'environments' must be a mapping")

    validated = {}
    for name, env in environments.items():
        if name not in ENVIRONMENT_NAMES:
            raise PipelineConfigError(
                f"Unknown environment '{name}'; expected one of {', '.join(ENVIRONMENT_NAMES)}"
            )
        if not isinstance(env, dict):
            raise PipelineConfigError(f"Environment '{name}' must be a mapping")

        for field in ("registry", "repository", "manifest"):
            if field not in env:
                raise PipelineConfigError(f"Environment '{name}' missing '{field}'")

        registry = env["registry"]
        if registry not in REGISTRIES:
            raise PipelineConfigError(f"Environment '{name}' has unknown registry '{registry}'")

        # prod only ever takes release tags
        default_scheme = "semver" if name == "prod" else "sha"
        promotion = env.get("promotion", "auto")
        tags = env.get("tags", default_scheme)
        if promotion not in PROMOTION_POLICIES:
            raise PipelineConfigError(f"Environment '{name}' has unknown promotion '{promotion}'")
        if tags not in TAG_SCHEMES:
            raise PipelineConfigError(f"Environment '{name}' has unknown tag scheme '{tags}'")

        validated[name] = {
            "registry": registry,
            "repository": str(env["repository"]),
            "manifest_path": str(env["manifest"]),
            "promotion": promotion,
            "tag_scheme": tags,
            "application": env.get("application"),
        }
    return validated

def _string_list(value: Any, what: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PipelineConfigError(f"{what} must be a list of strings")
    return value

def validate_gate(gate: Any, index: int) -> Optional[Dict[str, Any]]:
    if gate is None:
        return None
    if not isinstance(gate, dict) or "metric" not in gate:
        raise PipelineConfigError(f"Stage {index} 'gate' must be a mapping with a 'metric'")

    validated = {"metric": str(gate["metric"]), "min": None, "max": None}
    for bound in ("min", "max"):
        if gate.get(bound) is not None:
            try:
                validated[bound] = float(gate[bound])
            except (TypeError, ValueError):
                raise PipelineConfigError(f"Stage {index} gate '{bound}' must be a number")
    return validated

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineConfigError(f"Stage {index} must be a dictionary")

    if "name" not in stage:
        raise PipelineConfigError(f"Stage {index} missing 'name'")

    if not isinstance(stage["name"], str):
        raise PipelineConfigError(f"Stage {index} 'name' must be a string")

    uses = stage.get("uses")
    if uses is None:
        if "image" not in stage:
            raise PipelineConfigError(f"Stage {index} missing 'image'")
        if "commands" not in stage:
            raise PipelineConfigError(f"Stage {index} missing 'commands'")
        if not isinstance(stage["image"], str):
            raise PipelineConfigError(f"Stage {index} 'image' must be a string")
        if not isinstance(stage["commands"], list):
            raise PipelineConfigError(f"Stage {index} 'commands' must be a list")
        for j, cmd in enumerate(stage["commands"]):
            if not isinstance(cmd, str):
                raise PipelineConfigError(f"Stage {index} command {j} must be a string")
    elif not isinstance(uses, str):
        raise PipelineConfigError(f"Stage {index} 'uses' must be a string")

    params = stage.get("with", {})
    if not isinstance(params, dict):
        raise PipelineConfigError(f"Stage {index} 'with' must be a mapping")

    policy = stage.get("policy", "hard")
    if policy not in FAILURE_POLICIES:
        raise PipelineConfigError(f"Stage {index} has unknown policy '{policy}'")

    category = stage.get("category", "general")
    if category not in STAGE_CATEGORIES:
        raise PipelineConfigError(f"Stage {index} has unknown category '{category}'")

    when = _string_list(stage.get("when", []), f"Stage {index} 'when'")
    for event in when:
        if event not in TRIGGER_EVENTS:
            raise PipelineConfigError(f"Stage {index} has unknown trigger '{event}' in 'when'")

    timeout = stage.get("timeout", DEFAULT_STAGE_TIMEOUT)
    if not isinstance(timeout, int) or timeout <= 0:
        raise PipelineConfigError(f"Stage {index} 'timeout' must be a positive integer")

    return {
        "name": stage["name"],
        "needs": _string_list(stage.get("needs", []), f"Stage {index} 'needs'"),
        "image": stage.get("image"),
        "commands": stage.get("commands", []),
        "uses": uses,
        "params": {str(k): str(v) for k, v in params.items()},
        "env": {str(k): str(v) for k, v in stage.get("env", {}).items()},
        "timeout": timeout,
        "policy": policy,
        "category": category,
        "gate": validate_gate(stage.get("gate"), index),
        "when": when,
        "artifacts": _string_list(stage.get("artifacts", []), f"Stage {index} 'artifacts'"),
        "bypass": bool(stage.get("bypass", False)),
    }

def check_dependencies(stages: List[Dict[str, Any]]):
    """Stage names are unique, every `needs` exists, and the graph is acyclic."""
    names = set()
    for stage in stages:
        if stage["name"] in names:
            raise PipelineConfigError(f"Duplicate stage name '{stage['name']}'")
        names.add(stage["name"])

    for stage in stages:
        for need in stage["needs"]:
            if need not in names:
                raise PipelineConfigError(f"Stage '{stage['name']}' needs unknown stage '{need}'")

    placed = set()
    remaining = list(stages)
    while remaining:
        ready = [s for s in remaining if all(n in placed for n in s["needs"])]
        if not ready:
            cycle = ", ".join(s["name"] for s in remaining)
            raise PipelineConfigError(f"Dependency cycle between stages: {cycle}")
        for stage in ready:
            placed.add(stage["name"])
            remaining.remove(stage)
