"""Tests for pipeline parser."""

import pytest
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    PipelineConfigError,
)

PIPELINE = """
name: pharma-service
env:
  APP_NAME: pharma
environments:
  dev:
    registry: ghcr
    repository: pharma-dev
    manifest: environments/dev/rollout-patch.yaml
  qa:
    registry: dockerhub
    repository: csi-pharma-qa
    manifest: environments/qa/rollout-patch.yaml
  prod:
    registry: acr
    repository: pharma-prod
    manifest: environments/prod/rollout-patch.yaml
    promotion: approval
stages:
  - name: build
    image: docker:24
    commands:
      - docker build -t pharma:ci .
  - name: coverage
    needs: [build]
    image: python:3.12
    category: quality
    gate:
      metric: coverage
      min: 85
    commands:
      - pytest --cov
  - name: scan
    needs: [build]
    image: aquasec/trivy
    category: security
    policy: advisory
    commands:
      - trivy image pharma:ci
  - name: publish-dev
    needs: [coverage, scan]
    uses: registry/push
    when: [pull_request_opened]
    with:
      environment: dev
"""

def test_valid_pipeline():
    result = parse_pipeline_config(PIPELINE)
    assert result["name"] == "pharma-service"
    assert [s["name"] for s in result["stages"]] == ["build", "coverage", "scan", "publish-dev"]
    assert result["env"] == {"APP_NAME": "pharma"}

    coverage = result["stages"][1]
    assert coverage["needs"] == ["build"]
    assert coverage["category"] == "quality"
    assert coverage["gate"] == {"metric": "coverage", "min": 85.0, "max": None}

    publish = result["stages"][3]
    assert publish["uses"] == "registry/push"
    assert publish["params"] == {"environment": "dev"}
    assert publish["when"] == ["pull_request_opened"]
    assert publish["timeout"] == 600

def test_environment_defaults():
    result = parse_pipeline_config(PIPELINE)
    environments = result["environments"]

    assert environments["dev"]["manifest_path"] == "environments/dev/rollout-patch.yaml"
    assert environments["dev"]["tag_scheme"] == "sha"
    assert environments["dev"]["promotion"] == "auto"
    # prod only takes release tags unless told otherwise
    assert environments["prod"]["tag_scheme"] == "semver"
    assert environments["prod"]["promotion"] == "approval"

def test_missing_stages():
    config = """
name: Bad Pipeline
"""
    with pytest.raises(PipelineConfigError, match="must have 'stages'"):
        parse_pipeline_config(config)

def test_missing_stage_name():
    config = """
name: Bad Pipeline
stages:
  - image: node:18
    commands:
      - npm install
"""
    with pytest.raises(PipelineConfigError, match="missing 'name'"):
        parse_pipeline_config(config)

def test_missing_stage_image():
    config = """
name: Bad Pipeline
stages:
  - name: Build
    commands:
      - npm install
"""
    with pytest.raises(PipelineConfigError, match="missing 'image'"):
        parse_pipeline_config(config)

def test_action_stage_needs_no_image():
    config = {
        "stages": [
            {"name": "promote", "uses": "gitops/promote"},
        ]
    }
    result = parse_pipeline_dict(config)
    assert result["stages"][0]["image"] is None
    assert result["stages"][0]["commands"] == []

def test_unknown_dependency():
    config = {
        "stages": [
            {"name": "test", "needs": ["build"], "image": "alpine", "commands": ["true"]},
        ]
    }
    with pytest.raises(PipelineConfigError, match="unknown stage 'build'"):
        parse_pipeline_dict(config)

def test_dependency_cycle():
    config = {
        "stages": [
            {"name": "a", "needs": ["b"], "image": "alpine", "commands": ["true"]},
            {"name": "b", "needs": ["a"], "image": "alpine", "commands": ["true"]},
        ]
    }
    with pytest.raises(PipelineConfigError, match="cycle"):
        parse_pipeline_dict(config)

def test_duplicate_stage_name():
    config = {
        "stages": [
            {"name": "build", "image": "alpine", "commands": ["true"]},
            {"name": "build", "image": "alpine", "commands": ["true"]},
        ]
    }
    with pytest.raises(PipelineConfigError, match="Duplicate"):
        parse_pipeline_dict(config)

def test_unknown_environment_name():
    config = {
        "environments": {"uat": {"registry": "ghcr", "repository": "x", "manifest": "m.yaml"}},
        "stages": [{"name": "build", "image": "alpine", "commands": ["true"]}],
    }
    with pytest.raises(PipelineConfigError, match="Unknown environment 'uat'"):
        parse_pipeline_dict(config)

def test_unknown_registry():
    config = {
        "environments": {"dev": {"registry": "quay", "repository": "x", "manifest": "m.yaml"}},
        "stages": [{"name": "build", "image": "alpine", "commands": ["true"]}],
    }
    with pytest.raises(PipelineConfigError, match="unknown registry 'quay'"):
        parse_pipeline_dict(config)

def test_stage_targets_undefined_environment():
    config = {
        "stages": [{"name": "publish", "uses": "registry/push", "with": {"environment": "qa"}}],
    }
    with pytest.raises(PipelineConfigError, match="undefined environment 'qa'"):
        parse_pipeline_dict(config)

def test_unknown_trigger_in_when():
    config = {
        "stages": [{"name": "build", "image": "alpine", "commands": ["true"], "when": ["push"]}],
    }
    with pytest.raises(PipelineConfigError, match="unknown trigger 'push'"):
        parse_pipeline_dict(config)

def test_invalid_policy():
    config = {
        "stages": [{"name": "build", "image": "alpine", "commands": ["true"], "policy": "soft"}],
    }
    with pytest.raises(PipelineConfigError, match="unknown policy"):
        parse_pipeline_dict(config)

def test_empty_config():
    with pytest.raises(PipelineConfigError, match="Empty"):
        parse_pipeline_config("")
