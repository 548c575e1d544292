from __future__ import annotations

from pathlib import Path
from typing import Any, Union

import yaml

from . import actions
from .api_models import API_VERSION, AnalysisTemplate, Rollout, Workload
from .errors import ValidationError

WORKLOAD_KINDS = {("apps/v1", "Deployment")}

Resource = Union[Rollout, AnalysisTemplate, Workload]


def load_manifests(text: str) -> list[dict[str, Any]]:
    """Parse a (multi-document) YAML or JSON string into resource mappings."""
    try:
        docs = [d for d in yaml.safe_load_all(text) if d is not None]
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid YAML: {e}") from e
    for i, doc in enumerate(docs):
        if not isinstance(doc, dict):
            raise ValidationError(f"document {i + 1}: expected a mapping, got {type(doc).__name__}")
    return docs


def validate_manifest(doc: dict[str, Any]) -> Resource:
    api_version = doc.get("apiVersion")
    kind = doc.get("kind")
    if api_version == API_VERSION and kind == "Rollout":
        return actions.validate_rollout(doc)
    if api_version == API_VERSION and kind == "AnalysisTemplate":
        return actions.validate_analysis_template(doc)
    if (api_version, kind) in WORKLOAD_KINDS:
        return actions.validate_workload(doc)
    raise ValidationError(f"unsupported resource {api_version}/{kind}")


def apply_manifests(docs: list[dict[str, Any]]) -> list[Resource]:
    """Validate every document first, then apply them in order.

    A single invalid document rejects the whole batch without writing anything.
    """
    resources: list[Resource] = []
    for i, doc in enumerate(docs):
        try:
            resources.append(validate_manifest(doc))
        except ValidationError as e:
            raise ValidationError(f"document {i + 1}: {e.message}", errors=e.errors) from e

    applied: list[Resource] = []
    for res in resources:
        if isinstance(res, Rollout):
            applied.append(actions.apply_rollout(res))
        elif isinstance(res, AnalysisTemplate):
            applied.append(actions.apply_analysis_template(res))
        else:
            applied.append(actions.apply_workload(res))
    return applied


def apply_file(path: str | Path) -> list[Resource]:
    return apply_manifests(load_manifests(Path(path).read_text(encoding="utf-8")))


def describe(resource: Resource) -> str:
    return f"{resource.kind.lower()}/{resource.metadata.name}"
