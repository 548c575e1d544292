import os

import pytest

from pdc import actions, db, manifests
from pdc.api_models import Phase
from pdc.errors import ValidationError

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")

INVALID_STRATEGY = """
apiVersion: rollouts.pdc.io/v1alpha1
kind: Rollout
metadata:
  name: invalid-rollout
spec:
  template:
    spec:
      containers:
      - name: invalid-rollout
        image: invalid-rollout:0.0.0
  strategy:
    unknown-strategy: {}
"""


def test_workload_ref_rollout_end_to_end(reconciler, clock):
    applied = manifests.apply_file(os.path.join(EXAMPLES, "canary-workload-ref.yaml"))
    assert [manifests.describe(r) for r in applied] == [
        "deployment/rollout-ref-deployment",
        "rollout/rollout-ref-deployment",
    ]

    reconciler.reconcile("rollout-ref-deployment")
    r = actions.get_rollout("rollout-ref-deployment")
    assert r.status.phase == Phase.HEALTHY
    assert r.status.replica_sets[0].replicas == 5

    text = open(os.path.join(EXAMPLES, "canary-workload-ref.yaml"), encoding="utf-8").read()
    manifests.apply_manifests(manifests.load_manifests(text.replace("rollouts-demo:blue", "rollouts-demo:yellow")))
    reconciler.reconcile("rollout-ref-deployment")
    r = actions.get_rollout("rollout-ref-deployment")
    counts = {ref.role: ref.replicas for ref in r.status.replica_sets}
    assert counts == {"stable": 4, "canary": 1}
    assert r.status.current_step_weight == 20


def test_all_examples_validate():
    for name in sorted(os.listdir(EXAMPLES)):
        if name.endswith(".yaml"):
            text = open(os.path.join(EXAMPLES, name), encoding="utf-8").read()
            for doc in manifests.load_manifests(text):
                manifests.validate_manifest(doc)


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValidationError) as exc:
        manifests.apply_manifests(manifests.load_manifests(INVALID_STRATEGY))
    assert "unknown-strategy" in exc.value.message
    assert db.get_rollout("invalid-rollout") is None


def test_invalid_document_rejects_whole_batch():
    good = open(os.path.join(EXAMPLES, "analysis-template.yaml"), encoding="utf-8").read()
    with pytest.raises(ValidationError) as exc:
        manifests.apply_manifests(manifests.load_manifests(good + "\n---\n" + INVALID_STRATEGY))
    assert exc.value.message.startswith("document 2:")
    assert db.get_analysis_template("success-rate") is None


def test_unsupported_kind_and_bad_yaml():
    with pytest.raises(ValidationError):
        manifests.validate_manifest({"apiVersion": "v1", "kind": "ConfigMap"})
    with pytest.raises(ValidationError):
        manifests.load_manifests("a: [unclosed")
    with pytest.raises(ValidationError):
        manifests.load_manifests("- just\n- a list\n")


def test_unknown_step_type_is_rejected():
    doc = manifests.load_manifests(INVALID_STRATEGY)[0]
    doc["spec"]["strategy"] = {"canary": {"steps": [{"setWeight": 10}, {"scaleTo": 3}]}}
    with pytest.raises(ValidationError):
        manifests.validate_manifest(doc)
