import os
import sys
from concurrent.futures import Future
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pdc import db  # noqa: E402
from pdc.analysis import MetricAnalysisBackend  # noqa: E402
from pdc.events import EventRecorder  # noqa: E402
from pdc.reconciler import ControllerConfig, Reconciler  # noqa: E402
from pdc.runtime import RuntimeState  # noqa: E402
from pdc.workqueue import WorkQueue  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InlineExecutor:
    """Runs submitted callables immediately so notification effects are observable."""

    def submit(self, fn, *args, **kwargs):
        fut: Future = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:  # pragma: no cover
            fut.set_exception(e)
        return fut

    def shutdown(self, wait: bool = True) -> None:
        pass


class FakeMeasure:
    """Stand-in metric provider returning queued values (or raising queued exceptions)."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = []

    def __call__(self, provider, timeout_s):
        self.calls.append(provider)
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point every db call at a fresh sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "pdc.db")))
    db.init_db()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def measure():
    return FakeMeasure(1.0)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def reconciler(clock, measure, notifications):
    def _capture(recipient, subject, payload):
        notifications.append((recipient, subject, payload))
        return True

    runtime = RuntimeState()
    recorder = EventRecorder(notifiers={"webhook": _capture}, executor=InlineExecutor())
    backend = MetricAnalysisBackend(clock=clock, measure=measure, default_interval_s=10)
    config = ControllerConfig(workers=1, analysis_poll_interval_s=10, weight_verify_interval_s=2)
    return Reconciler(config, runtime, recorder=recorder, analysis_backend=backend, clock=clock, queue=WorkQueue())


def rollout_manifest(name="demo", replicas=5, image="demo:v1", steps=None, **strategy_extra):
    canary = {"steps": steps if steps is not None else [{"setWeight": 20}, {"pause": {"duration": "10s"}}]}
    canary.update(strategy_extra)
    return {
        "apiVersion": "rollouts.pdc.io/v1alpha1",
        "kind": "Rollout",
        "metadata": {"name": name},
        "spec": {
            "replicas": replicas,
            "template": {"spec": {"containers": [{"name": "app", "image": image}]}},
            "strategy": {"canary": canary},
        },
    }


def bluegreen_manifest(name="shop", replicas=3, image="shop:v1", **blue_green):
    return {
        "apiVersion": "rollouts.pdc.io/v1alpha1",
        "kind": "Rollout",
        "metadata": {"name": name},
        "spec": {
            "replicas": replicas,
            "template": {"spec": {"containers": [{"name": "app", "image": image}]}},
            "strategy": {"blueGreen": blue_green},
        },
    }


def analysis_template_manifest(name="success-rate", **metric_extra):
    metric = {
        "name": "success-rate",
        "successCondition": "result >= 0.95",
        "failureCondition": "result < 0.9",
        "provider": {"web": {"url": "http://metrics.local/{{args.pod-hash}}", "jsonPath": "$.value"}},
    }
    metric.update(metric_extra)
    return {
        "apiVersion": "rollouts.pdc.io/v1alpha1",
        "kind": "AnalysisTemplate",
        "metadata": {"name": name},
        "spec": {"args": [{"name": "pod-hash"}], "metrics": [metric]},
    }


def set_image(manifest, image):
    manifest["spec"]["template"]["spec"]["containers"][0]["image"] = image
    return manifest
