import httpx
import pytest

from pdc import gateway
from pdc.api_models import TrafficRouting
from pdc.errors import ValidationError
from pdc.runtime import RouteTargets, RuntimeState
from pdc.traffic import HttpRouter, InProcessRouter, RouteStatus, build_router, converge


class ScriptedRouter:
    name = "scripted"

    def __init__(self, result=RouteStatus.SUCCESS, observed=None):
        self.result = result
        self.observed = observed
        self.calls = []

    def set_weight(self, weight):
        self.calls.append(weight)
        if self.result == RouteStatus.SUCCESS:
            self.observed = weight
        return self.result

    def verify_weight(self, weight):
        return self.observed == weight


def test_converge_only_reports_applied_weights():
    ok = ScriptedRouter()
    assert converge(0, 20, ok) is True
    assert ok.calls == [20]

    pending = ScriptedRouter(result=RouteStatus.PENDING)
    assert converge(0, 20, pending) is False

    failing = ScriptedRouter(result=RouteStatus.ERROR)
    assert converge(0, 20, failing) is False


def test_converge_reapplies_when_observed_weight_drifted():
    router = ScriptedRouter(observed=0)
    assert converge(20, 20, router) is True
    assert router.calls == [20]

    # Already in place: no write.
    assert converge(20, 20, router) is True
    assert router.calls == [20]


def test_converge_swallows_router_exceptions():
    class Boom:
        name = "boom"

        def set_weight(self, weight):
            raise RuntimeError("down")

        def verify_weight(self, weight):
            return False

    assert converge(0, 10, Boom()) is False


def test_build_router_rejects_unknown_plugin():
    with pytest.raises(ValidationError):
        build_router(TrafficRouting(plugin="istio"), "demo", RuntimeState())
    with pytest.raises(ValidationError):
        build_router(TrafficRouting(plugin="http", config={}), "demo", RuntimeState())


def test_inprocess_router_feeds_gateway():
    runtime = RuntimeState()
    router = build_router(TrafficRouting(plugin="inprocess"), "demo", runtime)
    assert isinstance(router, InProcessRouter)
    runtime.set_targets(RouteTargets(rollout="demo", stable="s1", canary="c1"))

    assert converge(0, 25, router) is True
    picks = [gateway.select_backend("demo", runtime)[0] for _ in range(100)]
    assert picks.count("canary") == 25
    assert picks.count("stable") == 75


def test_gateway_without_targets():
    with pytest.raises(gateway.NoHealthyBackends):
        gateway.select_backend("missing", RuntimeState())


def test_http_router_statuses(monkeypatch):
    responses = {"PUT": httpx.Response(202), "GET": httpx.Response(200, json={"weight": 30})}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/weights/demo"
        return responses[request.method]

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=transport, **kw))

    router = HttpRouter("demo", "http://mesh.local")
    assert router.set_weight(30) == RouteStatus.PENDING
    assert router.verify_weight(30) is True
    responses["PUT"] = httpx.Response(204)
    assert router.set_weight(30) == RouteStatus.SUCCESS
    responses["PUT"] = httpx.Response(500)
    assert router.set_weight(30) == RouteStatus.ERROR
