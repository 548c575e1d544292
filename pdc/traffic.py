"""Traffic weight controller.

Translates a desired canary weight into calls against a routing plugin. The
contract every plugin satisfies is a single capability, ``set_weight``; a
plugin that can read its configuration back also implements
``verify_weight`` so a weight is never reported as applied on the strength of
the write alone.
"""
from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx

from . import db
from .api_models import TrafficRouting
from .errors import ValidationError
from .runtime import RuntimeState
from .settings import settings


class RouteStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"  # accepted, propagation not confirmed yet
    ERROR = "error"


class TrafficRouter(Protocol):
    name: str

    def set_weight(self, weight: int) -> RouteStatus:
        """Route ``weight`` percent of traffic to the canary identity."""

    def verify_weight(self, weight: int) -> Optional[bool]:
        """Confirm the backend serves ``weight``. None when the backend cannot tell."""


class ReplicaRatioRouter:
    """No traffic manager: the weight is carried by the replica split itself."""

    name = "replica-ratio"

    def set_weight(self, weight: int) -> RouteStatus:
        return RouteStatus.SUCCESS

    def verify_weight(self, weight: int) -> Optional[bool]:
        return None


class InProcessRouter:
    """Weights held in process memory and served by :mod:`pdc.gateway`."""

    name = "inprocess"

    def __init__(self, rollout: str, runtime: RuntimeState):
        self.rollout = rollout
        self.runtime = runtime

    def set_weight(self, weight: int) -> RouteStatus:
        self.runtime.set_weight(self.rollout, weight)
        return RouteStatus.SUCCESS

    def verify_weight(self, weight: int) -> Optional[bool]:
        return self.runtime.get_weight(self.rollout) == weight


class HttpRouter:
    """Delegates to an external traffic manager over HTTP.

    ``PUT {url}/weights/{rollout}`` with ``{"weight": n}``: 200/204 means
    applied, 202 means accepted but still propagating.
    ``GET {url}/weights/{rollout}`` returns ``{"weight": n}``.
    """

    name = "http"

    def __init__(self, rollout: str, url: str, timeout_s: float | None = None):
        self.rollout = rollout
        self.url = url.rstrip("/")
        self.timeout_s = timeout_s or settings.request_timeout_s

    def _endpoint(self) -> str:
        return f"{self.url}/weights/{self.rollout}"

    def set_weight(self, weight: int) -> RouteStatus:
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False) as client:
                resp = client.put(self._endpoint(), json={"weight": weight})
        except httpx.HTTPError:
            return RouteStatus.ERROR
        if resp.status_code == 202:
            return RouteStatus.PENDING
        if resp.status_code in (200, 204):
            return RouteStatus.SUCCESS
        return RouteStatus.ERROR

    def verify_weight(self, weight: int) -> Optional[bool]:
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False) as client:
                resp = client.get(self._endpoint())
            if resp.status_code != 200:
                return False
            data = resp.json()
        except (httpx.HTTPError, ValueError):
            return False
        return isinstance(data, dict) and data.get("weight") == weight


RouterFactory = Callable[[str, Mapping[str, Any], RuntimeState], TrafficRouter]


def _http_router(rollout: str, config: Mapping[str, Any], runtime: RuntimeState) -> TrafficRouter:
    url = config.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise ValidationError("trafficRouting plugin 'http' requires config.url (http:// or https://)")
    timeout = config.get("timeoutSeconds")
    return HttpRouter(rollout, url, float(timeout) if timeout else None)


DEFAULT_ROUTERS: Mapping[str, RouterFactory] = MappingProxyType(
    {
        ReplicaRatioRouter.name: lambda rollout, config, runtime: ReplicaRatioRouter(),
        InProcessRouter.name: lambda rollout, config, runtime: InProcessRouter(rollout, runtime),
        HttpRouter.name: _http_router,
    }
)


def build_router(
    routing: TrafficRouting | None,
    rollout: str,
    runtime: RuntimeState,
    registry: Mapping[str, RouterFactory] = DEFAULT_ROUTERS,
) -> TrafficRouter:
    if routing is None:
        return ReplicaRatioRouter()
    factory = registry.get(routing.plugin)
    if factory is None:
        known = ", ".join(sorted(registry))
        raise ValidationError(f"unknown trafficRouting plugin {routing.plugin!r} (known: {known})")
    return factory(rollout, routing.config, runtime)


def converge(current_weight: int, desired_weight: int, router: TrafficRouter, rollout: str | None = None) -> bool:
    """Drive ``router`` to ``desired_weight``.

    Returns True only once the weight is applied (and confirmed, where the
    plugin can confirm). False means "not yet": the caller keeps its recorded
    weight and retries later.
    """
    desired = max(0, min(100, int(desired_weight)))
    try:
        # Already recorded and still observed: nothing to write.
        if current_weight == desired and router.verify_weight(desired) is not False:
            return True
        result = router.set_weight(desired)
        if result != RouteStatus.SUCCESS:
            if result == RouteStatus.ERROR:
                db.log_event("WARN", f"Traffic router '{router.name}' rejected weight {desired}", rollout=rollout)
            return False
        return router.verify_weight(desired) is not False
    except Exception as e:
        db.log_event(
            "WARN",
            f"Traffic router '{router.name}' failed setting weight {desired}: {type(e).__name__}: {e}",
            rollout=rollout,
        )
        return False
