from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from . import alerts, db

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

REASON_ROLLOUT_UPDATED = "RolloutUpdated"
REASON_STEP_COMPLETED = "RolloutStepCompleted"
REASON_SCALING_REPLICA_SET = "ScalingReplicaSet"
REASON_ROLLOUT_COMPLETED = "RolloutCompleted"
REASON_ROLLOUT_PAUSED = "RolloutPaused"
REASON_ROLLOUT_RESUMED = "RolloutResumed"
REASON_ROLLOUT_ABORTED = "RolloutAborted"
REASON_ROLLOUT_RETRIED = "RolloutRetried"
REASON_ANALYSIS_FAILED = "AnalysisRunFailed"
REASON_WEIGHT_UPDATED = "TrafficWeightUpdated"

BUILT_IN_TRIGGERS: dict[str, str] = {
    "on-update": REASON_ROLLOUT_UPDATED,
    "on-step-completed": REASON_STEP_COMPLETED,
    "on-scaling-replicaset": REASON_SCALING_REPLICA_SET,
    "on-completed": REASON_ROLLOUT_COMPLETED,
    "on-rollout-paused": REASON_ROLLOUT_PAUSED,
    "on-rollout-aborted": REASON_ROLLOUT_ABORTED,
    "on-analysis-run-failed": REASON_ANALYSIS_FAILED,
}
EVENT_REASON_TO_TRIGGER: dict[str, str] = {reason: trigger for trigger, reason in BUILT_IN_TRIGGERS.items()}

SUBSCRIBE_PREFIX = "notifications.pdc.io/subscribe."

Notifier = Callable[[str, str, Mapping[str, Any]], bool]


@dataclass(frozen=True)
class Event:
    reason: str
    message: str
    type: str = EVENT_NORMAL


def warning(reason: str, message: str) -> Event:
    return Event(reason, message, EVENT_WARNING)


def subscriptions(annotations: Mapping[str, str]) -> dict[str, list[tuple[str, str]]]:
    """Parse ``notifications.pdc.io/subscribe.<trigger>.<service>: <recipient>[,<recipient>]``.

    Returns trigger -> [(service, recipient), ...].
    """
    out: dict[str, list[tuple[str, str]]] = {}
    for key, value in annotations.items():
        if not key.startswith(SUBSCRIBE_PREFIX):
            continue
        trigger, _, service = key[len(SUBSCRIBE_PREFIX):].rpartition(".")
        if not trigger or not service:
            continue
        for recipient in str(value).split(","):
            recipient = recipient.strip()
            if recipient:
                out.setdefault(trigger, []).append((service, recipient))
    return out


class EventRecorder:
    """Records rollout events in the event log and fans them out to subscribers.

    Delivery runs on a background executor; a failed notification is logged
    and never propagates to the reconcile that produced the event.
    """

    def __init__(self, notifiers: Mapping[str, Notifier] | None = None, executor: Executor | None = None):
        if notifiers is None:
            notifiers = {"email": alerts.email_notifier, "webhook": alerts.webhook_notifier}
        self.notifiers = dict(notifiers)
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="pdc-notify")

    def eventf(self, rollout: str, annotations: Mapping[str, str], event: Event) -> None:
        level = "WARN" if event.type == EVENT_WARNING else "INFO"
        db.log_event(level, event.message, rollout=rollout, reason=event.reason)

        trigger = EVENT_REASON_TO_TRIGGER.get(event.reason)
        if trigger is None:
            return
        for service, recipient in subscriptions(annotations).get(trigger, []):
            notifier = self.notifiers.get(service)
            if notifier is None:
                db.log_event("WARN", f"Unknown notification service '{service}'", rollout=rollout)
                continue
            self._executor.submit(self._send, notifier, service, recipient, rollout, trigger, event)

    def _send(
        self, notifier: Notifier, service: str, recipient: str, rollout: str, trigger: str, event: Event
    ) -> None:
        subject = f"[{rollout}] {trigger}: {event.reason}"
        payload = {
            "rollout": rollout,
            "trigger": trigger,
            "type": event.type,
            "reason": event.reason,
            "message": event.message,
        }
        try:
            ok = notifier(recipient, subject, payload)
        except Exception as e:
            db.log_event("ERROR", f"notification error: {type(e).__name__}: {e}", rollout=rollout)
            return
        if not ok:
            db.log_event("WARN", f"Notification via {service} to {recipient} was not delivered", rollout=rollout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
