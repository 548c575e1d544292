from conftest import InlineExecutor
from pdc import db
from pdc.events import EVENT_WARNING, Event, EventRecorder, subscriptions, warning


def test_subscriptions_parse_annotations():
    subs = subscriptions(
        {
            "notifications.pdc.io/subscribe.on-completed.webhook": "http://a, http://b",
            "notifications.pdc.io/subscribe.on-rollout-aborted.email": "ops@example.com",
            "unrelated": "x",
        }
    )
    assert subs == {
        "on-completed": [("webhook", "http://a"), ("webhook", "http://b")],
        "on-rollout-aborted": [("email", "ops@example.com")],
    }


def test_recorder_logs_and_notifies_subscribers():
    sent = []

    def webhook(recipient, subject, payload):
        sent.append((recipient, payload["reason"]))
        return True

    recorder = EventRecorder(notifiers={"webhook": webhook}, executor=InlineExecutor())
    annotations = {"notifications.pdc.io/subscribe.on-rollout-aborted.webhook": "http://hook"}

    recorder.eventf("demo", annotations, warning("RolloutAborted", "analysis failed"))
    recorder.eventf("demo", annotations, Event("ScalingReplicaSet", "Scaled up"))

    assert sent == [("http://hook", "RolloutAborted")]
    latest = db.latest_events(rollout="demo")
    assert latest[1]["level"] == "WARN"
    assert latest[1]["reason"] == "RolloutAborted"
    assert warning("X", "y").type == EVENT_WARNING


def test_notifier_failure_is_logged_not_raised():
    def broken(recipient, subject, payload):
        raise RuntimeError("smtp down")

    recorder = EventRecorder(notifiers={"email": broken}, executor=InlineExecutor())
    annotations = {"notifications.pdc.io/subscribe.on-completed.email": "ops@example.com"}
    recorder.eventf("demo", annotations, Event("RolloutCompleted", "done"))

    messages = [e["message"] for e in db.latest_events(rollout="demo")]
    assert any("smtp down" in m for m in messages)


def test_unknown_service_is_reported():
    recorder = EventRecorder(notifiers={}, executor=InlineExecutor())
    annotations = {"notifications.pdc.io/subscribe.on-completed.slack": "#deploys"}
    recorder.eventf("demo", annotations, Event("RolloutCompleted", "done"))

    messages = [e["message"] for e in db.latest_events(rollout="demo")]
    assert "Unknown notification service 'slack'" in messages


def test_webhook_notifier_posts_json(monkeypatch):
    import httpx

    from pdc import alerts

    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw))

    assert alerts.webhook_notifier("http://hook.local/x", "subj", {"reason": "RolloutCompleted"}) is True
    assert seen[0].method == "POST"
    assert b"RolloutCompleted" in seen[0].content


def test_email_notifier_is_noop_when_disabled():
    from pdc import alerts

    assert alerts.email_notifier("ops@example.com", "subj", {"reason": "x"}) is False
