import queue
import threading

import pytest

from videos.notifier import ProgressEvent, ProgressNotifier


def ev(status, progress, **kw):
    return ProgressEvent(job_id="j1", status=status, progress=progress, **kw)


def test_events_arrive_in_publish_order(notifier):
    sub = notifier.subscribe("j1")
    for p in (0, 20, 50):
        notifier.publish("j1", ev("PROCESSING_TRANSCODE", p))
    assert [sub.get(timeout=1).progress for _ in range(3)] == [0, 20, 50]


def test_stream_ends_after_single_terminal_event(notifier):
    sub = notifier.subscribe("j1")
    notifier.publish("j1", ev("UPLOADING", 60))
    assert notifier.publish("j1", ev("PUBLISHED", 100, published_url="https://x/index.m3u8"))
    assert not notifier.publish("j1", ev("ERROR", 100, error_reason="late"))

    events = list(sub)
    assert [e.status for e in events] == ["UPLOADING", "PUBLISHED"]
    assert sub.get(timeout=1) is None


def test_late_subscriber_gets_terminal_replay(notifier):
    notifier.publish("j1", ev("ERROR", 40, error_reason="Encoder exited with code 1"))
    events = list(notifier.subscribe("j1"))
    assert len(events) == 1
    assert events[0].status == "ERROR"
    assert events[0].error_reason == "Encoder exited with code 1"


def test_mid_stream_subscriber_starts_from_latest_snapshot(notifier):
    notifier.publish("j1", ev("PROCESSING_TRANSCODE", 10))
    sub = notifier.subscribe("j1")
    notifier.publish("j1", ev("UPLOADING", 50))
    assert sub.get(timeout=1).progress == 10
    assert sub.get(timeout=1).status == "UPLOADING"


def test_progress_regression_is_clamped(notifier):
    sub = notifier.subscribe("j1")
    notifier.publish("j1", ev("PROCESSING_TRANSCODE", 30))
    notifier.publish("j1", ev("PROCESSING_TRANSCODE", 20))
    assert [sub.get(timeout=1).progress for _ in range(2)] == [30, 30]


def test_jobs_are_independent(notifier):
    other = notifier.subscribe("j2")
    notifier.publish("j1", ev("PUBLISHED", 100, published_url="u"))
    with pytest.raises(queue.Empty):
        other.get(timeout=0.05)


def test_forget_drops_state_and_closes_streams(notifier):
    sub = notifier.subscribe("j1")
    notifier.publish("j1", ev("UPLOADING", 60))
    notifier.forget("j1")
    assert list(sub) == [ev("UPLOADING", 60)]
    assert notifier.last_event("j1") is None


def test_blocking_subscriber_wakes_on_publish(notifier):
    sub = notifier.subscribe("j1")
    received = []
    t = threading.Thread(target=lambda: received.extend(sub))
    t.start()
    notifier.publish("j1", ev("UPLOADING", 70))
    notifier.publish("j1", ev("PUBLISHED", 100, published_url="u"))
    t.join(timeout=2)
    assert [e.progress for e in received] == [70, 100]


def test_as_dict_omits_unset_fields():
    assert ev("UPLOADING", 55).as_dict() == {"job_id": "j1", "status": "UPLOADING", "progress": 55}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_terminal_events_expire_after_retention():
    clock = FakeClock()
    n = ProgressNotifier(retention_seconds=60, max_terminal=100, clock=clock)
    n.publish("done", ev("PUBLISHED", 100, published_url="u"))
    n.publish("running", ev("UPLOADING", 70))

    clock.now += 59
    assert n.last_event("done") is not None

    clock.now += 2
    assert n.last_event("done") is None
    assert n.last_event("running").progress == 70


def test_terminal_events_are_capped_oldest_first():
    n = ProgressNotifier(retention_seconds=3600, max_terminal=2, clock=FakeClock())
    for job_id in ("a", "b", "c"):
        n.publish(job_id, ev("ERROR", 10, error_reason="x"))
    assert n.last_event("a") is None
    assert n.last_event("b") is not None
    assert n.last_event("c") is not None


def test_retention_defaults_come_from_settings(pipeline_settings):
    pipeline_settings.NOTIFIER_TERMINAL_RETENTION_SECONDS = 5
    pipeline_settings.NOTIFIER_MAX_TERMINAL_EVENTS = 7
    n = ProgressNotifier()
    assert n.retention_seconds == 5
    assert n.max_terminal == 7
