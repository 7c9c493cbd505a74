import threading

from cascade_categorizer.services.usage import UsageEvent, UsageRecorder


def test_events_are_handled_in_background() -> None:
    recorder = UsageRecorder()
    seen: list[str] = []
    worker_threads: set[str] = set()

    def handler(event: UsageEvent) -> None:
        seen.append(event.payload["value"])
        worker_threads.add(threading.current_thread().name)

    recorder.register("hit", handler)
    for value in ("a", "b", "c"):
        recorder.publish(UsageEvent("hit", "org-1", {"value": value}))
    recorder.flush(timeout=5)

    assert seen == ["a", "b", "c"]
    assert worker_threads == {"usage-recorder"}
    recorder.stop()


def test_failing_handler_does_not_stop_delivery() -> None:
    recorder = UsageRecorder()
    seen: list[str] = []

    def flaky(event: UsageEvent) -> None:
        if event.payload["value"] == "bad":
            raise RuntimeError("write failed")
        seen.append(event.payload["value"])

    recorder.register("hit", flaky)
    recorder.publish(UsageEvent("hit", "org-1", {"value": "bad"}))
    recorder.publish(UsageEvent("hit", "org-1", {"value": "good"}))
    recorder.flush(timeout=5)

    assert seen == ["good"]
    recorder.stop()


def test_synchronous_mode_dispatches_inline() -> None:
    recorder = UsageRecorder(synchronous=True)
    seen: list[str] = []
    recorder.register("hit", lambda event: seen.append(event.kind))

    recorder.publish(UsageEvent("hit", "org-1"))

    assert seen == ["hit"]
