import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from cascade_categorizer.logger import get_logger

logger = get_logger(__name__)

RULE_MATCHED = "rule_matched"
PATTERN_MATCHED = "pattern_matched"
PATTERN_CONFIRMED = "pattern_confirmed"
EMBEDDING_LABELED = "embedding_labeled"


@dataclass(frozen=True)
class UsageEvent:
    kind: str
    organization_id: str
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[UsageEvent], None]

_STOP = object()


class UsageRecorder:
    """
    Background updater for usage statistics.

    Publishers never wait on the write. Delivery is at-least-once in spirit:
    a failed handler is logged and the event is dropped, which only skews
    statistics and never a categorization.
    """

    def __init__(self, synchronous: bool = False) -> None:
        self.synchronous = synchronous
        self._handlers: dict[str, list[Handler]] = {}
        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def register(self, kind: str, handler: Handler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def publish(self, event: UsageEvent) -> None:
        if self.synchronous:
            self._dispatch(event)
            return
        self._ensure_worker()
        self._queue.put_nowait(event)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every published event has been handled."""
        if self.synchronous or self._worker is None:
            return
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        done.wait(timeout)

    def stop(self) -> None:
        worker = self._worker
        if worker is None:
            return
        self._queue.put_nowait(_STOP)
        worker.join(timeout=5)
        self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        with self._start_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="usage-recorder", daemon=True)
                self._worker.start()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: UsageEvent) -> None:
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug("[USAGE] No handler for event '%s'.", event.kind)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("[USAGE] Handler for '%s' failed (org %s).", event.kind, event.organization_id)
