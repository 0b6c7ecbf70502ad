"""
Progress reporting sinks.

The programmer pushes (stage, bytes done, bytes total) after every page or
sector and a terminal outcome when an operation ends. Sinks must return
quickly; ThreadedProgress moves a slow consumer onto its own thread so the
device never waits on the presentation layer.
"""

import logging
import queue
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ProgressSink:
    """Receives progress updates from the programmer. Default: ignore them."""

    def progress(self, stage: str, done: int, total: int) -> None:
        """Called after each page/sector with cumulative byte counts."""

    def finished(self, stage: str, ok: bool, detail: Any = None) -> None:
        """Called once when an operation ends, successfully or not."""


class NullProgress(ProgressSink):
    """Discards everything."""


class CallbackProgress(ProgressSink):
    """Adapts a plain progress_cb(done, total) callable."""

    def __init__(
        self,
        progress_cb: Callable[[int, int], None],
        finished_cb: Optional[Callable[[str, bool, Any], None]] = None,
    ):
        self.progress_cb = progress_cb
        self.finished_cb = finished_cb

    def progress(self, stage: str, done: int, total: int) -> None:
        self.progress_cb(done, total)

    def finished(self, stage: str, ok: bool, detail: Any = None) -> None:
        if self.finished_cb:
            self.finished_cb(stage, ok, detail)


_STOP = object()


class ThreadedProgress(ProgressSink):
    """
    Forward updates to another sink from a background thread.

    Updates are queued without blocking; the inner sink sees them in order.
    Use as a context manager (or call close()) to drain the queue.

    Example:
        with ThreadedProgress(RichProgressSink(progress_bar)) as sink:
            FlashProgrammer(session, progress=sink).write(image)
    """

    def __init__(self, inner: ProgressSink):
        self.inner = inner
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(
            target=self._run, name="qoob-progress", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            method, args = item
            try:
                getattr(self.inner, method)(*args)
            except Exception:
                logger.exception("Progress sink raised; update dropped")

    def progress(self, stage: str, done: int, total: int) -> None:
        self._queue.put_nowait(("progress", (stage, done, total)))

    def finished(self, stage: str, ok: bool, detail: Any = None) -> None:
        self._queue.put_nowait(("finished", (stage, ok, detail)))

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver everything queued so far and stop the thread."""
        if self._thread.is_alive():
            self._queue.put_nowait(_STOP)
            self._thread.join(timeout)

    def __enter__(self) -> "ThreadedProgress":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
