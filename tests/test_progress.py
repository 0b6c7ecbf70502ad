"""Tests for progress sinks."""

import threading

from qoob_flasher.progress import CallbackProgress, NullProgress, ProgressSink, ThreadedProgress


class RecordingSink(ProgressSink):
    def __init__(self):
        self.events = []
        self.thread_names = set()

    def progress(self, stage, done, total):
        self.thread_names.add(threading.current_thread().name)
        self.events.append(("progress", stage, done, total))

    def finished(self, stage, ok, detail=None):
        self.events.append(("finished", stage, ok, detail))


def test_null_progress_accepts_everything():
    sink = NullProgress()
    sink.progress("write", 1, 2)
    sink.finished("write", True)


def test_callback_progress_without_finished_cb():
    seen = []
    sink = CallbackProgress(lambda done, total: seen.append((done, total)))
    sink.progress("read", 10, 20)
    sink.finished("read", True)
    assert seen == [(10, 20)]


def test_threaded_progress_preserves_order():
    inner = RecordingSink()
    with ThreadedProgress(inner) as sink:
        for done in range(0, 1024, 256):
            sink.progress("write", done + 256, 1024)
        sink.finished("write", True, "done")

    assert inner.events == [
        ("progress", "write", 256, 1024),
        ("progress", "write", 512, 1024),
        ("progress", "write", 768, 1024),
        ("progress", "write", 1024, 1024),
        ("finished", "write", True, "done"),
    ]
    assert inner.thread_names == {"qoob-progress"}


def test_threaded_progress_survives_failing_sink():
    class Flaky(RecordingSink):
        def progress(self, stage, done, total):
            if done == 1:
                raise RuntimeError("display went away")
            super().progress(stage, done, total)

    inner = Flaky()
    sink = ThreadedProgress(inner)
    sink.progress("erase", 1, 3)
    sink.progress("erase", 2, 3)
    sink.close()

    assert inner.events == [("progress", "erase", 2, 3)]


def test_close_twice():
    sink = ThreadedProgress(NullProgress())
    sink.close()
    sink.close()
