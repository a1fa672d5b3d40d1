"""Watching files for changes and turning process signals into a queue."""

from __future__ import annotations

import os
import queue
import signal
from typing import Any, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


def _event_paths(event: FileSystemEvent) -> set[str]:
    paths = {os.path.abspath(os.fsdecode(event.src_path))}
    dest = getattr(event, "dest_path", "")
    if dest:
        paths.add(os.path.abspath(os.fsdecode(dest)))
    return paths


class _QueueingHandler(FileSystemEventHandler):
    def __init__(self, events: "queue.Queue[FileSystemEvent]", only: Optional[str]):
        super().__init__()
        self._events = events
        self._only = only

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self._only is None or self._only in _event_paths(event):
            self._events.put(event)


class FileWatcher:
    """Watches files and directories; change events arrive on ``events``.

    A watched directory reports changes to its direct entries; a watched file
    reports only changes to itself.
    """

    def __init__(self, paths: tuple[str, ...]):
        self.events: "queue.Queue[FileSystemEvent]" = queue.Queue()
        self._observer = Observer()
        for path in paths:
            absolute = os.path.abspath(os.fspath(path))
            if not os.path.exists(absolute):
                raise FileNotFoundError(f"no such file or directory: {path}")
            if os.path.isdir(absolute):
                target, only = absolute, None
            else:
                target, only = os.path.dirname(absolute), absolute
            self._observer.schedule(_QueueingHandler(self.events, only), target, recursive=False)
        self._observer.start()

    @property
    def running(self) -> bool:
        return self._observer.is_alive()

    def close(self) -> None:
        """Stop watching."""
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join()

    def __enter__(self) -> "FileWatcher":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def watch_files(*files: str) -> FileWatcher:
    """Start watching the given files; raises if any of them does not exist."""
    return FileWatcher(tuple(files))


def watch_signals(*signals: signal.Signals) -> "queue.Queue[signal.Signals]":
    """Return a queue holding at most one pending signal of the given kinds.

    Signals that arrive while the queue is full are dropped. Must be called
    from the main thread.
    """
    pending: "queue.Queue[signal.Signals]" = queue.Queue(maxsize=1)

    def _handler(signum: int, _frame: Any) -> None:
        try:
            pending.put_nowait(signal.Signals(signum))
        except queue.Full:
            pass

    for sig in signals:
        signal.signal(sig, _handler)
    return pending