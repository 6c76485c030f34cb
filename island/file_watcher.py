"""
Incremental JSONL tailing for session and subagent transcripts.

Each watcher owns a single-thread executor so reads and offset updates for
one file never interleave; different files are read in parallel. A shared
watchdog Observer delivers "file changed" notifications, which only
schedule a check. The check itself re-stats the file and reads from the
recorded offset.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from .models import (
    AgentFileUpdated,
    ClearDetected,
    FileUpdated,
    SubagentToolInfo,
)
from .transcript import build_payload, merge_subagent_tools, parse_lines

logger = logging.getLogger(__name__)

EventSink = Callable[[object], None]


class _FileChangeHandler(FileSystemEventHandler):
    """Forwards events for one path to its watcher."""

    def __init__(self, watcher: "IncrementalFileWatcher"):
        super().__init__()
        self._watcher = watcher
        self._path = os.fspath(watcher.path)

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        if os.fspath(event.src_path) == self._path:
            return True
        dest = getattr(event, "dest_path", "")
        return bool(dest) and os.fspath(dest) == self._path

    def on_modified(self, event):
        if self._matches(event):
            self._watcher.schedule_check()

    def on_created(self, event):
        if self._matches(event):
            self._watcher.schedule_check()

    def on_moved(self, event):
        if self._matches(event):
            self._watcher.schedule_check()


class IncrementalFileWatcher:
    """
    Byte-offset tailer for one append-only JSONL file.

    Subclasses turn newly appended complete lines into store events via
    _process_lines(). The offset only ever advances past complete lines;
    a trailing partial line is read again once its newline arrives.
    """

    def __init__(
        self,
        path: Path,
        sink: EventSink,
        observer: Optional[BaseObserver] = None,
        name: str = "watcher",
    ):
        self.path = Path(path)
        self.sink = sink
        self.observer = observer
        self.name = name
        self.offset = 0
        self._emitted_ids: set[str] = set()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"watch-{name}")
        self._handler: Optional[_FileChangeHandler] = None
        self._watch: Optional[ObservedWatch] = None
        self._stopped = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def start(self, initial_load: bool = False) -> Future:
        """
        Begin watching.

        Args:
            initial_load: Parse the existing contents first (non-incremental);
                otherwise start at the current end of file.

        Returns:
            Future that completes once the initial positioning is done
        """
        future = self._executor.submit(self._initialize, initial_load)
        if self.observer is not None:
            self._register()
        return future

    def _register(self):
        parent = self.path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            self._handler = _FileChangeHandler(self)
            self._watch = self.observer.schedule(self._handler, os.fspath(parent), recursive=False)
        except OSError as e:
            logger.warning(f"Cannot watch {parent} for {self.name}: {e}")
            self._handler = None
            self._watch = None

    def _initialize(self, initial_load: bool):
        with self._lock:
            if self._stopped:
                return
            if initial_load:
                self.offset = 0
                self._emitted_ids.clear()
                self._read_new(incremental=False)
            else:
                try:
                    self.offset = self.path.stat().st_size
                except FileNotFoundError:
                    self.offset = 0

    def schedule_check(self) -> Optional[Future]:
        """Queue a check on this watcher's private executor."""
        if self._stopped:
            return None
        try:
            return self._executor.submit(self.check)
        except RuntimeError:
            # Executor shut down between the flag test and submit
            return None

    def check(self) -> int:
        """
        Read whatever was appended since the last check.

        Returns:
            Number of new entities emitted
        """
        with self._lock:
            if self._stopped:
                return 0
            try:
                size = self.path.stat().st_size
            except FileNotFoundError:
                return 0

            if size == self.offset:
                return 0
            if size < self.offset:
                logger.info(f"{self.name}: file shrank ({self.offset} -> {size}), reloading")
                self.offset = 0
                self._emitted_ids.clear()
                return self._read_new(incremental=False)
            return self._read_new(incremental=True)

    def _read_new(self, incremental: bool) -> int:
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                chunk = f.read()
        except FileNotFoundError:
            if not incremental:
                return self._process_lines([], incremental=False)
            return 0
        except OSError as e:
            logger.error(f"{self.name}: read failed: {e}")
            return 0

        end = chunk.rfind(b"\n")
        if end == -1:
            if not incremental:
                return self._process_lines([], incremental=False)
            return 0

        complete = chunk[:end + 1]
        self.offset += len(complete)
        lines = complete.decode("utf-8", errors="replace").splitlines()
        return self._process_lines(lines, incremental=incremental)

    def _mark_emitted(self, entity_id: str) -> bool:
        """Record an id. False if it was already emitted."""
        if entity_id in self._emitted_ids:
            return False
        self._emitted_ids.add(entity_id)
        return True

    def _process_lines(self, lines: list[str], incremental: bool) -> int:
        raise NotImplementedError

    def stop(self):
        """Stop watching. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        if self.observer is not None and self._watch is not None and self._handler is not None:
            try:
                self.observer.remove_handler_for_watch(self._handler, self._watch)
            except KeyError:
                pass
        self._handler = None
        self._watch = None
        # A check already running finishes under the lock; queued ones are dropped
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug(f"Stopped {self.name}")


class TranscriptWatcher(IncrementalFileWatcher):
    """Tails a session transcript and emits FileUpdated / ClearDetected."""

    def __init__(
        self,
        session_id: str,
        cwd: str,
        path: Path,
        sink: EventSink,
        observer: Optional[BaseObserver] = None,
    ):
        super().__init__(path, sink, observer, name=f"transcript-{session_id[:8]}")
        self.session_id = session_id
        self.cwd = cwd

    def _process_lines(self, lines: list[str], incremental: bool) -> int:
        records = parse_lines(lines)

        clear_index = None
        for i, record in enumerate(records):
            if record.is_clear:
                clear_index = i
        if clear_index is not None:
            logger.info(f"Session {self.session_id[:8]}: /clear detected")
            self.sink(ClearDetected(session_id=self.session_id))
            self._emitted_ids.clear()
            records = records[clear_index + 1:]
            incremental = False

        fresh = []
        for record in records:
            entity_id = record.entity_id
            if entity_id is not None and not self._mark_emitted(entity_id):
                continue
            fresh.append(record)

        if incremental and not fresh:
            return 0

        payload = build_payload(self.session_id, self.cwd, fresh, is_incremental=incremental)
        self.sink(FileUpdated(payload=payload))
        return len(fresh)


class AgentFileWatcher(IncrementalFileWatcher):
    """
    Tails a subagent transcript keyed by (session id, task tool id).

    Emits the full tool list whenever a tool appears or changes status.
    """

    def __init__(
        self,
        session_id: str,
        task_tool_id: str,
        agent_id: str,
        path: Path,
        sink: EventSink,
        observer: Optional[BaseObserver] = None,
    ):
        super().__init__(path, sink, observer, name=f"agent-{agent_id[:8]}")
        self.session_id = session_id
        self.task_tool_id = task_tool_id
        self.agent_id = agent_id
        self._tools: dict[str, SubagentToolInfo] = {}

    @property
    def key(self) -> tuple[str, str]:
        return (self.session_id, self.task_tool_id)

    def _process_lines(self, lines: list[str], incremental: bool) -> int:
        if not incremental:
            self._tools.clear()

        changed = merge_subagent_tools(self._tools, parse_lines(lines))
        if changed:
            self.sink(AgentFileUpdated(
                session_id=self.session_id,
                task_tool_id=self.task_tool_id,
                tools=tuple(self._tools.values()),
            ))
        return changed


class WatcherManager:
    """
    Owns the watchdog Observer and every active watcher.

    Watchers are keyed so start calls are idempotent and stop calls for
    unknown keys are no-ops.
    """

    def __init__(self, sink: EventSink, observer: Optional[BaseObserver] = None):
        self.sink = sink
        self.observer = observer if observer is not None else Observer()
        self._watchers: dict[tuple, IncrementalFileWatcher] = {}
        self._lock = threading.Lock()
        self._started = False

    def start(self):
        if not self._started:
            self.observer.start()
            self._started = True

    def stop(self):
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        for watcher in watchers:
            watcher.stop()
        if self._started:
            self.observer.stop()
            self.observer.join(timeout=2)
            self._started = False

    def keys(self) -> set[tuple]:
        with self._lock:
            return set(self._watchers)

    def _add(self, key: tuple, factory: Callable[[], IncrementalFileWatcher], initial_load: bool) -> bool:
        with self._lock:
            if key in self._watchers:
                return False
            watcher = factory()
            self._watchers[key] = watcher
        watcher.start(initial_load=initial_load)
        logger.info(f"Started {watcher.name} on {watcher.path}")
        return True

    def remove(self, key: tuple) -> bool:
        with self._lock:
            watcher = self._watchers.pop(key, None)
        if watcher is None:
            return False
        watcher.stop()
        return True

    def watch_session(self, session_id: str, cwd: str, path: Path) -> bool:
        """Start the transcript and interrupt watchers for a session."""
        from .interrupt_watcher import InterruptWatcher

        started = self._add(
            ("transcript", session_id),
            lambda: TranscriptWatcher(session_id, cwd, path, self.sink, self.observer),
            initial_load=True,
        )
        self._add(
            ("interrupt", session_id),
            lambda: InterruptWatcher(session_id, path, self.sink, self.observer),
            initial_load=False,
        )
        return started

    def unwatch_session(self, session_id: str):
        """Stop every watcher belonging to a session, subagents included."""
        for key in self.keys():
            if key[1] == session_id:
                self.remove(key)

    def watch_agent(self, session_id: str, task_tool_id: str, agent_id: str, path: Path) -> bool:
        return self._add(
            ("agent", session_id, task_tool_id),
            lambda: AgentFileWatcher(session_id, task_tool_id, agent_id, path, self.sink, self.observer),
            initial_load=True,
        )

    def unwatch_agent(self, session_id: str, task_tool_id: str) -> bool:
        return self.remove(("agent", session_id, task_tool_id))
