"""Fast detection of user interrupts in a session transcript."""

import logging
from pathlib import Path
from typing import Optional

from watchdog.observers.api import BaseObserver

from .file_watcher import EventSink, IncrementalFileWatcher
from .models import InterruptDetected
from .transcript import TOOL_RESULT_INTERRUPT_MARKERS

logger = logging.getLogger(__name__)

USER_INTERRUPT_MARKERS = (
    "[Request interrupted by user]",
    "[Request interrupted by user for tool use]",
)


def is_interrupt_line(line: str) -> bool:
    """Substring checks on the raw JSON line; no decoding."""
    if '"type":"user"' in line:
        if any(marker in line for marker in USER_INTERRUPT_MARKERS):
            return True
    if '"tool_result"' in line and '"is_error":true' in line:
        if any(marker in line for marker in TOOL_RESULT_INTERRUPT_MARKERS):
            return True
    return '"interrupted":true' in line


class InterruptWatcher(IncrementalFileWatcher):
    """
    Tails a transcript for interrupt markers.

    At most one InterruptDetected is emitted per batch of appended lines.
    """

    def __init__(
        self,
        session_id: str,
        path: Path,
        sink: EventSink,
        observer: Optional[BaseObserver] = None,
    ):
        super().__init__(path, sink, observer, name=f"interrupt-{session_id[:8]}")
        self.session_id = session_id

    def _process_lines(self, lines: list[str], incremental: bool) -> int:
        # A rewritten file is history, not a fresh interrupt
        if not incremental:
            return 0
        for line in lines:
            if line and is_interrupt_line(line):
                logger.info(f"Detected interrupt in session {self.session_id[:8]}")
                self.sink(InterruptDetected(session_id=self.session_id))
                return 1
        return 0
