"""Point-in-time process snapshots and ancestry queries."""

import logging
import os
import time
from collections import deque
from typing import Callable, Iterable, Optional

from .models import ProcessNode
from .process_runner import ProcessExecutorError, ProcessRunner

logger = logging.getLogger(__name__)

PS_ARGS = ("ps", "-axo", "pid=,ppid=,comm=")
MAX_ANCESTRY_DEPTH = 20


def parse_ps_output(output: str) -> dict[int, ProcessNode]:
    """
    Parse `ps -axo pid=,ppid=,comm=` output into a PID map.

    Lines that do not start with two integers are skipped.
    """
    nodes: dict[int, ProcessNode] = {}
    for line in output.splitlines():
        parts = line.strip().split(None, 2)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        comm = parts[2] if len(parts) > 2 else ""
        nodes[pid] = ProcessNode(pid=pid, ppid=ppid, name=os.path.basename(comm.strip()))
    return nodes


class ProcessTree:
    """
    Immutable PID -> node map.

    Built once from a single enumeration call and discarded when a newer
    snapshot is taken. Nothing mutates it after construction.
    """

    def __init__(self, nodes: dict[int, ProcessNode], created_at: Optional[float] = None):
        self._nodes = dict(nodes)
        self._children: dict[int, list[int]] = {}
        for node in self._nodes.values():
            self._children.setdefault(node.ppid, []).append(node.pid)
        self.created_at = created_at if created_at is not None else time.monotonic()

    @classmethod
    def from_edges(cls, edges: dict[int, int], names: Optional[dict[int, str]] = None) -> "ProcessTree":
        """Build from a {pid: ppid} map. Handy for tests."""
        names = names or {}
        return cls({
            pid: ProcessNode(pid=pid, ppid=ppid, name=names.get(pid, ""))
            for pid, ppid in edges.items()
        })

    def __contains__(self, pid: int) -> bool:
        return pid in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, pid: int) -> Optional[ProcessNode]:
        return self._nodes.get(pid)

    def is_alive(self, pid: Optional[int]) -> bool:
        """Whether pid was present when the snapshot was taken."""
        return pid is not None and pid in self._nodes

    def name(self, pid: int) -> Optional[str]:
        node = self._nodes.get(pid)
        return node.name if node else None

    def parent(self, pid: int) -> Optional[int]:
        node = self._nodes.get(pid)
        return node.ppid if node else None

    def children(self, pid: int) -> list[int]:
        return list(self._children.get(pid, ()))

    def ancestors(self, pid: int, max_depth: int = MAX_ANCESTRY_DEPTH) -> list[int]:
        """Parent chain of pid, nearest first, bounded by max_depth."""
        chain: list[int] = []
        seen = {pid}
        current = pid
        for _ in range(max_depth):
            node = self._nodes.get(current)
            if node is None or node.ppid <= 0 or node.ppid in seen:
                break
            chain.append(node.ppid)
            seen.add(node.ppid)
            current = node.ppid
        return chain

    def is_descendant(self, pid: int, ancestor: int, max_depth: int = MAX_ANCESTRY_DEPTH) -> bool:
        """
        True iff a parent-chain walk from pid reaches ancestor.

        A process counts as its own descendant. The walk is bounded by
        max_depth and stops on cycles.
        """
        if pid == ancestor:
            return True
        return ancestor in self.ancestors(pid, max_depth)

    def find_ancestor(
        self,
        pid: int,
        predicate: Callable[[ProcessNode], bool],
        max_depth: int = MAX_ANCESTRY_DEPTH,
    ) -> Optional[int]:
        """First ancestor (nearest first) whose node matches predicate."""
        for ancestor in self.ancestors(pid, max_depth):
            node = self._nodes.get(ancestor)
            if node is not None and predicate(node):
                return ancestor
        return None

    def find_in_subtree(
        self,
        root: int,
        predicate: Callable[[ProcessNode], bool],
        max_depth: int = 10,
    ) -> Optional[int]:
        """Breadth-first search of root's subtree (root included)."""
        queue: deque[tuple[int, int]] = deque([(root, 0)])
        visited: set[int] = set()
        while queue:
            pid, depth = queue.popleft()
            if pid in visited:
                continue
            visited.add(pid)
            node = self._nodes.get(pid)
            if node is not None and predicate(node):
                return pid
            if depth >= max_depth:
                continue
            for child in self._children.get(pid, ()):
                queue.append((child, depth + 1))
        return None

    def pids_named(self, names: Iterable[str]) -> list[int]:
        wanted = set(names)
        return sorted(pid for pid, node in self._nodes.items() if node.name in wanted)


class ProcessTreeBuilder:
    """Takes process snapshots, reusing a recent one for ttl_seconds."""

    def __init__(self, runner: Optional[ProcessRunner] = None, config: Optional[dict] = None):
        self.runner = runner or ProcessRunner()
        self.config = config or {}

        process_timeouts = self.config.get("timeouts", {}).get("process", {})
        self.ps_timeout_seconds = process_timeouts.get("ps_timeout_seconds", 3)
        self.snapshot_ttl_seconds = process_timeouts.get("snapshot_ttl_seconds", 1.0)

        self._cached: Optional[ProcessTree] = None

    def _fresh_cache(self) -> Optional[ProcessTree]:
        if self._cached is None:
            return None
        if time.monotonic() - self._cached.created_at > self.snapshot_ttl_seconds:
            return None
        return self._cached

    async def build(self, use_cache: bool = True) -> Optional[ProcessTree]:
        """Snapshot all processes. Returns None if ps fails."""
        if use_cache:
            cached = self._fresh_cache()
            if cached is not None:
                return cached
        try:
            result = await self.runner.run(*PS_ARGS, timeout=self.ps_timeout_seconds, check=True)
        except ProcessExecutorError as e:
            logger.error(f"Failed to build process tree: {e}")
            return None
        return self._store(result.stdout)

    def _store(self, output: str) -> ProcessTree:
        tree = ProcessTree(parse_ps_output(output))
        self._cached = tree
        logger.debug(f"Process snapshot: {len(tree)} processes")
        return tree
