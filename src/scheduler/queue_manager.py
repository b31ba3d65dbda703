"""
Commit Queue for the AutoTest orchestrator.

- Maintains the deduplicated backlog of CommitTargets awaiting a test run
- Ordering: priority DESC, then enqueue sequence ASC (FIFO within a tier)
- Keyed by commit identity (repo, commit SHA, deliverable)

What CommitQueue MUST NOT do:
- Decide capacity (Scheduler's responsibility)
- Track running jobs or completed results
- Start containers
"""

import itertools
import threading
from typing import Iterable, Optional

from .entities import CommitTarget, QueueEntry


class CommitQueue:
    """
    Thread-safe, in-memory ordered backlog.

    Entries are removed at promotion time (take), not at job completion,
    so a promoted commit is never handed out twice.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str, str], QueueEntry] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    # =========================================================================
    # Insertion
    # =========================================================================

    def add(self, target: CommitTarget) -> Optional[QueueEntry]:
        """
        Add a target to the queue at its delivery tier.

        Returns:
            The new QueueEntry, or None if the identity is already queued
        """
        with self._lock:
            if target.identity in self._entries:
                return None

            entry = QueueEntry(
                target=target,
                priority=target.priority,
                sequence=next(self._sequence),
            )
            self._entries[target.identity] = entry
            return entry

    def escalate(self, target: CommitTarget) -> Optional[QueueEntry]:
        """
        Lift a queued entry to the tier of a higher-priority request.

        The entry takes over the request's target (so feedback goes to the
        requester) and keeps its place within the new tier by sequence.

        Returns:
            The updated entry, or None if nothing queued was raised
        """
        with self._lock:
            entry = self._entries.get(target.identity)
            if entry is None or target.priority <= entry.priority:
                return None
            entry.target = target
            entry.priority = target.priority
            return entry

    # =========================================================================
    # Promotion
    # =========================================================================

    def take(self, limit: int, busy_repos: Iterable[str] = ()) -> list[QueueEntry]:
        """
        Remove and return up to `limit` entries in dispatch order.

        Entries for repos in busy_repos stay queued. At most one entry per
        repo is taken per call, since a repo may only run one job at a time.
        """
        if limit <= 0:
            return []

        with self._lock:
            blocked = set(busy_repos)
            selected: list[QueueEntry] = []

            for entry in self._ordered():
                if len(selected) >= limit:
                    break
                repo_id = entry.target.repo_id
                if repo_id in blocked:
                    continue
                selected.append(entry)
                blocked.add(repo_id)

            for entry in selected:
                del self._entries[entry.target.identity]
                entry.attempts += 1

            return selected

    def _ordered(self) -> list[QueueEntry]:
        return sorted(
            self._entries.values(),
            key=lambda e: (-e.priority, e.sequence),
        )

    # =========================================================================
    # Inspection
    # =========================================================================

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
