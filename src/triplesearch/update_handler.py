"""
TripleSearch Update Handler — Change Queue
==========================================

Collects the subjects whose documents need to be updated or deleted and
hands them to an update strategy once they have been pending for the
configured wait interval.

Changes are coalesced per subject: while a subject is pending, further
changes only widen the set of index types to process for it. The debounce
window starts at the first change, so a burst of edits to the same subject
results in a single re-index.

The queue is snapshotted to a JSON file periodically and on stop, and
restored on construction, so pending changes survive a restart.

Two strategies are provided:
    - InvalidatingUpdateStrategy marks every index of the affected types
      invalid, deferring the work to the next search
    - AutomaticUpdateStrategy re-derives the document from the triplestore
      for every index of the affected types and upserts or deletes it
"""

import enum
import json
import logging
import os
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from .authorization import AuthorizationContext
from .config import SearchConfiguration, TypeDefinition
from .document_builder import DocumentBuilder
from .elastic import ElasticClient
from .search_index import IndexStatus, SearchIndex
from .sparql import SparqlClient, escape_uri


logger = logging.getLogger(__name__)

DEFAULT_WAIT_INTERVAL_MINUTES = 8
HIGH_WATER_MARK = 1000


class ChangeKind(enum.Enum):
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PendingChange:
    subject: str
    enqueued_at: float
    kind: ChangeKind
    index_types: Set[str] = field(default_factory=set)

    def to_json(self) -> dict:
        return {
            "subject": self.subject,
            "enqueued_at": self.enqueued_at,
            "kind": self.kind.value,
            "index_types": sorted(self.index_types)
        }

    @classmethod
    def from_json(cls, data: dict) -> "PendingChange":
        return cls(
            subject=data["subject"],
            enqueued_at=float(data["enqueued_at"]),
            kind=ChangeKind(data["kind"]),
            index_types=set(data.get("index_types") or [])
        )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class UpdateStrategy:
    """Applies a dequeued change to the search indexes."""

    def handle(self, subject: str, index_types: Set[str], kind: ChangeKind) -> None:
        raise NotImplementedError


class InvalidatingUpdateStrategy(UpdateStrategy):
    """Invalidates every index of the affected types."""

    def __init__(self, index_manager):
        self.index_manager = index_manager

    def handle(self, subject: str, index_types: Set[str], kind: ChangeKind) -> None:
        for index_type in sorted(index_types):
            logger.debug("%s changed, invalidating indexes of type '%s'", subject, index_type)
            self.index_manager.invalidate_indexes(index_type, None)


class AutomaticUpdateStrategy(UpdateStrategy):
    """
    Keeps single documents up to date.

    For every index of an affected type, the subject is looked up in the
    triplestore under that index's allowed groups. If it is visible with the
    type's rdf:type its document is rebuilt and upserted, otherwise it is
    deleted from the index. The declared change kind is only advisory; the
    current triplestore state decides.
    """

    def __init__(
        self,
        index_manager,
        elastic: ElasticClient,
        sparql: SparqlClient,
        configuration: SearchConfiguration,
        document_builder_factory: Callable[[AuthorizationContext], DocumentBuilder]
    ):
        self.index_manager = index_manager
        self.elastic = elastic
        self.sparql = sparql
        self.configuration = configuration
        self.document_builder_factory = document_builder_factory

    def handle(self, subject: str, index_types: Set[str], kind: ChangeKind) -> None:
        for index_type in sorted(index_types):
            type_definitions = self.configuration.expand_type(index_type)
            for index in self.index_manager.indexes_for_type(index_type):
                self._synchronize(index, subject, type_definitions)

    def document_exists(self, subject: str, rdf_type: str, context: AuthorizationContext) -> bool:
        return self.sparql.ask(f"ASK {{ {escape_uri(subject)} a {escape_uri(rdf_type)} . }}", context)

    def _synchronize(self, index: SearchIndex, subject: str, type_definitions: List[TypeDefinition]) -> None:
        context = index.context
        visible_as = next(
            (t for t in type_definitions if self.document_exists(subject, t.rdf_type, context)),
            None
        )
        with index.lock:
            if index.status is IndexStatus.DELETED:
                return
            if visible_as is None:
                logger.debug("%s is not visible in index %s, deleting it", subject, index.name)
                self.elastic.delete_document(index.name, subject)
            else:
                document = self.document_builder_factory(context).fetch_document(subject, visible_as.properties)
                logger.debug("Updating document %s in index %s", subject, index.name)
                self.elastic.upsert_document(index.name, subject, document)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class UpdateHandler:
    """
    Debounced FIFO of pending changes drained by a pool of worker threads.

    Example:
        handler = UpdateHandler(strategy, wait_interval=480, queue_path="/data/queue.json")
        handler.start()
        handler.add_update("http://example.org/doc/1", "document")
        ...
        handler.stop()
    """

    def __init__(
        self,
        strategy: UpdateStrategy,
        wait_interval: float = DEFAULT_WAIT_INTERVAL_MINUTES * 60,
        thread_count: int = 1,
        queue_path: Optional[str] = None,
        persist_interval: float = 60.0,
        high_water_mark: int = HIGH_WATER_MARK,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            strategy: Applies dequeued changes
            wait_interval: Seconds a change stays pending before it is handled
            thread_count: Number of worker threads
            queue_path: JSON file the queue is persisted to, None to disable
            persist_interval: Seconds between snapshots
            high_water_mark: Queue length above which a warning is logged
            clock: Source of epoch timestamps
        """
        self.strategy = strategy
        self.wait_interval = wait_interval
        self.thread_count = max(1, thread_count)
        self.queue_path = Path(queue_path) if queue_path else None
        self.persist_interval = persist_interval
        self.high_water_mark = high_water_mark
        self._clock = clock

        self._queue: Deque[PendingChange] = deque()
        self._pending: Dict[str, PendingChange] = {}
        self._changed = threading.Condition(threading.Lock())
        self._stopping = False
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []

        if self.queue_path is not None:
            self._restore()

    # -- producers ----------------------------------------------------------

    def enqueue(self, subject: str, index_type: str, kind: ChangeKind) -> None:
        """Add a change, coalescing it with a pending change of the same subject."""
        with self._changed:
            change = self._pending.get(subject)
            if change is None:
                change = PendingChange(subject, self._clock(), kind)
                self._pending[subject] = change
                self._queue.append(change)
                if len(self._queue) > self.high_water_mark:
                    logger.warning("Large number (%d) of updates remain to be handled", len(self._queue))
                self._changed.notify()
            change.index_types.add(index_type)

    def add_update(self, subject: str, index_type: str) -> None:
        self.enqueue(subject, index_type, ChangeKind.UPDATE)

    def add_delete(self, subject: str, index_type: str) -> None:
        self.enqueue(subject, index_type, ChangeKind.DELETE)

    def pending(self) -> List[PendingChange]:
        """Copy of the pending changes in queue order."""
        with self._changed:
            return [
                PendingChange(c.subject, c.enqueued_at, c.kind, set(c.index_types))
                for c in self._queue
            ]

    # -- consumers ----------------------------------------------------------

    def start(self) -> None:
        """Start the worker threads and the periodic snapshot."""
        self._stopping = False
        self._stopped.clear()
        for i in range(self.thread_count):
            thread = threading.Thread(target=self._work, name=f"update-handler-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        if self.queue_path is not None:
            thread = threading.Thread(target=self._persist_periodically, name="update-handler-persist", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Update handler started with %d worker(s)", self.thread_count)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the workers, waiting for running handlers, and persist the queue."""
        with self._changed:
            self._stopping = True
            self._changed.notify_all()
        self._stopped.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        if self.queue_path is not None:
            self.persist()
        logger.info("Update handler stopped, %d updates pending", len(self._queue))

    def process_due(self) -> int:
        """
        Handle every change whose wait interval has elapsed, in the calling thread.

        Returns:
            Number of changes handled
        """
        handled = 0
        while True:
            with self._changed:
                change = self._pop_due()
            if change is None:
                return handled
            self._handle(change)
            handled += 1

    def _pop_due(self) -> Optional[PendingChange]:
        if self._queue and self._clock() - self._queue[0].enqueued_at >= self.wait_interval:
            change = self._queue.popleft()
            del self._pending[change.subject]
            return change
        return None

    def _next_change(self) -> Optional[PendingChange]:
        """Block until the head of the queue is due, or until stopped."""
        with self._changed:
            while not self._stopping:
                change = self._pop_due()
                if change is not None:
                    return change
                if self._queue:
                    delay = self._queue[0].enqueued_at + self.wait_interval - self._clock()
                    self._changed.wait(max(delay, 0.01))
                else:
                    self._changed.wait()
            return None

    def _work(self) -> None:
        while True:
            change = self._next_change()
            if change is None:
                return
            self._handle(change)

    def _handle(self, change: PendingChange) -> None:
        logger.debug("Handling %s of %s for types %s", change.kind.value, change.subject, sorted(change.index_types))
        try:
            self.strategy.handle(change.subject, change.index_types, change.kind)
        except Exception:
            logger.exception("Update of %s failed", change.subject)

    # -- persistence --------------------------------------------------------

    def _persist_periodically(self) -> None:
        while not self._stopped.wait(self.persist_interval):
            try:
                self.persist()
            except OSError as e:
                logger.error("Failed to persist update queue to %s: %s", self.queue_path, e)

    def persist(self) -> None:
        """Write the pending changes to the queue file, atomically."""
        if self.queue_path is None:
            return
        with self._changed:
            snapshot = {"queue": [change.to_json() for change in self._queue]}

        self.queue_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.queue_path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp, self.queue_path)
        except BaseException:
            os.unlink(tmp)
            raise
        logger.debug("Persisted %d pending updates to %s", len(snapshot["queue"]), self.queue_path)

    def _restore(self) -> None:
        try:
            with open(self.queue_path, "r", encoding="utf-8") as f:
                snapshot = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.error("Unable to restore update queue from %s: %s", self.queue_path, e)
            return

        self._load(PendingChange.from_json(entry) for entry in snapshot.get("queue", []))
        logger.info("Restored %d pending updates from %s", len(self._queue), self.queue_path)

    def _load(self, changes: Iterable[PendingChange]) -> None:
        with self._changed:
            for change in changes:
                existing = self._pending.get(change.subject)
                if existing is not None:
                    existing.index_types.update(change.index_types)
                    continue
                self._pending[change.subject] = change
                self._queue.append(change)
