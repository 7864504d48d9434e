"""
Regeneration: keeps future pending events in sync with source entities.

When a schedule changes (rule, time slots, active flag) the coordinator
purges that source's future *pending* events and runs the generator over
the standard forward window. Past events and anything already acted upon
are never touched. Deleting a source removes every event for it plus its
ledger rows.

Purge-then-generate is safe to interrupt: if a crash lands between the two
steps, the next pass (or `refresh_profile`) regenerates the missing
occurrences because generation is idempotent.

Passes for the same source are serialized with a per-source lock; the
store's unique key covers writers in other processes.
"""

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, TypeVar

from errors import StoreError
from local_time import local_now
from models import ChangeKind, SourceChange, SourceKind
from repo_events import EventStore
from repo_history import LedgerStore
from repo_sources import SourceStore
from service_generator import EventGenerator, forward_window
from settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    """One re-entrant lock per key (a source id, or one scheduled dose).

    Entries are dropped once nobody holds or waits on them, so the map
    only ever covers keys in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        wait = settings.lock_timeout_seconds if timeout is None else timeout
        try:
            if not entry[0].acquire(timeout=wait):
                raise StoreError(f"Timed out waiting for lock on {key}")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def with_retries(action: str, fn: Callable[[], T]) -> T:
    """Run an idempotent store operation, retrying on `StoreError`."""

    attempts = settings.generation_max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except StoreError as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", action, attempts, e)
                raise
            logger.warning("%s failed (attempt %d/%d): %s", action, attempt, attempts, e)
            time.sleep(settings.retry_backoff_seconds * attempt)
    raise AssertionError("unreachable")


class RegenerationCoordinator:
    """Reacts to source-entity changes by purging and regenerating events.

    Example usage:
        coord = RegenerationCoordinator(events, EventGenerator(events), sources, ledgers)
        coord.on_schedule_changed(medication)
    """

    def __init__(
        self,
        events: EventStore,
        generator: EventGenerator,
        sources: Dict[SourceKind, SourceStore],
        ledgers: Dict[SourceKind, LedgerStore],
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.events = events
        self.generator = generator
        self.sources = sources
        self.ledgers = ledgers
        self.locks = locks or KeyedLock()
        self.clock = clock

    def on_schedule_changed(
        self, entity, now: Optional[datetime] = None, cancel: Optional[threading.Event] = None
    ) -> int:
        """Replace future pending events of `entity`. Returns events created."""

        now = now or self.clock()

        def run() -> int:
            purged = self.events.delete_future_pending(entity.id, now)
            if purged:
                logger.info("Purged %d future pending events for %s", purged, entity.id)
            if not entity.is_active:
                return 0
            start, end = forward_window(entity, now)
            return self.generator.generate(entity, start, end, not_before=now, cancel=cancel)

        with self.locks.hold(entity.id):
            return with_retries(f"regenerate {entity.id}", run)

    def on_entity_deleted(self, kind: SourceKind, source_id: str) -> int:
        """Remove every event and ledger row for a deleted source. Returns events removed."""

        def run() -> int:
            removed = self.events.delete_by_source(source_id)
            ledger = self.ledgers.get(kind)
            if ledger is not None:
                ledger.delete_by_source(source_id)
            return removed

        with self.locks.hold(source_id):
            removed = with_retries(f"cleanup {source_id}", run)
        logger.info("Removed %d events for deleted %s %s", removed, kind.value, source_id)
        return removed

    def handle(self, change: SourceChange, now: Optional[datetime] = None) -> int:
        """Apply one `SourceChange` notification."""

        if change.change == ChangeKind.DELETED:
            return self.on_entity_deleted(change.kind, change.source_id)
        if change.change == ChangeKind.UPDATED and not change.schedule_changed:
            return 0

        entity = self.sources[change.kind].get_by_id(change.source_id)
        if entity is None:
            # deleted after the change was queued; its delete notification cleans up
            logger.warning("%s %s vanished before regeneration", change.kind.value, change.source_id)
            return 0
        return self.on_schedule_changed(entity, now=now)

    def refresh_profile(self, profile_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Top up the rolling window for every active source of a profile.

        Only adds missing events; meant to run daily and after crashes.
        """

        now = now or self.clock()
        created: Dict[str, int] = {}
        for kind, repo in self.sources.items():
            count = 0
            for entity in repo.get_all_by_profile(profile_id):
                # appointments ignore the window and only need not_before
                start, end = forward_window(entity, now)
                with self.locks.hold(entity.id):
                    count += with_retries(
                        f"refresh {entity.id}",
                        lambda: self.generator.generate(entity, start, end, not_before=now),
                    )
            created[kind.value] = count
        logger.info("Refreshed profile %s: %s", profile_id, created)
        return created


class RegenerationQueue:
    """Defers regeneration until after the entity write has committed.

    Subscribe an instance to source repositories; it records each change
    and `drain()` replays them through the coordinator. Changes that fail
    with `StoreError` stay queued for the next drain. Any other failure
    will not go away on a retry, so the change is moved to `dead_letters`
    and the rest of the batch still runs.
    """

    def __init__(self, coordinator: RegenerationCoordinator):
        self.coordinator = coordinator
        self._lock = threading.Lock()
        self._pending: Deque[SourceChange] = deque()
        self.dead_letters: List[SourceChange] = []

    def __call__(self, change: SourceChange) -> None:
        with self._lock:
            self._pending.append(change)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self) -> int:
        """Process queued changes. Returns how many were applied."""

        with self._lock:
            batch = list(self._pending)
            self._pending.clear()

        applied = 0
        failed = []
        for change in batch:
            try:
                self.coordinator.handle(change)
                applied += 1
            except StoreError:
                logger.exception("Regeneration for %s %s failed", change.kind.value, change.source_id)
                failed.append(change)
            except Exception:
                logger.exception(
                    "Regeneration for %s %s cannot succeed; dead-lettered",
                    change.kind.value,
                    change.source_id,
                )
                with self._lock:
                    self.dead_letters.append(change)

        if failed:
            with self._lock:
                self._pending.extendleft(reversed(failed))
        return applied
