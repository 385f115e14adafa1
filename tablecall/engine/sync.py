"""
Synchronization Loop

Terminals only see authoritative state by polling. This module keeps a
local, always-whole copy of every establishment the session cares about:

    - SnapshotCache: single-writer cache, replaced wholesale per snapshot
    - SessionSubject: which establishments the session cares about
      (the one the staff member owns, or a customer's favorites)
    - SyncLoop: APScheduler interval job that refreshes the cache

Guarantees:
    - the owner's heartbeat is written before the snapshot read of the
      same cycle
    - at most one snapshot fetch per establishment is in flight; a caller
      that only reads joins it, a caller that has just written waits for it
      and then shares a single follow-up fetch
    - a failed fetch leaves the cached snapshot untouched
    - after ``stop()`` fetches still in flight complete but are discarded
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tablecall.core.config import get_settings
from tablecall.domain import CustomerProfile, EstablishmentSnapshot
from tablecall.engine.clock import Clock

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    """What the loop needs from a store or an API client."""

    async def get_establishment_snapshot(self, establishment_id: str) -> EstablishmentSnapshot:
        ...

    async def set_heartbeat(
        self,
        establishment_id: str,
        is_open: bool,
        at: Optional[float] = None,
    ) -> Any:
        ...


@dataclass(frozen=True)
class SessionSubject:
    owned_establishment_id: Optional[str] = None
    favorite_establishment_ids: tuple[str, ...] = ()

    @classmethod
    def owner(cls, establishment_id: str) -> "SessionSubject":
        return cls(owned_establishment_id=establishment_id)

    @classmethod
    def for_customer(cls, profile: CustomerProfile) -> "SessionSubject":
        return cls(favorite_establishment_ids=tuple(profile.favorite_establishment_ids))

    def establishments_of_interest(self) -> tuple[str, ...]:
        ids = []
        if self.owned_establishment_id:
            ids.append(self.owned_establishment_id)
        for establishment_id in self.favorite_establishment_ids:
            if establishment_id not in ids:
                ids.append(establishment_id)
        return tuple(ids)


class SnapshotCache:
    """
    Establishment snapshots keyed by id.

    Only the sync loop writes. Each write swaps in a new read-only mapping,
    so readers holding ``entries`` never see a partial update.
    """

    def __init__(self):
        self._entries: Mapping[str, EstablishmentSnapshot] = MappingProxyType({})

    @property
    def entries(self) -> Mapping[str, EstablishmentSnapshot]:
        return self._entries

    def get(self, establishment_id: str) -> Optional[EstablishmentSnapshot]:
        return self._entries.get(establishment_id)

    def replace(self, snapshot: EstablishmentSnapshot) -> None:
        entries = dict(self._entries)
        entries[snapshot.id] = snapshot
        self._entries = MappingProxyType(entries)

    def discard(self, establishment_id: str) -> None:
        if establishment_id in self._entries:
            entries = dict(self._entries)
            del entries[establishment_id]
            self._entries = MappingProxyType(entries)

    def clear(self) -> None:
        self._entries = MappingProxyType({})

    def __contains__(self, establishment_id: object) -> bool:
        return establishment_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class _InFlight:
    generation: int
    sequence: int
    future: asyncio.Future


class SyncLoop:
    """
    Periodic refresh of the establishments a session is watching.

    Args:
        source: Store or API client providing snapshots and heartbeats
        cache: Cache to fill (a new one by default)
        clock: Time source
        interval_seconds: Seconds between cycles (POLLING_INTERVAL_SECONDS)
        indicator_min_seconds: How long ``is_updating`` stays on after a
            fetch completes (UPDATING_INDICATOR_MIN_SECONDS)

    Example:
        >>> loop = SyncLoop(TableCallClient(base_url))
        >>> loop.start(SessionSubject.owner("a1b2c3"))
        >>> snapshot = loop.cache.get("a1b2c3")
        >>> loop.stop()
    """

    JOB_ID = "establishment-sync"

    def __init__(
        self,
        source: SnapshotSource,
        cache: Optional[SnapshotCache] = None,
        clock: Optional[Clock] = None,
        interval_seconds: Optional[float] = None,
        indicator_min_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.source = source
        self.cache = cache if cache is not None else SnapshotCache()
        self.clock = clock or Clock()
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else settings.polling_interval_seconds
        )
        self.indicator_min_seconds = (
            indicator_min_seconds if indicator_min_seconds is not None
            else settings.updating_indicator_min_seconds
        )

        self.last_error: Optional[str] = None
        self._subject: Optional[SessionSubject] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._generation = 0
        self._sequence = itertools.count(1)
        self._in_flight: dict[str, _InFlight] = {}
        self._failing: set[str] = set()
        self._active_fetches = 0
        self._indicator_until = 0.0

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def subject(self) -> Optional[SessionSubject]:
        return self._subject

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def is_updating(self) -> bool:
        """True during a fetch and for a short while after it completes."""
        return self._active_fetches > 0 or self.clock.now() < self._indicator_until

    @property
    def sync_issue(self) -> bool:
        """True while the latest fetch of some watched establishment failed."""
        return bool(self._failing)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, subject: SessionSubject) -> None:
        """
        Start polling for ``subject``. The first cycle runs immediately.

        Must be called from inside a running event loop.
        """
        if self._scheduler is not None:
            self.stop()

        self._subject = subject
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Establishment snapshot sync",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Sync loop started for {list(subject.establishments_of_interest())} "
            f"every {self.interval_seconds}s"
        )

    def stop(self, clear_cache: bool = False) -> None:
        """
        Stop polling. Fetches already in flight finish, but their results
        are dropped.
        """
        self._generation += 1
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync loop stopped")
        self._subject = None
        self._failing.clear()
        if clear_cache:
            self.cache.clear()

    def change_subject(self, subject: SessionSubject) -> None:
        """Switch to another set of establishments (e.g. favorites changed)."""
        self.stop()
        self.start(subject)

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def run_cycle(self) -> dict[str, bool]:
        """
        One sync cycle for the current subject. Never raises.

        Returns:
            Establishment id → whether its snapshot was refreshed
        """
        subject = self._subject
        if subject is None:
            return {}
        generation = self._generation
        results: dict[str, bool] = {}

        owned = subject.owned_establishment_id
        if owned:
            await self._send_heartbeat(owned)
            results[owned] = await self._refresh(owned, generation, after_write=True) is not None

        others = [e for e in subject.establishments_of_interest() if e != owned]
        if others:
            snapshots = await asyncio.gather(*(self._refresh(e, generation) for e in others))
            for establishment_id, snapshot in zip(others, snapshots):
                results[establishment_id] = snapshot is not None

        return results

    async def refresh(self, establishment_id: str) -> Optional[EstablishmentSnapshot]:
        """
        Fetch one establishment now (e.g. right after a local mutation).

        The snapshot returned was read after this call started. A fetch
        already in flight is waited out, and concurrent callers share one
        follow-up fetch.

        Returns:
            The new snapshot, or None if the fetch failed or was discarded
        """
        return await self._refresh(establishment_id, self._generation, after_write=True)

    async def _send_heartbeat(self, establishment_id: str) -> None:
        try:
            await self.source.set_heartbeat(establishment_id, True, at=self.clock.now())
            logger.debug(f"Heartbeat sent for {establishment_id}")
        except Exception as e:
            self.last_error = f"heartbeat {establishment_id}: {e}"
            logger.warning(f"Heartbeat failed for {establishment_id}: {e}")

    async def _refresh(
        self,
        establishment_id: str,
        generation: int,
        after_write: bool = False,
    ) -> Optional[EstablishmentSnapshot]:
        # Only fetches started after this point saw the caller's write
        written_at = next(self._sequence) if after_write else None

        while generation == self._generation:
            entry = self._in_flight.get(establishment_id)
            if entry is not None and (entry.generation != generation or entry.future.done()):
                entry = None

            if entry is None:
                entry = _InFlight(
                    generation=generation,
                    sequence=next(self._sequence),
                    future=asyncio.ensure_future(self._fetch(establishment_id, generation)),
                )
                self._in_flight[establishment_id] = entry
                entry.future.add_done_callback(
                    lambda _, key=establishment_id, started=entry: self._forget(key, started)
                )
                return await asyncio.shield(entry.future)

            if written_at is None or entry.sequence > written_at:
                return await asyncio.shield(entry.future)

            # Read before the caller's write; wait it out, then fetch again
            await asyncio.shield(entry.future)

        return None

    def _forget(self, establishment_id: str, entry: _InFlight) -> None:
        if self._in_flight.get(establishment_id) is entry:
            del self._in_flight[establishment_id]

    async def _fetch(
        self,
        establishment_id: str,
        generation: int,
    ) -> Optional[EstablishmentSnapshot]:
        self._active_fetches += 1
        try:
            snapshot = await self.source.get_establishment_snapshot(establishment_id)
        except Exception as e:
            if generation == self._generation:
                self._failing.add(establishment_id)
                self.last_error = f"{establishment_id}: {e}"
            logger.warning(f"Sync failed for {establishment_id}, keeping cached snapshot: {e}")
            return None
        finally:
            self._active_fetches -= 1
            self._indicator_until = self.clock.now() + self.indicator_min_seconds

        if generation != self._generation:
            logger.debug(f"Discarding snapshot of {establishment_id} from a stopped loop")
            return None

        snapshot = snapshot.with_fetch_time(self.clock.now())
        self.cache.replace(snapshot)
        self._failing.discard(establishment_id)
        logger.debug(
            f"Snapshot of {establishment_id} refreshed "
            f"({len(snapshot.active_calls)} active call(s))"
        )
        return snapshot
