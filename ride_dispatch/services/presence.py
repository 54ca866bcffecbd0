"""
Presence Registry
=================

Single owner of live driver presence and of the handle -> driver index.
No other component holds these maps; callers receive snapshots.

Indexes
-------
* ``_records``    driver id -> ``DriverPresence``
* ``_by_handle``  connection handle -> driver id (disconnects only carry
  the handle)
* ``_cells``      H3 cell -> driver ids with a known location
* ``_unknown``    driver ids still at the (0, 0) sentinel

Disconnect debounce
-------------------
``mark_offline`` flips the record to ``offline`` at once, but the
externally visible ``reachable`` flag only drops after
``grace_seconds`` without a reconnect.  The optional
``on_reachability_change(driver_id, reachable)`` hook is awaited outside
the registry lock whenever that flag flips.  Hook calls for one driver
run one at a time and always carry the flag's current value.

Staleness is evaluated at query time: records are never deleted, so a
late location write makes a still-connected driver a candidate again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ride_dispatch.domain.candidates import (
    MAX_GRID_K,
    grid_k,
    presence_cell,
    search_cells,
)
from ride_dispatch.domain.entities import DriverPresence, Location, utcnow
from ride_dispatch.domain.enums import PresenceStatus

logger = logging.getLogger(__name__)

ReachabilityHook = Callable[[int, bool], Awaitable[None]]


class PresenceRegistry:
    def __init__(
        self,
        *,
        grace_seconds: float = 20.0,
        h3_resolution: int = 7,
        on_reachability_change: Optional[ReachabilityHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.grace_seconds = grace_seconds
        self.h3_resolution = h3_resolution
        self.on_reachability_change = on_reachability_change
        self._clock = clock

        self._records: dict[int, DriverPresence] = {}
        self._by_handle: dict[str, int] = {}
        self._cells: dict[str, set[int]] = {}
        self._unknown: set[int] = set()
        self._grace: dict[int, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        # reachability hook: per-driver ordering and last value delivered
        self._hook_locks: dict[int, asyncio.Lock] = {}
        self._published: dict[int, bool] = {}

    # ── Mutations ─────────────────────────────────────────────────────

    async def upsert(
        self,
        driver_id: int,
        connection: Any,
        location: Optional[Location] = None,
        *,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> DriverPresence:
        """Register a (re)connect.  Last write wins; the new handle supplants the old."""
        async with self._lock:
            record = self._ensure(driver_id)
            old_handle = record.handle_id
            if old_handle and old_handle != connection.handle_id:
                self._by_handle.pop(old_handle, None)

            record.connection = connection
            self._by_handle[connection.handle_id] = driver_id
            if location is not None:
                self._move(record, location)
            self._apply_motion(record, heading, speed, accuracy)

            record.status = PresenceStatus.ONLINE
            record.last_update = self._clock()
            self._cancel_grace(driver_id)
            flipped = self._mark_reachable(record)
            snapshot = record.snapshot()

        if flipped:
            await self._notify(driver_id)
        return snapshot

    async def update_location(
        self,
        driver_id: int,
        location: Location,
        *,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> tuple[DriverPresence, bool]:
        """
        Refresh coordinates and ``last_update``; the handle is kept.

        Returns the snapshot and whether this write was the driver's first
        real GPS fix (the previous location was the unknown sentinel).
        """
        async with self._lock:
            record = self._ensure(driver_id)
            first_fix = record.location.is_unknown and not location.is_unknown
            self._move(record, location)
            self._apply_motion(record, heading, speed, accuracy)
            record.last_update = self._clock()
            flipped = record.connection is not None and self._mark_reachable(record)
            snapshot = record.snapshot()

        if flipped:
            await self._notify(driver_id)
        return snapshot, first_fix

    async def heartbeat(self, driver_id: int) -> Optional[DriverPresence]:
        async with self._lock:
            record = self._records.get(driver_id)
            if record is None:
                return None
            record.last_update = self._clock()
            flipped = record.connection is not None and self._mark_reachable(record)
            snapshot = record.snapshot()

        if flipped:
            await self._notify(driver_id)
        return snapshot

    async def mark_offline(self, handle_id: str) -> Optional[DriverPresence]:
        """Disconnect by handle.  Unknown handles are a no-op."""
        async with self._lock:
            driver_id = self._by_handle.pop(handle_id, None)
            if driver_id is None:
                return None
            record = self._records[driver_id]
            record.status = PresenceStatus.OFFLINE
            record.connection = None
            self._cancel_grace(driver_id)
            self._grace[driver_id] = asyncio.create_task(
                self._expire_after_grace(driver_id)
            )
            logger.info(
                "Driver %d disconnected; grace period %.1fs",
                driver_id,
                self.grace_seconds,
            )
            return record.snapshot()

    async def expire_stale(self, older_than_seconds: float) -> list[int]:
        """Flag records silent for longer than the window as unreachable."""
        now = self._clock()
        expired: list[int] = []
        async with self._lock:
            for record in self._records.values():
                if record.reachable and not record.is_fresh(now, older_than_seconds):
                    record.reachable = False
                    expired.append(record.driver_id)

        for driver_id in expired:
            logger.warning("Driver %d silent past expiry window", driver_id)
            await self._notify(driver_id)
        return expired

    async def close(self) -> None:
        async with self._lock:
            tasks = list(self._grace.values())
            self._grace.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Queries ───────────────────────────────────────────────────────

    def get(self, driver_id: int) -> Optional[DriverPresence]:
        record = self._records.get(driver_id)
        return record.snapshot() if record else None

    def driver_for_handle(self, handle_id: str) -> Optional[int]:
        return self._by_handle.get(handle_id)

    def is_reachable(self, driver_id: int) -> bool:
        record = self._records.get(driver_id)
        return bool(record and record.reachable)

    def list_online(
        self, stale_after_seconds: float, now: Optional[datetime] = None
    ) -> list[DriverPresence]:
        now = now or self._clock()
        return [
            r.snapshot()
            for r in self._records.values()
            if r.is_online and r.is_fresh(now, stale_after_seconds)
        ]

    def nearby(
        self,
        origin: Location,
        radius_km: float,
        include_unknown_location: bool = False,
    ) -> list[DriverPresence]:
        """H3 prefilter only; exact distance filtering is left to the selector."""
        driver_ids: set[int] = set()
        if grid_k(radius_km, self.h3_resolution) > MAX_GRID_K:
            for members in self._cells.values():
                driver_ids.update(members)
        else:
            for cell in search_cells(origin, radius_km, self.h3_resolution):
                driver_ids.update(self._cells.get(cell, ()))
        if include_unknown_location:
            driver_ids.update(self._unknown)
        return [self._records[d].snapshot() for d in sorted(driver_ids)]

    def stats(self, stale_after_seconds: float) -> dict:
        now = self._clock()
        records = list(self._records.values())
        return {
            "total": len(records),
            "online": sum(1 for r in records if r.is_online),
            "fresh": sum(
                1
                for r in records
                if r.is_online and r.is_fresh(now, stale_after_seconds)
            ),
            "reachable": sum(1 for r in records if r.reachable),
            "unknown_location": len(self._unknown),
            "pending_grace": len(self._grace),
        }

    def now(self) -> datetime:
        return self._clock()

    # ── Internals ─────────────────────────────────────────────────────

    def _ensure(self, driver_id: int) -> DriverPresence:
        record = self._records.get(driver_id)
        if record is None:
            record = DriverPresence(driver_id=driver_id, last_update=self._clock())
            self._records[driver_id] = record
            self._unknown.add(driver_id)
        return record

    def _move(self, record: DriverPresence, location: Location) -> None:
        if record.cell is not None:
            members = self._cells.get(record.cell)
            if members is not None:
                members.discard(record.driver_id)
                if not members:
                    del self._cells[record.cell]
        self._unknown.discard(record.driver_id)

        record.location = location
        if location.is_unknown:
            record.cell = None
            self._unknown.add(record.driver_id)
        else:
            record.cell = presence_cell(location, self.h3_resolution)
            self._cells.setdefault(record.cell, set()).add(record.driver_id)

    @staticmethod
    def _apply_motion(
        record: DriverPresence,
        heading: Optional[float],
        speed: Optional[float],
        accuracy: Optional[float],
    ) -> None:
        if heading is not None:
            record.heading = heading
        if speed is not None:
            record.speed = speed
        if accuracy is not None:
            record.accuracy = accuracy

    @staticmethod
    def _mark_reachable(record: DriverPresence) -> bool:
        if record.reachable:
            return False
        record.reachable = True
        return True

    def _cancel_grace(self, driver_id: int) -> None:
        task = self._grace.pop(driver_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after_grace(self, driver_id: int) -> None:
        await asyncio.sleep(self.grace_seconds)
        async with self._lock:
            if self._grace.get(driver_id) is not asyncio.current_task():
                return  # superseded by a reconnect or a newer disconnect
            del self._grace[driver_id]
            record = self._records.get(driver_id)
            if record is None or record.is_online or not record.reachable:
                return
            record.reachable = False

        logger.warning("Driver %d unreachable after grace period", driver_id)
        await self._notify(driver_id)

    async def _notify(self, driver_id: int) -> None:
        """
        Publish the driver's current ``reachable`` flag to the hook.

        Calls for one driver are serialised and each reads the flag once
        it holds the hook lock, so a slow earlier call can never land
        after a newer flip.  A value already published is not repeated.
        """
        if self.on_reachability_change is None:
            return
        lock = self._hook_locks.setdefault(driver_id, asyncio.Lock())
        async with lock:
            reachable = self.is_reachable(driver_id)
            if self._published.get(driver_id) is reachable:
                return
            try:
                await self.on_reachability_change(driver_id, reachable)
            except Exception:
                logger.exception(
                    "Reachability hook failed for driver %d (reachable=%s)",
                    driver_id,
                    reachable,
                )
                return
            self._published[driver_id] = reachable
