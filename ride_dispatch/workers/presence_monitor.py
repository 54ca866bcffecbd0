"""
Background Presence Monitor
===========================

Runs every ``presence_sweep_interval_seconds`` (default 60 s).

Per sweep
---------
1. Log registry stats (online / fresh / unknown location / pending grace).
2. Flag drivers silent for longer than ``presence_expiry_seconds``
   (default 900 s) as unreachable; the registry hook mirrors that into
   ``users.is_online``.  Presence records are never deleted.
3. Broadcast ``drivers_online_update`` (reachable count plus stats) to
   every joined connection.

Candidate staleness does not depend on this worker: it is evaluated at
query time.
"""

from __future__ import annotations

import asyncio
import logging

from ride_dispatch.services.dispatcher import RideDispatcher

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_presence_monitor(dispatcher: RideDispatcher, interval: float) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(dispatcher, interval))
    logger.info("Presence monitor started (interval=%ds)", interval)


async def stop_presence_monitor() -> None:
    global _task, _stop_event
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    _task = None
    _stop_event = None
    logger.info("Presence monitor stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(dispatcher: RideDispatcher, interval: float) -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    stop_event = _stop_event
    while not stop_event.is_set():
        try:
            await run_presence_sweep(dispatcher)
        except Exception:
            logger.exception("Unhandled error in presence sweep")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass  # next sweep


async def run_presence_sweep(dispatcher: RideDispatcher) -> dict:
    """Execute one sweep.  Returns the stats plus the newly expired driver ids."""
    stats = dispatcher.registry.stats(dispatcher.settings.presence_stale_seconds)
    expired = await dispatcher.expire_stale_presence()
    await dispatcher.broadcast_online_stats()
    logger.info(
        "Presence: %d online, %d fresh, %d unknown location, %d in grace, %d expired",
        stats["online"],
        stats["fresh"],
        stats["unknown_location"],
        stats["pending_grace"],
        len(expired),
    )
    return {**stats, "expired": expired}
