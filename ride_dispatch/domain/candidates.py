"""
Geo-Candidate Selection
=======================

1. **Spatial prefilter** -- every presence record carries the H3 cell
   (resolution 7, ~1.2 km edge) of its last fix.  A search around an
   origin expands to a ``grid_disk`` wide enough to cover the radius.
2. **Exact filter** -- haversine distance against the radius, plus the
   liveness rules (online, live handle, fresh, not excluded).
3. **Rank** -- ascending distance, unknown-location drivers last, capped
   at ``limit``.

Complexity
----------
Let P = presence records in the searched cells.

* Prefilter:  O(k^2) cells, k = ceil(radius / edge) + 1; past
  ``MAX_GRID_K`` rings the registry is scanned instead (O(N))
* Filter:     O(P)
* Rank:       O(P log P)
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Collection, Iterable

import h3

from .entities import Candidate, DriverPresence, Location

# Widest grid_disk ever built (3k^2 + 3k + 1 cells); wider searches scan.
MAX_GRID_K = 25


def presence_cell(location: Location, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(location.latitude, location.longitude, resolution)


def grid_k(radius_km: float, resolution: int = 7) -> int:
    """Ring count of the ``grid_disk`` that covers *radius_km*."""
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return math.ceil(radius_km / edge_km) + 1


def search_cells(
    origin: Location, radius_km: float, resolution: int = 7
) -> set[str]:
    """All cells that may hold a point within *radius_km* of *origin*."""
    k = grid_k(radius_km, resolution)
    return set(h3.grid_disk(presence_cell(origin, resolution), k))


def select_candidates(
    presences: Iterable[DriverPresence],
    origin: Location,
    radius_km: float,
    *,
    now: datetime,
    stale_after_seconds: float,
    excluded_ids: Collection[int] = (),
    include_unknown_location: bool = False,
    limit: int = 20,
) -> list[Candidate]:
    """
    Filter and rank presence snapshots for one trip request.

    Pure function: the caller resolves *excluded_ids* (requesting
    passenger, blocked or non-driver accounts) from the user directory.
    """
    located: list[Candidate] = []
    unknown: list[Candidate] = []

    for presence in presences:
        if not presence.is_online or presence.driver_id in excluded_ids:
            continue
        if not presence.is_fresh(now, stale_after_seconds):
            continue

        if presence.location.is_unknown:
            if include_unknown_location:
                unknown.append(
                    Candidate(presence.driver_id, presence.connection, None)
                )
            continue

        distance = origin.distance_to(presence.location)
        if distance <= radius_km:
            located.append(
                Candidate(presence.driver_id, presence.connection, distance)
            )

    located.sort(key=lambda c: (c.distance_km, c.driver_id))
    unknown.sort(key=lambda c: c.driver_id)
    return (located + unknown)[:limit]
