"""
Domain value objects and entities.

Patterns used
-------------
- ``Location`` is an immutable value object; ``UNKNOWN_LOCATION`` is the
  sentinel reported by a driver before the first GPS fix.
- ``DriverPresence`` is the mutable, in-process record owned by the
  presence registry.  Other components only ever see copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from .distance import UNKNOWN_LAT, UNKNOWN_LNG, haversine_km, is_unknown
from .enums import PresenceStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    @property
    def is_unknown(self) -> bool:
        return is_unknown(self.latitude, self.longitude)

    def distance_to(self, other: "Location") -> float:
        return haversine_km(
            self.latitude, self.longitude, other.latitude, other.longitude
        )


UNKNOWN_LOCATION = Location(UNKNOWN_LAT, UNKNOWN_LNG)


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class DriverPresence:
    driver_id: int
    connection: Optional[Any] = None
    location: Location = field(default_factory=lambda: UNKNOWN_LOCATION)
    heading: float = 0.0
    speed: float = 0.0
    accuracy: float = 0.0
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_update: datetime = field(default_factory=utcnow)
    reachable: bool = False
    cell: Optional[str] = None

    @property
    def handle_id(self) -> Optional[str]:
        return self.connection.handle_id if self.connection else None

    @property
    def is_online(self) -> bool:
        return self.status == PresenceStatus.ONLINE and self.connection is not None

    def is_fresh(self, now: datetime, stale_after_seconds: float) -> bool:
        return (now - self.last_update).total_seconds() <= stale_after_seconds

    def snapshot(self) -> "DriverPresence":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "driver_id": self.driver_id,
            "lat": self.location.latitude,
            "lng": self.location.longitude,
            "heading": self.heading,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "status": self.status.value,
            "reachable": self.reachable,
            "last_update": self.last_update.isoformat(),
        }


@dataclass(frozen=True)
class Candidate:
    driver_id: int
    connection: Any
    distance_km: Optional[float]  # None when location is unknown
