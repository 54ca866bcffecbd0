"""Domain enumerations and state-transition rules."""

import enum

from .errors import InvalidTransition


class RideStatus(str, enum.Enum):
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.SEARCHING: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.ONGOING, RideStatus.CANCELLED},
    RideStatus.ONGOING: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(
    {RideStatus.SEARCHING, RideStatus.ACCEPTED, RideStatus.ONGOING}
)


def ensure_transition(current: RideStatus, target: RideStatus) -> None:
    """Raise ``InvalidTransition`` unless *current* -> *target* is legal."""
    current = RideStatus(current)
    if target not in RIDE_TRANSITIONS[current]:
        if current in TERMINAL_STATUSES:
            raise InvalidTransition(f"Ride is already {current.value}")
        raise InvalidTransition(
            f"Cannot transition from {current.value} to {target.value}"
        )


class RideType(str, enum.Enum):
    STANDARD = "standard"
    MOTORCYCLE = "motorcycle"
    DELIVERY = "delivery"


class ActorRole(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"


class PresenceStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    WALLET = "wallet"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class StatusMarker(str, enum.Enum):
    """Targets accepted by ``update_status``."""

    ARRIVED = "arrived"
    ONGOING = "ongoing"
