"""
Error taxonomy for the dispatch engine.

Every error carries a machine-readable ``code`` (the class name) and an
HTTP status used by the transports.  Conflicts are expected under normal
concurrent operation and are never retried by the engine.
"""


class DispatchError(Exception):
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# ── Validation ────────────────────────────────────────────────────────


class ValidationFailed(DispatchError):
    status_code = 422
    default_message = "Invalid request"


# ── Not found ─────────────────────────────────────────────────────────


class NotFound(DispatchError):
    status_code = 404


class RideNotFound(NotFound):
    default_message = "Ride not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class DriverNotFound(NotFound):
    default_message = "Driver not found"


# ── Conflict ──────────────────────────────────────────────────────────


class Conflict(DispatchError):
    status_code = 409


class RideAlreadyTaken(Conflict):
    default_message = "This ride has already been taken"


class StaleState(Conflict):
    default_message = "Ride status changed before the update was applied"


class InvalidTransition(Conflict):
    """Raised when a ride status change violates the state machine."""

    default_message = "Transition not allowed"


class ProposalPending(Conflict):
    default_message = "A price proposal is already awaiting a response"


class NoPendingProposal(Conflict):
    default_message = "No pending proposal for this ride"


class RideBusy(Conflict):
    default_message = "Ride is being updated, try again"


# ── Authorization ─────────────────────────────────────────────────────


class Forbidden(DispatchError):
    status_code = 403


class SelfMatchForbidden(Forbidden):
    default_message = "A driver cannot accept their own ride"


class NotRideParticipant(Forbidden):
    default_message = "Actor is not allowed to act on this ride"


class AccountBlocked(Forbidden):
    default_message = "Account is blocked"


# ── Dependent systems ─────────────────────────────────────────────────


class SettlementFailed(DispatchError):
    status_code = 402
    default_message = "Ride settlement failed"


class InsufficientFunds(SettlementFailed):
    default_message = "Insufficient wallet balance"
