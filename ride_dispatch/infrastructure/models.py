"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``               -- user directory (passengers, drivers, admins)
* ``rides``               -- ride records and their lifecycle timestamps
* ``ride_proposals``      -- append-only negotiation ledger per ride
* ``wallet_transactions`` -- settlement entries posted at completion
* ``app_settings``        -- key -> JSON (``ride_prices`` holds the tariffs)

Indexes
-------
* **B-Tree** on ``rides.status``, ``passenger_id``, ``driver_id`` and
  ``created_at`` for the active-ride and reverse-radar queries.
* **Unique** ``(ride_id, seq)`` on proposals keeps the ledger ordered.

Enums are stored as plain strings (``native_enum=False``) holding the
lowercase value, which keeps SQLite usable in tests.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base
from ride_dispatch.domain.entities import utcnow
from ride_dispatch.domain.enums import (
    ActorRole,
    PaymentMethod,
    PaymentStatus,
    ProposalStatus,
    RideStatus,
    RideType,
)


def _enum(enum_cls, length: int = 20) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=length,
    )


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(32), unique=True, nullable=True)
    photo = Column(String(255), nullable=True)
    role = Column(_enum(ActorRole), default=ActorRole.PASSENGER, nullable=False)
    rating = Column(Float, default=5.0, nullable=False)
    vehicle_details = Column(JSON, nullable=True)
    is_blocked = Column(Boolean, default=False, nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    balance = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_users_role", "role"),)


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    passenger_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    dest_lat = Column(Float, nullable=False)
    dest_lng = Column(Float, nullable=False)
    origin_name = Column(String(255), nullable=True)
    dest_name = Column(String(255), nullable=True)
    distance_km = Column(Float, nullable=False)
    actual_distance_km = Column(Float, nullable=True)

    ride_type = Column(_enum(RideType), default=RideType.STANDARD, nullable=False)
    initial_price = Column(Float, nullable=False)
    final_price = Column(Float, nullable=False)
    status = Column(_enum(RideStatus), default=RideStatus.SEARCHING, nullable=False)

    payment_method = Column(_enum(PaymentMethod), nullable=True)
    payment_status = Column(_enum(PaymentStatus), nullable=True)

    cancelled_by = Column(_enum(ActorRole), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    rating = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_passenger", "passenger_id"),
        Index("idx_rides_driver", "driver_id"),
        Index("idx_rides_created", "created_at"),
    )


class RideProposalModel(Base):
    __tablename__ = "ride_proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False)
    seq = Column(Integer, nullable=False)
    proposer_role = Column(_enum(ActorRole), nullable=False)
    proposer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    original_price = Column(Float, nullable=False)
    proposed_price = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(
        _enum(ProposalStatus), default=ProposalStatus.PENDING, nullable=False
    )
    proposed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    response_reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("ride_id", "seq", name="uq_ride_proposals_seq"),
        Index("idx_ride_proposals_status", "ride_id", "status"),
    )


class WalletTransactionModel(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(64), nullable=False)  # shared by both legs of a transfer
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True)
    amount = Column(Float, nullable=False)  # signed: debit < 0
    type = Column(String(32), nullable=False)
    method = Column(_enum(PaymentMethod), nullable=False)
    status = Column(String(20), default="completed", nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_wallet_tx_user", "user_id"),
        Index("idx_wallet_tx_ride", "ride_id"),
        Index("idx_wallet_tx_reference", "reference"),
    )


class AppSettingModel(Base):
    __tablename__ = "app_settings"

    key = Column(String(64), primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
