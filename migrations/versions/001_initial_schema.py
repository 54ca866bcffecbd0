"""Initial schema: user directory, rides, negotiation ledger, wallet, settings.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


RIDE_PRICES = {
    "tariffs": {
        "standard": {"base": 600, "per_km": 300},
        "motorcycle": {"base": 400, "per_km": 180},
        "delivery": {"base": 1000, "per_km": 450},
    },
    "rounding": 50,
    "minimum_fare": 500,
}


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(32), unique=True, nullable=True),
        sa.Column("photo", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="passenger"),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("vehicle_details", sa.JSON, nullable=True),
        sa.Column("is_blocked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("balance", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "role IN ('passenger', 'driver', 'admin')", name="ck_users_role"
        ),
    )
    op.create_index("idx_users_role", "users", ["role"])

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("passenger_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("origin_lat", sa.Float, nullable=False),
        sa.Column("origin_lng", sa.Float, nullable=False),
        sa.Column("dest_lat", sa.Float, nullable=False),
        sa.Column("dest_lng", sa.Float, nullable=False),
        sa.Column("origin_name", sa.String(255), nullable=True),
        sa.Column("dest_name", sa.String(255), nullable=True),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("actual_distance_km", sa.Float, nullable=True),
        sa.Column("ride_type", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("initial_price", sa.Float, nullable=False),
        sa.Column("final_price", sa.Float, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="searching"),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("feedback", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('searching', 'accepted', 'ongoing', 'completed', 'cancelled')",
            name="ck_rides_status",
        ),
        sa.CheckConstraint("final_price >= 0", name="ck_rides_final_price"),
        sa.CheckConstraint(
            "rating IS NULL OR (rating BETWEEN 1 AND 5)", name="ck_rides_rating"
        ),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_passenger", "rides", ["passenger_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_created", "rides", ["created_at"])

    # ── ride_proposals ────────────────────────────────────────────────
    op.create_table(
        "ride_proposals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("proposer_role", sa.String(20), nullable=False),
        sa.Column("proposer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("original_price", sa.Float, nullable=False),
        sa.Column("proposed_price", sa.Float, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "proposed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_reason", sa.Text, nullable=True),
        sa.UniqueConstraint("ride_id", "seq", name="uq_ride_proposals_seq"),
    )
    op.create_index(
        "idx_ride_proposals_status", "ride_proposals", ["ride_id", "status"]
    )

    # ── wallet_transactions ───────────────────────────────────────────
    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=True),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("method", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_wallet_tx_user", "wallet_transactions", ["user_id"])
    op.create_index("idx_wallet_tx_ride", "wallet_transactions", ["ride_id"])
    op.create_index("idx_wallet_tx_reference", "wallet_transactions", ["reference"])

    # ── app_settings ──────────────────────────────────────────────────
    settings_table = op.create_table(
        "app_settings",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("value", sa.JSON, nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.bulk_insert(
        settings_table,
        [{"key": "ride_prices", "value": RIDE_PRICES, "description": "Ride tariffs"}],
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_table("wallet_transactions")
    op.drop_table("ride_proposals")
    op.drop_table("rides")
    op.drop_table("users")
