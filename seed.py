"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations (or with CREATE_SCHEMA_ON_STARTUP for a scratch DB):
    python seed.py

Creates:
  - 1 admin
  - 6 sample passengers (with wallet balances)
  - 8 sample drivers (vehicle details; presence comes from sockets)
  - the ``ride_prices`` tariff table
  - 4 sample rides (mix of SEARCHING, ACCEPTED, COMPLETED, CANCELLED)
"""

import asyncio
from datetime import timedelta

from sqlalchemy import text

from ride_dispatch.config import settings
from ride_dispatch.domain.entities import utcnow
from ride_dispatch.domain.enums import (
    ActorRole,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
    RideType,
)
from ride_dispatch.domain.distance import haversine_km
from ride_dispatch.domain.pricing import TariffTable, quote
from ride_dispatch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_schema,
)
from ride_dispatch.infrastructure.models import RideModel, UserModel
from ride_dispatch.infrastructure.repositories import (
    RIDE_PRICES_KEY,
    SettingsRepository,
)


PASSENGERS = [
    {"name": "Awa Diop", "phone": "+221700000001", "balance": 15000},
    {"name": "Moussa Ndiaye", "phone": "+221700000002", "balance": 4000},
    {"name": "Fatou Sarr", "phone": "+221700000003", "balance": 25000},
    {"name": "Ibrahima Fall", "phone": "+221700000004", "balance": 0},
    {"name": "Aminata Ba", "phone": "+221700000005", "balance": 8000},
    {"name": "Cheikh Gueye", "phone": "+221700000006", "balance": 12000},
]

DRIVERS = [
    {"name": "Ousmane Sy", "phone": "+221710000001", "rating": 4.8,
     "vehicle": {"type": "standard", "model": "Toyota Corolla", "plate": "DK-1021-A"}},
    {"name": "Mamadou Kane", "phone": "+221710000002", "rating": 4.6,
     "vehicle": {"type": "standard", "model": "Hyundai Accent", "plate": "DK-3377-B"}},
    {"name": "Babacar Mbaye", "phone": "+221710000003", "rating": 4.9,
     "vehicle": {"type": "standard", "model": "Kia Rio", "plate": "DK-5510-C"}},
    {"name": "Seydou Diallo", "phone": "+221710000004", "rating": 4.4,
     "vehicle": {"type": "motorcycle", "model": "Yamaha YBR", "plate": "DK-M-0192"}},
    {"name": "Lamine Faye", "phone": "+221710000005", "rating": 4.7,
     "vehicle": {"type": "motorcycle", "model": "Honda CG", "plate": "DK-M-0457"}},
    {"name": "Pape Cisse", "phone": "+221710000006", "rating": 4.5,
     "vehicle": {"type": "delivery", "model": "Renault Kangoo", "plate": "DK-8830-D"}},
    {"name": "Abdou Thiam", "phone": "+221710000007", "rating": 4.3,
     "vehicle": {"type": "standard", "model": "Peugeot 301", "plate": "DK-4102-E"}},
    # Blocked: never offered a ride and cannot accept one
    {"name": "Modou Sow", "phone": "+221710000008", "rating": 3.1, "blocked": True,
     "vehicle": {"type": "standard", "model": "Dacia Logan", "plate": "DK-9999-F"}},
]


async def seed(session_factory) -> None:
    async with session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        admin = UserModel(name="Dispatch Admin", phone="+221799999999", role=ActorRole.ADMIN)
        session.add(admin)

        passengers = []
        for p in PASSENGERS:
            m = UserModel(
                name=p["name"],
                phone=p["phone"],
                role=ActorRole.PASSENGER,
                balance=p["balance"],
            )
            session.add(m)
            passengers.append(m)

        drivers = []
        for d in DRIVERS:
            m = UserModel(
                name=d["name"],
                phone=d["phone"],
                role=ActorRole.DRIVER,
                rating=d["rating"],
                vehicle_details=d["vehicle"],
                is_blocked=d.get("blocked", False),
            )
            session.add(m)
            drivers.append(m)
        await session.flush()
        print(f"  Created {1 + len(passengers) + len(drivers)} users")

        # ── Tariffs ───────────────────────────────────────────────────
        table = TariffTable()
        await SettingsRepository(session).put_value(
            RIDE_PRICES_KEY, table.to_dict(), description="Ride tariffs"
        )
        print("  Stored tariff table")

        # ── Rides ─────────────────────────────────────────────────────
        now = utcnow()
        rides_data = [
            {
                "passenger": passengers[0],
                "origin": (14.6928, -17.4467, "Plateau"),
                "dest": (14.7167, -17.4677, "Mermoz"),
                "status": RideStatus.SEARCHING,
                "ride_type": RideType.STANDARD,
            },
            {
                "passenger": passengers[1],
                "driver": drivers[3],
                "origin": (14.7100, -17.4550, "Fann"),
                "dest": (14.7450, -17.4900, "Ngor"),
                "status": RideStatus.ACCEPTED,
                "ride_type": RideType.MOTORCYCLE,
            },
            {
                "passenger": passengers[2],
                "driver": drivers[0],
                "origin": (14.6937, -17.4441, "Independence Square"),
                "dest": (14.7397, -17.4902, "Almadies"),
                "status": RideStatus.COMPLETED,
                "ride_type": RideType.STANDARD,
                "payment_method": PaymentMethod.CASH,
                "rating": 5,
            },
            {
                "passenger": passengers[4],
                "origin": (14.7645, -17.3660, "Pikine"),
                "dest": (14.6928, -17.4467, "Plateau"),
                "status": RideStatus.CANCELLED,
                "ride_type": RideType.DELIVERY,
            },
        ]

        for r in rides_data:
            distance = round(
                haversine_km(r["origin"][0], r["origin"][1], r["dest"][0], r["dest"][1]), 2
            )
            price = quote(r["ride_type"], distance, table)
            driver = r.get("driver")
            ride = RideModel(
                passenger_id=r["passenger"].id,
                driver_id=driver.id if driver else None,
                origin_lat=r["origin"][0],
                origin_lng=r["origin"][1],
                origin_name=r["origin"][2],
                dest_lat=r["dest"][0],
                dest_lng=r["dest"][1],
                dest_name=r["dest"][2],
                distance_km=distance,
                ride_type=r["ride_type"],
                initial_price=price,
                final_price=price,
                status=r["status"],
                created_at=now - timedelta(minutes=30),
            )
            if driver is not None:
                ride.accepted_at = now - timedelta(minutes=25)
            if r["status"] == RideStatus.COMPLETED:
                ride.started_at = now - timedelta(minutes=20)
                ride.completed_at = now - timedelta(minutes=5)
                ride.actual_distance_km = distance
                ride.payment_method = r["payment_method"]
                ride.payment_status = PaymentStatus.PAID
                ride.rating = r["rating"]
            if r["status"] == RideStatus.CANCELLED:
                ride.cancelled_at = now - timedelta(minutes=28)
                ride.cancelled_by = ActorRole.PASSENGER
                ride.cancellation_reason = "Changed plans"
            session.add(ride)
        await session.flush()
        print(f"  Created {len(rides_data)} rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    engine = build_engine(settings.database_url)
    if settings.create_schema_on_startup:
        await create_schema(engine)
    try:
        await seed(build_session_factory(engine))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
