"""
Completion settlement.

The ledger collaborator runs *inside* the completion transaction: it
receives the same session that holds the ride row lock, so a failed
settlement rolls the ``ongoing -> completed`` transition back with it.

* **wallet**  -- passenger and driver rows are locked ``FOR UPDATE`` in
  ascending id order, the passenger balance is checked, then a debit and
  a credit entry are posted under one shared reference.
* **cash / card** -- the money changed hands outside the platform; a
  single earnings entry is posted for the driver.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from ride_dispatch.domain.enums import PaymentMethod
from ride_dispatch.domain.errors import InsufficientFunds, SettlementFailed
from ride_dispatch.infrastructure.models import RideModel, WalletTransactionModel
from ride_dispatch.infrastructure.repositories import (
    UserRepository,
    WalletTransactionRepository,
)

logger = logging.getLogger(__name__)


class LedgerService(Protocol):
    async def settle(
        self,
        session: AsyncSession,
        ride: RideModel,
        amount: float,
        method: PaymentMethod,
    ) -> list[WalletTransactionModel]: ...


def _reference(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


class WalletLedger:
    async def settle(
        self,
        session: AsyncSession,
        ride: RideModel,
        amount: float,
        method: PaymentMethod,
    ) -> list[WalletTransactionModel]:
        if amount < 0:
            raise SettlementFailed("Settlement amount must be >= 0")

        users = await UserRepository(session).lock_many(
            [ride.passenger_id, ride.driver_id]
        )
        passenger = users.get(ride.passenger_id)
        driver = users.get(ride.driver_id)
        if passenger is None or driver is None:
            raise SettlementFailed("Ride parties are missing from the user directory")

        txs = WalletTransactionRepository(session)
        method = PaymentMethod(method)

        if method == PaymentMethod.WALLET:
            if passenger.balance < amount:
                raise InsufficientFunds()
            passenger.balance -= amount
            driver.balance += amount
            reference = _reference("RIDE")
            entries = [
                WalletTransactionModel(
                    reference=reference,
                    user_id=passenger.id,
                    ride_id=ride.id,
                    amount=-amount,
                    type="payment",
                    method=method,
                    description=f"Payment for ride #{ride.id}",
                ),
                WalletTransactionModel(
                    reference=reference,
                    user_id=driver.id,
                    ride_id=ride.id,
                    amount=amount,
                    type="earnings",
                    method=method,
                    description=f"Earnings for ride #{ride.id}",
                ),
            ]
        else:
            entries = [
                WalletTransactionModel(
                    reference=_reference(method.value.upper()),
                    user_id=driver.id,
                    ride_id=ride.id,
                    amount=amount,
                    type="earnings",
                    method=method,
                    description=f"Earnings for ride #{ride.id} ({method.value})",
                )
            ]

        for entry in entries:
            await txs.add(entry)
        logger.info(
            "Ride %d settled: %.2f via %s (%d entries)",
            ride.id,
            amount,
            method.value,
            len(entries),
        )
        return entries
