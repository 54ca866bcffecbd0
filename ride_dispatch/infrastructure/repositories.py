"""
Repository Pattern -- abstracts DB access so the engine stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Status changes go through
``RideRepository.transition`` which issues a conditional UPDATE guarded on
the expected status; a zero row count means another writer got there
first.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AppSettingModel,
    RideModel,
    RideProposalModel,
    UserModel,
    WalletTransactionModel,
)
from ride_dispatch.domain.enums import (
    ACTIVE_STATUSES,
    ProposalStatus,
    RideStatus,
)

RIDE_PRICES_KEY = "ride_prices"


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, ride: RideModel) -> RideModel:
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_id(self, ride_id: int) -> Optional[RideModel]:
        return await self.session.get(RideModel, ride_id)

    async def get_for_update(self, ride_id: int) -> Optional[RideModel]:
        """SELECT ... FOR UPDATE so concurrent writers queue on the row."""
        result = await self.session.execute(
            select(RideModel)
            .where(RideModel.id == ride_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self, ride_id: int, expected: RideStatus, **values: Any
    ) -> bool:
        """
        ``UPDATE rides SET ... WHERE id = :id AND status = :expected``.

        Returns ``False`` when no row matched.  On success the in-session
        instance is refreshed so callers read the committed values.
        """
        result = await self.session.execute(
            update(RideModel)
            .where(RideModel.id == ride_id, RideModel.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        ride = await self.session.get(RideModel, ride_id)
        if ride is not None:
            await self.session.refresh(ride)
        return True

    async def list_for_user(
        self, user_id: int, active_only: bool = False, limit: int = 50
    ) -> list[RideModel]:
        query = (
            select(RideModel)
            .where(
                (RideModel.passenger_id == user_id)
                | (RideModel.driver_id == user_id)
            )
            .order_by(RideModel.created_at.desc(), RideModel.id.desc())
            .limit(limit)
        )
        if active_only:
            query = query.where(RideModel.status.in_(ACTIVE_STATUSES))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_recent_searching(self, since: datetime) -> list[RideModel]:
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.status == RideStatus.SEARCHING,
                RideModel.created_at >= since,
            )
            .order_by(RideModel.created_at)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(RideModel.status, func.count()).group_by(RideModel.status)
        )
        return {
            (status.value if hasattr(status, "value") else status): count
            for status, count in result.all()
        }


class ProposalRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, proposal: RideProposalModel) -> RideProposalModel:
        proposal.seq = await self._next_seq(proposal.ride_id)
        self.session.add(proposal)
        await self.session.flush()
        return proposal

    async def _next_seq(self, ride_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.max(RideProposalModel.seq), 0)).where(
                RideProposalModel.ride_id == ride_id
            )
        )
        return int(result.scalar() or 0) + 1

    async def latest_pending(self, ride_id: int) -> Optional[RideProposalModel]:
        result = await self.session.execute(
            select(RideProposalModel)
            .where(
                RideProposalModel.ride_id == ride_id,
                RideProposalModel.status == ProposalStatus.PENDING,
            )
            .order_by(RideProposalModel.seq.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve(
        self,
        proposal_id: int,
        status: ProposalStatus,
        responded_at: datetime,
        response_reason: Optional[str] = None,
    ) -> bool:
        """Write the response once; guarded on ``status = 'pending'``."""
        result = await self.session.execute(
            update(RideProposalModel)
            .where(
                RideProposalModel.id == proposal_id,
                RideProposalModel.status == ProposalStatus.PENDING,
            )
            .values(
                status=status,
                responded_at=responded_at,
                response_reason=response_reason,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def history(self, ride_id: int) -> list[RideProposalModel]:
        result = await self.session.execute(
            select(RideProposalModel)
            .where(RideProposalModel.ride_id == ride_id)
            .order_by(RideProposalModel.seq)
        )
        return list(result.scalars().all())


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)

    async def get_many(self, user_ids: Iterable[int]) -> dict[int, UserModel]:
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(UserModel).where(UserModel.id.in_(ids))
        )
        return {u.id: u for u in result.scalars().all()}

    async def lock_many(self, user_ids: Iterable[int]) -> dict[int, UserModel]:
        """Row-lock users in ascending id order so two settlements never deadlock."""
        locked: dict[int, UserModel] = {}
        for user_id in sorted(set(user_ids)):
            result = await self.session.execute(
                select(UserModel)
                .where(UserModel.id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            user = result.scalar_one_or_none()
            if user is not None:
                locked[user_id] = user
        return locked

    async def set_online(self, user_id: int, is_online: bool) -> None:
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(is_online=is_online)
            .execution_options(synchronize_session=False)
        )


class WalletTransactionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: WalletTransactionModel) -> WalletTransactionModel:
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def for_ride(self, ride_id: int) -> list[WalletTransactionModel]:
        result = await self.session.execute(
            select(WalletTransactionModel)
            .where(WalletTransactionModel.ride_id == ride_id)
            .order_by(WalletTransactionModel.id)
        )
        return list(result.scalars().all())


class SettingsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_value(self, key: str) -> Optional[Any]:
        setting = await self.session.get(AppSettingModel, key)
        return setting.value if setting else None

    async def put_value(
        self, key: str, value: Any, description: Optional[str] = None
    ) -> AppSettingModel:
        setting = await self.session.get(AppSettingModel, key)
        if setting is None:
            setting = AppSettingModel(key=key, value=value, description=description)
            self.session.add(setting)
        else:
            setting.value = value
            if description is not None:
                setting.description = description
        await self.session.flush()
        return setting
