"""FastAPI dependency injection helpers."""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from ride_dispatch.services.dispatcher import RideDispatcher


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an async DB session; commit on success, rollback on error."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_dispatcher(request: Request) -> RideDispatcher:
    return request.app.state.dispatcher
