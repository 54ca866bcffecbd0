"""Unit tests for geo-candidate selection (pure filter + directory-aware selector)."""

from __future__ import annotations

from datetime import timedelta

import h3
import pytest

from ride_dispatch.domain.candidates import (
    MAX_GRID_K,
    grid_k,
    presence_cell,
    search_cells,
    select_candidates,
)
from ride_dispatch.domain.entities import DriverPresence, Location
from ride_dispatch.domain.enums import PresenceStatus
from ride_dispatch.infrastructure.models import UserModel
from ride_dispatch.services.candidates import CandidateSelector
from ride_dispatch.services.presence import PresenceRegistry
from tests.conftest import FAR, MID, NEAR, ORIGIN, RecordingConnection


def _presence(driver_id, point=None, *, online=True, last_update=None, now=None):
    return DriverPresence(
        driver_id=driver_id,
        connection=RecordingConnection() if online else None,
        location=Location(*point) if point else Location(0.0, 0.0),
        status=PresenceStatus.ONLINE if online else PresenceStatus.OFFLINE,
        last_update=last_update or now,
    )


class TestH3Index:
    def test_presence_cell_resolution(self):
        cell = presence_cell(Location(*ORIGIN), 7)
        assert h3.get_resolution(cell) == 7

    def test_search_cells_cover_radius(self):
        cells = search_cells(Location(*ORIGIN), 10, 7)
        assert presence_cell(Location(*MID), 7) in cells
        assert presence_cell(Location(*FAR), 7) not in cells

    def test_grid_k_bounded_for_city_radii(self):
        assert grid_k(0.5, 7) == 2
        assert grid_k(10, 7) <= MAX_GRID_K
        assert grid_k(5000, 7) > MAX_GRID_K


class TestSelectCandidates:
    def test_ranks_by_distance(self, clock):
        now = clock()
        pool = [_presence(1, MID, now=now), _presence(2, NEAR, now=now)]
        result = select_candidates(
            pool, Location(*ORIGIN), 10, now=now, stale_after_seconds=180
        )
        assert [c.driver_id for c in result] == [2, 1]
        assert result[0].distance_km < 1.0

    def test_outside_radius_excluded(self, clock):
        now = clock()
        result = select_candidates(
            [_presence(1, FAR, now=now)], Location(*ORIGIN), 10, now=now, stale_after_seconds=180
        )
        assert result == []

    def test_stale_presence_excluded(self, clock):
        now = clock()
        stale = _presence(1, NEAR, last_update=now - timedelta(seconds=181))
        fresh = _presence(2, NEAR, last_update=now - timedelta(seconds=179))
        result = select_candidates(
            [stale, fresh], Location(*ORIGIN), 10, now=now, stale_after_seconds=180
        )
        assert [c.driver_id for c in result] == [2]

    def test_offline_and_excluded_ids_skipped(self, clock):
        now = clock()
        pool = [
            _presence(1, NEAR, online=False, now=now),
            _presence(2, NEAR, now=now),
            _presence(3, NEAR, now=now),
        ]
        result = select_candidates(
            pool, Location(*ORIGIN), 10, now=now, stale_after_seconds=180, excluded_ids={3}
        )
        assert [c.driver_id for c in result] == [2]

    def test_unknown_location_sorted_last(self, clock):
        now = clock()
        pool = [_presence(5, now=now), _presence(6, MID, now=now), _presence(4, now=now)]
        result = select_candidates(
            pool,
            Location(*ORIGIN),
            20,
            now=now,
            stale_after_seconds=180,
            include_unknown_location=True,
        )
        assert [c.driver_id for c in result] == [6, 4, 5]
        assert result[-1].distance_km is None

    def test_unknown_location_ignored_by_default(self, clock):
        now = clock()
        result = select_candidates(
            [_presence(5, now=now)], Location(*ORIGIN), 20, now=now, stale_after_seconds=180
        )
        assert result == []

    def test_limit(self, clock):
        now = clock()
        pool = [_presence(i, NEAR, now=now) for i in range(1, 30)]
        result = select_candidates(
            pool, Location(*ORIGIN), 10, now=now, stale_after_seconds=180, limit=5
        )
        assert [c.driver_id for c in result] == [1, 2, 3, 4, 5]


class TestCandidateSelector:
    @pytest.fixture
    def registry(self, clock):
        return PresenceRegistry(grace_seconds=0.05, clock=clock)

    @pytest.fixture
    def selector(self, registry, session_factory):
        return CandidateSelector(
            registry,
            session_factory,
            radius_km=10,
            fallback_radius_km=20,
            stale_after_seconds=180,
        )

    @pytest.mark.asyncio
    async def test_empty_registry(self, selector):
        assert await selector.find_candidates(Location(*ORIGIN)) == []

    @pytest.mark.asyncio
    async def test_directory_filters_blocked_and_non_drivers(self, registry, selector, users):
        for key in ("driver", "blocked_driver", "passenger"):
            await registry.upsert(users[key], RecordingConnection(), Location(*NEAR))

        result = await selector.find_candidates(Location(*ORIGIN))
        assert [c.driver_id for c in result] == [users["driver"]]

    @pytest.mark.asyncio
    async def test_requesting_passenger_excluded(self, registry, selector, users):
        await registry.upsert(users["driver"], RecordingConnection(), Location(*NEAR))
        result = await selector.find_candidates(
            Location(*ORIGIN), exclude_ids={users["driver"]}
        )
        assert result == []

    @pytest.mark.asyncio
    async def test_fallback_admits_unknown_location(self, registry, selector, users):
        await registry.upsert(users["driver"], RecordingConnection())
        await registry.upsert(users["driver2"], RecordingConnection(), Location(*FAR))

        assert await selector.find_candidates(Location(*ORIGIN)) == []
        result = await selector.find_with_fallback(Location(*ORIGIN))
        assert [c.driver_id for c in result] == [users["driver"]]
        assert result[0].distance_km is None

    @pytest.mark.asyncio
    async def test_fallback_not_used_when_first_pass_finds_someone(
        self, registry, selector, users
    ):
        await registry.upsert(users["driver"], RecordingConnection(), Location(*NEAR))
        await registry.upsert(users["driver2"], RecordingConnection())

        result = await selector.find_with_fallback(Location(*ORIGIN))
        assert [c.driver_id for c in result] == [users["driver"]]

    @pytest.mark.asyncio
    async def test_late_location_write_makes_driver_eligible_again(
        self, registry, selector, users, clock
    ):
        await registry.upsert(users["driver"], RecordingConnection(), Location(*NEAR))
        clock.advance(600)
        assert await selector.find_candidates(Location(*ORIGIN)) == []

        await registry.update_location(users["driver"], Location(*NEAR))
        result = await selector.find_candidates(Location(*ORIGIN))
        assert [c.driver_id for c in result] == [users["driver"]]

    @pytest.mark.asyncio
    async def test_wide_radius_still_filters_by_distance(self, registry, selector, users):
        await registry.upsert(users["driver"], RecordingConnection(), Location(*NEAR))
        await registry.upsert(users["driver2"], RecordingConnection(), Location(*FAR))

        within_50 = await selector.find_candidates(Location(*ORIGIN), 50)
        assert [c.driver_id for c in within_50] == [users["driver"]]
        within_100 = await selector.find_candidates(Location(*ORIGIN), 100)
        assert [c.driver_id for c in within_100] == [users["driver"], users["driver2"]]

    @pytest.mark.asyncio
    async def test_directory_online_flag_not_consulted(
        self, registry, selector, users, session_factory
    ):
        async with session_factory() as session:
            row = await session.get(UserModel, users["driver"])
            row.is_online = False
            await session.commit()
        await registry.upsert(users["driver"], RecordingConnection(), Location(*NEAR))

        result = await selector.find_candidates(Location(*ORIGIN))
        assert [c.driver_id for c in result] == [users["driver"]]
