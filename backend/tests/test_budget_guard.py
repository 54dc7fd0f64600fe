"""Tests for per-provider request budgets and per-user quotas."""

import asyncio

import pytest

from orben.core.exceptions import BudgetExhausted, UserQuotaExceeded
from orben.services.budget_guard import BudgetGuard


class FakeTime:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def guard(fake_time) -> BudgetGuard:
    return BudgetGuard(limits={"google": 3, "ebay": 0}, default_limit=5, window_seconds=86400, user_limit=2, clock=fake_time)


class TestReserve:

    async def test_concurrent_reservations_never_exceed_budget(self, guard):
        """Ten concurrent searches against a budget of three: three get through."""

        async def attempt():
            try:
                async with guard.reservation("google"):
                    await asyncio.sleep(0)
                    return True
            except BudgetExhausted:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(10)))

        assert results.count(True) == 3
        assert await guard.remaining("google") == 0

    async def test_zero_budget_is_exhausted(self, guard):
        with pytest.raises(BudgetExhausted) as exc_info:
            await guard.reserve("ebay")
        assert exc_info.value.provider == "ebay"

    async def test_unknown_provider_uses_default_limit(self, guard):
        assert guard.limit_for("oxylabs") == 5
        assert await guard.remaining("oxylabs") == 5

    async def test_held_reservations_count_against_budget(self, guard):
        held = [await guard.reserve("google") for _ in range(3)]

        with pytest.raises(BudgetExhausted):
            await guard.reserve("google")

        await guard.release(held[0])
        assert await guard.remaining("google") == 1


class TestSettle:

    async def test_release_refunds(self, guard):
        reservation = await guard.reserve("google")
        await guard.release(reservation)
        assert await guard.remaining("google") == 3

    async def test_commit_charges(self, guard):
        reservation = await guard.reserve("google")
        await guard.commit(reservation)
        snapshot = await guard.snapshot()
        assert snapshot["google"] == {"limit": 3, "used": 1, "held": 0, "remaining": 2}

    async def test_settling_twice_has_no_effect(self, guard):
        reservation = await guard.reserve("google")
        await guard.commit(reservation)
        await guard.commit(reservation)
        await guard.release(reservation)
        assert await guard.remaining("google") == 2

    async def test_context_manager_releases_on_error(self, guard):
        with pytest.raises(RuntimeError):
            async with guard.reservation("google"):
                raise RuntimeError("provider blew up")
        assert await guard.remaining("google") == 3

    async def test_context_manager_releases_on_timeout(self, guard):
        async def slow():
            async with guard.reservation("google"):
                await asyncio.sleep(5)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(slow(), timeout=0.01)
        assert await guard.remaining("google") == 3


class TestWindows:

    async def test_budget_restored_when_window_rolls(self, guard, fake_time):
        for _ in range(3):
            await guard.commit(await guard.reserve("google"))
        assert await guard.remaining("google") == 0

        fake_time.now += 86400
        assert await guard.remaining("google") == 3

    async def test_reservation_from_previous_window_ignored(self, guard, fake_time):
        stale = await guard.reserve("google")
        fake_time.now += 86400
        await guard.commit(stale)

        snapshot = await guard.snapshot()
        assert snapshot["google"]["used"] == 0
        assert snapshot["google"]["held"] == 0

    async def test_snapshot_lists_configured_and_used_providers(self, guard):
        await guard.commit(await guard.reserve("oxylabs"))
        snapshot = await guard.snapshot()
        assert sorted(snapshot) == ["ebay", "google", "oxylabs"]
        assert snapshot["oxylabs"]["remaining"] == 4
        assert snapshot["ebay"]["remaining"] == 0


class TestUserQuota:

    async def test_user_quota_spans_providers(self, guard):
        await guard.commit(await guard.reserve("google", user_id="u1"))
        await guard.commit(await guard.reserve("oxylabs", user_id="u1"))

        with pytest.raises(UserQuotaExceeded) as exc_info:
            await guard.reserve("oxylabs", user_id="u1")
        assert exc_info.value.user_id == "u1"
        assert await guard.user_remaining("u2") == 2

    async def test_rejected_user_holds_no_provider_budget(self, guard):
        for _ in range(2):
            await guard.commit(await guard.reserve("oxylabs", user_id="u1"))

        with pytest.raises(UserQuotaExceeded):
            await guard.reserve("google", user_id="u1")
        assert await guard.remaining("google") == 3

    async def test_exhausted_provider_holds_no_user_quota(self, guard):
        with pytest.raises(BudgetExhausted):
            await guard.reserve("ebay", user_id="u1")
        assert await guard.user_remaining("u1") == 2

    async def test_release_refunds_user_and_provider(self, guard):
        held = await guard.reserve("google", user_id="u1")
        assert await guard.user_remaining("u1") == 1

        await guard.release(held)

        assert await guard.user_remaining("u1") == 2
        assert await guard.remaining("google") == 3

    async def test_user_quota_resets_with_window(self, guard, fake_time):
        for _ in range(2):
            await guard.commit(await guard.reserve("google", user_id="u1"))

        fake_time.now += 86400

        assert await guard.user_remaining("u1") == 2
