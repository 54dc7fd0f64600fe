"""Per-provider request budgets and per-user quotas over fixed time windows.

Budget is *reserved* before a provider call and then either committed
(the call happened) or released (the call never reached the provider or
failed before being charged). Reservation happens under a lock, so N
concurrent searches against a budget of B < N let at most B through.

A reservation made on behalf of a user also holds one unit of that
user's quota, and is settled together with the provider unit.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Mapping, Optional

import structlog

from orben.config import settings
from orben.core.exceptions import BudgetExhausted, UserQuotaExceeded

logger = structlog.get_logger(__name__)


@dataclass
class Reservation:
    """A held unit of one provider's budget in one window."""

    id: uuid.UUID
    provider: str
    window: int
    user_id: Optional[str] = None
    settled: bool = False


@dataclass
class _Counter:
    window: int
    used: int = 0  # committed calls
    held: int = 0  # reserved, not yet settled


class BudgetGuard:
    """In-process budget counters, one per provider per fixed window.

    Windows are aligned to the epoch (``floor(now / window_seconds)``), so a
    daily window rolls over at midnight UTC. Counters never go negative and
    a reservation from an earlier window is ignored when settled.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, int]] = None,
        default_limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
        user_limit: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits: Dict[str, int] = dict(limits if limits is not None else settings.get_provider_budgets())
        self.default_limit = default_limit if default_limit is not None else settings.PROVIDER_DEFAULT_BUDGET
        self.window_seconds = window_seconds or settings.BUDGET_WINDOW_SECONDS
        self.user_limit = user_limit if user_limit is not None else settings.USER_DAILY_SEARCH_LIMIT
        self.clock = clock
        self._counters: Dict[str, _Counter] = {}
        self._user_counters: Dict[str, _Counter] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="budget_guard")

    def _current_window(self) -> int:
        return int(self.clock() // self.window_seconds)

    def _counter(self, provider: str) -> _Counter:
        window = self._current_window()
        counter = self._counters.get(provider)
        if counter is None or counter.window != window:
            if counter is not None:
                self.logger.info("budget_window_rolled", provider=provider, used=counter.used)
            counter = _Counter(window=window)
            self._counters[provider] = counter
        return counter

    def _user_counter(self, user_id: str) -> _Counter:
        window = self._current_window()
        counter = self._user_counters.get(user_id)
        if counter is None or counter.window != window:
            counter = _Counter(window=window)
            self._user_counters[user_id] = counter
        return counter

    def limit_for(self, provider: str) -> int:
        return self.limits.get(provider, self.default_limit)

    async def remaining(self, provider: str) -> int:
        """Calls still available in the current window (never negative)."""
        async with self._lock:
            counter = self._counter(provider)
            return max(0, self.limit_for(provider) - counter.used - counter.held)

    async def user_remaining(self, user_id: str) -> int:
        async with self._lock:
            counter = self._user_counter(user_id)
            return max(0, self.user_limit - counter.used - counter.held)

    async def reserve(self, provider: str, user_id: Optional[str] = None) -> Reservation:
        """Reserve one call for a provider, and for a user when given.

        The user quota is checked first; nothing is held unless both fit.

        Raises:
            UserQuotaExceeded: If the user has no quota left in the window
            BudgetExhausted: If the current window has no budget left
        """
        async with self._lock:
            user_counter = self._user_counter(user_id) if user_id else None
            if user_counter is not None and user_counter.used + user_counter.held >= self.user_limit:
                self.logger.warning("user_quota_exceeded", user_id=user_id, limit=self.user_limit)
                raise UserQuotaExceeded(user_id)

            counter = self._counter(provider)
            if counter.used + counter.held >= self.limit_for(provider):
                self.logger.warning(
                    "provider_budget_exhausted",
                    provider=provider,
                    limit=self.limit_for(provider),
                    used=counter.used,
                )
                raise BudgetExhausted(provider)
            counter.held += 1
            if user_counter is not None:
                user_counter.held += 1
            return Reservation(id=uuid.uuid4(), provider=provider, window=counter.window, user_id=user_id)

    async def commit(self, reservation: Reservation) -> None:
        """Charge a reservation: the provider call was made."""
        await self._settle(reservation, charge=True)

    async def release(self, reservation: Reservation) -> None:
        """Refund a reservation: the call was not charged."""
        await self._settle(reservation, charge=False)

    async def _settle(self, reservation: Reservation, charge: bool) -> None:
        async with self._lock:
            if reservation.settled:
                return
            reservation.settled = True
            counters = [self._counter(reservation.provider)]
            if reservation.user_id:
                counters.append(self._user_counter(reservation.user_id))
            for counter in counters:
                if counter.window != reservation.window:
                    # The window rolled over while the call was in flight
                    continue
                counter.held = max(0, counter.held - 1)
                if charge:
                    counter.used += 1

    @asynccontextmanager
    async def reservation(self, provider: str, user_id: Optional[str] = None) -> AsyncIterator[Reservation]:
        """Reserve for the duration of a provider call.

        Commits when the block exits normally and releases on any error or
        cancellation (including timeouts).

        Raises:
            UserQuotaExceeded: If the user has no quota left
            BudgetExhausted: If the provider has no budget left
        """
        held = await self.reserve(provider, user_id=user_id)
        try:
            yield held
        except BaseException:
            await self.release(held)
            raise
        else:
            await self.commit(held)

    async def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Current usage per known provider, for health reporting."""
        async with self._lock:
            providers = set(self.limits) | set(self._counters)
            report = {}
            for provider in sorted(providers):
                counter = self._counter(provider)
                limit = self.limit_for(provider)
                report[provider] = {
                    "limit": limit,
                    "used": counter.used,
                    "held": counter.held,
                    "remaining": max(0, limit - counter.used - counter.held),
                }
            return report


# Global budget guard instance
_budget_guard: Optional[BudgetGuard] = None


def get_budget_guard() -> BudgetGuard:
    """Get or create the process-wide budget guard."""
    global _budget_guard
    if _budget_guard is None:
        _budget_guard = BudgetGuard()
        logger.info("budget_guard_initialized", limits=_budget_guard.limits)
    return _budget_guard
