"""
Cost Ledger.

Tracks daily and lifetime spend and enforces the daily ceiling.

State machine (evaluated on every check and mutation, never on a timer):

    NORMAL -> WARNING [80%, 90%) -> NEAR_LIMIT [90%, 100%) -> BLOCKED (>= 100%)

Day rollover is checked first in every operation: when the calendar date of
``last_reset`` differs from today, daily usage is zeroed. ``total_usage``
never resets. Each non-normal state produces at most one notice per day.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from .collaborators import KeyValueStore
from .config import CostSettings
from .errors import CostLimitExceededError
from .schemas import CostTracker, LedgerState


NoticeCallback = Callable[[LedgerState, str], None]

# (share of daily limit, state); checked top-down.
STATE_THRESHOLDS: Tuple[Tuple[float, LedgerState], ...] = (
    (1.0, LedgerState.BLOCKED),
    (0.9, LedgerState.NEAR_LIMIT),
    (0.8, LedgerState.WARNING),
)


def ledger_state(daily_usage: float, daily_limit: float) -> LedgerState:
    for share, state in STATE_THRESHOLDS:
        if daily_usage >= daily_limit * share:
            return state
    return LedgerState.NORMAL


def notice_message(state: LedgerState, tracker: CostTracker) -> str:
    usage, limit = tracker.daily_usage, tracker.daily_limit
    if state == LedgerState.WARNING:
        return f"API usage approaching daily limit: ${usage:.4f} / ${limit:.2f}"
    if state == LedgerState.NEAR_LIMIT:
        return (
            f"API usage near daily limit: ${usage:.4f} / ${limit:.2f}. "
            "Consider raising the limit or reducing usage."
        )
    return f"Daily cost limit of ${limit:.2f} reached (used ${usage:.4f}). Usage will reset at midnight."


class CostLedger:
    """
    Usage:
        ledger = CostLedger(store=JsonFileKeyValueStore(path))
        await ledger.ensure_within_limit()
        await ledger.record_cost(response.usage.total_cost)
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        settings: Optional[CostSettings] = None,
        on_notice: Optional[NoticeCallback] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.settings = settings or CostSettings()
        self.on_notice = on_notice
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tracker = self._load()
        self._notices_sent: Set[LedgerState] = set()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self) -> CostTracker:
        default = CostTracker(daily_limit=self.settings.daily_limit, last_reset=self._clock())
        if self.store is None:
            return default

        try:
            stored = self.store.get(self.settings.storage_key)
        except Exception as e:
            logger.error(f"Failed to read cost tracker, starting fresh: {e}")
            return default
        if stored is None:
            return default

        try:
            tracker = CostTracker.model_validate(stored)
        except ValidationError as e:
            logger.error(f"Stored cost tracker is invalid, starting fresh: {e}")
            return default

        logger.debug(
            f"Restored cost tracker: daily=${tracker.daily_usage:.4f} "
            f"limit=${tracker.daily_limit:.2f} total=${tracker.total_usage:.4f}"
        )
        return tracker

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.set(self.settings.storage_key, self._tracker.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Failed to persist cost tracker (in-memory state kept): {e}")

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> LedgerState:
        return ledger_state(self._tracker.daily_usage, self._tracker.daily_limit)

    def snapshot(self) -> CostTracker:
        return self._tracker.model_copy()

    def _reset(self, now: datetime) -> None:
        self._tracker.daily_usage = 0.0
        self._tracker.last_reset = now
        self._notices_sent.clear()
        self._persist()

    def _rollover_if_needed(self) -> bool:
        now = self._clock()
        if self._tracker.last_reset.date() == now.date():
            return False
        logger.info(f"New day ({now.date()}), resetting daily usage (was ${self._tracker.daily_usage:.4f})")
        self._reset(now)
        return True

    def _notify(self) -> None:
        state = self.state
        if state == LedgerState.NORMAL or state in self._notices_sent:
            return
        self._notices_sent.add(state)

        message = notice_message(state, self._tracker)
        logger.warning(message)
        if self.on_notice is None:
            return
        try:
            self.on_notice(state, message)
        except Exception as e:
            logger.error(f"Cost notice callback failed: {e}")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def ensure_within_limit(self) -> None:
        """Raise CostLimitExceededError if today's spend has hit the limit."""
        async with self._lock:
            self._rollover_if_needed()
            if self.state == LedgerState.BLOCKED:
                raise CostLimitExceededError(self._tracker.daily_usage, self._tracker.daily_limit)

    async def record_cost(self, cost: float) -> CostTracker:
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")

        async with self._lock:
            self._rollover_if_needed()
            self._tracker.daily_usage += cost
            self._tracker.total_usage += cost
            self._persist()
            self._notify()
            return self.snapshot()

    async def reset_daily_cost(self) -> CostTracker:
        async with self._lock:
            self._reset(self._clock())
            logger.info("Daily cost usage reset")
            return self.snapshot()

    async def update_daily_limit(self, limit: float) -> CostTracker:
        if limit < 0:
            raise ValueError(f"daily limit must be non-negative, got {limit}")

        async with self._lock:
            self._rollover_if_needed()
            self._tracker.daily_limit = limit
            self._notices_sent.clear()
            self._persist()
            logger.info(f"Daily cost limit set to ${limit:.2f}")
            return self.snapshot()
