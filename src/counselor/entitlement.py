from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional

from .constants import DEFAULT_TIER_MESSAGE_LIMITS, TIER_FREE


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    tier: str = TIER_FREE
    reason: Optional[str] = None
    remaining: Optional[int] = None


class EntitlementGate(ABC):
    """Billing/entitlement check consulted before any context is assembled."""

    @abstractmethod
    def check(self, student_id: str) -> EntitlementDecision:
        ...

    @abstractmethod
    def record_turn(self, student_id: str) -> None:
        ...


class AllowAllGate(EntitlementGate):

    def __init__(self, tier: str = TIER_FREE) -> None:
        self.tier = tier

    def check(self, student_id: str) -> EntitlementDecision:
        return EntitlementDecision(allowed=True, tier=self.tier)

    def record_turn(self, student_id: str) -> None:
        return None


class UsageLimitGate(EntitlementGate):
    """Daily message quota per billing tier, counted in memory and reset at midnight."""

    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        tiers: Optional[Dict[str, str]] = None,
        overrides: Optional[Dict[str, int]] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.limits = dict(limits or DEFAULT_TIER_MESSAGE_LIMITS)
        self._tiers = dict(tiers or {})
        self._overrides = dict(overrides or {})
        self._today = today
        self._day: Optional[date] = None
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def set_tier(self, student_id: str, tier: str) -> None:
        with self._lock:
            self._tiers[student_id] = tier

    def _today_counts(self) -> Dict[str, int]:
        # callers hold self._lock; counts from earlier days are dropped on rollover
        today = self._today()
        if today != self._day:
            self._day = today
            self._counts = {}
        return self._counts

    def tier_of(self, student_id: str) -> str:
        return self._tiers.get(student_id, TIER_FREE)

    def used_today(self, student_id: str) -> int:
        with self._lock:
            return self._today_counts().get(student_id, 0)

    def check(self, student_id: str) -> EntitlementDecision:
        tier = self.tier_of(student_id)
        limit = self._overrides.get(student_id, self.limits.get(tier, self.limits.get(TIER_FREE, 0)))
        used = self.used_today(student_id)
        if used >= limit:
            return EntitlementDecision(
                allowed=False,
                tier=tier,
                reason=f"You've reached your daily message limit ({limit} messages). Resets at midnight.",
                remaining=0,
            )
        return EntitlementDecision(allowed=True, tier=tier, remaining=limit - used)

    def record_turn(self, student_id: str) -> None:
        with self._lock:
            counts = self._today_counts()
            counts[student_id] = counts.get(student_id, 0) + 1
