"""
chatrelay - Quota Cooldown Registry

Remembers which accounts recently hit a quota or rate limit so the selector
can push them to the back of the line.

States per account:
- AVAILABLE: no known limit
- COOLING_DOWN: limited until ``limited_until``

Transitions:
- AVAILABLE -> COOLING_DOWN: on a quota error (backoff level grows)
- COOLING_DOWN -> AVAILABLE: when the cooldown expires, or on success
"""

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Optional

from ..core.config import GatewaySettings, get_settings


class QuotaState(str, Enum):
    """Quota states."""
    AVAILABLE = "available"
    COOLING_DOWN = "cooling_down"


@dataclass
class QuotaCooldownConfig:
    """Configuration for quota backoff."""
    # First cooldown when the upstream gives no retry-after
    base_cooldown_seconds: float = 60.0

    # Ceiling for exponential backoff and for exhausted quotas
    max_cooldown_seconds: float = 900.0

    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "QuotaCooldownConfig":
        return cls(
            base_cooldown_seconds=settings.quota_cooldown_seconds,
            max_cooldown_seconds=settings.quota_max_cooldown_seconds,
        )


@dataclass
class QuotaCooldown:
    """Cooldown record for one account."""
    account_id: str
    limited_until: float = 0.0
    backoff_level: int = 0

    def remaining(self, now: float) -> float:
        return max(self.limited_until - now, 0.0)


class QuotaCooldownRegistry:
    """
    Registry of quota cooldowns for all accounts.

    Thread-safe; mutations for one account are atomic.
    """

    def __init__(
        self,
        config: Optional[QuotaCooldownConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or QuotaCooldownConfig.from_settings(get_settings())
        self._clock = clock
        self._cooldowns: Dict[str, QuotaCooldown] = {}
        self._lock = Lock()

    def _compute_cooldown(self, record: QuotaCooldown, retry_after: Optional[float], long_term: bool) -> float:
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.config.max_cooldown_seconds)
        if long_term:
            return self.config.max_cooldown_seconds
        cooldown = self.config.base_cooldown_seconds * (self.config.backoff_multiplier ** record.backoff_level)
        return min(cooldown, self.config.max_cooldown_seconds)

    def record_quota_exceeded(
        self,
        account_id: str,
        retry_after: Optional[float] = None,
        long_term: bool = False,
    ) -> float:
        """Start (or extend) a cooldown. Returns its length in seconds."""
        with self._lock:
            now = self._clock()
            record = self._cooldowns.get(account_id)
            if record is None:
                record = QuotaCooldown(account_id=account_id)
                self._cooldowns[account_id] = record

            cooldown = self._compute_cooldown(record, retry_after, long_term)
            record.limited_until = max(record.limited_until, now + cooldown)
            record.backoff_level += 1
            return cooldown

    def record_success(self, account_id: str):
        """Clear any cooldown and backoff for an account."""
        with self._lock:
            self._cooldowns.pop(account_id, None)

    def get_state(self, account_id: str) -> QuotaState:
        with self._lock:
            return self._state_of(account_id)

    def _state_of(self, account_id: str) -> QuotaState:
        """Internal state lookup (must hold lock)."""
        record = self._cooldowns.get(account_id)
        if record is None or record.remaining(self._clock()) <= 0:
            return QuotaState.AVAILABLE
        return QuotaState.COOLING_DOWN

    def is_limited(self, account_id: str) -> bool:
        return self.get_state(account_id) == QuotaState.COOLING_DOWN
