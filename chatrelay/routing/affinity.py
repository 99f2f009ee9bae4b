"""
chatrelay - Rotation Store

Last-used account per (provider, model), injected into the selector so
round-robin resumes after whichever account served the previous request.
"""

from threading import Lock
from typing import Dict, Optional, Tuple

RotationKey = Tuple[str, str]


class RotationStore:
    """
    Keyed last-used map.

    Each key has its own lock so requests for different models never
    contend; updates to the same key are atomic.
    """

    def __init__(self):
        self._last_used: Dict[RotationKey, str] = {}
        self._locks: Dict[RotationKey, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, key: RotationKey) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def get_last_used(self, provider_key: str, model_id: str) -> Optional[str]:
        key = (provider_key, model_id)
        with self._lock_for(key):
            return self._last_used.get(key)

    def record_used(self, provider_key: str, model_id: str, account_id: str):
        key = (provider_key, model_id)
        with self._lock_for(key):
            self._last_used[key] = account_id

    def clear(self, provider_key: Optional[str] = None):
        """Forget rotation state, for one provider or all of them."""
        with self._registry_lock:
            if provider_key is None:
                self._last_used.clear()
                return
            for key in [k for k in self._last_used if k[0] == provider_key]:
                del self._last_used[key]
