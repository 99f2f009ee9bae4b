"""
chatrelay - Account Registry

The registry owns accounts, credentials and per-provider routing settings.
The relay only consumes it through AccountRegistry; storage lives
elsewhere. InMemoryAccountRegistry is a complete implementation for tests
and for embedders without persistent storage.
"""

import dataclasses
from abc import ABC, abstractmethod
from threading import Lock
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.models import Account, AccountStatus, Credentials
from ..observability.logging import get_logger
from .quota import QuotaCooldownRegistry

logger = get_logger(__name__)

CredentialResolver = Callable[[Account], Awaitable[Optional[Credentials]]]


class AccountRegistry(ABC):
    """Interface the orchestrator and selector consume."""

    @abstractmethod
    def list_accounts(self, provider_key: str) -> List[Account]:
        pass

    @abstractmethod
    async def get_credentials(self, account_id: str) -> Optional[Credentials]:
        """Resolve credentials for one attempt. None when unavailable."""
        pass

    @abstractmethod
    def is_quota_limited(self, account_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_expired(self, account_id: str):
        pass

    @abstractmethod
    async def set_sticky_assignment(self, provider_key: str, model_id: str, account_id: str):
        pass

    @abstractmethod
    def get_sticky_assignment(self, provider_key: str, model_id: str) -> Optional[str]:
        pass

    def get_active_account_id(self, provider_key: str) -> Optional[str]:
        """Account explicitly marked active for the provider, if any."""
        return None

    def is_load_balance_enabled(self, provider_key: str) -> bool:
        return False

    def record_quota_exceeded(
        self,
        account_id: str,
        retry_after: Optional[float] = None,
        long_term: bool = False,
    ):
        """Note that an account hit a quota or rate limit."""

    def record_success(self, account_id: str):
        """Note that an account served a request successfully."""


class InMemoryAccountRegistry(AccountRegistry):
    """
    Dict-backed registry.

    Credentials come from a static map or, when given, an async resolver
    (e.g. one that refreshes OAuth tokens).
    """

    def __init__(
        self,
        accounts: Optional[List[Account]] = None,
        credentials: Optional[Dict[str, Credentials]] = None,
        credential_resolver: Optional[CredentialResolver] = None,
        quota: Optional[QuotaCooldownRegistry] = None,
    ):
        self._accounts: Dict[str, Account] = {}
        self._credentials: Dict[str, Credentials] = dict(credentials or {})
        self._credential_resolver = credential_resolver
        self.quota = quota or QuotaCooldownRegistry()
        self._sticky: Dict[Tuple[str, str], str] = {}
        self._active: Dict[str, str] = {}
        self._load_balance: Dict[str, bool] = {}
        self._lock = Lock()

        for account in accounts or []:
            self._accounts[account.id] = account

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def add_account(self, account: Account, credentials: Optional[Credentials] = None):
        with self._lock:
            self._accounts[account.id] = account
            if credentials is not None:
                self._credentials[account.id] = credentials

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def set_active_account(self, provider_key: str, account_id: Optional[str]):
        with self._lock:
            if account_id is None:
                self._active.pop(provider_key, None)
            else:
                self._active[provider_key] = account_id

    def set_load_balance(self, provider_key: str, enabled: bool):
        with self._lock:
            self._load_balance[provider_key] = enabled

    # ------------------------------------------------------------------
    # AccountRegistry
    # ------------------------------------------------------------------

    def list_accounts(self, provider_key: str) -> List[Account]:
        with self._lock:
            return [a for a in self._accounts.values() if a.provider_key == provider_key]

    async def get_credentials(self, account_id: str) -> Optional[Credentials]:
        account = self.get_account(account_id)
        if account is None:
            return None
        if self._credential_resolver is not None:
            return await self._credential_resolver(account)
        with self._lock:
            return self._credentials.get(account_id)

    def is_quota_limited(self, account_id: str) -> bool:
        return self.quota.is_limited(account_id)

    async def mark_expired(self, account_id: str):
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.status == AccountStatus.EXPIRED:
                return
            self._accounts[account_id] = dataclasses.replace(account, status=AccountStatus.EXPIRED)
        logger.warning("Account marked expired", account_id=account_id)

    async def set_sticky_assignment(self, provider_key: str, model_id: str, account_id: str):
        with self._lock:
            self._sticky[(provider_key, model_id)] = account_id

    def get_sticky_assignment(self, provider_key: str, model_id: str) -> Optional[str]:
        with self._lock:
            return self._sticky.get((provider_key, model_id))

    def get_active_account_id(self, provider_key: str) -> Optional[str]:
        with self._lock:
            return self._active.get(provider_key)

    def is_load_balance_enabled(self, provider_key: str) -> bool:
        with self._lock:
            return self._load_balance.get(provider_key, False)

    def record_quota_exceeded(
        self,
        account_id: str,
        retry_after: Optional[float] = None,
        long_term: bool = False,
    ):
        cooldown = self.quota.record_quota_exceeded(account_id, retry_after=retry_after, long_term=long_term)
        logger.info("Account cooling down after quota error", account_id=account_id, cooldown_seconds=cooldown)

    def record_success(self, account_id: str):
        self.quota.record_success(account_id)
