"""
chatrelay - Account Selector

Produces the ordered list of accounts to try for one request.

Without load balancing the list has a single entry: the sticky account for
the model, else the provider's active/default account.

With load balancing every usable account is a candidate:
1. Sort by creation time
2. Rotate so the list resumes after the account last used for this model
3. Move the sticky (else active) account to the front
4. Drop quota-limited accounts, unless that would drop all of them
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..core.models import Account
from ..observability.logging import get_logger
from .accounts import AccountRegistry
from .affinity import RotationStore

logger = get_logger(__name__)


@dataclass
class SelectionResult:
    """Candidates for one request, in attempt order."""
    candidates: List[Account] = field(default_factory=list)
    load_balance: bool = False
    preferred_account_id: Optional[str] = None
    quota_filtered: int = 0

    @property
    def candidate_ids(self) -> List[str]:
        return [account.id for account in self.candidates]


def _move_to_front(accounts: List[Account], account_id: str) -> List[Account]:
    preferred = [a for a in accounts if a.id == account_id]
    rest = [a for a in accounts if a.id != account_id]
    return preferred + rest


def _rotate_after(accounts: List[Account], last_used_id: Optional[str]) -> List[Account]:
    for position, account in enumerate(accounts):
        if account.id == last_used_id:
            return accounts[position + 1:] + accounts[:position + 1]
    return accounts


class AccountSelector:
    """Builds candidate lists from registry and rotation state."""

    def __init__(self, registry: AccountRegistry, rotation: Optional[RotationStore] = None):
        self.registry = registry
        self.rotation = rotation or RotationStore()

    def usable_accounts(self, provider_key: str) -> List[Account]:
        """Active accounts, or every account when none is active."""
        accounts = self.registry.list_accounts(provider_key)
        active = [a for a in accounts if a.is_active]
        return active or list(accounts)

    def select(
        self,
        provider_key: str,
        model_id: str,
        load_balance: Optional[bool] = None,
    ) -> SelectionResult:
        if load_balance is None:
            load_balance = self.registry.is_load_balance_enabled(provider_key)

        usable = self.usable_accounts(provider_key)
        if not usable:
            return SelectionResult(load_balance=load_balance)

        by_id = {account.id: account for account in usable}
        sticky_id = self.registry.get_sticky_assignment(provider_key, model_id)
        sticky = by_id.get(sticky_id) if sticky_id else None
        active_id = self.registry.get_active_account_id(provider_key)
        active = by_id.get(active_id) if active_id else None

        if not load_balance:
            chosen = sticky or active or next((a for a in usable if a.is_default), None) or usable[0]
            return SelectionResult(
                candidates=[chosen],
                load_balance=False,
                preferred_account_id=chosen.id,
            )

        ordered = sorted(usable, key=lambda a: a.created_at)
        ordered = _rotate_after(ordered, self.rotation.get_last_used(provider_key, model_id))

        preferred = sticky or active
        if preferred is not None:
            ordered = _move_to_front(ordered, preferred.id)

        available = [a for a in ordered if not self.registry.is_quota_limited(a.id)]
        candidates = available or ordered

        result = SelectionResult(
            candidates=candidates,
            load_balance=True,
            preferred_account_id=preferred.id if preferred else None,
            quota_filtered=len(ordered) - len(available) if available else 0,
        )
        logger.debug(
            "Selected account candidates",
            candidates=result.candidate_ids,
            quota_filtered=result.quota_filtered,
        )
        return result
