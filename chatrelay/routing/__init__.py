"""
chatrelay - Routing Module

Account failover orchestration with:
- Candidate selection (sticky accounts, round-robin, quota tiers)
- Quota cooldowns with exponential backoff
- Sequential failover across accounts with semantic drift protection
"""

from .accounts import AccountRegistry, CredentialResolver, InMemoryAccountRegistry
from .affinity import RotationStore
from .orchestrator import (
    AttemptPhase,
    AttemptRecord,
    AttemptState,
    ContentPhase,
    EventCallback,
    OrchestratorConfig,
    RequestOrchestrator,
    RequestOutcome,
    RequestPhaseTracker,
)
from .quota import QuotaCooldown, QuotaCooldownConfig, QuotaCooldownRegistry, QuotaState
from .selector import AccountSelector, SelectionResult

__all__ = [
    # Accounts
    "AccountRegistry",
    "CredentialResolver",
    "InMemoryAccountRegistry",
    # Selection
    "AccountSelector",
    "RotationStore",
    "SelectionResult",
    # Quota
    "QuotaCooldown",
    "QuotaCooldownConfig",
    "QuotaCooldownRegistry",
    "QuotaState",
    # Orchestration
    "AttemptPhase",
    "AttemptRecord",
    "AttemptState",
    "ContentPhase",
    "EventCallback",
    "OrchestratorConfig",
    "RequestOrchestrator",
    "RequestOutcome",
    "RequestPhaseTracker",
]
