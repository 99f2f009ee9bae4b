"""
chatrelay - Core Data Models

Accounts, credentials and the per-request context shared by the stream
normalization engine and the failover orchestrator.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .cancellation import CancellationSignal


# ============================================================
# Enums
# ============================================================

class Dialect(str, Enum):
    """Wire dialects understood by the delta decoders."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class AccountStatus(str, Enum):
    """Lifecycle status of an upstream account."""
    ACTIVE = "active"
    EXPIRED = "expired"
    DISABLED = "disabled"


class FinishReason(str, Enum):
    """Normalized completion finish reasons."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


# ============================================================
# Accounts
# ============================================================

@dataclass(frozen=True)
class Account:
    """An upstream credential set. Owned by the registry; read-only here."""
    id: str
    provider_key: str
    display_name: str = ""
    status: AccountStatus = AccountStatus.ACTIVE
    is_default: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


# ============================================================
# Credentials
# ============================================================

@dataclass(frozen=True)
class ApiKeyCredentials:
    """Static API key."""
    api_key: str
    endpoint: Optional[str] = None
    custom_headers: Tuple[Tuple[str, str], ...] = ()

    def auth_headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        headers.update(dict(self.custom_headers))
        return headers


@dataclass(frozen=True)
class OAuthCredentials:
    """
    OAuth access token, optionally bound to an account-specific endpoint.

    Refresh happens inside the credential provider; the relay only ever sees
    a token that was valid when it was resolved.
    """
    access_token: str
    endpoint: Optional[str] = None
    expires_at: Optional[datetime] = None

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


Credentials = Union[ApiKeyCredentials, OAuthCredentials]


# ============================================================
# Request Context
# ============================================================

@dataclass(frozen=True)
class RequestContext:
    """
    Everything about one logical request that stays fixed across retries.

    ``endpoint`` is the provider's default streaming URL; credentials carrying
    an endpoint override take precedence over it.
    """
    provider_key: str
    model_id: str
    endpoint: str
    messages: Tuple[Dict[str, Any], ...] = ()
    tools: Tuple[Dict[str, Any], ...] = ()
    max_tokens: Optional[int] = None
    max_input_tokens: Optional[int] = None
    extra_body: Dict[str, Any] = field(default_factory=dict)
    cancel: CancellationSignal = field(default_factory=CancellationSignal)
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")

    def build_body(self) -> Dict[str, Any]:
        """OpenAI-compatible streaming body. Vendor-specific mapping is external."""
        body: Dict[str, Any] = {
            "model": self.model_id,
            "messages": list(self.messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.tools:
            body["tools"] = list(self.tools)
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        body.update(self.extra_body)
        return body
