"""
chatrelay - Error Definitions

Error taxonomy for upstream failures. Every error raised by the relay is a
RelayError carrying an ErrorDetails record; the concrete subclass decides
whether the orchestrator may fail over to another account.

Classification prefers structured signals (HTTP status, vendor error status
and code) and only falls back to message inspection when nothing structured
is available.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx


class ErrorKind(str, Enum):
    """Error classification."""
    TRANSPORT = "transport_error"
    QUOTA = "quota_error"
    AUTH = "auth_error"
    PROTOCOL = "protocol_error"
    CANCELLED = "cancelled"
    UPSTREAM = "upstream_error"
    NO_ACCOUNTS = "no_available_accounts"


@dataclass
class ErrorDetails:
    """Full error information attached to every relay exception."""
    # Core fields (always present)
    code: str
    message: str
    kind: ErrorKind

    # Context fields
    provider: Optional[str] = None
    account_id: Optional[str] = None
    model: Optional[str] = None
    http_status: Optional[int] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[float] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.account_id:
            result["account_id"] = self.account_id
        if self.model:
            result["model"] = self.model
        if self.http_status is not None:
            result["http_status"] = self.http_status
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class RelayError(Exception):
    """Base exception for all chatrelay errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable


# ============================================================
# Failover-eligible errors
# ============================================================

class TransportError(RelayError):
    """Connect, read or timeout failure talking to the upstream."""

    def __init__(
        self,
        provider: str,
        message: str = "",
        timeout: bool = False,
        account_id: Optional[str] = None,
        request_id: str = ""
    ):
        code = "timeout" if timeout else "connection_error"
        super().__init__(
            ErrorDetails(
                code=code,
                message=message or f"Failed to reach {provider}",
                kind=ErrorKind.TRANSPORT,
                provider=provider,
                account_id=account_id,
                request_id=request_id,
                retryable=True,
                details={"timeout": timeout}
            ),
            status_code=504 if timeout else 502
        )
        self.timeout = timeout


class QuotaError(RelayError):
    """
    Account quota exhausted or rate limited.

    ``long_term`` distinguishes an exhausted quota (the account is unusable
    until its reset) from a short-term rate limit.
    """

    def __init__(
        self,
        provider: str,
        message: str = "",
        retry_after: Optional[float] = None,
        long_term: bool = False,
        account_id: Optional[str] = None,
        http_status: Optional[int] = 429,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code="quota_exhausted" if long_term else "rate_limited",
                message=message or f"{provider} quota exceeded",
                kind=ErrorKind.QUOTA,
                provider=provider,
                account_id=account_id,
                http_status=http_status,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
                details={"long_term": long_term}
            ),
            status_code=429
        )
        self.long_term = long_term


class AuthError(RelayError):
    """Credential expired, invalid or missing."""

    def __init__(
        self,
        provider: str,
        message: str = "",
        account_id: Optional[str] = None,
        http_status: Optional[int] = 401,
        code: str = "auth_failed",
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message or f"{provider} authentication failed",
                kind=ErrorKind.AUTH,
                provider=provider,
                account_id=account_id,
                http_status=http_status,
                request_id=request_id,
                retryable=True
            ),
            status_code=401
        )


# ============================================================
# Terminal errors
# ============================================================

class ProtocolError(RelayError):
    """A single upstream delta could not be decoded."""

    def __init__(self, provider: str, message: str, payload: Any = None):
        details = {}
        if payload is not None:
            details["payload"] = payload if isinstance(payload, str) else repr(payload)
        super().__init__(
            ErrorDetails(
                code="malformed_delta",
                message=message,
                kind=ErrorKind.PROTOCOL,
                provider=provider,
                retryable=False,
                details=details
            ),
            status_code=502
        )


class RequestCancelledError(RelayError):
    """The caller cancelled the request."""

    def __init__(self, provider: Optional[str] = None, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="request_cancelled",
                message="Request was cancelled by the caller",
                kind=ErrorKind.CANCELLED,
                provider=provider,
                request_id=request_id,
                retryable=False
            ),
            status_code=499
        )


class UpstreamError(RelayError):
    """Any other upstream failure. Never triggers failover."""

    def __init__(
        self,
        provider: str,
        message: str,
        http_status: Optional[int] = None,
        code: str = "",
        account_id: Optional[str] = None,
        request_id: str = ""
    ):
        super().__init__(
            ErrorDetails(
                code=code or (f"upstream_{http_status}" if http_status else "upstream_error"),
                message=message,
                kind=ErrorKind.UPSTREAM,
                provider=provider,
                account_id=account_id,
                http_status=http_status,
                request_id=request_id,
                retryable=False
            ),
            status_code=502 if http_status is None or http_status >= 500 else http_status
        )


class NoAvailableAccountsError(RelayError):
    """The selector produced no candidate accounts."""

    def __init__(self, provider: str, model: str = "", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code="no_available_accounts",
                message=f"No available accounts for {provider}",
                kind=ErrorKind.NO_ACCOUNTS,
                provider=provider,
                model=model or None,
                request_id=request_id,
                retryable=False
            ),
            status_code=503
        )


def is_failover_eligible(error: BaseException) -> bool:
    """Quota, auth and transport failures may move on to the next account."""
    return isinstance(error, (QuotaError, AuthError, TransportError))


# ============================================================
# Classification
# ============================================================

QUOTA_MESSAGE_MARKERS = (
    "quota exceeded",
    "rate limited",
    "rate limit exceeded",
    "http 429",
    '"code": 429',
    "resource_exhausted",
    "resource has been exhausted",
)

LONG_TERM_QUOTA_CODES = {"insufficient_quota", "billing_hard_limit_reached"}
LONG_TERM_QUOTA_MARKERS = ("quota exhausted", "exceeded your current quota")

AUTH_VENDOR_STATUSES = {"UNAUTHENTICATED", "PERMISSION_DENIED"}
AUTH_VENDOR_TYPES = {"authentication_error", "permission_error", "invalid_api_key"}
QUOTA_VENDOR_TYPES = {"rate_limit_error", "insufficient_quota", "rate_limit_exceeded"}


def _parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _extract_error_info(body: Any) -> Dict[str, Any]:
    """Pull the vendor ``error`` object out of a decoded or raw body."""
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        try:
            body = json.loads(body) if body.strip() else {}
        except ValueError:
            return {"message": body}
    if isinstance(body, list) and body:
        # Gemini occasionally wraps the error in a one-element array
        body = body[0]
    if not isinstance(body, dict):
        return {}
    info = body.get("error", body)
    if isinstance(info, str):
        return {"message": info}
    return info if isinstance(info, dict) else {}


def _message_is_quota(message: str) -> bool:
    lowered = message.lower()
    if any(marker in lowered for marker in QUOTA_MESSAGE_MARKERS + LONG_TERM_QUOTA_MARKERS):
        return True
    return "429" in lowered and "exhausted" in lowered


def _message_is_long_term_quota(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in LONG_TERM_QUOTA_MARKERS)


def classify_upstream_error(
    provider: str,
    status_code: Optional[int],
    body: Any = None,
    headers: Optional[Mapping[str, str]] = None,
    account_id: Optional[str] = None,
    request_id: str = ""
) -> RelayError:
    """
    Map an upstream failure response to a classified relay error.

    Works for both HTTP error responses and error payloads delivered inside
    an otherwise healthy stream (``status_code`` is None in that case).
    """
    info = _extract_error_info(body)
    message = str(info.get("message") or (body if isinstance(body, str) else "") or "")
    vendor_status = str(info.get("status") or "")
    vendor_type = str(info.get("type") or "")
    vendor_code = info.get("code")
    vendor_code_str = str(vendor_code) if vendor_code is not None else ""
    retry_after = _parse_retry_after(headers)

    if not message:
        message = f"{provider} returned error {status_code}" if status_code else f"{provider} returned an error"

    long_term = (
        vendor_code_str in LONG_TERM_QUOTA_CODES
        or vendor_type in LONG_TERM_QUOTA_CODES
        or _message_is_long_term_quota(message)
    )

    # 429 - Rate limit / quota
    if (
        status_code == 429
        or vendor_status == "RESOURCE_EXHAUSTED"
        or vendor_code_str == "429"
        or vendor_type in QUOTA_VENDOR_TYPES
        or vendor_code_str in LONG_TERM_QUOTA_CODES
    ):
        return QuotaError(
            provider, message, retry_after=retry_after, long_term=long_term,
            account_id=account_id, http_status=status_code, request_id=request_id
        )

    # 401/403 - Authentication / Permission
    if (
        status_code in (401, 403)
        or vendor_status in AUTH_VENDOR_STATUSES
        or vendor_type in AUTH_VENDOR_TYPES
        or vendor_code_str in AUTH_VENDOR_TYPES
    ):
        return AuthError(
            provider, message, account_id=account_id,
            http_status=status_code, request_id=request_id
        )

    # Nothing structured matched; inspect the message as a last resort
    if _message_is_quota(message):
        return QuotaError(
            provider, message, retry_after=retry_after, long_term=long_term,
            account_id=account_id, http_status=status_code, request_id=request_id
        )

    return UpstreamError(
        provider, message, http_status=status_code,
        code=vendor_status.lower() or vendor_type or "",
        account_id=account_id, request_id=request_id
    )


def classify_exception(
    error: BaseException,
    provider: str,
    account_id: Optional[str] = None,
    request_id: str = ""
) -> RelayError:
    """
    Convert any exception raised during an attempt into a RelayError.

    Already-classified errors pass through untouched.
    """
    if isinstance(error, RelayError):
        return error

    # Handle httpx errors
    if isinstance(error, httpx.TimeoutException):
        phase = "connect" if isinstance(error, httpx.ConnectTimeout) else "read"
        return TransportError(
            provider, f"{provider} {phase} timed out", timeout=True,
            account_id=account_id, request_id=request_id
        )

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            body = response.text
        except httpx.ResponseNotRead:
            body = str(error)
        return classify_upstream_error(
            provider, response.status_code, body, response.headers,
            account_id=account_id, request_id=request_id
        )

    if isinstance(error, httpx.TransportError):
        return TransportError(
            provider, f"{provider} connection failed: {error}",
            account_id=account_id, request_id=request_id
        )

    # Unknown error - the message is all we have
    message = str(error) or type(error).__name__
    if _message_is_quota(message):
        return QuotaError(
            provider, message, long_term=_message_is_long_term_quota(message),
            account_id=account_id, http_status=None, request_id=request_id
        )

    return UpstreamError(
        provider, message, code="unknown_error",
        account_id=account_id, request_id=request_id
    )
