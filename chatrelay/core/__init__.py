"""
chatrelay Core Module

Accounts, credentials, request context, configuration and the error taxonomy.
"""

from .cancellation import CancellationSignal
from .config import GatewaySettings, ThinkingMarkers, get_settings, reset_settings
from .errors import (
    AuthError,
    ErrorDetails,
    ErrorKind,
    NoAvailableAccountsError,
    ProtocolError,
    QuotaError,
    RelayError,
    RequestCancelledError,
    TransportError,
    UpstreamError,
    classify_exception,
    classify_upstream_error,
    is_failover_eligible,
)
from .models import (
    Account,
    AccountStatus,
    ApiKeyCredentials,
    Credentials,
    Dialect,
    FinishReason,
    OAuthCredentials,
    RequestContext,
)

__all__ = [
    # Models
    "Account",
    "AccountStatus",
    "ApiKeyCredentials",
    "CancellationSignal",
    "Credentials",
    "Dialect",
    "FinishReason",
    "OAuthCredentials",
    "RequestContext",
    # Config
    "GatewaySettings",
    "ThinkingMarkers",
    "get_settings",
    "reset_settings",
    # Errors
    "AuthError",
    "ErrorDetails",
    "ErrorKind",
    "NoAvailableAccountsError",
    "ProtocolError",
    "QuotaError",
    "RelayError",
    "RequestCancelledError",
    "TransportError",
    "UpstreamError",
    "classify_exception",
    "classify_upstream_error",
    "is_failover_eligible",
]
