"""
chatrelay - Configuration

Environment-driven settings for the relay. Storage of per-provider routing
configuration (load balancing flags, sticky assignments) lives in the account
registry, not here.
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_THINKING_OPEN_TAG = "<thinking>"
DEFAULT_THINKING_CLOSE_TAG = "</thinking>"


def _is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: expected a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"Invalid {name}: must be positive, got {raw!r}")
    return value


def _get_tag(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    if not raw.strip():
        raise ValueError(f"Invalid {name}: tag cannot be empty")
    return raw


@dataclass(frozen=True)
class ThinkingMarkers:
    """Inline markers some providers use to embed reasoning in text."""
    open_tag: str = DEFAULT_THINKING_OPEN_TAG
    close_tag: str = DEFAULT_THINKING_CLOSE_TAG


@dataclass(frozen=True)
class GatewaySettings:
    """Runtime settings shared by transports and the orchestrator."""
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    thinking_markers: ThinkingMarkers = ThinkingMarkers()
    quota_cooldown_seconds: float = 60.0
    quota_max_cooldown_seconds: float = 900.0
    allow_retry_after_content: bool = False

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """
        Build settings from environment variables.

        CHATRELAY_CONNECT_TIMEOUT / CHATRELAY_READ_TIMEOUT: seconds per attempt.
        CHATRELAY_THINKING_OPEN_TAG / CHATRELAY_THINKING_CLOSE_TAG: inline markers.
        CHATRELAY_QUOTA_COOLDOWN_SECONDS / CHATRELAY_QUOTA_MAX_COOLDOWN_SECONDS:
            base and ceiling of the quota backoff.
        CHATRELAY_RETRY_AFTER_CONTENT: fail over even after events were forwarded.
        """
        base_cooldown = _get_float("CHATRELAY_QUOTA_COOLDOWN_SECONDS", 60.0)
        max_cooldown = _get_float("CHATRELAY_QUOTA_MAX_COOLDOWN_SECONDS", 900.0)
        if max_cooldown < base_cooldown:
            raise ValueError(
                "Invalid CHATRELAY_QUOTA_MAX_COOLDOWN_SECONDS: "
                "must not be smaller than CHATRELAY_QUOTA_COOLDOWN_SECONDS"
            )
        return cls(
            connect_timeout=_get_float("CHATRELAY_CONNECT_TIMEOUT", 10.0),
            read_timeout=_get_float("CHATRELAY_READ_TIMEOUT", 120.0),
            thinking_markers=ThinkingMarkers(
                open_tag=_get_tag("CHATRELAY_THINKING_OPEN_TAG", DEFAULT_THINKING_OPEN_TAG),
                close_tag=_get_tag("CHATRELAY_THINKING_CLOSE_TAG", DEFAULT_THINKING_CLOSE_TAG),
            ),
            quota_cooldown_seconds=base_cooldown,
            quota_max_cooldown_seconds=max_cooldown,
            allow_retry_after_content=_is_truthy(os.getenv("CHATRELAY_RETRY_AFTER_CONTENT")),
        )


_settings: Optional[GatewaySettings] = None


def get_settings() -> GatewaySettings:
    """Get the process-wide settings, reading the environment once."""
    global _settings
    if _settings is None:
        _settings = GatewaySettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
