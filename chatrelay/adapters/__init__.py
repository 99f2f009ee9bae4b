"""
chatrelay Adapters Module

Transport boundary: per-dialect delta decoders, SSE framing, the HTTP
stream transport and an in-process stub transport.
"""

from typing import Callable, Optional

from ..core.config import GatewaySettings
from ..core.models import Dialect
from .anthropic_adapter import AnthropicDecoder
from .base import ChunkSource, DeltaDecoder, StreamTransport
from .google_adapter import GeminiDecoder
from .http_transport import HttpStreamTransport
from .openai_adapter import OpenAIDecoder
from .sse import SSEChunkSource, SSEEventParser
from .stub_adapter import StubChunkSource, StubScript, StubTransport

__all__ = [
    "AnthropicDecoder",
    "ChunkSource",
    "DeltaDecoder",
    "GeminiDecoder",
    "HttpStreamTransport",
    "OpenAIDecoder",
    "SSEChunkSource",
    "SSEEventParser",
    "StreamTransport",
    "StubChunkSource",
    "StubScript",
    "StubTransport",
    "get_decoder_factory",
    "create_http_transport",
]


def get_decoder_factory(dialect: str, provider: Optional[str] = None) -> Callable[[], DeltaDecoder]:
    """
    Factory function to get the decoder for a wire dialect.

    Args:
        dialect: Dialect name ("openai", "anthropic", "google")
        provider: Provider key used in errors and metrics (defaults to the dialect)

    Raises:
        ValueError: If the dialect is not supported
    """
    decoders = {
        Dialect.OPENAI.value: OpenAIDecoder,
        Dialect.ANTHROPIC.value: AnthropicDecoder,
        Dialect.GOOGLE.value: GeminiDecoder,
    }

    decoder_class = decoders.get(dialect.lower())
    if not decoder_class:
        raise ValueError(f"Unsupported dialect: {dialect}")

    return lambda: decoder_class(provider)


def create_http_transport(
    provider: str,
    dialect: str = Dialect.OPENAI.value,
    settings: Optional[GatewaySettings] = None,
) -> HttpStreamTransport:
    """Build an HTTP transport for a provider speaking ``dialect``."""
    return HttpStreamTransport(
        get_decoder_factory(dialect, provider),
        provider=provider,
        settings=settings,
    )
