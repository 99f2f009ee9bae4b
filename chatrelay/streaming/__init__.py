"""
chatrelay - Streaming Module

Stream normalization engine:
- Inline thinking tag splitting across chunk boundaries
- Tool call assembly with duplicate-fragment handling
- Normalization of decoded deltas into response events
"""

from .events import (
    End,
    EventKind,
    ResponseEvent,
    StreamDelta,
    TextFragment,
    ThinkingFragment,
    ToolCall,
    ToolCallDelta,
    UsageReport,
)
from .normalizer import NormalizerState, StreamNormalizer
from .thinking_tags import PieceKind, SplitResult, flush_carry, split_thinking_tags
from .tool_calls import ToolCallAccumulator, ToolCallAssembler

__all__ = [
    # Events
    "End",
    "EventKind",
    "ResponseEvent",
    "StreamDelta",
    "TextFragment",
    "ThinkingFragment",
    "ToolCall",
    "ToolCallDelta",
    "UsageReport",
    # Normalizer
    "NormalizerState",
    "StreamNormalizer",
    # Tag splitting
    "PieceKind",
    "SplitResult",
    "flush_carry",
    "split_thinking_tags",
    # Tool calls
    "ToolCallAccumulator",
    "ToolCallAssembler",
]
