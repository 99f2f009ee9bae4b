"""
chatrelay - Stream Events

Two vocabularies meet in the streaming engine:

- StreamDelta: one decoded upstream chunk, identical for every dialect.
  Decoders produce these at the transport boundary.
- Response events: what the caller receives, in emission order.
  TextFragment | ThinkingFragment | ToolCall | UsageReport | End
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class EventKind(str, Enum):
    """Types of response events."""
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    END = "end"


# ============================================================
# Upstream deltas
# ============================================================

@dataclass
class ToolCallDelta:
    """A fragment of a tool call within one chunk."""
    index: int = 0
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class UsageReport:
    """Token usage for a response."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    kind = EventKind.USAGE

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int, total_tokens: Optional[int] = None) -> "UsageReport":
        if total_tokens is None:
            total_tokens = prompt_tokens + completion_tokens
        return cls(prompt_tokens, completion_tokens, total_tokens)


@dataclass
class StreamDelta:
    """
    One normalized upstream chunk.

    ``tool_calls_complete`` is set by decoders whose dialect delivers whole
    tool calls, or signals completion explicitly; the normalizer flushes
    pending calls when it sees it.
    """
    content: Optional[str] = None
    reasoning: Optional[str] = None
    tool_calls: List[ToolCallDelta] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[UsageReport] = None
    tool_calls_complete: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            not self.content
            and not self.reasoning
            and not self.tool_calls
            and self.finish_reason is None
            and self.usage is None
            and not self.tool_calls_complete
        )


# ============================================================
# Response events
# ============================================================

@dataclass(frozen=True)
class TextFragment:
    """Visible assistant text."""
    text: str

    kind = EventKind.TEXT


@dataclass(frozen=True)
class ThinkingFragment:
    """Reasoning text. An empty ``text`` closes the segment ``segment_id``."""
    text: str
    segment_id: str

    kind = EventKind.THINKING

    @property
    def is_close(self) -> bool:
        return self.text == ""


@dataclass(frozen=True)
class ToolCall:
    """A finalized tool call with parsed arguments."""
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    kind = EventKind.TOOL_CALL


@dataclass(frozen=True)
class End:
    """Terminal event of a successful response."""

    kind = EventKind.END


ResponseEvent = Union[TextFragment, ThinkingFragment, ToolCall, UsageReport, End]
