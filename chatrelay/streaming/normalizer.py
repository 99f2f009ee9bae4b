"""
chatrelay - Stream Normalizer

Turns decoded upstream deltas into the caller's response events.

Guarantees regardless of source provider:
- Reasoning, whether delivered on its own channel or as inline tags, comes
  out as ThinkingFragment events grouped into segments
- A thinking segment is closed (empty ThinkingFragment) before any text or
  tool call that follows it
- Tool calls are emitted whole, once each, with parsed arguments
- Usage comes after all content; End is always last
"""

import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.config import ThinkingMarkers
from ..observability.logging import get_logger
from .events import (
    End,
    ResponseEvent,
    StreamDelta,
    TextFragment,
    ThinkingFragment,
    UsageReport,
)
from .thinking_tags import PieceKind, flush_carry, split_thinking_tags
from .tool_calls import ToolCallAssembler

logger = get_logger(__name__)


def new_segment_id() -> str:
    return f"thinking_{uuid.uuid4().hex[:12]}"


@dataclass
class NormalizerState:
    """
    Mutable state of one attempt's stream.

    Never shared between attempts: a retry starts from a fresh state.
    """
    # Thinking segments
    segment_id: Optional[str] = None
    thinking_buffer: str = ""

    # Inline tag splitting
    inside_thinking_tag: bool = False
    tag_carry: str = ""

    # Tool calls (per-slot buffers and dedup keys live in the assembler)
    tool_calls: ToolCallAssembler = field(default_factory=ToolCallAssembler)

    # Usage, latest report wins
    usage: Optional[UsageReport] = None

    # Content tracking
    content_emitted: bool = False
    thinking_emitted: bool = False
    finish_reason: Optional[str] = None
    finished: bool = False


class StreamNormalizer:
    """
    Normalizes one upstream stream into response events.

    Usage:
        normalizer = StreamNormalizer(provider="openai", model="gpt-4o")

        for delta in deltas:
            for event in normalizer.feed(delta):
                deliver(event)

        for event in normalizer.finish():
            deliver(event)
    """

    def __init__(
        self,
        provider: str = "",
        model: str = "",
        markers: ThinkingMarkers = ThinkingMarkers(),
    ):
        self.provider = provider
        self.model = model
        self.markers = markers
        self.state = NormalizerState()

    # ------------------------------------------------------------------
    # Segment handling
    # ------------------------------------------------------------------

    def _append_thinking(self, text: str):
        if not text:
            return
        if self.state.segment_id is None:
            self.state.segment_id = new_segment_id()
        self.state.thinking_buffer += text

    def _flush_thinking(self, events: List[ResponseEvent]):
        if self.state.thinking_buffer and self.state.segment_id is not None:
            events.append(ThinkingFragment(self.state.thinking_buffer, self.state.segment_id))
            self.state.thinking_emitted = True
        self.state.thinking_buffer = ""

    def _close_segment(self, events: List[ResponseEvent]):
        self._flush_thinking(events)
        if self.state.segment_id is not None:
            events.append(ThinkingFragment("", self.state.segment_id))
            self.state.segment_id = None

    def _emit_text(self, text: str, events: List[ResponseEvent]):
        if not text:
            return
        self._close_segment(events)
        events.append(TextFragment(text))
        self.state.content_emitted = True

    def _emit_tool_calls(self, events: List[ResponseEvent]):
        if not self.state.tool_calls.has_pending():
            return
        calls = self.state.tool_calls.finalize()
        if not calls:
            return
        self._close_segment(events)
        events.extend(calls)
        self.state.content_emitted = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: StreamDelta) -> List[ResponseEvent]:
        """Process one delta and return the events it produces, in order."""
        events: List[ResponseEvent] = []
        if self.state.finished:
            logger.debug("Ignoring delta after stream end", provider=self.provider)
            return events

        if delta.reasoning:
            self._append_thinking(delta.reasoning)

        if delta.content:
            split = split_thinking_tags(
                delta.content,
                self.state.inside_thinking_tag,
                self.state.tag_carry,
                self.markers,
            )
            self.state.inside_thinking_tag = split.inside
            self.state.tag_carry = split.carry
            for kind, text in split.pieces:
                if kind == PieceKind.THINKING:
                    self._append_thinking(text)
                else:
                    self._emit_text(text, events)

        for tool_delta in delta.tool_calls:
            self.state.tool_calls.update(tool_delta)

        if delta.usage is not None:
            self.state.usage = delta.usage

        if delta.tool_calls_complete:
            self._emit_tool_calls(events)

        if delta.finish_reason is not None:
            self.state.finish_reason = delta.finish_reason
            self._emit_tool_calls(events)

        self._flush_thinking(events)
        return events

    def finish(self) -> List[ResponseEvent]:
        """
        Flush everything still pending and end the stream.

        Idempotent: a second call returns no events.
        """
        events: List[ResponseEvent] = []
        if self.state.finished:
            return events

        # A pending tag tail at stream end never became a marker
        for kind, text in flush_carry(self.state.inside_thinking_tag, self.state.tag_carry):
            if kind == PieceKind.THINKING:
                self._append_thinking(text)
            else:
                self._emit_text(text, events)
        self.state.tag_carry = ""
        self.state.inside_thinking_tag = False

        self._close_segment(events)
        self._emit_tool_calls(events)

        if self.state.thinking_emitted and not self.state.content_emitted:
            # Thinking-only responses still need a visible message
            events.append(TextFragment(""))

        if self.state.usage is not None:
            events.append(self.state.usage)

        events.append(End())
        self.state.finished = True
        return events
