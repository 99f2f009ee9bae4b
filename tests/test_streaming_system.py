"""
chatrelay - Stream Normalizer Tests

Tests for the normalizer's event ordering guarantees:
- Inline thinking tags and reasoning fields become thinking segments
- Segments are closed before text and tool calls
- Tool calls flush on completion markers or at stream end
- Usage precedes End; End is always last
- Thinking-only responses get a placeholder text fragment
"""

from chatrelay.core.config import ThinkingMarkers
from chatrelay.streaming.events import (
    End,
    EventKind,
    StreamDelta,
    TextFragment,
    ThinkingFragment,
    ToolCall,
    ToolCallDelta,
    UsageReport,
)
from chatrelay.streaming.normalizer import StreamNormalizer


def run(normalizer, deltas):
    events = []
    for delta in deltas:
        events.extend(normalizer.feed(delta))
    events.extend(normalizer.finish())
    return events


def kinds(events):
    return [event.kind for event in events]


# ============================================================
# Text and Thinking
# ============================================================

class TestThinkingSegments:
    """Test thinking segment handling."""

    def test_split_inline_tag_example(self):
        """'Hello <thi' + 'nking>abc</thinking> world' yields text, thinking, close, text, End."""
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(content="Hello <thi"),
            StreamDelta(content="nking>abc</thinking> world"),
        ])

        segment = events[1].segment_id
        assert events == [
            TextFragment("Hello "),
            ThinkingFragment("abc", segment),
            ThinkingFragment("", segment),
            TextFragment(" world"),
            End(),
        ]
        assert segment.startswith("thinking_")

    def test_reasoning_field_becomes_thinking(self):
        normalizer = StreamNormalizer()

        first = normalizer.feed(StreamDelta(reasoning="Let me think"))

        assert len(first) == 1
        assert isinstance(first[0], ThinkingFragment)
        assert first[0].text == "Let me think"

    def test_reasoning_and_inline_tags_share_open_segment(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(reasoning="a"),
            StreamDelta(content="<thinking>b</thinking>"),
            StreamDelta(content="answer"),
        ])

        thinking = [e for e in events if isinstance(e, ThinkingFragment)]
        assert [t.text for t in thinking] == ["a", "b", ""]
        assert len({t.segment_id for t in thinking}) == 1

    def test_new_segment_after_close(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(reasoning="one"),
            StreamDelta(content="text"),
            StreamDelta(reasoning="two"),
            StreamDelta(content="more"),
        ])

        thinking = [e for e in events if isinstance(e, ThinkingFragment) and not e.is_close]
        assert thinking[0].segment_id != thinking[1].segment_id

    def test_segment_closed_at_stream_end(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [StreamDelta(content="x <thinking>unfinished")])

        closes = [e for e in events if isinstance(e, ThinkingFragment) and e.is_close]
        assert len(closes) == 1
        assert events[-1] == End()

    def test_pending_tail_flushed_as_text(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [StreamDelta(content="a <thin")])

        text = "".join(e.text for e in events if isinstance(e, TextFragment))
        assert text == "a <thin"

    def test_custom_markers(self):
        normalizer = StreamNormalizer(markers=ThinkingMarkers("<think>", "</think>"))

        events = run(normalizer, [StreamDelta(content="<think>r</think>ok")])

        assert [e.text for e in events if isinstance(e, ThinkingFragment)] == ["r", ""]
        assert [e.text for e in events if isinstance(e, TextFragment)] == ["ok"]


class TestPlaceholderText:
    """Thinking-only responses still need a visible message."""

    def test_reasoning_only_gets_placeholder(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [StreamDelta(reasoning="hmm")])

        segment = events[0].segment_id
        assert events == [
            ThinkingFragment("hmm", segment),
            ThinkingFragment("", segment),
            TextFragment(""),
            End(),
        ]

    def test_no_placeholder_when_text_emitted(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [StreamDelta(reasoning="hmm"), StreamDelta(content="Answer")])

        assert TextFragment("") not in events

    def test_no_placeholder_when_tool_call_emitted(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(reasoning="hmm"),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="f", arguments="{}")]),
        ])

        assert TextFragment("") not in events

    def test_whitespace_text_counts_as_content(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [StreamDelta(reasoning="hmm"), StreamDelta(content="\n")])

        texts = [e for e in events if isinstance(e, TextFragment)]
        assert texts == [TextFragment("\n")]

    def test_empty_stream_has_only_end(self):
        assert run(StreamNormalizer(), []) == [End()]


# ============================================================
# Tool Calls
# ============================================================

class TestToolCallEmission:
    """Test tool call flushing."""

    def test_segment_closed_before_tool_call(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(reasoning="plan"),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="search", arguments='{"q":')]),
            StreamDelta(
                tool_calls=[ToolCallDelta(index=0, arguments=' "x"}')],
                finish_reason="tool_calls",
                tool_calls_complete=True,
            ),
        ])

        segment = events[0].segment_id
        assert events == [
            ThinkingFragment("plan", segment),
            ThinkingFragment("", segment),
            ToolCall("call_1", "search", {"q": "x"}),
            End(),
        ]

    def test_tool_calls_flushed_at_stream_end_without_marker(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="f", arguments='{"a": 1}')]),
        ])

        assert events == [ToolCall("call_1", "f", {"a": 1}), End()]

    def test_completion_marker_flushes_immediately(self):
        normalizer = StreamNormalizer()
        normalizer.feed(StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="f")]))

        events = normalizer.feed(StreamDelta(tool_calls_complete=True))

        assert kinds(events) == [EventKind.TOOL_CALL]

    def test_each_tool_call_emitted_once(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="f", arguments="{}")]),
            StreamDelta(finish_reason="tool_calls", tool_calls_complete=True),
            StreamDelta(tool_calls=[ToolCallDelta(index=0, id="call_1", name="f", arguments="{}")]),
        ])

        assert kinds(events).count(EventKind.TOOL_CALL) == 1


# ============================================================
# Usage and Termination
# ============================================================

class TestUsageAndEnd:
    """Test usage ordering and stream termination."""

    def test_usage_after_content_before_end(self):
        normalizer = StreamNormalizer()
        usage = UsageReport.from_counts(10, 5)

        events = run(normalizer, [
            StreamDelta(content="hi"),
            StreamDelta(finish_reason="stop"),
            StreamDelta(usage=usage),
        ])

        assert events == [TextFragment("hi"), usage, End()]
        assert usage.total_tokens == 15

    def test_latest_usage_wins(self):
        normalizer = StreamNormalizer()

        events = run(normalizer, [
            StreamDelta(content="hi", usage=UsageReport.from_counts(1, 1)),
            StreamDelta(usage=UsageReport.from_counts(10, 20, 30)),
        ])

        usage = [e for e in events if isinstance(e, UsageReport)]
        assert usage == [UsageReport(10, 20, 30)]

    def test_finish_is_idempotent(self):
        normalizer = StreamNormalizer()
        normalizer.feed(StreamDelta(content="hi"))

        assert normalizer.finish()[-1] == End()
        assert normalizer.finish() == []

    def test_deltas_after_finish_ignored(self):
        normalizer = StreamNormalizer()
        normalizer.finish()

        assert normalizer.feed(StreamDelta(content="late")) == []

    def test_finish_reason_recorded(self):
        normalizer = StreamNormalizer()
        normalizer.feed(StreamDelta(content="x", finish_reason="length"))

        assert normalizer.state.finish_reason == "length"
