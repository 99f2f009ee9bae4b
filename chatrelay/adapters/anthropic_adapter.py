"""
chatrelay - Anthropic Messages Delta Decoder

Anthropic streams typed events rather than chunks:
- message_start: carries input token usage
- content_block_start: opens a text, thinking or tool_use block at an index
- content_block_delta: text_delta | thinking_delta | input_json_delta
- content_block_stop: closes a block
- message_delta: stop_reason and output token usage
- message_stop: end of message
- error: in-stream failure
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from ..core.errors import ProtocolError, classify_upstream_error
from ..core.models import FinishReason
from ..streaming.events import StreamDelta, ToolCallDelta, UsageReport
from .base import DeltaDecoder


class WireContentBlock(BaseModel):
    type: str
    id: Optional[str] = None
    name: Optional[str] = None
    text: Optional[str] = None
    thinking: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WireBlockDelta(BaseModel):
    type: Optional[str] = None
    text: Optional[str] = None
    thinking: Optional[str] = None
    partial_json: Optional[str] = None
    stop_reason: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WireUsage(BaseModel):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class WireMessage(BaseModel):
    usage: Optional[WireUsage] = None

    model_config = ConfigDict(extra="allow")


class WireEvent(BaseModel):
    type: str
    index: Optional[int] = None
    message: Optional[WireMessage] = None
    content_block: Optional[WireContentBlock] = None
    delta: Optional[WireBlockDelta] = None
    usage: Optional[WireUsage] = None

    model_config = ConfigDict(extra="allow")


STOP_REASON_MAP = {
    "end_turn": FinishReason.STOP.value,
    "stop_sequence": FinishReason.STOP.value,
    "max_tokens": FinishReason.LENGTH.value,
    "tool_use": FinishReason.TOOL_CALLS.value,
    "refusal": FinishReason.CONTENT_FILTER.value,
}

IGNORED_EVENTS = {"ping", "content_block_stop", "message_stop"}


class AnthropicDecoder(DeltaDecoder):
    """
    Decoder for Anthropic message stream events.

    Stateful per stream: input tokens from message_start are combined with
    output tokens from message_delta into one usage report.
    """

    provider = "anthropic"

    def __init__(self, provider: Optional[str] = None):
        if provider:
            self.provider = provider
        self._input_tokens = 0

    def decode(self, payload: Dict[str, Any]) -> List[StreamDelta]:
        if not isinstance(payload, dict):
            raise ProtocolError(self.provider, "Event is not a JSON object", payload)

        if payload.get("type") == "error":
            raise classify_upstream_error(self.provider, None, payload)

        try:
            event = WireEvent.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError(self.provider, f"Unexpected event shape: {e.error_count()} errors", payload)

        if event.type == "message_start":
            if event.message and event.message.usage and event.message.usage.input_tokens:
                self._input_tokens = event.message.usage.input_tokens
            return []

        if event.type == "content_block_start":
            return self._decode_block_start(event)

        if event.type == "content_block_delta":
            return self._decode_block_delta(event)

        if event.type == "message_delta":
            return self._decode_message_delta(event)

        if event.type in IGNORED_EVENTS:
            return []

        raise ProtocolError(self.provider, f"Unknown event type: {event.type}", payload)

    def _decode_block_start(self, event: WireEvent) -> List[StreamDelta]:
        block = event.content_block
        if block is None:
            raise ProtocolError(self.provider, "content_block_start without content_block")

        if block.type == "tool_use":
            return [
                StreamDelta(
                    tool_calls=[ToolCallDelta(index=event.index or 0, id=block.id, name=block.name)]
                )
            ]
        if block.type == "thinking" and block.thinking:
            return [StreamDelta(reasoning=block.thinking)]
        if block.type == "text" and block.text:
            return [StreamDelta(content=block.text)]
        return []

    def _decode_block_delta(self, event: WireEvent) -> List[StreamDelta]:
        delta = event.delta
        if delta is None:
            raise ProtocolError(self.provider, "content_block_delta without delta")

        if delta.type == "text_delta":
            return [StreamDelta(content=delta.text or "")]
        if delta.type == "thinking_delta":
            return [StreamDelta(reasoning=delta.thinking or "")]
        if delta.type == "input_json_delta":
            return [
                StreamDelta(
                    tool_calls=[ToolCallDelta(index=event.index or 0, arguments=delta.partial_json or "")]
                )
            ]
        # signature_delta and future delta kinds carry nothing we relay
        return []

    def _decode_message_delta(self, event: WireEvent) -> List[StreamDelta]:
        finish_reason = None
        if event.delta is not None and event.delta.stop_reason:
            finish_reason = STOP_REASON_MAP.get(event.delta.stop_reason, event.delta.stop_reason)

        usage = None
        if event.usage is not None:
            input_tokens = event.usage.input_tokens or self._input_tokens
            usage = UsageReport.from_counts(input_tokens, event.usage.output_tokens or 0)

        return [
            StreamDelta(
                finish_reason=finish_reason,
                usage=usage,
                tool_calls_complete=finish_reason == FinishReason.TOOL_CALLS.value,
            )
        ]

