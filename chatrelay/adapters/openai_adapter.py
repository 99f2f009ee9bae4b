"""
chatrelay - OpenAI-Compatible Delta Decoder

Decodes ``chat.completion.chunk`` payloads as sent by OpenAI and the many
OpenAI-compatible upstreams. Reasoning arrives as ``delta.reasoning`` or
``delta.reasoning_content`` depending on the vendor.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import ProtocolError, classify_upstream_error
from ..core.models import FinishReason
from ..streaming.events import StreamDelta, ToolCallDelta, UsageReport
from .base import DeltaDecoder


# ============================================================
# Wire models
# ============================================================

class WireFunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WireToolCallDelta(BaseModel):
    index: Optional[int] = None
    id: Optional[str] = None
    type: Optional[str] = None
    function: Optional[WireFunctionDelta] = None

    model_config = ConfigDict(extra="allow")


class WireDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None
    reasoning: Optional[str] = None
    reasoning_content: Optional[str] = None
    tool_calls: Optional[List[WireToolCallDelta]] = None

    model_config = ConfigDict(extra="allow")


class WireChoice(BaseModel):
    index: int = 0
    delta: Optional[WireDelta] = None
    # Some compatible upstreams put the final message here instead of delta
    message: Optional[WireDelta] = None
    finish_reason: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WireUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class WireChunk(BaseModel):
    id: Optional[str] = None
    model: Optional[str] = None
    choices: List[WireChoice] = Field(default_factory=list)
    usage: Optional[WireUsage] = None

    model_config = ConfigDict(extra="allow")


FINISH_REASON_MAP = {
    "stop": FinishReason.STOP.value,
    "length": FinishReason.LENGTH.value,
    "tool_calls": FinishReason.TOOL_CALLS.value,
    "function_call": FinishReason.TOOL_CALLS.value,
    "content_filter": FinishReason.CONTENT_FILTER.value,
}


class OpenAIDecoder(DeltaDecoder):
    """Decoder for OpenAI chat completion chunks."""

    provider = "openai"

    def __init__(self, provider: Optional[str] = None):
        if provider:
            self.provider = provider

    def decode(self, payload: Dict[str, Any]) -> List[StreamDelta]:
        if not isinstance(payload, dict):
            raise ProtocolError(self.provider, "Chunk is not a JSON object", payload)

        if payload.get("error"):
            raise classify_upstream_error(self.provider, None, payload)

        try:
            chunk = WireChunk.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError(self.provider, f"Unexpected chunk shape: {e.error_count()} errors", payload)

        usage = None
        if chunk.usage is not None:
            usage = UsageReport.from_counts(
                chunk.usage.prompt_tokens,
                chunk.usage.completion_tokens,
                chunk.usage.total_tokens,
            )

        if not chunk.choices:
            # Usage-only terminal chunk
            return [StreamDelta(usage=usage)] if usage else []

        # Only the first choice is relayed
        choice = chunk.choices[0]
        wire_delta = choice.delta or choice.message or WireDelta()

        tool_calls = []
        for position, call in enumerate(wire_delta.tool_calls or []):
            function = call.function or WireFunctionDelta()
            tool_calls.append(
                ToolCallDelta(
                    index=call.index if call.index is not None else position,
                    id=call.id,
                    name=function.name,
                    arguments=function.arguments or "",
                )
            )

        finish_reason = None
        if choice.finish_reason:
            finish_reason = FINISH_REASON_MAP.get(choice.finish_reason, choice.finish_reason)

        return [
            StreamDelta(
                content=wire_delta.content,
                reasoning=wire_delta.reasoning or wire_delta.reasoning_content,
                tool_calls=tool_calls,
                finish_reason=finish_reason,
                usage=usage,
                tool_calls_complete=finish_reason == FinishReason.TOOL_CALLS.value,
            )
        ]
