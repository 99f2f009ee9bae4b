"""
chatrelay - Gemini Delta Decoder

Decodes ``streamGenerateContent?alt=sse`` payloads. Cloud Code style
endpoints wrap the same payload in ``{"response": {...}}``.

Gemini delivers function calls whole, one part each, so every function
call gets its own slot and is marked complete immediately.
"""

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import ProtocolError, classify_upstream_error
from ..core.models import FinishReason
from ..streaming.events import StreamDelta, ToolCallDelta, UsageReport
from .base import DeltaDecoder


class WireFunctionCall(BaseModel):
    name: Optional[str] = None
    args: Any = None
    id: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WirePart(BaseModel):
    text: Optional[str] = None
    thought: Optional[bool] = None
    thoughtSignature: Optional[str] = None
    functionCall: Optional[WireFunctionCall] = None

    model_config = ConfigDict(extra="allow")


class WireContent(BaseModel):
    role: Optional[str] = None
    parts: List[WirePart] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class WireCandidate(BaseModel):
    content: Optional[WireContent] = None
    finishReason: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class WireUsageMetadata(BaseModel):
    promptTokenCount: int = 0
    candidatesTokenCount: int = 0
    thoughtsTokenCount: int = 0
    totalTokenCount: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class WireResponse(BaseModel):
    candidates: List[WireCandidate] = Field(default_factory=list)
    usageMetadata: Optional[WireUsageMetadata] = None

    model_config = ConfigDict(extra="allow")


FINISH_REASON_MAP = {
    "STOP": FinishReason.STOP.value,
    "MAX_TOKENS": FinishReason.LENGTH.value,
    "SAFETY": FinishReason.CONTENT_FILTER.value,
    "RECITATION": FinishReason.CONTENT_FILTER.value,
    "BLOCKLIST": FinishReason.CONTENT_FILTER.value,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER.value,
}


class GeminiDecoder(DeltaDecoder):
    """Decoder for Gemini generateContent stream payloads."""

    provider = "google"

    def __init__(self, provider: Optional[str] = None):
        if provider:
            self.provider = provider
        self._next_slot = 0

    def decode(self, payload: Dict[str, Any]) -> List[StreamDelta]:
        if not isinstance(payload, dict):
            raise ProtocolError(self.provider, "Payload is not a JSON object", payload)

        if payload.get("error"):
            raise classify_upstream_error(self.provider, None, payload)

        body = payload.get("response", payload)
        try:
            response = WireResponse.model_validate(body)
        except ValidationError as e:
            raise ProtocolError(self.provider, f"Unexpected payload shape: {e.error_count()} errors", payload)

        delta = StreamDelta()
        text_parts: List[str] = []
        thought_parts: List[str] = []

        if response.candidates:
            candidate = response.candidates[0]
            parts = candidate.content.parts if candidate.content else []
            for part in parts:
                if part.functionCall is not None:
                    delta.tool_calls.append(self._decode_function_call(part.functionCall))
                    continue
                if part.text is None:
                    continue
                if part.thought:
                    thought_parts.append(part.text)
                else:
                    text_parts.append(part.text)

            if candidate.finishReason:
                delta.finish_reason = FINISH_REASON_MAP.get(candidate.finishReason, candidate.finishReason.lower())

        if thought_parts:
            delta.reasoning = "".join(thought_parts)
        if text_parts:
            delta.content = "".join(text_parts)

        if delta.tool_calls:
            delta.tool_calls_complete = True
            if delta.finish_reason == FinishReason.STOP.value:
                delta.finish_reason = FinishReason.TOOL_CALLS.value

        if response.usageMetadata is not None:
            metadata = response.usageMetadata
            delta.usage = UsageReport.from_counts(
                metadata.promptTokenCount,
                metadata.candidatesTokenCount + metadata.thoughtsTokenCount,
                metadata.totalTokenCount,
            )

        return [delta]

    def _decode_function_call(self, call: WireFunctionCall) -> ToolCallDelta:
        slot = self._next_slot
        self._next_slot += 1

        args = call.args if call.args is not None else {}
        arguments = args if isinstance(args, str) else json.dumps(args)
        return ToolCallDelta(index=slot, id=call.id, name=call.name, arguments=arguments)
