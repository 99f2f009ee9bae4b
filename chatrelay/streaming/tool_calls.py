"""
chatrelay - Tool Call Assembly

Handles streaming of tool/function calls across providers.

Tool calls can be streamed incrementally:
1. Initial chunk with tool call ID and function name
2. Multiple delta chunks with partial arguments JSON
3. A completion signal (finish_reason, explicit marker, or stream end)

Some upstreams resend fragments they already sent, or resend the whole
argument string so far instead of only the new part. The accumulator
recognizes both cases so the final argument string matches what the model
actually produced.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from ..observability.logging import get_logger
from .events import ToolCall, ToolCallDelta

logger = get_logger(__name__)


@dataclass
class ToolCallAccumulator:
    """
    Accumulates streaming tool call data for one slot.

    id and name stick once observed. Arguments only ever grow until the
    accumulator is finalized.
    """
    index: int
    id: Optional[str] = None
    function_name: Optional[str] = None
    arguments_buffer: str = ""
    is_finalized: bool = False

    def update(
        self,
        id: Optional[str] = None,
        function_name: Optional[str] = None,
        arguments_delta: str = ""
    ) -> str:
        """Update with new delta data. Returns the text actually appended."""
        if id and not self.id:
            self.id = id
        if function_name and not self.function_name:
            self.function_name = function_name
        return self.append_arguments(arguments_delta)

    def append_arguments(self, fragment: str) -> str:
        if not fragment:
            return ""
        accumulated = self.arguments_buffer
        if accumulated.endswith(fragment):
            # Duplicate of text we already hold
            return ""
        if accumulated and fragment.startswith(accumulated):
            # Cumulative resend: keep only the new suffix
            suffix = fragment[len(accumulated):]
            self.arguments_buffer = fragment
            return suffix
        self.arguments_buffer = accumulated + fragment
        return fragment

    def parse_arguments(self) -> Dict[str, Any]:
        raw = self.arguments_buffer
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(
                "Tool call arguments are not valid JSON",
                tool_name=self.function_name,
                slot=self.index,
            )
            return {"value": raw}
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}


class ToolCallAssembler:
    """
    Tracks multiple tool calls during streaming.

    A single response can contain multiple parallel tool calls. Each is
    tracked by slot index and accumulated separately; finalized calls are
    deduplicated so a resent call is emitted once.
    """

    def __init__(self):
        self._calls: Dict[int, ToolCallAccumulator] = {}
        self._emitted_keys: Set[str] = set()

    def update(self, delta: ToolCallDelta) -> ToolCallAccumulator:
        """
        Apply one tool call delta.

        A delta addressed to a slot that was already finalized starts a new
        call in that slot.
        """
        index = delta.index if delta.index is not None else 0
        call = self._calls.get(index)
        if call is None or call.is_finalized:
            call = ToolCallAccumulator(index=index)
            self._calls[index] = call

        call.update(
            id=delta.id,
            function_name=delta.name,
            arguments_delta=delta.arguments or ""
        )
        return call

    def has_pending(self) -> bool:
        return any(not call.is_finalized for call in self._calls.values())

    def finalize(self) -> List[ToolCall]:
        """
        Finalize every pending slot, in slot order.

        Each accumulator is finalized exactly once. Calls without a name are
        dropped; duplicates of an already emitted call are skipped.
        """
        finalized = []
        for index in sorted(self._calls.keys()):
            call = self._calls[index]
            if call.is_finalized:
                continue
            call.is_finalized = True

            if not call.function_name:
                logger.warning(
                    "Dropping tool call without a function name",
                    slot=index,
                    tool_call_id=call.id,
                )
                continue

            arguments = call.parse_arguments()
            if call.id:
                call_id = call.id
                key = f"{call.id}:{call.function_name}"
            else:
                call_id = f"call_{uuid.uuid4().hex[:24]}"
                key = f"{call.function_name}:{json.dumps(arguments, sort_keys=True)}"

            if key in self._emitted_keys:
                logger.debug("Skipping duplicate tool call", tool_name=call.function_name, slot=index)
                continue
            self._emitted_keys.add(key)

            finalized.append(ToolCall(call_id=call_id, name=call.function_name, arguments=arguments))

        return finalized
