"""
chatrelay - Server-Sent Events

SSE framing for upstream streams: ``data:`` lines are joined until a blank
line ends the event, ``[DONE]`` is skipped, and a data block holding several
concatenated JSON objects is split apart.
"""

import json
from typing import Any, List, Optional

import httpx

from ..core.errors import ProtocolError, classify_exception
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from ..streaming.events import StreamDelta
from .base import ChunkSource, DeltaDecoder

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class SSEEventParser:
    """
    Incremental SSE line parser.

    Feed one line at a time (without the trailing newline); complete event
    data comes back when the event ends.
    """

    def __init__(self):
        self._data_lines: List[str] = []

    def feed_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            # Comment / keep-alive
            return None
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            self._data_lines.append(value)
        return None

    def flush(self) -> Optional[str]:
        """Dispatch a trailing event that was not followed by a blank line."""
        return self._dispatch()

    def _dispatch(self) -> Optional[str]:
        if not self._data_lines:
            return None
        data = "\n".join(self._data_lines)
        self._data_lines = []
        return data


def split_json_objects(data: str) -> List[str]:
    """
    Split text holding several back-to-back JSON objects.

    Tracks brace depth outside of string literals.
    """
    objects = []
    depth = 0
    start = None
    in_string = False
    escaped = False

    for position, char in enumerate(data):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = position
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                objects.append(data[start:position + 1])
                start = None

    return objects


def parse_event_data(data: str, provider: str) -> List[Any]:
    """Decode one event's data into JSON payloads."""
    try:
        return [json.loads(data)]
    except json.JSONDecodeError as e:
        parts = split_json_objects(data)
        if len(parts) < 2:
            raise ProtocolError(provider, f"Invalid JSON in stream event: {e}", data)
        try:
            return [json.loads(part) for part in parts]
        except json.JSONDecodeError as inner:
            raise ProtocolError(provider, f"Invalid JSON in stream event: {inner}", data)


class SSEChunkSource(ChunkSource):
    """
    ChunkSource over a streaming httpx response.

    A malformed payload is logged and skipped; it never ends the stream.
    """

    def __init__(
        self,
        response: httpx.Response,
        decoder: DeltaDecoder,
        provider: str,
        account_id: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__()
        self.response = response
        self.decoder = decoder
        self.provider = provider
        self.account_id = account_id
        self.metrics = metrics or get_metrics()
        self._lines = response.aiter_lines()
        self._parser = SSEEventParser()
        self._pending: List[StreamDelta] = []
        self._exhausted = False

    async def read(self) -> Optional[StreamDelta]:
        while not self._pending:
            if self._exhausted:
                return None
            data = await self._next_event_data()
            if data is None:
                self._exhausted = True
                return None
            if data.strip() == DONE_SENTINEL:
                continue
            self._pending.extend(self._decode(data))
        return self._pending.pop(0)

    async def _next_event_data(self) -> Optional[str]:
        try:
            async for line in self._lines:
                data = self._parser.feed_line(line)
                if data is not None:
                    return data
        except httpx.HTTPError as e:
            raise classify_exception(e, self.provider, account_id=self.account_id)
        return self._parser.flush()

    def _decode(self, data: str) -> List[StreamDelta]:
        deltas: List[StreamDelta] = []
        try:
            payloads = parse_event_data(data, self.provider)
        except ProtocolError as e:
            self._report_protocol_error(e)
            return deltas

        for payload in payloads:
            try:
                decoded = self.decoder.decode(payload)
            except ProtocolError as e:
                self._report_protocol_error(e)
                continue
            deltas.extend(delta for delta in decoded if not delta.is_empty)
        return deltas

    def _report_protocol_error(self, error: ProtocolError):
        self.metrics.record_protocol_error(self.provider)
        logger.warning(
            "Skipping malformed upstream delta",
            error=str(error),
            payload=error.error.details.get("payload", "")[:200],
        )

    async def _release(self):
        await self.response.aclose()
