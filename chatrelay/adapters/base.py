"""
chatrelay - Transport Base

Abstract interfaces at the transport boundary.

- DeltaDecoder: one per wire dialect; decodes vendor JSON into StreamDelta
- ChunkSource: one open upstream stream, yielding decoded deltas
- StreamTransport: opens chunk sources

Vendor variance stops here: everything past a ChunkSource only ever sees
StreamDelta.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from ..core.models import Credentials
from ..streaming.events import StreamDelta


class DeltaDecoder(ABC):
    """
    Decodes one vendor payload into zero or more deltas.

    Decoders may keep state across payloads of the same stream (Anthropic
    spreads usage across two events), so transports create one per stream.

    Implementations raise ProtocolError for a malformed payload and a
    classified RelayError for an error payload delivered in-stream.
    """

    provider: str = ""

    @abstractmethod
    def decode(self, payload: Dict[str, Any]) -> List[StreamDelta]:
        pass


class ChunkSource(ABC):
    """
    One upstream stream: lazy, finite, not restartable.

    Iteration ends on upstream completion and raises a classified RelayError
    on failure. ``aclose`` releases the connection and is safe to call twice;
    use ``async with`` so it runs on every exit path.
    """

    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def read(self) -> Optional[StreamDelta]:
        """Next delta, or None once the stream has ended."""
        pass

    async def _release(self):
        """Release the underlying connection."""

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        await self._release()

    def __aiter__(self) -> AsyncIterator[StreamDelta]:
        return self

    async def __anext__(self) -> StreamDelta:
        delta = await self.read()
        if delta is None:
            raise StopAsyncIteration
        return delta

    async def __aenter__(self) -> "ChunkSource":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class StreamTransport(ABC):
    """Opens upstream streams for a resolved credential."""

    @abstractmethod
    async def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        body: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> ChunkSource:
        """
        Open a stream.

        ``account_id`` only labels errors and logs. Raises a classified
        RelayError if the upstream rejects the request before any data
        arrives.
        """
        pass

    async def close(self):
        """Release transport-wide resources."""
