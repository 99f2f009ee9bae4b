"""
chatrelay - Stub Transport

Deterministic in-process transport used for smoke/integration testing.
No network calls, no external provider keys required.

Each account gets a script: the deltas to yield, and optionally an error to
raise when opening or after a number of deltas, or a read that never
completes (for timeout and cancellation paths).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..core.models import Credentials
from ..streaming.events import StreamDelta
from .base import ChunkSource, StreamTransport


@dataclass
class StubScript:
    """Scripted behaviour of one stream."""
    deltas: List[StreamDelta] = field(default_factory=list)
    open_error: Optional[BaseException] = None
    fail_after: Optional[int] = None
    error: Optional[BaseException] = None
    read_delay: float = 0.0
    hang_after: Optional[int] = None


class StubChunkSource(ChunkSource):
    """Replays a script."""

    def __init__(self, script: StubScript):
        super().__init__()
        self.script = script
        self.position = 0

    async def read(self) -> Optional[StreamDelta]:
        if self.closed:
            return None
        script = self.script
        if script.hang_after is not None and self.position >= script.hang_after:
            await asyncio.Event().wait()
        if script.read_delay:
            await asyncio.sleep(script.read_delay)
        if script.fail_after is not None and self.position >= script.fail_after and script.error is not None:
            raise script.error
        if self.position >= len(script.deltas):
            return None
        delta = script.deltas[self.position]
        self.position += 1
        return delta


class StubTransport(StreamTransport):
    """
    Transport returning scripted streams keyed by account id.

    A list of scripts is consumed one per opened stream; the last script is
    reused once the list runs out.
    """

    def __init__(
        self,
        scripts: Optional[Dict[str, Union[StubScript, Sequence[StubScript]]]] = None,
        default: Optional[StubScript] = None,
    ):
        self.scripts: Dict[str, List[StubScript]] = {}
        for account_id, script in (scripts or {}).items():
            self.scripts[account_id] = [script] if isinstance(script, StubScript) else list(script)
        self.default = default
        self.opened: List[Optional[str]] = []
        self.requests: List[Dict[str, Any]] = []
        self.sources: List[StubChunkSource] = []

    def _next_script(self, account_id: Optional[str]) -> StubScript:
        queue = self.scripts.get(account_id or "")
        if queue:
            return queue.pop(0) if len(queue) > 1 else queue[0]
        if self.default is not None:
            return self.default
        raise KeyError(f"No stub script for account {account_id!r}")

    async def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        body: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> ChunkSource:
        self.opened.append(account_id)
        self.requests.append({
            "endpoint": credentials.endpoint or endpoint,
            "headers": credentials.auth_headers(),
            "body": body,
        })
        script = self._next_script(account_id)
        if script.open_error is not None:
            raise script.open_error
        source = StubChunkSource(script)
        self.sources.append(source)
        return source

    @property
    def all_closed(self) -> bool:
        return all(source.closed for source in self.sources)
