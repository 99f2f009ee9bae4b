"""
chatrelay - Inline Thinking Tag Splitter

Some providers embed reasoning in ordinary text between inline markers such
as ``<thinking>...</thinking>``. Markers can be split across any number of
chunks, so the splitter keeps a carry buffer holding a tail that might still
turn into a marker.

Pure functions: the caller owns the state (inside flag + carry).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from ..core.config import ThinkingMarkers


class PieceKind(str, Enum):
    THINKING = "thinking"
    REGULAR = "regular"


@dataclass
class SplitResult:
    """Output of one split step."""
    pieces: List[Tuple[PieceKind, str]] = field(default_factory=list)
    inside: bool = False
    carry: str = ""


def partial_marker_length(buffer: str, marker: str) -> int:
    """
    Length of the longest tail of ``buffer`` that is a strict prefix of ``marker``.

    A full marker is never counted; the caller has already searched for it.
    """
    longest = min(len(buffer), len(marker) - 1)
    for size in range(longest, 0, -1):
        if buffer.endswith(marker[:size]):
            return size
    return 0


def split_thinking_tags(
    fragment: str,
    inside: bool,
    carry: str,
    markers: ThinkingMarkers = ThinkingMarkers()
) -> SplitResult:
    """
    Split ``carry + fragment`` into thinking and regular pieces.

    Inside a thinking region we look for the close marker, outside for the
    open marker. A close marker seen while outside is ordinary text. Marker
    text itself is never emitted; everything else comes out exactly once,
    either as a piece now or in the returned carry.
    """
    buffer = carry + fragment
    result = SplitResult(inside=inside)

    while buffer:
        if result.inside:
            marker, kind = markers.close_tag, PieceKind.THINKING
        else:
            marker, kind = markers.open_tag, PieceKind.REGULAR

        position = buffer.find(marker)
        if position != -1:
            if position > 0:
                result.pieces.append((kind, buffer[:position]))
            buffer = buffer[position + len(marker):]
            result.inside = not result.inside
            continue

        tail = partial_marker_length(buffer, marker)
        emit = buffer[:len(buffer) - tail] if tail else buffer
        if emit:
            result.pieces.append((kind, emit))
        result.carry = buffer[len(buffer) - tail:] if tail else ""
        return result

    result.carry = ""
    return result


def flush_carry(inside: bool, carry: str) -> List[Tuple[PieceKind, str]]:
    """At stream end a pending tail never became a marker; emit it as-is."""
    if not carry:
        return []
    return [(PieceKind.THINKING if inside else PieceKind.REGULAR, carry)]
