"""Turn time-range calculation and timestamp validation.

Pure functions, no I/O. Offsets are integer milliseconds relative to the
anchor (the conversation's recorded start time).
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from domain.models import (
    ExplicitBounds, MeasuredDuration, Segment, TimestampValue, Turn, ValidationReport,
)

logger = logging.getLogger(__name__)

DEFAULT_TAIL_MS = 2000


def to_epoch_ms(value: TimestampValue) -> Optional[int]:
    """Parse a turn timestamp into epoch milliseconds.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings and
    epoch milliseconds. Returns None for anything unparsable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(round(value.timestamp() * 1000))
    return None


def _turn_start_ms(turn: Turn, anchor_ms: int, fallback_ms: int) -> int:
    if isinstance(turn.timing, ExplicitBounds):
        return max(0, turn.timing.begin_ms)
    ts = to_epoch_ms(turn.timestamp)
    if ts is None:
        return fallback_ms
    return max(0, ts - anchor_ms)


def calculate_turn_time_ranges(
    turns: list[Turn],
    anchor: TimestampValue,
    default_tail_ms: int = DEFAULT_TAIL_MS,
) -> list[Segment]:
    """Compute one audio segment per turn.

    Evidence is used in priority order:
      1. ExplicitBounds: provider bounds verbatim.
      2. MeasuredDuration: start from the timestamp, end = start + duration.
      3. None: start from the timestamp, end at the next turn's start, or
         start + default_tail_ms for the last turn.

    A turn with an unparsable timestamp starts where the previous segment
    ended. Output order matches input order.
    """
    if not turns:
        return []

    anchor_ms = to_epoch_ms(anchor)
    if anchor_ms is None:
        raise ValueError(f"Unparsable conversation start time: {anchor!r}")

    segments: list[Segment] = []
    previous_end = 0

    for i, turn in enumerate(turns):
        evidence = turn.timing
        start_ms = _turn_start_ms(turn, anchor_ms, previous_end)

        if isinstance(evidence, ExplicitBounds):
            end_ms = evidence.end_ms
            source = "explicit bounds"
        elif isinstance(evidence, MeasuredDuration):
            end_ms = start_ms + int(round(evidence.seconds * 1000))
            source = "measured duration"
        elif i + 1 < len(turns):
            end_ms = _turn_start_ms(turns[i + 1], anchor_ms, start_ms + default_tail_ms)
            source = "next turn"
        else:
            end_ms = start_ms + default_tail_ms
            source = "default tail"

        segment = Segment(
            turn_number=turn.turn_number,
            speaker=turn.speaker,
            start_ms=start_ms,
            end_ms=max(start_ms, end_ms),
        )
        segments.append(segment)
        previous_end = segment.end_ms

        logger.debug(
            f"Turn {segment.turn_number} ({segment.speaker}) via {source}: "
            f"{segment.start_ms}ms - {segment.end_ms}ms ({segment.duration_ms}ms)"
        )

    logger.info(f"Calculated {len(segments)} turn time ranges")
    return segments


def validate_turn_timestamps(turns: list[Turn]) -> ValidationReport:
    """Flag unparsable timestamps and adjacent turns that are not strictly increasing."""
    issues: list[str] = []
    parsed = [to_epoch_ms(t.timestamp) for t in turns]

    for turn, ts in zip(turns, parsed):
        if ts is None:
            issues.append(f"Turn {turn.turn_number} has invalid timestamp: {turn.timestamp!r}")

    for i in range(len(turns) - 1):
        current, following = parsed[i], parsed[i + 1]
        if current is None or following is None:
            continue
        if current >= following:
            issues.append(
                f"Turn {turns[i].turn_number} timestamp ({turns[i].timestamp}) "
                f"is not before turn {turns[i + 1].turn_number} timestamp ({turns[i + 1].timestamp})"
            )

    return ValidationReport(valid=not issues, issues=issues)
