from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any


_DURATION_PATTERN = re.compile(
    r"^PT(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?$"
)


@dataclass(frozen=True, order=True)
class Duration:
    """Elapsed time on a session's audio timeline, serialized as ISO-8601 (``PT12.5S``)."""

    seconds: Decimal = Decimal(0)

    @classmethod
    def parse(cls, value: object) -> Duration:
        if isinstance(value, Duration):
            return value
        text = str(value or "").strip().upper()
        match = _DURATION_PATTERN.match(text)
        if not match or text == "PT":
            raise ValueError(f"Invalid duration: {value!r}")

        total = Decimal(0)
        try:
            if match.group("hours"):
                total += Decimal(match.group("hours")) * 3600
            if match.group("minutes"):
                total += Decimal(match.group("minutes")) * 60
            if match.group("seconds"):
                total += Decimal(match.group("seconds"))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid duration: {value!r}") from exc
        return cls(seconds=total)

    @classmethod
    def from_seconds(cls, seconds: float | int | str | Decimal) -> Duration:
        value = Decimal(str(seconds))
        if value < 0:
            raise ValueError("Duration cannot be negative")
        return cls(seconds=value)

    def format(self) -> str:
        if self.seconds == self.seconds.to_integral_value():
            return f"PT{int(self.seconds)}S"
        text = format(self.seconds.normalize(), "f")
        return f"PT{text}S"

    def total_seconds(self) -> float:
        return float(self.seconds)

    def __str__(self) -> str:
        return self.format()


ZERO = Duration()


@dataclass(frozen=True)
class Segment:
    start: Duration
    duration: Duration | None = None
    end: Duration | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "start": self.start.format(),
            "end": self.end.format() if self.end is not None else None,
            "duration": self.duration.format() if self.duration is not None else None,
        }


@dataclass
class SegmentLedger:
    """Append-only audit of paused and discarded audio for one session.

    Segments are never mutated or removed once appended. A pause is half-open
    while waiting for the matching ``resumed`` and becomes a closed segment
    when it arrives.
    """

    _paused: list[Segment] = field(default_factory=list)
    _discarded: list[Segment] = field(default_factory=list)
    _open_pause: Duration | None = None

    @property
    def pause_open(self) -> bool:
        return self._open_pause is not None

    @property
    def pause_segments(self) -> tuple[Segment, ...]:
        return tuple(self._paused)

    @property
    def discarded_segments(self) -> tuple[Segment, ...]:
        return tuple(self._discarded)

    def open_pause(self, position: Duration) -> bool:
        # A repeated "paused" keeps the first start.
        if self._open_pause is not None:
            return False
        self._open_pause = position
        return True

    def close_pause(self, end: Duration, duration: Duration | None) -> Segment | None:
        if self._open_pause is None:
            return None
        segment = Segment(start=self._open_pause, duration=duration, end=end)
        self._paused.append(segment)
        self._open_pause = None
        return segment

    def record_discarded(self, start: Duration, duration: Duration | None) -> Segment:
        segment = Segment(start=start, duration=duration)
        self._discarded.append(segment)
        return segment

    def to_dict(self) -> dict[str, Any]:
        return {
            "paused": [segment.to_dict() for segment in self._paused],
            "discarded": [segment.to_dict() for segment in self._discarded],
            "pause_open_since": self._open_pause.format() if self._open_pause is not None else None,
        }
