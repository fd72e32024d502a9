from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from recorder.services.segments import ZERO, Duration, SegmentLedger


logger = logging.getLogger(__name__)


PROBE_SENTINEL_ID = "00000000-0000-0000-0000-000000000000"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ABORTED)


_FORWARD_ORDER = {
    SessionState.CONNECTING: 0,
    SessionState.OPEN: 1,
    SessionState.CLOSING: 2,
    SessionState.CLOSED: 3,
}


class InvalidTransitionError(RuntimeError):
    pass


class SessionConflictError(RuntimeError):
    pass


@dataclass(frozen=True)
class MediaDescriptor:
    format: str
    rate: int
    channels: tuple[str, ...]
    type: str = "audio"

    @property
    def channel_count(self) -> int:
        return len(self.channels)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MediaDescriptor:
        if not isinstance(payload, dict):
            raise ValueError("Media offer must be an object")
        channels_raw = payload.get("channels")
        if isinstance(channels_raw, list):
            channels = tuple(str(item).strip() for item in channels_raw if str(item).strip())
        else:
            channels = ()
        try:
            rate = int(payload.get("rate") or 0)
        except (TypeError, ValueError):
            rate = 0
        return cls(
            type=str(payload.get("type") or "audio").strip(),
            format=str(payload.get("format") or "").strip(),
            rate=rate,
            channels=channels,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "format": self.format,
            "channels": list(self.channels),
            "rate": self.rate,
        }


@dataclass(frozen=True)
class Participant:
    id: str
    ani: str = ""
    ani_name: str = ""
    dnis: str = ""

    @classmethod
    def from_dict(cls, payload: object) -> Participant:
        if not isinstance(payload, dict):
            return cls(id="")
        return cls(
            id=str(payload.get("id") or "").strip(),
            ani=str(payload.get("ani") or "").strip(),
            ani_name=str(payload.get("aniName") or "").strip(),
            dnis=str(payload.get("dnis") or "").strip(),
        )


@dataclass
class Session:
    session_id: str
    organization_id: str = ""
    correlation_id: str = ""
    conversation_id: str = ""
    participant: Participant | None = None
    media: MediaDescriptor | None = None
    language: str = "unknown"
    server_seq: int = 0
    client_seq: int = 0
    state: SessionState = SessionState.CONNECTING
    paused: bool = False
    position: Duration = ZERO
    bytes_received: int = 0
    frames_dropped: int = 0
    capture_defects: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: datetime | None = None
    duration_seconds: float | None = None
    is_probe: bool = False
    ledger: SegmentLedger = field(default_factory=SegmentLedger)
    audio_stats: dict[str, Any] | None = None
    finalized: bool = False

    def next_server_seq(self) -> int:
        self.server_seq += 1
        return self.server_seq

    def transition(self, new_state: SessionState) -> None:
        current = self.state
        if current.terminal:
            raise InvalidTransitionError(f"Session {self.session_id} is {current.value}; cannot move to {new_state.value}")
        if new_state is SessionState.ABORTED:
            self.state = new_state
            return
        if _FORWARD_ORDER[new_state] <= _FORWARD_ORDER[current]:
            raise InvalidTransitionError(f"Session {self.session_id} cannot move from {current.value} to {new_state.value}")
        self.state = new_state

    def advance_position(self, position: Duration | None) -> bool:
        if position is None:
            return False
        if position < self.position:
            logger.warning(
                "audiohook_position_regressed session_id=%s current=%s received=%s",
                self.session_id,
                self.position,
                position,
            )
            return False
        self.position = position
        return True

    def assign_media(self, media: MediaDescriptor) -> None:
        if self.media is not None:
            raise InvalidTransitionError(f"Session {self.session_id} already negotiated media")
        self.media = media

    def mark_closed_now(self) -> None:
        if self.closed_at is not None:
            return
        self.closed_at = datetime.now(timezone.utc)
        self.duration_seconds = (self.closed_at - self.created_at).total_seconds()

    def summary(self) -> dict[str, object]:
        return {
            "id": self.session_id,
            "conversationId": self.conversation_id,
            "startTime": self.created_at.isoformat(),
            "bytesReceived": self.bytes_received,
            "state": self.state.value,
            "isPaused": self.paused,
            "language": self.language,
        }


def is_probe_identifier(value: str) -> bool:
    return str(value or "").strip() == PROBE_SENTINEL_ID
