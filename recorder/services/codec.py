from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from recorder.services.segments import Duration
from recorder.services.session import Session


logger = logging.getLogger(__name__)


PROTOCOL_VERSION = "2"


class InboundType(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    PAUSED = "paused"
    RESUMED = "resumed"
    DISCARDED = "discarded"
    UPDATE = "update"
    PING = "ping"
    ERROR = "error"


class OutboundType(str, Enum):
    OPENED = "opened"
    CLOSED = "closed"
    PONG = "pong"
    DISCONNECT = "disconnect"
    ERROR = "error"


class CodecError(ValueError):
    pass


@dataclass(frozen=True)
class ControlMessage:
    type: InboundType | None
    raw_type: str
    version: str = PROTOCOL_VERSION
    seq: int = 0
    server_seq: int = 0
    id: str = ""
    position: Duration | None = None
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ControlFrame:
    message: ControlMessage


@dataclass(frozen=True)
class MediaFrame:
    payload: bytes


@dataclass(frozen=True)
class UnrecognizedFrame:
    reason: str
    size: int = 0


Frame = Union[ControlFrame, MediaFrame, UnrecognizedFrame]


def classify_frame(frame: bytes | str, *, is_binary: bool) -> Frame:
    """Sort one transport frame into control, media or unrecognized.

    Classification is by content: peers may send control JSON in binary
    frames, so a binary frame is only media when it does not decode as a
    control message.
    """
    if is_binary:
        payload = frame if isinstance(frame, bytes) else frame.encode("utf-8")
        if not _looks_like_json_object(payload):
            return MediaFrame(payload=payload)
        try:
            return ControlFrame(message=decode_control(payload))
        except CodecError:
            return MediaFrame(payload=payload)

    try:
        return ControlFrame(message=decode_control(frame))
    except CodecError as exc:
        size = len(frame)
        logger.warning("audiohook_control_frame_invalid bytes=%s error=%s", size, exc)
        return UnrecognizedFrame(reason=str(exc), size=size)


def decode_control(payload: bytes | str) -> ControlMessage:
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CodecError("Control frame is not valid UTF-8") from exc
    else:
        text = payload

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CodecError(f"Control frame is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise CodecError("Control frame is not a JSON object")

    raw_type = data.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise CodecError("Control frame has no message type")
    raw_type = raw_type.strip()

    try:
        message_type: InboundType | None = InboundType(raw_type.lower())
    except ValueError:
        message_type = None

    parameters = data.get("parameters")
    return ControlMessage(
        type=message_type,
        raw_type=raw_type,
        version=str(data.get("version") or PROTOCOL_VERSION),
        seq=_safe_int(data.get("seq"), default=0),
        server_seq=_safe_int(data.get("serverseq"), default=0),
        id=str(data.get("id") or "").strip(),
        position=_parse_position(data.get("position")),
        parameters=parameters if isinstance(parameters, dict) else {},
    )


def build_outbound(
    session: Session,
    message_type: OutboundType,
    *,
    client_seq: int,
    parameters: dict[str, object] | None = None,
) -> dict[str, object]:
    return {
        "version": PROTOCOL_VERSION,
        "type": message_type.value,
        "seq": session.next_server_seq(),
        "clientseq": client_seq,
        "id": session.session_id,
        "parameters": parameters if parameters is not None else {},
    }


def encode_message(message: dict[str, object]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def parse_duration_parameter(value: object) -> Duration | None:
    if value is None or value == "":
        return None
    try:
        return Duration.parse(value)
    except ValueError:
        logger.warning("audiohook_duration_invalid value=%r", value)
        return None


def _parse_position(value: object) -> Duration | None:
    if value is None:
        return None
    return parse_duration_parameter(value)


def _looks_like_json_object(payload: bytes) -> bool:
    return payload[:64].lstrip()[:1] == b"{"


def _safe_int(value: object, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
