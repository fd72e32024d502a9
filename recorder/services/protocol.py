from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from websockets.exceptions import ConnectionClosed

from recorder.services.capture import CaptureSink, capture_name
from recorder.services.codec import (
    ControlFrame,
    ControlMessage,
    Frame,
    InboundType,
    MediaFrame,
    OutboundType,
    build_outbound,
    encode_message,
    parse_duration_parameter,
)
from recorder.services.finalize import FinalizePipeline, FinalizeReport
from recorder.services.session import (
    MediaDescriptor,
    Participant,
    Session,
    SessionConflictError,
    SessionState,
    is_probe_identifier,
)


logger = logging.getLogger(__name__)


SendText = Callable[[str], Awaitable[None]]
OpenHook = Callable[[Session], Awaitable[None]]
Handler = Callable[[ControlMessage], Awaitable[None]]

PROGRESS_LOG_BYTES = 50_000


class ProtocolEngine:
    """AudioHook server-side state machine for a single connection.

    The engine is not safe for concurrent use: the owner must feed frames one
    at a time, in arrival order.

    ``on_open`` runs before ``opened`` is sent and may raise
    ``SessionConflictError``; it must stay in memory. ``on_opened`` runs after
    the ack and is where disk-backed bookkeeping belongs.
    """

    def __init__(
        self,
        session: Session,
        *,
        send: SendText,
        finalizer: FinalizePipeline,
        recordings_dir: Path,
        preferred_format: str = "PCMU",
        on_open: OpenHook | None = None,
        on_opened: OpenHook | None = None,
    ) -> None:
        self.session = session
        self.finalizer = finalizer
        self.recordings_dir = Path(recordings_dir)
        self.preferred_format = preferred_format.strip().upper()
        self.sink: CaptureSink | None = None
        self.last_report: FinalizeReport | None = None
        self._transport_send = send
        self._on_open_hook = on_open
        self._on_opened_hook = on_opened
        self._finalize_lock = asyncio.Lock()
        self._handlers: dict[InboundType, Handler] = {
            InboundType.OPEN: self._on_open,
            InboundType.CLOSE: self._on_close,
            InboundType.PAUSED: self._on_paused,
            InboundType.RESUMED: self._on_resumed,
            InboundType.DISCARDED: self._on_discarded,
            InboundType.UPDATE: self._on_update,
            InboundType.PING: self._on_ping,
            InboundType.ERROR: self._on_error,
        }
        missing = set(InboundType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for message types: {sorted(item.value for item in missing)}")

    @property
    def finalized(self) -> bool:
        return self.session.finalized

    async def handle_frame(self, frame: Frame) -> None:
        if isinstance(frame, ControlFrame):
            await self.handle_control(frame.message)
        elif isinstance(frame, MediaFrame):
            self.handle_media(frame.payload)
        else:
            logger.debug(
                "audiohook_frame_dropped session_id=%s reason=%s bytes=%s",
                self.session.session_id,
                frame.reason,
                frame.size,
            )

    async def handle_control(self, message: ControlMessage) -> None:
        session = self.session
        if session.state.terminal:
            logger.info(
                "audiohook_control_ignored session_id=%s type=%s state=%s",
                session.session_id,
                message.raw_type,
                session.state.value,
            )
            return

        self._track_client_seq(message)
        if message.type is None:
            logger.info(
                "audiohook_control_unknown session_id=%s type=%s seq=%s",
                session.session_id,
                message.raw_type,
                message.seq,
            )
            return

        session.advance_position(message.position)
        await self._handlers[message.type](message)

    def handle_media(self, payload: bytes) -> bool:
        session = self.session
        if session.state is not SessionState.OPEN or session.paused or session.is_probe:
            session.frames_dropped += 1
            logger.debug(
                "audiohook_media_dropped session_id=%s state=%s paused=%s probe=%s bytes=%s",
                session.session_id,
                session.state.value,
                session.paused,
                session.is_probe,
                len(payload),
            )
            return False

        size = len(payload)
        session.bytes_received += size
        if session.bytes_received % PROGRESS_LOG_BYTES < size:
            logger.debug(
                "audiohook_media_progress session_id=%s kb=%s",
                session.session_id,
                session.bytes_received // 1024,
            )

        if self.sink is None:
            session.capture_defects += 1
            logger.warning("audiohook_media_no_capture session_id=%s bytes=%s", session.session_id, size)
            return False
        if not self.sink.write(payload):
            session.capture_defects += 1
            return False
        return True

    async def finalize_abnormal(self, reason: str = "transport_closed") -> FinalizeReport | None:
        session = self.session
        if session.finalized:
            return None
        logger.warning(
            "audiohook_session_abnormal_end session_id=%s state=%s reason=%s",
            session.session_id,
            session.state.value,
            reason,
        )
        session.mark_closed_now()
        report = await self._finalize(reason)
        if report is not None and not session.state.terminal:
            session.transition(SessionState.ABORTED)
        return report

    async def _on_open(self, message: ControlMessage) -> None:
        session = self.session
        if session.state is not SessionState.CONNECTING:
            logger.warning(
                "audiohook_open_duplicate session_id=%s state=%s",
                session.session_id,
                session.state.value,
            )
            return

        parameters = message.parameters
        try:
            selected = select_media(parameters.get("media"), self.preferred_format)
            if selected is None:
                logger.warning("audiohook_open_rejected session_id=%s reason=no_media", session.session_id)
                await self._send(
                    OutboundType.DISCONNECT,
                    message.seq,
                    {"reason": "error", "info": "No media options provided"},
                )
                session.transition(SessionState.ABORTED)
                return

            participant = Participant.from_dict(parameters.get("participant"))
            conversation_id = str(parameters.get("conversationId") or "").strip()
            is_probe = is_probe_identifier(conversation_id) or is_probe_identifier(participant.id)
            if self._on_open_hook is not None:
                await self._on_open_hook(session)

            await self._send(
                OutboundType.OPENED,
                message.seq,
                {"startPaused": False, "media": [selected.to_dict()]},
            )
        except SessionConflictError as exc:
            logger.warning("audiohook_open_conflict session_id=%s error=%s", session.session_id, exc)
            await self._send(OutboundType.ERROR, message.seq, {"code": 409, "message": "Session already active"})
            session.transition(SessionState.ABORTED)
            return
        except Exception as exc:
            logger.exception("audiohook_open_failed session_id=%s error=%s", session.session_id, exc)
            await self._send(OutboundType.ERROR, message.seq, {"code": 500, "message": "Internal server error"})
            session.transition(SessionState.ABORTED)
            return

        session.assign_media(selected)
        session.participant = participant
        session.conversation_id = conversation_id
        session.organization_id = str(parameters.get("organizationId") or session.organization_id).strip()
        session.language = str(parameters.get("language") or "unknown").strip()
        session.is_probe = is_probe
        session.transition(SessionState.OPEN)

        logger.info(
            "audiohook_session_opened session_id=%s conversation_id=%s participant_id=%s format=%s rate=%s channels=%s probe=%s",
            session.session_id,
            conversation_id or "unknown",
            participant.id or "unknown",
            selected.format,
            selected.rate,
            ",".join(selected.channels),
            is_probe,
        )

        if is_probe:
            logger.info("audiohook_probe_detected session_id=%s capture=skipped", session.session_id)
        else:
            self._open_capture()
        if self._on_opened_hook is not None:
            await self._on_opened_hook(session)

    def _open_capture(self) -> None:
        session = self.session
        participant_id = session.participant.id if session.participant else ""
        name = capture_name(session.conversation_id, participant_id)
        try:
            self.sink = CaptureSink.open(self.recordings_dir, name)
        except OSError as exc:
            session.capture_defects += 1
            logger.error(
                "audiohook_capture_open_failed session_id=%s name=%s error=%s",
                session.session_id,
                name,
                exc,
            )

    async def _on_close(self, message: ControlMessage) -> None:
        session = self.session
        if session.state not in (SessionState.CONNECTING, SessionState.OPEN):
            logger.warning(
                "audiohook_close_duplicate session_id=%s state=%s",
                session.session_id,
                session.state.value,
            )
            return

        session.transition(SessionState.CLOSING)
        session.mark_closed_now()
        try:
            await self._finalize("close")
        except Exception as exc:
            logger.exception("audiohook_finalize_failed session_id=%s error=%s", session.session_id, exc)

        await self._send(OutboundType.CLOSED, message.seq, {})
        session.transition(SessionState.CLOSED)
        logger.info(
            "audiohook_session_closed session_id=%s bytes=%s duration_seconds=%s",
            session.session_id,
            session.bytes_received,
            session.duration_seconds,
        )

    async def _on_paused(self, message: ControlMessage) -> None:
        session = self.session
        session.paused = True
        session.ledger.open_pause(session.position)
        logger.info("audiohook_paused session_id=%s position=%s", session.session_id, session.position)

    async def _on_resumed(self, message: ControlMessage) -> None:
        session = self.session
        session.paused = False
        discarded = parse_duration_parameter(message.parameters.get("discarded"))
        segment = session.ledger.close_pause(session.position, discarded)
        logger.info(
            "audiohook_resumed session_id=%s position=%s segment=%s",
            session.session_id,
            session.position,
            segment.to_dict() if segment else "-",
        )

    async def _on_discarded(self, message: ControlMessage) -> None:
        session = self.session
        start = parse_duration_parameter(message.parameters.get("start")) or session.position
        discarded = parse_duration_parameter(message.parameters.get("discarded"))
        session.ledger.record_discarded(start, discarded)
        logger.info(
            "audiohook_discarded session_id=%s start=%s discarded=%s",
            session.session_id,
            start,
            discarded or "-",
        )

    async def _on_update(self, message: ControlMessage) -> None:
        session = self.session
        language = message.parameters.get("language")
        if isinstance(language, str) and language.strip():
            session.language = language.strip()
            logger.info("audiohook_language_updated session_id=%s language=%s", session.session_id, session.language)

    async def _on_ping(self, message: ControlMessage) -> None:
        await self._send(OutboundType.PONG, message.seq, {})

    async def _on_error(self, message: ControlMessage) -> None:
        logger.warning(
            "audiohook_peer_error session_id=%s code=%s message=%s",
            self.session.session_id,
            message.parameters.get("code"),
            message.parameters.get("message"),
        )

    async def _finalize(self, reason: str) -> FinalizeReport | None:
        async with self._finalize_lock:
            if self.session.finalized:
                return None
            self.session.finalized = True
            sink, self.sink = self.sink, None
            try:
                report = await self.finalizer.run(self.session, sink, reason=reason)
            finally:
                if sink is not None:
                    sink.close()
            self.last_report = report
            return report

    async def _send(
        self,
        message_type: OutboundType,
        client_seq: int,
        parameters: dict[str, Any] | None = None,
    ) -> dict[str, object]:
        message = build_outbound(self.session, message_type, client_seq=client_seq, parameters=parameters)
        try:
            await self._transport_send(encode_message(message))
        except ConnectionClosed as exc:
            logger.warning(
                "audiohook_send_failed session_id=%s type=%s seq=%s error=%s",
                self.session.session_id,
                message_type.value,
                message["seq"],
                exc,
            )
        else:
            logger.info(
                "audiohook_sent session_id=%s type=%s seq=%s clientseq=%s",
                self.session.session_id,
                message_type.value,
                message["seq"],
                client_seq,
            )
        return message

    def _track_client_seq(self, message: ControlMessage) -> None:
        session = self.session
        previous = session.client_seq
        if previous and message.seq != previous + 1:
            logger.warning(
                "audiohook_client_seq_gap session_id=%s previous=%s received=%s",
                session.session_id,
                previous,
                message.seq,
            )
        session.client_seq = message.seq


def select_media(offers: object, preferred_format: str = "PCMU") -> MediaDescriptor | None:
    if not isinstance(offers, list):
        return None
    candidates = [MediaDescriptor.from_dict(offer) for offer in offers if isinstance(offer, dict)]
    if not candidates:
        return None
    preferred = preferred_format.strip().upper()
    for media in candidates:
        if media.type == "audio" and media.format.upper() == preferred and media.channel_count == 2:
            return media
    return candidates[0]
