from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from recorder.services.audio_tools import AudioConverter, AudioStatsProbe
from recorder.services.capture import CaptureSink
from recorder.services.object_store import ObjectStore
from recorder.services.session import Session


logger = logging.getLogger(__name__)


RAW_CONTENT_TYPES = {
    "PCMU": "audio/basic",
    "L16": "audio/L16",
}
WAV_CONTENT_TYPE = "audio/wav"


class StageStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StageOutcome:
    name: str
    status: StageStatus
    detail: str = ""


@dataclass
class FinalizeReport:
    session_id: str
    reason: str
    outcomes: list[StageOutcome] = field(default_factory=list)
    converted_path: Path | None = None
    uploaded_keys: list[str] = field(default_factory=list)
    upload_attempts: int = 0

    def status_of(self, name: str) -> StageStatus | None:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome.status
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "reason": self.reason,
            "stages": {outcome.name: outcome.status.value for outcome in self.outcomes},
            "uploaded_keys": list(self.uploaded_keys),
        }


@dataclass
class _FinalizeContext:
    session: Session
    sink: CaptureSink | None
    report: FinalizeReport
    wav_path: Path | None = None

    @property
    def raw_path(self) -> Path | None:
        return self.sink.path if self.sink is not None else None


Stage = Callable[[_FinalizeContext], Awaitable[StageOutcome]]


class FinalizePipeline:
    """Close, convert, measure, upload and clean up one session's capture.

    Every stage is best-effort: a failed or raising stage is recorded in the
    report and the next stage still runs.
    """

    def __init__(
        self,
        *,
        converter: AudioConverter,
        stats_probe: AudioStatsProbe,
        store: ObjectStore | None,
        key_prefix: str = "calls/",
    ) -> None:
        self.converter = converter
        self.stats_probe = stats_probe
        self.store = store
        self.key_prefix = key_prefix
        self._stages: tuple[tuple[str, Stage], ...] = (
            ("close_capture", self._close_capture),
            ("convert", self._convert),
            ("stats", self._stats),
            ("upload", self._upload),
            ("cleanup", self._cleanup),
        )

    async def run(self, session: Session, sink: CaptureSink | None, *, reason: str) -> FinalizeReport:
        report = FinalizeReport(session_id=session.session_id, reason=reason)
        context = _FinalizeContext(session=session, sink=sink, report=report)

        for name, stage in self._stages:
            try:
                outcome = await stage(context)
            except Exception as exc:
                logger.exception(
                    "audiohook_finalize_stage_error session_id=%s stage=%s error=%s",
                    session.session_id,
                    name,
                    exc,
                )
                outcome = StageOutcome(name=name, status=StageStatus.FAILED, detail=str(exc))
            report.outcomes.append(outcome)
            log = logger.warning if outcome.status is StageStatus.FAILED else logger.info
            log(
                "audiohook_finalize_stage session_id=%s stage=%s status=%s detail=%s",
                session.session_id,
                name,
                outcome.status.value,
                outcome.detail or "-",
            )

        return report

    async def _close_capture(self, context: _FinalizeContext) -> StageOutcome:
        if context.sink is None:
            return StageOutcome("close_capture", StageStatus.SKIPPED, "no capture")
        if not context.sink.close():
            context.session.capture_defects += 1
            return StageOutcome("close_capture", StageStatus.FAILED, "close failed")
        return StageOutcome("close_capture", StageStatus.OK, f"bytes={context.sink.bytes_written}")

    async def _convert(self, context: _FinalizeContext) -> StageOutcome:
        session = context.session
        raw_path = context.raw_path
        if session.is_probe or raw_path is None:
            return StageOutcome("convert", StageStatus.SKIPPED, "no capture")
        if not raw_path.exists() or raw_path.stat().st_size == 0:
            return StageOutcome("convert", StageStatus.SKIPPED, "capture empty")
        if session.media is None:
            return StageOutcome("convert", StageStatus.SKIPPED, "media unknown")

        media = session.media
        wav_path = raw_path.with_suffix(".wav")
        context.wav_path = wav_path
        converted = await asyncio.to_thread(
            self.converter.convert,
            raw_path,
            wav_path,
            media.channel_count,
            media.rate,
            media.channels,
            media.format,
        )
        if not converted or not wav_path.exists():
            return StageOutcome("convert", StageStatus.FAILED, "converter reported failure")
        context.report.converted_path = wav_path
        return StageOutcome("convert", StageStatus.OK, wav_path.name)

    async def _stats(self, context: _FinalizeContext) -> StageOutcome:
        wav_path = context.report.converted_path
        if wav_path is None:
            return StageOutcome("stats", StageStatus.SKIPPED, "no converted audio")
        stats = await asyncio.to_thread(self.stats_probe.stats, wav_path)
        context.session.audio_stats = dict(stats)
        return StageOutcome("stats", StageStatus.OK, f"duration={stats.get('duration')}")

    async def _upload(self, context: _FinalizeContext) -> StageOutcome:
        session = context.session
        raw_path = context.raw_path
        if session.is_probe or raw_path is None or not raw_path.exists():
            return StageOutcome("upload", StageStatus.SKIPPED, "no capture")
        if self.store is None:
            return StageOutcome("upload", StageStatus.SKIPPED, "object store disabled")

        metadata = upload_metadata(session)
        folder = f"{self.key_prefix}{raw_path.stem}/audio/"
        media_format = session.media.format.upper() if session.media is not None else ""
        artifacts = [
            (raw_path, RAW_CONTENT_TYPES.get(media_format, "application/octet-stream"), metadata),
        ]
        wav_path = context.report.converted_path
        if wav_path is not None and wav_path.exists():
            wav_metadata = dict(metadata, converted="true")
            wav_metadata["original-file"] = raw_path.name
            if session.audio_stats and session.audio_stats.get("duration") is not None:
                wav_metadata["audio-duration-seconds"] = str(session.audio_stats["duration"])
            artifacts.append((wav_path, WAV_CONTENT_TYPE, wav_metadata))

        failed: list[str] = []
        for path, content_type, artifact_metadata in artifacts:
            key = f"{folder}{path.name}"
            context.report.upload_attempts += 1
            try:
                body = await asyncio.to_thread(path.read_bytes)
                stored = await asyncio.to_thread(self.store.put, key, body, content_type, artifact_metadata)
            except Exception as exc:
                logger.exception("audiohook_upload_error session_id=%s key=%s error=%s", session.session_id, key, exc)
                stored = False
            if stored:
                context.report.uploaded_keys.append(key)
            else:
                failed.append(key)

        if failed:
            return StageOutcome("upload", StageStatus.FAILED, "failed=" + ",".join(failed))
        return StageOutcome("upload", StageStatus.OK, f"objects={len(artifacts)}")

    async def _cleanup(self, context: _FinalizeContext) -> StageOutcome:
        removed: list[str] = []
        errors: list[str] = []
        for path in (context.raw_path, context.wav_path):
            if path is None or not path.exists():
                continue
            try:
                path.unlink()
                removed.append(path.name)
            except OSError as exc:
                errors.append(f"{path.name}: {exc}")
        if errors:
            return StageOutcome("cleanup", StageStatus.FAILED, "; ".join(errors))
        if not removed:
            return StageOutcome("cleanup", StageStatus.SKIPPED, "nothing to remove")
        return StageOutcome("cleanup", StageStatus.OK, ",".join(removed))


def upload_metadata(session: Session) -> dict[str, str]:
    participant = session.participant
    media = session.media
    return {
        "conversation-id": session.conversation_id or "unknown",
        "participant-id": participant.id if participant and participant.id else "unknown",
        "ani": participant.ani if participant and participant.ani else "unknown",
        "dnis": participant.dnis if participant and participant.dnis else "unknown",
        "audio-format": media.format if media else "unknown",
        "sample-rate": str(media.rate) if media else "unknown",
        "channels": ",".join(media.channels) if media else "unknown",
        "language": session.language or "unknown",
        "duration-seconds": str(session.duration_seconds) if session.duration_seconds is not None else "unknown",
        "start-time": session.created_at.isoformat(),
        "bytes": str(session.bytes_received),
    }
