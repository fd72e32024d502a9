from __future__ import annotations

import audioop
import logging
from array import array
from pathlib import Path
from typing import Any, Protocol, Sequence

from pydub import AudioSegment


logger = logging.getLogger(__name__)


class AudioConverter(Protocol):
    def convert(
        self,
        raw_path: Path,
        out_path: Path,
        channel_count: int,
        sample_rate: int,
        channel_labels: Sequence[str],
        media_format: str = "PCMU",
    ) -> bool: ...


class AudioStatsProbe(Protocol):
    def stats(self, path: Path) -> dict[str, Any]: ...


class PydubAudioConverter:
    """Turns a raw AudioHook capture into a 16-bit PCM WAV file."""

    def convert(
        self,
        raw_path: Path,
        out_path: Path,
        channel_count: int,
        sample_rate: int,
        channel_labels: Sequence[str],
        media_format: str = "PCMU",
    ) -> bool:
        if channel_count <= 0 or sample_rate <= 0:
            logger.warning(
                "audiohook_convert_invalid_media path=%s channels=%s rate=%s",
                raw_path,
                channel_count,
                sample_rate,
            )
            return False

        raw_audio = Path(raw_path).read_bytes()
        pcm = _decode_to_pcm_s16le(raw_audio, media_format)
        if pcm is None:
            logger.warning("audiohook_convert_unsupported_format path=%s format=%s", raw_path, media_format)
            return False

        frame_width = 2 * channel_count
        usable = len(pcm) - (len(pcm) % frame_width)
        if usable <= 0:
            logger.warning("audiohook_convert_empty_audio path=%s bytes=%s", raw_path, len(raw_audio))
            return False

        audio = AudioSegment(
            data=pcm[:usable],
            sample_width=2,
            frame_rate=sample_rate,
            channels=channel_count,
        )
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        audio.export(out_path, format="wav")

        logger.info(
            "audiohook_convert_complete path=%s channels=%s labels=%s rate=%s duration_ms=%s",
            out_path,
            channel_count,
            " / ".join(channel_labels) or "-",
            sample_rate,
            len(audio),
        )
        return True


class PydubAudioStats:
    def stats(self, path: Path) -> dict[str, Any]:
        audio = AudioSegment.from_file(path, format="wav")
        dbfs = audio.dBFS
        return {
            "duration": len(audio) / 1000,
            "channels": audio.channels,
            "sample_rate": audio.frame_rate,
            "dbfs": None if dbfs == float("-inf") else round(dbfs, 2),
        }


def _decode_to_pcm_s16le(raw_audio: bytes, media_format: str) -> bytes | None:
    normalized = str(media_format or "").strip().upper()
    if not normalized:
        return None

    if normalized in {"PCMU", "MULAW", "MU-LAW", "ULAW"}:
        return audioop.ulaw2lin(raw_audio, 2)

    if normalized in {"PCMA", "A-LAW", "ALAW"}:
        return audioop.alaw2lin(raw_audio, 2)

    if normalized in {"L16", "LINEAR16", "PCM_S16BE", "S16BE"}:
        clean = raw_audio if len(raw_audio) % 2 == 0 else raw_audio[:-1]
        return _byteswap_16(clean)

    return None


def _byteswap_16(payload: bytes) -> bytes:
    if not payload:
        return b""
    values = array("h")
    values.frombytes(payload)
    values.byteswap()
    return values.tobytes()
