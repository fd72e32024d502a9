from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO


logger = logging.getLogger(__name__)


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class CaptureSink:
    """Append-only raw audio artifact for one session."""

    def __init__(self, path: Path, handle: BinaryIO) -> None:
        self.path = path
        self._handle: BinaryIO | None = handle
        self.bytes_written = 0
        self.write_failures = 0

    @classmethod
    def open(cls, directory: Path, name: str) -> CaptureSink:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        handle = path.open("ab")
        logger.info("audiohook_capture_opened path=%s", path)
        return cls(path, handle)

    @property
    def closed(self) -> bool:
        return self._handle is None

    def write(self, payload: bytes) -> bool:
        if self._handle is None:
            self.write_failures += 1
            logger.warning("audiohook_capture_write_after_close path=%s bytes=%s", self.path, len(payload))
            return False
        try:
            self._handle.write(payload)
        except (OSError, ValueError) as exc:
            self.write_failures += 1
            logger.error(
                "audiohook_capture_write_failed path=%s bytes=%s error=%s",
                self.path,
                len(payload),
                exc,
            )
            return False
        self.bytes_written += len(payload)
        return True

    def close(self) -> bool:
        handle = self._handle
        if handle is None:
            return True
        self._handle = None
        try:
            handle.flush()
            handle.close()
        except OSError as exc:
            logger.error("audiohook_capture_close_failed path=%s error=%s", self.path, exc)
            return False
        logger.info("audiohook_capture_closed path=%s bytes=%s", self.path, self.bytes_written)
        return True

    def __enter__(self) -> CaptureSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def capture_name(conversation_id: str, participant_id: str, *, now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    timestamp = moment.strftime("%Y-%m-%dT%H-%M-%S") + f".{moment.microsecond // 1000:03d}Z"
    return f"{timestamp}_{_safe_name_part(conversation_id)}_{_safe_name_part(participant_id)}.raw"


def _safe_name_part(value: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", str(value or "").strip()).strip("._")
    return cleaned or "unknown"
