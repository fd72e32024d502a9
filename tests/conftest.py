"""
Pytest configuration and shared fakes.

The finalize pipeline talks to three collaborators (converter, stats probe,
object store); the fakes here record every call so tests can assert on
attempt counts and on the state of the local artifacts at call time.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from recorder.services.codec import ControlMessage, decode_control  # noqa: E402
from recorder.services.finalize import FinalizePipeline  # noqa: E402
from recorder.services.protocol import ProtocolEngine  # noqa: E402
from recorder.services.session import Session  # noqa: E402


STEREO_PCMU = {"type": "audio", "format": "PCMU", "channels": ["external", "internal"], "rate": 8000}
MONO_PCMU = {"type": "audio", "format": "PCMU", "channels": ["external"], "rate": 8000}


class FakeConverter:
    def __init__(self, succeed: bool = True, error: Exception | None = None) -> None:
        self.succeed = succeed
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def convert(
        self,
        raw_path: Path,
        out_path: Path,
        channel_count: int,
        sample_rate: int,
        channel_labels: Sequence[str],
        media_format: str = "PCMU",
    ) -> bool:
        self.calls.append(
            {
                "raw_path": Path(raw_path),
                "out_path": Path(out_path),
                "channel_count": channel_count,
                "sample_rate": sample_rate,
                "channel_labels": tuple(channel_labels),
                "media_format": media_format,
                "raw_size": Path(raw_path).stat().st_size,
            }
        )
        if self.error is not None:
            raise self.error
        if not self.succeed:
            return False
        Path(out_path).write_bytes(b"RIFF" + Path(raw_path).read_bytes())
        return True


class FakeStats:
    def __init__(self, duration: float = 0.0375) -> None:
        self.duration = duration
        self.calls: list[Path] = []

    def stats(self, path: Path) -> dict[str, Any]:
        self.calls.append(Path(path))
        return {"duration": self.duration, "channels": 2, "sample_rate": 8000, "dbfs": -20.0}


class FakeStore:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls: list[dict[str, Any]] = []

    def put(self, key: str, body: bytes, content_type: str, metadata: Mapping[str, str]) -> bool:
        self.calls.append(
            {
                "key": key,
                "size": len(body),
                "content_type": content_type,
                "metadata": dict(metadata),
            }
        )
        return self.result


class FakeTransport:
    def __init__(self, on_send: Callable[[dict[str, Any]], None] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.on_send = on_send

    async def send(self, text: str) -> None:
        message = json.loads(text)
        if self.on_send is not None:
            self.on_send(message)
        self.sent.append(message)

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]


def control(message_type: str, seq: int, *, position: str | None = None, **parameters: Any) -> ControlMessage:
    payload: dict[str, Any] = {
        "version": "2",
        "type": message_type,
        "seq": seq,
        "serverseq": 0,
        "id": "session-1",
        "parameters": parameters,
    }
    if position is not None:
        payload["position"] = position
    return decode_control(json.dumps(payload))


def open_message(
    seq: int = 1,
    *,
    media: list[dict[str, Any]] | None = None,
    conversation_id: str = "conv-1",
    participant_id: str = "part-1",
) -> ControlMessage:
    return control(
        "open",
        seq,
        position="PT0S",
        organizationId="org-1",
        conversationId=conversation_id,
        participant={"id": participant_id, "ani": "+15551230000", "aniName": "Caller", "dnis": "+15559870000"},
        media=[STEREO_PCMU] if media is None else media,
        language="en-US",
    )


@pytest.fixture
def recordings_dir(tmp_path: Path) -> Path:
    return tmp_path / "recordings"


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def stats_probe() -> FakeStats:
    return FakeStats()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def pipeline(converter: FakeConverter, stats_probe: FakeStats, store: FakeStore) -> FinalizePipeline:
    return FinalizePipeline(converter=converter, stats_probe=stats_probe, store=store, key_prefix="calls/")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def engine(pipeline: FinalizePipeline, transport: FakeTransport, recordings_dir: Path) -> ProtocolEngine:
    session = Session(session_id="session-1", organization_id="org-1", correlation_id="corr-1")
    return ProtocolEngine(
        session,
        send=transport.send,
        finalizer=pipeline,
        recordings_dir=recordings_dir,
    )
