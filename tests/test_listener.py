"""
Tests for the connection supervisor.

The websocket tests bind the real server to an ephemeral port and drive it
with the websockets client, using the fake converter and store from conftest.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidStatus

from conftest import STEREO_PCMU, FakeConverter, FakeStats, FakeStore, FakeTransport, open_message
from recorder.services.audiohook_listener import (
    AudioHookRecorder,
    AudioHookRecorderConfig,
    SessionRegistry,
    _normalize_path,
    _normalize_prefix,
)
from recorder.services.protocol import ProtocolEngine
from recorder.services.session import Session, SessionConflictError


def _config(tmp_path: Path, **overrides: object) -> AudioHookRecorderConfig:
    config = AudioHookRecorderConfig(
        host="127.0.0.1",
        port=0,
        path="/audiohook/ws",
        api_key="",
        client_secret="",
        preferred_format="PCMU",
        max_frame_bytes=65_536,
        recordings_dir=tmp_path / "recordings",
        status_path=tmp_path / "runtime" / "status.json",
        health_stale_seconds=90,
        s3_bucket="",
        s3_region="us-east-1",
        s3_key_prefix="calls/",
        s3_endpoint_url="",
        dry_run=True,
    )
    return config.with_overrides(**overrides)


def _headers(session_id: str = "sess-1") -> dict[str, str]:
    return {
        "audiohook-session-id": session_id,
        "audiohook-organization-id": "org-1",
        "audiohook-correlation-id": "corr-1",
    }


def _wire(message_type: str, seq: int, session_id: str = "sess-1", **parameters: Any) -> str:
    return json.dumps(
        {
            "version": "2",
            "type": message_type,
            "seq": seq,
            "serverseq": 0,
            "id": session_id,
            "position": "PT0S",
            "parameters": parameters,
        }
    )


def _open_wire(session_id: str = "sess-1", conversation_id: str = "conv-1") -> str:
    return _wire(
        "open",
        1,
        session_id,
        organizationId="org-1",
        conversationId=conversation_id,
        participant={"id": "part-1", "ani": "+15551230000", "aniName": "Caller", "dnis": "+15559870000"},
        media=[STEREO_PCMU],
        language="en-US",
    )


def _port(server: Any) -> int:
    return server.sockets[0].getsockname()[1]


async def _http_get(port: int, path: str) -> tuple[int, dict[str, Any]]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode("ascii"))
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, json.loads(body)


class BlockingConverter(FakeConverter):
    """Holds conversion of captures whose name contains ``marker`` until released."""

    def __init__(self, marker: str) -> None:
        super().__init__()
        self.marker = marker
        self.started = threading.Event()
        self.release = threading.Event()

    def convert(self, raw_path: Path, out_path: Path, *args: Any) -> bool:
        if self.marker in Path(raw_path).name:
            self.started.set()
            self.release.wait(timeout=10)
        return super().convert(raw_path, out_path, *args)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_add_and_remove(self) -> None:
        registry = SessionRegistry()
        session = Session(session_id="a", conversation_id="conv-1")
        await registry.add(session)

        assert len(registry) == 1
        assert registry.get("a") is session
        assert registry.snapshot()[0]["conversationId"] == "conv-1"
        assert await registry.remove("a", session) is True
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_conflicting_session_id(self) -> None:
        registry = SessionRegistry()
        await registry.add(Session(session_id="a"))
        with pytest.raises(SessionConflictError):
            await registry.add(Session(session_id="a"))

    @pytest.mark.asyncio
    async def test_remove_leaves_other_owner(self) -> None:
        registry = SessionRegistry()
        owner = Session(session_id="a")
        await registry.add(owner)

        assert await registry.remove("a", Session(session_id="a")) is False
        assert registry.get("a") is owner


class TestConfig:
    def test_from_settings_overrides(self) -> None:
        config = AudioHookRecorderConfig.from_settings(dry_run=True, host="127.0.0.1", port=4000, path="hook/")
        assert config.host == "127.0.0.1"
        assert config.port == 4000
        assert config.path == "/hook"
        assert config.dry_run is True

    def test_with_overrides(self, tmp_path: Path) -> None:
        config = _config(tmp_path).with_overrides(api_key="k")
        assert config.api_key == "k"
        assert config.path == "/audiohook/ws"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("calls/", "calls/"), ("calls", "calls/"), ("/a/b", "a/b/"), ("", "")],
    )
    def test_normalize_prefix(self, value: str, expected: str) -> None:
        assert _normalize_prefix(value) == expected

    def test_normalize_path(self) -> None:
        assert _normalize_path("") == "/audiohook/ws"
        assert _normalize_path("/") == "/"

    def test_dry_run_disables_upload(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path, s3_bucket="recordings"))
        assert recorder.finalizer.store is None
        assert recorder.status_snapshot()["upload_enabled"] is False


class TestWebsocketServer:
    @pytest.mark.asyncio
    async def test_full_session(self, tmp_path: Path) -> None:
        store = FakeStore()
        recorder = AudioHookRecorder(_config(tmp_path), converter=FakeConverter(), stats_probe=FakeStats(), store=store)

        async with recorder.serve() as server:
            port = _port(server)
            async with connect(f"ws://127.0.0.1:{port}/audiohook/ws", additional_headers=_headers()) as ws:
                await ws.send(_open_wire())
                opened = json.loads(await ws.recv())
                assert opened["type"] == "opened"
                assert opened["clientseq"] == 1
                assert opened["id"] == "sess-1"
                assert opened["parameters"]["media"][0]["channels"] == ["external", "internal"]

                status, stats = await _http_get(port, "/stats")
                assert status == 200
                assert stats["totalSessions"] == 1
                assert stats["sessions"][0]["conversationId"] == "conv-1"

                for _ in range(3):
                    await ws.send(b"\x7f" * 100)
                await ws.send(_wire("close", 2, reason="end"))
                closed = json.loads(await ws.recv())
                assert closed["type"] == "closed"
                assert closed["seq"] == 2

            await _wait_for(lambda: recorder.status_snapshot()["active_connections"] == 0 and len(recorder.registry) == 0)

        snapshot = recorder.status_snapshot()
        assert len(recorder.registry) == 0
        assert snapshot["sessions_opened"] == 1
        assert snapshot["media_bytes"] == 300
        assert snapshot["active_connections"] == 0
        assert [call["size"] for call in store.calls] == [300, 304]
        assert list((tmp_path / "recordings").iterdir()) == []
        assert json.loads((tmp_path / "runtime" / "status.json").read_text())["sessions_finalized"] == 1

    @pytest.mark.asyncio
    async def test_dropped_connection_is_finalized(self, tmp_path: Path) -> None:
        store = FakeStore()
        recorder = AudioHookRecorder(_config(tmp_path), converter=FakeConverter(), stats_probe=FakeStats(), store=store)

        async with recorder.serve() as server:
            async with connect(f"ws://127.0.0.1:{_port(server)}/audiohook/ws", additional_headers=_headers()) as ws:
                await ws.send(_open_wire())
                await ws.recv()
                await ws.send(b"\x7f" * 160)

            await _wait_for(lambda: recorder.status_snapshot()["active_connections"] == 0 and len(recorder.registry) == 0)

        assert len(recorder.registry) == 0
        assert [call["size"] for call in store.calls] == [160, 164]

    @pytest.mark.asyncio
    async def test_slow_finalize_does_not_block_other_sessions(self, tmp_path: Path) -> None:
        converter = BlockingConverter(marker="conv-slow")
        recorder = AudioHookRecorder(_config(tmp_path), converter=converter, stats_probe=FakeStats(), store=FakeStore())

        try:
            async with recorder.serve() as server:
                uri = f"ws://127.0.0.1:{_port(server)}/audiohook/ws"
                async with connect(uri, additional_headers=_headers("slow")) as slow, connect(
                    uri, additional_headers=_headers("fast")
                ) as fast:
                    await slow.send(_open_wire("slow", "conv-slow"))
                    assert json.loads(await slow.recv())["type"] == "opened"
                    await slow.send(b"\x7f" * 80)
                    await slow.send(_wire("close", 2, "slow"))
                    slow_closed = asyncio.create_task(slow.recv())
                    await _wait_for(converter.started.is_set)

                    await fast.send(_open_wire("fast", "conv-fast"))
                    assert json.loads(await asyncio.wait_for(fast.recv(), timeout=5))["type"] == "opened"
                    await fast.send(b"\x7f" * 80)
                    await fast.send(_wire("close", 2, "fast"))
                    assert json.loads(await asyncio.wait_for(fast.recv(), timeout=5))["type"] == "closed"
                    assert not slow_closed.done()

                    converter.release.set()
                    assert json.loads(await asyncio.wait_for(slow_closed, timeout=5))["type"] == "closed"
        finally:
            converter.release.set()

        assert len(converter.calls) == 2

    @pytest.mark.asyncio
    async def test_status_file_is_written_after_opened(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path), converter=FakeConverter(), stats_probe=FakeStats(), store=FakeStore())
        status_path = tmp_path / "runtime" / "status.json"
        seen: list[tuple[str, bool, int]] = []
        transport = FakeTransport(
            on_send=lambda message: seen.append((message["type"], status_path.exists(), len(recorder.registry)))
        )
        engine = ProtocolEngine(
            Session(session_id="session-1", organization_id="org-1"),
            send=transport.send,
            finalizer=recorder.finalizer,
            recordings_dir=tmp_path / "recordings",
            on_open=recorder._register_session,
            on_opened=recorder._record_session_opened,
        )

        await engine.handle_control(open_message())

        assert seen == [("opened", False, 1)]
        status = json.loads(status_path.read_text())
        assert status["sessions_opened"] == 1
        assert status["last_session_id"] == "session-1"

    @pytest.mark.asyncio
    async def test_duplicate_session_id_is_rejected(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path), converter=FakeConverter(), stats_probe=FakeStats(), store=FakeStore())

        async with recorder.serve() as server:
            uri = f"ws://127.0.0.1:{_port(server)}/audiohook/ws"
            async with connect(uri, additional_headers=_headers()) as first:
                await first.send(_open_wire())
                assert json.loads(await first.recv())["type"] == "opened"

                async with connect(uri, additional_headers=_headers()) as second:
                    await second.send(_open_wire())
                    error = json.loads(await second.recv())
                    assert error["type"] == "error"
                    assert error["parameters"]["code"] == 409

                assert len(recorder.registry) == 1

    @pytest.mark.asyncio
    async def test_missing_headers_rejected(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path))

        async with recorder.serve() as server:
            with pytest.raises(InvalidStatus) as excinfo:
                async with connect(f"ws://127.0.0.1:{_port(server)}/audiohook/ws"):
                    pass

        assert excinfo.value.response.status_code == 400

    @pytest.mark.asyncio
    async def test_api_key_mismatch_rejected(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path, api_key="secret"))

        async with recorder.serve() as server:
            headers = {**_headers(), "x-api-key": "wrong"}
            with pytest.raises(InvalidStatus) as excinfo:
                async with connect(f"ws://127.0.0.1:{_port(server)}/audiohook/ws", additional_headers=headers):
                    pass

        assert excinfo.value.response.status_code == 401

    @pytest.mark.asyncio
    async def test_health_and_unknown_paths(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path))

        async with recorder.serve() as server:
            port = _port(server)
            status, health = await _http_get(port, "/health")
            missing_status, _ = await _http_get(port, "/nope")
            info_status, info = await _http_get(port, "/audiohook/ws?probe=1")

        assert status == 200
        assert health["activeSessions"] == 0
        assert health["uptime"] >= 0
        assert missing_status == 404
        assert info_status == 200
        assert info["path"] == "/audiohook/ws"


class TestHealth:
    def test_running_and_fresh_is_ok(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path, health_stale_seconds=30))
        recorder._status.update(state="running", updated_at=datetime.now(timezone.utc).isoformat())

        health = recorder._health_payload()

        assert health["status"] == "ok"
        assert health["healthy"] is True
        assert health["staleAfterSeconds"] == 30

    def test_old_status_is_stale(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path, health_stale_seconds=30))
        old = datetime.now(timezone.utc) - timedelta(seconds=120)
        recorder._status.update(state="running", updated_at=old.isoformat())

        health = recorder._health_payload()

        assert health["status"] == "stale"
        assert health["healthy"] is False
        assert health["ageSeconds"] >= 120

    def test_not_started_is_unhealthy(self, tmp_path: Path) -> None:
        health = AudioHookRecorder(_config(tmp_path))._health_payload()
        assert health["status"] == "initialized"
        assert health["healthy"] is False

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_status(self, tmp_path: Path) -> None:
        recorder = AudioHookRecorder(_config(tmp_path, health_stale_seconds=3))
        task = asyncio.create_task(recorder._serve())
        try:
            await _wait_for(lambda: recorder.status_snapshot()["state"] == "running")
            first = recorder.status_snapshot()["updated_at"]
            await _wait_for(lambda: recorder.status_snapshot()["updated_at"] != first, timeout=5)
            assert recorder._health_payload()["status"] == "ok"
        finally:
            await recorder.stop()
            await asyncio.wait_for(task, timeout=5)


def test_management_command_builds_recorder(monkeypatch: pytest.MonkeyPatch) -> None:
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")
    import django
    from django.core.management import call_command

    django.setup()
    started: list[AudioHookRecorderConfig] = []

    def fake_run_forever(self: AudioHookRecorder) -> None:
        started.append(self.config)

    monkeypatch.setattr(AudioHookRecorder, "run_forever", fake_run_forever)
    call_command("run_audiohook_recorder", "--dry-run", "--port", "9999", "--path", "/hook")

    assert len(started) == 1
    assert started[0].port == 9999
    assert started[0].path == "/hook"
    assert started[0].dry_run is True


@pytest.mark.asyncio
async def test_stop_ends_run_loop(tmp_path: Path) -> None:
    recorder = AudioHookRecorder(_config(tmp_path))
    task = asyncio.create_task(recorder._serve())
    await _wait_for(lambda: recorder.status_snapshot()["state"] == "running")

    await recorder.stop()
    await asyncio.wait_for(task, timeout=5)

    assert recorder.status_snapshot()["state"] == "stopped"
    assert (tmp_path / "recordings").is_dir()
