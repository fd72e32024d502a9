from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from http import HTTPStatus
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from websockets.asyncio.server import ServerConnection
from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from recorder.config import settings as app_settings
from recorder.services.audio_tools import (
    AudioConverter,
    AudioStatsProbe,
    PydubAudioConverter,
    PydubAudioStats,
)
from recorder.services.codec import MediaFrame, classify_frame
from recorder.services.finalize import FinalizePipeline, FinalizeReport, StageStatus
from recorder.services.object_store import ObjectStore, S3ObjectStore
from recorder.services.protocol import ProtocolEngine
from recorder.services.session import Session, SessionConflictError


logger = logging.getLogger(__name__)


HEADER_SESSION_ID = "audiohook-session-id"
HEADER_ORGANIZATION_ID = "audiohook-organization-id"
HEADER_CORRELATION_ID = "audiohook-correlation-id"
HEADER_API_KEY = "x-api-key"

_RUNNING_STATES = {"starting", "running", "stopping"}


@dataclass(frozen=True)
class AudioHookRecorderConfig:
    host: str
    port: int
    path: str
    api_key: str
    client_secret: str
    preferred_format: str
    max_frame_bytes: int
    recordings_dir: Path
    status_path: Path
    health_stale_seconds: int
    s3_bucket: str
    s3_region: str
    s3_key_prefix: str
    s3_endpoint_url: str
    dry_run: bool = False

    @classmethod
    def from_settings(
        cls,
        *,
        dry_run: bool = False,
        host: str | None = None,
        port: int | None = None,
        path: str | None = None,
    ) -> AudioHookRecorderConfig:
        return cls(
            host=(host or app_settings.audiohook_host).strip() or "0.0.0.0",
            port=port if port is not None else int(app_settings.audiohook_port),
            path=_normalize_path(path or app_settings.audiohook_path),
            api_key=str(app_settings.audiohook_api_key).strip(),
            client_secret=str(app_settings.audiohook_client_secret).strip(),
            preferred_format=str(app_settings.audiohook_preferred_format).strip().upper() or "PCMU",
            max_frame_bytes=max(65_536, int(app_settings.audiohook_max_frame_bytes)),
            recordings_dir=Path(app_settings.recordings_dir),
            status_path=Path(app_settings.audiohook_status_path),
            health_stale_seconds=max(10, int(app_settings.audiohook_health_stale_seconds)),
            s3_bucket=str(app_settings.s3_bucket).strip(),
            s3_region=str(app_settings.aws_region).strip() or "us-east-1",
            s3_key_prefix=_normalize_prefix(app_settings.s3_key_prefix),
            s3_endpoint_url=str(app_settings.s3_endpoint_url).strip(),
            dry_run=bool(dry_run),
        )

    def with_overrides(self, **kwargs: object) -> AudioHookRecorderConfig:
        return replace(self, **kwargs)


class SessionRegistry:
    """Live sessions keyed by AudioHook session id."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}

    async def add(self, session: Session) -> None:
        async with self._lock:
            existing = self._sessions.get(session.session_id)
            if existing is not None and existing is not session:
                raise SessionConflictError(f"Session {session.session_id} is already live")
            self._sessions[session.session_id] = session

    async def remove(self, session_id: str, session: Session | None = None) -> bool:
        async with self._lock:
            existing = self._sessions.get(session_id)
            if existing is None or (session is not None and existing is not session):
                return False
            del self._sessions[session_id]
            return True

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def snapshot(self) -> list[dict[str, object]]:
        return [session.summary() for session in list(self._sessions.values())]

    def __len__(self) -> int:
        return len(self._sessions)


class AudioHookRecorder:
    def __init__(
        self,
        config: AudioHookRecorderConfig,
        *,
        converter: AudioConverter | None = None,
        stats_probe: AudioStatsProbe | None = None,
        store: ObjectStore | None = None,
    ) -> None:
        self.config = config
        self.registry = SessionRegistry()
        if store is None and config.s3_bucket and not config.dry_run:
            store = S3ObjectStore(
                config.s3_bucket,
                region=config.s3_region,
                endpoint_url=config.s3_endpoint_url,
            )
        self.finalizer = FinalizePipeline(
            converter=converter or PydubAudioConverter(),
            stats_probe=stats_probe or PydubAudioStats(),
            store=store,
            key_prefix=config.s3_key_prefix,
        )
        self._stop_event = asyncio.Event()
        self._status_lock = asyncio.Lock()
        self._started_monotonic = time.monotonic()
        now = _utc_iso_now()
        self._status: dict[str, object] = {
            "state": "initialized",
            "updated_at": now,
            "started_at": now,
            "pid": os.getpid(),
            "host": self.config.host,
            "port": self.config.port,
            "path": self.config.path,
            "dry_run": self.config.dry_run,
            "upload_enabled": store is not None,
            "connection_count": 0,
            "active_connections": 0,
            "sessions_opened": 0,
            "sessions_finalized": 0,
            "media_bytes": 0,
            "conversion_failures": 0,
            "upload_failures": 0,
            "last_error": "",
            "last_session_id": "",
        }

    async def stop(self) -> None:
        self._stop_event.set()
        await self._set_status(state="stopping")

    def run_forever(self) -> None:
        try:
            asyncio.run(self._serve())
        except KeyboardInterrupt:
            pass

    def serve(self, *, host: str | None = None, port: int | None = None) -> Any:
        return ws_serve(
            self._handle_connection,
            host if host is not None else self.config.host,
            port if port is not None else self.config.port,
            process_request=self._process_http_request,
            max_size=self.config.max_frame_bytes,
            ping_interval=20,
            ping_timeout=20,
        )

    async def _serve(self) -> None:
        await self._set_status(state="starting")
        self.config.recordings_dir.mkdir(parents=True, exist_ok=True)
        await self._persist_status(initial=True)

        logger.info(
            "audiohook_recorder_start host=%s port=%s path=%s recordings_dir=%s upload=%s dry_run=%s",
            self.config.host,
            self.config.port,
            self.config.path,
            self.config.recordings_dir,
            self.finalizer.store is not None,
            self.config.dry_run,
        )
        if self.finalizer.store is None and not self.config.dry_run:
            logger.warning("audiohook_recorder_upload_disabled reason=no_bucket")

        heartbeat_seconds = max(1.0, self.config.health_stale_seconds / 3)
        async with self.serve():
            await self._set_status(state="running")
            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=heartbeat_seconds)
                except asyncio.TimeoutError:
                    await self._set_status()

        await self._set_status(state="stopped")
        logger.info("audiohook_recorder_stopped")

    async def _set_status(self, **updates: object) -> None:
        async with self._status_lock:
            self._status.update(updates)
            self._status["updated_at"] = _utc_iso_now()
        await self._persist_status()

    async def _increment_status(self, key: str, amount: int = 1, *, persist: bool = True) -> None:
        async with self._status_lock:
            current = int(self._status.get(key) or 0)
            self._status[key] = current + amount
            self._status["updated_at"] = _utc_iso_now()
        if persist:
            await self._persist_status()

    async def _bump_active_connections(self, delta: int) -> None:
        async with self._status_lock:
            active = int(self._status.get("active_connections") or 0) + delta
            self._status["active_connections"] = max(0, active)
            self._status["updated_at"] = _utc_iso_now()
        await self._persist_status()

    async def _persist_status(self, *, initial: bool = False) -> None:
        path = self.config.status_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with self._status_lock:
                payload = dict(self._status)
            payload["live_sessions"] = len(self.registry)
            temp_path = path.with_suffix(path.suffix + ".tmp")
            temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            temp_path.replace(path)
        except OSError as exc:
            if initial:
                logger.warning("audiohook_status_init_write_failed path=%s error=%s", path, exc)
            else:
                logger.debug("audiohook_status_write_failed path=%s error=%s", path, exc)

    def status_snapshot(self) -> dict[str, object]:
        return dict(self._status)

    async def _process_http_request(self, connection: ServerConnection, request: Request) -> Response | None:
        request_path = _path_without_query(request.path)
        upgrade = str(request.headers.get("Upgrade") or "").strip().lower()

        if upgrade != "websocket":
            if request_path == "/health":
                return _json_response(connection, HTTPStatus.OK, self._health_payload())
            if request_path == "/stats":
                return _json_response(connection, HTTPStatus.OK, self._stats_payload())
            if request_path == self.config.path:
                return _json_response(
                    connection,
                    HTTPStatus.OK,
                    {"ok": True, "service": "audiohook_recorder", "path": self.config.path, "timestamp": _utc_iso_now()},
                )
            return _json_response(connection, HTTPStatus.NOT_FOUND, {"detail": "Not found"})

        if request_path != self.config.path:
            return _json_response(connection, HTTPStatus.NOT_FOUND, {"detail": "Not found"})

        headers = request.headers
        if self.config.api_key and str(headers.get(HEADER_API_KEY) or "") != self.config.api_key:
            logger.warning("audiohook_auth_rejected reason=api_key remote=%s", connection.remote_address)
            return _json_response(connection, HTTPStatus.UNAUTHORIZED, {"detail": "Unauthorized"})
        if self.config.client_secret and not (headers.get("signature") and headers.get("signature-input")):
            logger.warning("audiohook_auth_rejected reason=signature_missing remote=%s", connection.remote_address)
            return _json_response(connection, HTTPStatus.UNAUTHORIZED, {"detail": "Unauthorized"})
        if not headers.get(HEADER_SESSION_ID) or not headers.get(HEADER_ORGANIZATION_ID):
            logger.warning("audiohook_auth_rejected reason=headers_missing remote=%s", connection.remote_address)
            return _json_response(connection, HTTPStatus.BAD_REQUEST, {"detail": "Missing AudioHook headers"})
        return None

    def _health_payload(self) -> dict[str, object]:
        state = str(self._status.get("state") or "unknown")
        updated_at = str(self._status.get("updated_at") or "")
        age_seconds = _age_seconds(updated_at)
        stale = age_seconds is None or age_seconds > self.config.health_stale_seconds
        healthy = state in _RUNNING_STATES and not stale
        if healthy:
            status = "ok"
        elif state in _RUNNING_STATES:
            status = "stale"
        else:
            status = state
        return {
            "status": status,
            "healthy": healthy,
            "state": state,
            "activeSessions": len(self.registry),
            "uptime": round(time.monotonic() - self._started_monotonic, 3),
            "updatedAt": updated_at,
            "ageSeconds": round(age_seconds, 2) if age_seconds is not None else None,
            "staleAfterSeconds": self.config.health_stale_seconds,
        }

    def _stats_payload(self) -> dict[str, object]:
        sessions = self.registry.snapshot()
        return {"totalSessions": len(sessions), "sessions": sessions}

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        headers = websocket.request.headers
        session = Session(
            session_id=str(headers.get(HEADER_SESSION_ID) or "").strip(),
            organization_id=str(headers.get(HEADER_ORGANIZATION_ID) or "").strip(),
            correlation_id=str(headers.get(HEADER_CORRELATION_ID) or "").strip(),
        )
        engine = ProtocolEngine(
            session,
            send=websocket.send,
            finalizer=self.finalizer,
            recordings_dir=self.config.recordings_dir,
            preferred_format=self.config.preferred_format,
            on_open=self._register_session,
            on_opened=self._record_session_opened,
        )
        await self._increment_status("connection_count", 1)
        await self._bump_active_connections(1)

        logger.info(
            "audiohook_ws_connected session_id=%s organization_id=%s correlation_id=%s remote=%s",
            session.session_id,
            session.organization_id,
            session.correlation_id,
            websocket.remote_address,
        )

        reason = "transport_closed"
        try:
            async for message in websocket:
                frame = classify_frame(message, is_binary=isinstance(message, bytes))
                try:
                    await engine.handle_frame(frame)
                except Exception as exc:
                    await self._set_status(last_error=str(exc))
                    logger.exception(
                        "audiohook_frame_failed session_id=%s state=%s error=%s",
                        session.session_id,
                        session.state.value,
                        exc,
                    )
                    continue
                if isinstance(frame, MediaFrame):
                    await self._increment_status("media_bytes", len(frame.payload), persist=False)
        except ConnectionClosed as exc:
            reason = "transport_dropped"
            logger.warning("audiohook_ws_dropped session_id=%s error=%s", session.session_id, exc)
        except Exception as exc:
            reason = "transport_error"
            await self._set_status(last_error=str(exc))
            logger.warning("audiohook_ws_error session_id=%s error=%s", session.session_id, exc)
        finally:
            await engine.finalize_abnormal(reason)
            await self._record_report(engine.last_report)
            await self.registry.remove(session.session_id, session)
            await self._bump_active_connections(-1)
            logger.info(
                "audiohook_ws_disconnected session_id=%s state=%s bytes=%s dropped_frames=%s",
                session.session_id,
                session.state.value,
                session.bytes_received,
                session.frames_dropped,
            )

    async def _register_session(self, session: Session) -> None:
        await self.registry.add(session)

    async def _record_session_opened(self, session: Session) -> None:
        await self._increment_status("sessions_opened", 1, persist=False)
        await self._set_status(last_session_id=session.session_id)

    async def _record_report(self, report: FinalizeReport | None) -> None:
        if report is None:
            return
        if report.status_of("convert") is StageStatus.FAILED:
            await self._increment_status("conversion_failures", 1, persist=False)
        if report.status_of("upload") is StageStatus.FAILED:
            await self._increment_status("upload_failures", 1, persist=False)
        await self._increment_status("sessions_finalized", 1)
        logger.info("audiohook_session_finalized report=%s", json.dumps(report.to_dict()))


def _json_response(connection: ServerConnection, status: HTTPStatus, payload: dict[str, object]) -> Response:
    response = connection.respond(status, json.dumps(payload, default=str))
    del response.headers["Content-Type"]
    response.headers["Content-Type"] = "application/json"
    response.headers["Cache-Control"] = "no-store"
    return response


def _normalize_path(path: str) -> str:
    value = str(path or "/audiohook/ws").strip()
    if not value.startswith("/"):
        value = "/" + value
    if len(value) > 1 and value.endswith("/"):
        value = value[:-1]
    return value


def _normalize_prefix(prefix: str) -> str:
    value = str(prefix or "").strip().lstrip("/")
    if value and not value.endswith("/"):
        value += "/"
    return value


def _path_without_query(path: str) -> str:
    return _normalize_path(urlparse(path).path)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _age_seconds(timestamp: str) -> float | None:
    try:
        moment = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0.0, (datetime.now(timezone.utc) - moment).total_seconds())
