from __future__ import annotations

import logging

from django.core.management.base import BaseCommand, CommandError

from recorder.services.audiohook_listener import (
    AudioHookRecorder,
    AudioHookRecorderConfig,
)


class Command(BaseCommand):
    help = (
        "Run the AudioHook recorder (websocket server that captures call audio, converts it to WAV "
        "and uploads both artifacts to S3)."
    )

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Accept sessions and capture audio locally but skip the S3 upload.",
        )
        parser.add_argument(
            "--host",
            type=str,
            default="",
            help="Override listener host for this run.",
        )
        parser.add_argument(
            "--port",
            type=int,
            default=0,
            help="Override listener port for this run.",
        )
        parser.add_argument(
            "--path",
            type=str,
            default="",
            help="Override websocket path for this run (example: /audiohook/ws).",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            default="INFO",
            help="Recorder logger level (DEBUG, INFO, WARNING, ERROR).",
        )

    def handle(self, *args, **options) -> None:
        _ = args
        dry_run = bool(options.get("dry_run"))
        host = str(options.get("host") or "").strip() or None
        port = int(options.get("port") or 0) or None
        path = str(options.get("path") or "").strip() or None
        log_level = str(options.get("log_level") or "INFO").upper().strip()

        recorder_logger = logging.getLogger("recorder")
        recorder_logger.setLevel(getattr(logging, log_level, logging.INFO))

        config = AudioHookRecorderConfig.from_settings(
            dry_run=dry_run,
            host=host,
            port=port,
            path=path,
        )
        recorder = AudioHookRecorder(config)

        self.stdout.write(
            self.style.SUCCESS(
                "Starting AudioHook recorder "
                f"(dry_run={config.dry_run}, host={config.host}, port={config.port}, path={config.path})"
            )
        )
        try:
            recorder.run_forever()
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("AudioHook recorder stopped by user."))
        except Exception as exc:
            raise CommandError(f"AudioHook recorder failed: {exc}") from exc
