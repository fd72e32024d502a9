from __future__ import annotations

from django.apps import AppConfig


class AudioHookRecorderAppConfig(AppConfig):
    name = "recorder"
    verbose_name = "AudioHook Recorder"
