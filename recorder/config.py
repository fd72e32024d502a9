from __future__ import annotations

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = "AudioHook Recorder"
    data_dir: Path = Path("data")
    recordings_dir: Path = data_dir / "recordings"

    audiohook_host: str = "0.0.0.0"
    audiohook_port: int = 3000
    audiohook_path: str = "/audiohook/ws"
    audiohook_api_key: str = ""
    audiohook_client_secret: str = ""
    audiohook_preferred_format: str = "PCMU"
    audiohook_max_frame_bytes: int = 1_048_576
    audiohook_status_path: Path = data_dir / "runtime" / "audiohook_status.json"
    audiohook_health_stale_seconds: int = 90

    aws_region: str = "us-east-1"
    s3_bucket: str = ""
    s3_key_prefix: str = "calls/"
    s3_endpoint_url: str = ""


settings = Settings()
