from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    api_key: str | None
    user_id: str | None


@dataclass
class AppConfig:
    backend_url: str
    stream_path: str
    connect_timeout_seconds: float
    idle_timeout_seconds: float | None
    max_buffer_chars: int
    max_record_chars: int
    open_retries: int
    checkpointing_enabled: bool
    checkpoint_db_path: str
    checkpoint_min_interval_seconds: float
    checkpoint_every_deltas: int
    checkpoint_retention_days: int
    checkpoint_max_rows: int
    rate_limit: int
    rate_limit_window_ms: int
    rate_limit_sweep_seconds: float
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_seconds(value: object, default: float) -> float | None:
    if value is None:
        return default
    seconds = float(value)
    return seconds if seconds > 0 else None


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        backend_url=str(config.get("BackendUrl", "http://localhost:8000")).strip(),
        stream_path=str(config.get("StreamPath", "/api/pelican_stream")),
        connect_timeout_seconds=float(config.get("ConnectTimeoutSeconds", 60.0)),
        idle_timeout_seconds=_optional_seconds(config.get("IdleTimeoutSeconds"), 30.0),
        max_buffer_chars=int(config.get("MaxBufferChars", 1024 * 1024)),
        max_record_chars=int(config.get("MaxRecordChars", 100 * 1024)),
        open_retries=int(config.get("OpenRetries", 2)),
        checkpointing_enabled=_to_bool(config.get("CheckpointingEnabled", True), default=True),
        checkpoint_db_path=str(config.get("CheckpointDbPath", ".chat_stream/checkpoints.db")),
        checkpoint_min_interval_seconds=float(config.get("CheckpointMinIntervalSeconds", 1.0)),
        checkpoint_every_deltas=int(config.get("CheckpointEveryDeltas", 20)),
        checkpoint_retention_days=int(config.get("CheckpointRetentionDays", 30)),
        checkpoint_max_rows=int(config.get("CheckpointMaxRows", 10_000)),
        rate_limit=int(config.get("RateLimit", 10)),
        rate_limit_window_ms=int(config.get("RateLimitWindowMs", 60_000)),
        rate_limit_sweep_seconds=float(config.get("RateLimitSweepSeconds", 300.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_key=os.environ.get("STREAM_API_KEY") or None,
        user_id=os.environ.get("STREAM_USER_ID") or None,
    )
