"""Runtime settings: ``data/config.json`` first, then environment overrides.

Every section is a frozen dataclass so services can share one instance across
threads. Changing retention at runtime produces a new ``RetentionSettings``
via ``dataclasses.replace`` rather than mutating the loaded one.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

DEFAULT_MAX_AUDIO_BYTES = 50 * 1024 * 1024
DEFAULT_RETENTION_SCHEDULE = "0 0 1 * *"

_logger = logging.getLogger("carememo.config")


@dataclass(frozen=True)
class StorageSettings:
    base_dir: str


@dataclass(frozen=True)
class RetentionSettings:
    enabled: bool = True
    schedule: str = DEFAULT_RETENTION_SCHEDULE  # cron, first day of every month at midnight
    timezone: str = "UTC"
    months: int = 1


@dataclass(frozen=True)
class TranscriptionSettings:
    local_model: str = ""  # faster-whisper size, e.g. "base"; empty disables the local tier
    device: str = "cpu"
    compute_type: str = "int8"
    language: Optional[str] = None
    remote_base_url: str = ""
    remote_api_key: str = ""
    remote_model: str = "whisper-1"
    timeout_seconds: float = 120.0


@dataclass(frozen=True)
class SummarizationSettings:
    ollama_base_url: str = ""
    ollama_model: str = "llama3.1:8b"
    remote_base_url: str = ""
    remote_api_key: str = ""
    remote_model: str = "gpt-4o-mini"
    timeout_seconds: float = 120.0
    probe_timeout_seconds: float = 3.0


@dataclass(frozen=True)
class WatcherSettings:
    enabled: bool = True
    max_depth: int = 3


@dataclass(frozen=True)
class LoggingSettings:
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    max_bytes: int = 5_000_000
    backup_count: int = 3


@dataclass(frozen=True)
class Settings:
    storage: StorageSettings
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    transcription: TranscriptionSettings = field(default_factory=TranscriptionSettings)
    summarization: SummarizationSettings = field(default_factory=SummarizationSettings)
    watcher: WatcherSettings = field(default_factory=WatcherSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    max_audio_bytes: int = DEFAULT_MAX_AUDIO_BYTES


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _log_level(value: Optional[str], default: str) -> str:
    level = str(value or default).strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        _logger.warning("Ignoring unknown log level %r", value)
        return default
    return level


def read_config_file(config_path: str) -> dict:
    if not os.path.exists(config_path):
        _logger.info("Config file missing, using defaults: %s", config_path)
        return {}
    with open(config_path, "r", encoding="utf-8") as config_file:
        config = json.load(config_file)
    if not isinstance(config, dict):
        raise ValueError(f"Config file must hold a JSON object: {config_path}")
    _logger.info("Config loaded: %s keys=%s", config_path, sorted(config.keys()))
    return config


def parse_settings(
    config: dict, *, default_base_dir: str, env: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build Settings from a parsed config.json dict; environment variables win."""
    env = os.environ if env is None else env

    storage_dict = config.get("storage", {})
    retention_dict = config.get("retention", {})
    transcription_dict = config.get("transcription", {})
    summarization_dict = config.get("summarization", {})
    watcher_dict = config.get("watcher", {})
    logging_dict = config.get("logging", {})

    storage = StorageSettings(
        base_dir=env.get("LOCAL_STORAGE_DIR") or storage_dict.get("base_dir") or default_base_dir,
    )

    retention = RetentionSettings(
        enabled=bool(retention_dict.get("enabled", True)),
        schedule=env.get("CLEANUP_INTERVAL")
        or retention_dict.get("schedule", DEFAULT_RETENTION_SCHEDULE),
        timezone=env.get("TIMEZONE") or retention_dict.get("timezone", "UTC"),
        months=_env_int(env, "RETENTION_MONTHS", int(retention_dict.get("months", 1))),
    )

    transcription = TranscriptionSettings(
        local_model=transcription_dict.get("local_model", ""),
        device=transcription_dict.get("device", "cpu"),
        compute_type=transcription_dict.get("compute_type", "int8"),
        language=transcription_dict.get("language"),
        remote_base_url=env.get("REMOTE_AI_BASE_URL")
        or transcription_dict.get("remote_base_url", ""),
        remote_api_key=env.get("REMOTE_AI_API_KEY")
        or transcription_dict.get("remote_api_key", ""),
        remote_model=env.get("WHISPER_MODEL") or transcription_dict.get("remote_model", "whisper-1"),
        timeout_seconds=float(transcription_dict.get("timeout_seconds", 120.0)),
    )

    summarization = SummarizationSettings(
        ollama_base_url=env.get("OLLAMA_BASE_URL") or summarization_dict.get("ollama_base_url", ""),
        ollama_model=env.get("OLLAMA_MODEL") or summarization_dict.get("ollama_model", "llama3.1:8b"),
        remote_base_url=env.get("REMOTE_AI_BASE_URL")
        or summarization_dict.get("remote_base_url", ""),
        remote_api_key=env.get("REMOTE_AI_API_KEY")
        or summarization_dict.get("remote_api_key", ""),
        remote_model=summarization_dict.get("remote_model", "gpt-4o-mini"),
        timeout_seconds=float(summarization_dict.get("timeout_seconds", 120.0)),
        probe_timeout_seconds=float(summarization_dict.get("probe_timeout_seconds", 3.0)),
    )

    watcher = WatcherSettings(
        enabled=bool(watcher_dict.get("enabled", True)),
        max_depth=int(watcher_dict.get("max_depth", 3)),
    )

    logging_settings = LoggingSettings(
        console_level=_log_level(env.get("LOG_LEVEL") or logging_dict.get("console_level"), "INFO"),
        file_level=_log_level(logging_dict.get("file_level"), "DEBUG"),
        max_bytes=int(logging_dict.get("max_bytes", 5_000_000)),
        backup_count=int(logging_dict.get("backup_count", 3)),
    )

    return Settings(
        storage=storage,
        retention=retention,
        transcription=transcription,
        summarization=summarization,
        watcher=watcher,
        logging=logging_settings,
        max_audio_bytes=_env_int(
            env, "MAX_FILE_SIZE", int(config.get("max_audio_bytes", DEFAULT_MAX_AUDIO_BYTES))
        ),
    )


def load_settings(
    config_path: str, *, default_base_dir: str, env: Optional[Mapping[str, str]] = None
) -> Settings:
    return parse_settings(read_config_file(config_path), default_base_dir=default_base_dir, env=env)
