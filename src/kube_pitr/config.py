from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
import logging
import os

import yaml


class ConfigError(ValueError):
    """Raised when PITR configuration values are missing or invalid."""


@dataclass(frozen=True)
class PITRConfig:
    restore_image: str = os.getenv("KB_PITR_RESTORE_IMAGE", "apecloud/kubeblocks-tools:latest")
    image_pull_policy: str = os.getenv("KB_PITR_IMAGE_PULL_POLICY", "IfNotPresent")
    restore_entrypoint: str = os.getenv("KB_PITR_RESTORE_ENTRYPOINT", "/kb-scripts/pitr-restore.sh")
    data_volume_name: str = os.getenv("KB_PITR_DATA_VOLUME_NAME", "data")
    data_mount_path: str = os.getenv("KB_PITR_DATA_MOUNT_PATH", "/data")
    log_mount_path: str = os.getenv("KB_PITR_LOG_MOUNT_PATH", "/pitr-log")
    replay_mount_path: str = os.getenv("KB_PITR_REPLAY_MOUNT_PATH", "/pitr-replay")
    log_replay_volume_size: str = os.getenv("KB_PITR_LOG_REPLAY_VOLUME_SIZE", "1Gi")
    log_replay_storage_class: str | None = os.getenv("KB_PITR_LOG_REPLAY_STORAGE_CLASS") or None
    job_backoff_limit: int = int(os.getenv("KB_PITR_JOB_BACKOFF_LIMIT", "3"))
    conflict_retries: int = int(os.getenv("KB_PITR_CONFLICT_RETRIES", "5"))
    request_timeout_seconds: int = int(os.getenv("KB_PITR_REQUEST_TIMEOUT_SECONDS", "20"))


PACKAGE_LOGGER_NAME = "kube_pitr"
_INT_FIELDS = ("job_backoff_limit", "conflict_retries", "request_timeout_seconds")


def load_config(path: Path | None = None) -> PITRConfig:
    config = PITRConfig()
    if path is not None:
        config = _overlay_yaml(config, path)
    validate_config(config)
    return config


def validate_config(config: PITRConfig) -> None:
    if not (config.restore_image or "").strip():
        raise ConfigError("restore_image must not be empty")
    if not (config.data_volume_name or "").strip():
        raise ConfigError("data_volume_name must not be empty")
    for mount_path in (config.data_mount_path, config.log_mount_path, config.replay_mount_path):
        if not (mount_path or "").startswith("/"):
            raise ConfigError(f"mount paths must be absolute, got '{mount_path}'")
    if config.job_backoff_limit < 0:
        raise ConfigError("job_backoff_limit must be >= 0")
    for name in ("conflict_retries", "request_timeout_seconds"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be positive")


def configure_logging(level: str | None = None) -> int:
    """Apply a log level (argument, else KB_PITR_LOG_LEVEL, else INFO) to the kube_pitr loggers.

    Root handlers are only installed when the host has not configured logging itself.
    """
    resolved = (level or os.getenv("KB_PITR_LOG_LEVEL", "INFO")).upper()
    numeric = logging.getLevelName(resolved)
    if not isinstance(numeric, int):
        raise ConfigError(f"unknown log level '{resolved}'")
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger(PACKAGE_LOGGER_NAME).setLevel(numeric)
    return numeric


def _overlay_yaml(config: PITRConfig, path: Path) -> PITRConfig:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigError(f"unable to read PITR config file '{path}': {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"PITR config file '{path}' is not valid YAML: {error}") from error

    if parsed is None:
        return config
    if not isinstance(parsed, dict):
        raise ConfigError(f"PITR config file '{path}' must contain a mapping at the top level")

    known = {item.name for item in fields(PITRConfig)}
    unknown = sorted(set(parsed) - known)
    if unknown:
        raise ConfigError(f"unknown PITR config keys in '{path}': {', '.join(unknown)}")

    overrides: dict[str, Any] = {}
    for key, value in parsed.items():
        if key in _INT_FIELDS:
            try:
                overrides[key] = int(value)
            except (TypeError, ValueError) as error:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from error
        else:
            overrides[key] = None if value is None else str(value)
    return replace(config, **overrides)
