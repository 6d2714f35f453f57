"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from kubestack.models.config import (
    APIConfig,
    ControllerConfig,
    KubeStackConfig,
    LogConfig,
    QueueConfig,
    RevisionConfig,
)

_SERVICE_TYPES = ("LoadBalancer", "NodePort")
_STACK_API_VERSIONS = ("v1alpha3", "v1beta2")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBESTACK_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def _validate_duration(value: str) -> str:
    if not re.match(r"^[0-9]+(s|m|h|d)$", value) or int(value[:-1]) == 0:
        raise ValueError(f"Invalid duration format: {value}")
    return value


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_service_type(value: str) -> str:
    if value not in _SERVICE_TYPES:
        raise ValueError(f"Invalid default service type: {value}. Must be one of {_SERVICE_TYPES}")
    return value


def _validate_api_version(value: str) -> str:
    if value not in _STACK_API_VERSIONS:
        raise ValueError(f"Unsupported stack api version: {value}. Must be one of {_STACK_API_VERSIONS}")
    return value


def load_config() -> KubeStackConfig:
    """Load configuration from KUBESTACK_* environment variables."""
    return KubeStackConfig(
        controller=ControllerConfig(
            reconciliation_interval=_validate_duration(_env("RECONCILIATION_INTERVAL", "12h")),
            default_service_type=_validate_service_type(_env("DEFAULT_SERVICE_TYPE", "LoadBalancer")),
            namespace=_env("NAMESPACE", ""),
            stack_api_version=_validate_api_version(_env("STACK_API_VERSION", "v1alpha3")),
            sync_timeout_seconds=_env_int("SYNC_TIMEOUT_SECONDS", 600, min_val=10),
        ),
        queues=QueueConfig(
            reconcile_queue_length=_env_int("RECONCILE_QUEUE_LENGTH", 200, min_val=1),
            deletion_channel_size=_env_int("DELETION_CHANNEL_SIZE", 50, min_val=1),
            retry_queue_length=_env_int("RETRY_QUEUE_LENGTH", 20, min_val=1),
            retry_delay_seconds=max(_env_float("RETRY_DELAY_SECONDS", 1.0), 0.0),
        ),
        revisions=RevisionConfig(
            history_limit=_env_int("REVISION_HISTORY_LIMIT", 10, min_val=1, max_val=100),
        ),
        api=APIConfig(
            port=_env_int("API_PORT", 8080, min_val=0, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
