"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ControllerConfig:
    """Reconciliation loop configuration."""

    reconciliation_interval: str = "12h"
    default_service_type: str = "LoadBalancer"
    namespace: str = ""
    stack_api_version: str = "v1alpha3"
    sync_timeout_seconds: int = 600

    @property
    def reconciliation_interval_seconds(self) -> float:
        return parse_duration(self.reconciliation_interval)


@dataclass
class QueueConfig:
    """Capacities of the controller's internal queues."""

    reconcile_queue_length: int = 200
    deletion_channel_size: int = 50
    retry_queue_length: int = 20
    retry_delay_seconds: float = 1.0


@dataclass
class RevisionConfig:
    """Stack revision history configuration."""

    history_limit: int = 10


@dataclass
class APIConfig:
    """REST API configuration. A port of 0 disables the server."""

    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubeStackConfig:
    """Top-level kubestack configuration."""

    controller: ControllerConfig = field(default_factory=ControllerConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    revisions: RevisionConfig = field(default_factory=RevisionConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)


_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> float:
    """Convert ``"30s"``, ``"15m"``, ``"12h"`` or ``"1d"`` to seconds."""
    value = value.strip()
    if len(value) < 2 or value[-1] not in _DURATION_UNITS or not value[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value!r}")
    return float(int(value[:-1]) * _DURATION_UNITS[value[-1]])
