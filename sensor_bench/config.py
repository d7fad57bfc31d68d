from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_SOCKET_PATH = "/tmp/suricata.sock"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 50051
DEFAULT_REQUIRED_EVENT_FIELDS: tuple[str, ...] = ("id", "timestamp")


@dataclass(frozen=True)
class GeneratorConfig:
    """Settings for the input generator that floods the sensor socket."""

    socket_path: str = DEFAULT_SOCKET_PATH
    rate_per_second: float = 0.0
    duration_seconds: float | None = None
    writers: int = 1
    corpus_path: Path | None = None
    max_records: int | None = None
    startup_timeout_seconds: float = 60.0
    max_reconnects: int = 5
    reconnect_delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.rate_per_second < 0:
            raise ValueError("rate_per_second must be >= 0")
        if self.writers < 1:
            raise ValueError("writers must be >= 1")
        if self.max_reconnects < 0:
            raise ValueError("max_reconnects must be >= 0")

    @property
    def rate_limited(self) -> bool:
        return self.rate_per_second > 0

    def rate_per_writer(self) -> float:
        if not self.rate_limited:
            return 0.0
        return self.rate_per_second / self.writers


@dataclass(frozen=True)
class CollectorConfig:
    """Settings for the mock gRPC collector the sensor streams into."""

    host: str = DEFAULT_LISTEN_HOST
    port: int = DEFAULT_LISTEN_PORT
    max_workers: int = 32
    ack_every: int = 1
    idle_timeout_seconds: float = 0.0
    required_fields: tuple[str, ...] = DEFAULT_REQUIRED_EVENT_FIELDS
    progress_every: int = 1_000

    def __post_init__(self) -> None:
        if self.ack_every < 0:
            raise ValueError("ack_every must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.idle_timeout_seconds < 0:
            raise ValueError("idle_timeout_seconds must be >= 0")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ReporterConfig:
    """Cadence and export options for throughput reporting."""

    interval_seconds: float = 1.0
    warmup_ratio: float = 0.5
    output_dir: Path | None = None
    render_chart: bool = True

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if not 0.0 <= self.warmup_ratio <= 1.0:
            raise ValueError("warmup_ratio must be within [0, 1]")

