from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable

from .accumulator import SampleHistory, ThroughputReporter
from .collector import MockCollectorServer
from .config import (
    DEFAULT_LISTEN_HOST,
    DEFAULT_LISTEN_PORT,
    DEFAULT_REQUIRED_EVENT_FIELDS,
    DEFAULT_SOCKET_PATH,
    CollectorConfig,
    GeneratorConfig,
    ReporterConfig,
)
from .errors import BenchError
from .generator import GeneratorStatistics, InputGenerator
from .results import write_results

LOGGER = logging.getLogger("sensor_bench")

# Bad flags, unreadable corpora and unusable output paths end the run with exit code 1.
SETUP_ERRORS = (BenchError, OSError, ValueError)


def _env_number(name: str, default: float, cast: Callable[[str], float] = float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError:
        print(
            f"invalid {name} value {value!r}; defaulting to {default}",
            file=sys.stderr,
        )
        return default


def _optional_positive(value: float | None) -> float | None:
    if value is None or value <= 0:
        return None
    return value


def _add_generator_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--socket",
        default=os.environ.get("SENSOR_SOCKET", DEFAULT_SOCKET_PATH),
        help="Path to the Unix socket the sensor reads alerts from",
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=_env_number("GENERATOR_RATE", 0.0),
        help="Rate limit (events/sec) for the input generator. 0 = unlimited",
    )
    parser.add_argument(
        "--writers",
        type=int,
        default=int(_env_number("GENERATOR_WRITERS", 1, int)),
        help="Number of parallel writer connections",
    )
    parser.add_argument(
        "--corpus",
        default=os.environ.get("GENERATOR_CORPUS"),
        help="JSON lines file to replay instead of the built-in alert template",
    )
    parser.add_argument(
        "--max-records",
        type=int,
        default=int(_env_number("GENERATOR_MAX_RECORDS", 0, int)),
        help="Stop after writing this many records (<=0 for no limit)",
    )
    parser.add_argument(
        "--startup-timeout",
        type=float,
        default=_env_number("GENERATOR_STARTUP_TIMEOUT_SECONDS", 60.0),
        help="Seconds to wait for the sensor socket to accept a connection",
    )
    parser.add_argument(
        "--max-reconnects",
        type=int,
        default=int(_env_number("GENERATOR_MAX_RECONNECTS", 5, int)),
        help="Reconnection attempts after a failed write before giving up",
    )


def _add_collector_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--host",
        default=os.environ.get("COLLECTOR_HOST", DEFAULT_LISTEN_HOST),
        help="Address the mock collector listens on",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(_env_number("COLLECTOR_PORT", DEFAULT_LISTEN_PORT, int)),
        help="Port to listen on for gRPC",
    )
    parser.add_argument(
        "--ack-every",
        type=int,
        default=int(_env_number("COLLECTOR_ACK_EVERY", 1, int)),
        help="Acknowledge every N batches (0 = only when the stream ends)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=_env_number("COLLECTOR_IDLE_TIMEOUT_SECONDS", 0.0),
        help="Close streams idle for this many seconds (0 disables)",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=int(_env_number("COLLECTOR_MAX_WORKERS", 32, int)),
        help="Maximum number of concurrent sensor streams",
    )
    parser.add_argument(
        "--required-fields",
        default=os.environ.get(
            "COLLECTOR_REQUIRED_FIELDS", ",".join(DEFAULT_REQUIRED_EVENT_FIELDS)
        ),
        help="Comma-separated fields every received event must carry",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=_env_number("REPORT_INTERVAL_SECONDS", 1.0),
        help="Seconds between throughput reports",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("BENCHMARK_OUTPUT_DIR"),
        help="Directory to store throughput samples, manifest and chart",
    )
    parser.add_argument(
        "--no-chart",
        action="store_true",
        help="Skip rendering the throughput chart",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sensor throughput benchmark harness")
    parser.add_argument(
        "--duration",
        type=float,
        default=_env_number("BENCHMARK_DURATION_SECONDS", 0.0),
        help="Seconds to run (<=0 runs until interrupted)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BENCHMARK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        default=os.environ.get("BENCHMARK_LOG_FILE"),
        help="Also write log records to this file",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    generate = commands.add_parser("generate", help="Flood the sensor socket with alerts")
    _add_generator_args(generate)
    collect = commands.add_parser("collect", help="Run the mock collector and report throughput")
    _add_collector_args(collect)
    run = commands.add_parser("run", help="Run the generator and the mock collector together")
    _add_generator_args(run)
    _add_collector_args(run)
    return parser.parse_args(argv)


def setup_logging(level: str, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="w", encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def generator_config_from_args(args: argparse.Namespace) -> GeneratorConfig:
    return GeneratorConfig(
        socket_path=args.socket,
        rate_per_second=max(args.rate, 0.0),
        duration_seconds=_optional_positive(args.duration),
        writers=max(args.writers, 1),
        corpus_path=Path(args.corpus) if args.corpus else None,
        max_records=args.max_records if args.max_records > 0 else None,
        startup_timeout_seconds=args.startup_timeout,
        max_reconnects=max(args.max_reconnects, 0),
    )


def collector_config_from_args(args: argparse.Namespace) -> CollectorConfig:
    fields = tuple(item.strip() for item in args.required_fields.split(",") if item.strip())
    return CollectorConfig(
        host=args.host,
        port=args.port,
        max_workers=max(args.max_workers, 1),
        ack_every=max(args.ack_every, 0),
        idle_timeout_seconds=max(args.idle_timeout, 0.0),
        required_fields=fields,
    )


def reporter_config_from_args(args: argparse.Namespace) -> ReporterConfig:
    return ReporterConfig(
        interval_seconds=args.interval,
        output_dir=Path(args.output_dir) if args.output_dir else None,
        render_chart=not args.no_chart,
    )


def install_signal_handlers(stop_event: threading.Event, on_stop: Callable[[], None] | None = None) -> None:
    def handler(signum, frame) -> None:
        LOGGER.info("Shutting down (signal %d)...", signum)
        stop_event.set()
        if on_stop is not None:
            on_stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


class CollectorRun:
    """Mock collector plus the reporter that samples its counter."""

    def __init__(self, collector_config: CollectorConfig, reporter_config: ReporterConfig) -> None:
        self.server = MockCollectorServer(collector_config)
        self.history = SampleHistory()
        self.reporter = ThroughputReporter(
            self.server.counter,
            interval_s=reporter_config.interval_seconds,
            warmup_ratio=reporter_config.warmup_ratio,
            sink=self.history,
        )
        self._reporter_config = reporter_config

    def start(self) -> None:
        self.server.start()
        self.reporter.start()

    def stop(self, extra: dict | None = None) -> None:
        self.server.stop()
        self.reporter.stop()
        LOGGER.info("Total events counted: %d", self.server.counter.value())
        output_dir = self._reporter_config.output_dir
        if output_dir is not None:
            write_results(
                self.history.snapshot(),
                output_dir,
                extra=extra,
                render_chart=self._reporter_config.render_chart,
            )


def _generator_summary(stats: GeneratorStatistics | None) -> dict:
    if stats is None:
        return {}
    return {
        "generator": {
            "produced": stats.produced,
            "duration_s": stats.duration_s,
            "throughput_per_second": stats.throughput_per_second,
            "reconnects": stats.reconnects,
        }
    }


def run_generate(args: argparse.Namespace) -> int:
    try:
        generator = InputGenerator(generator_config_from_args(args))
    except SETUP_ERRORS as exc:
        LOGGER.error("Input generator setup failed: %s", exc)
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event, generator.stop)
    try:
        generator.run()
    except BenchError as exc:
        LOGGER.error("Input generator failed: %s", exc)
        return 1
    return 0


def _start_collector(args: argparse.Namespace) -> CollectorRun | None:
    try:
        collector = CollectorRun(collector_config_from_args(args), reporter_config_from_args(args))
        collector.start()
    except SETUP_ERRORS as exc:
        LOGGER.error("Mock collector failed to start: %s", exc)
        return None
    return collector


def _finish_collector(collector: CollectorRun, extra: dict | None = None) -> int:
    try:
        collector.stop(extra=extra)
    except OSError as exc:
        LOGGER.error("Failed to write benchmark results: %s", exc)
        return 1
    return 0


def run_collect(args: argparse.Namespace) -> int:
    collector = _start_collector(args)
    if collector is None:
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    stop_event.wait(_optional_positive(args.duration))
    return _finish_collector(collector)


def run_all(args: argparse.Namespace) -> int:
    try:
        generator = InputGenerator(generator_config_from_args(args))
    except SETUP_ERRORS as exc:
        LOGGER.error("Input generator setup failed: %s", exc)
        return 1
    collector = _start_collector(args)
    if collector is None:
        return 1

    stop_event = threading.Event()
    install_signal_handlers(stop_event, generator.stop)
    outcome: dict[str, object] = {}

    def generator_runner() -> None:
        try:
            outcome["stats"] = generator.run()
        except BenchError as exc:
            outcome["error"] = exc
            LOGGER.error("Input generator failed: %s", exc)
            stop_event.set()

    thread = threading.Thread(target=generator_runner, name="input-generator", daemon=True)
    thread.start()

    stop_event.wait(_optional_positive(args.duration))
    generator.stop()
    thread.join(timeout=10.0)
    # Give the sensor a moment to flush what it already read.
    time.sleep(min(args.interval, 2.0))
    code = _finish_collector(collector, extra=_generator_summary(outcome.get("stats")))
    return 1 if "error" in outcome else code


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    if args.command == "generate":
        return run_generate(args)
    if args.command == "collect":
        return run_collect(args)
    return run_all(args)


if __name__ == "__main__":
    sys.exit(main())
