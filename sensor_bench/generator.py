"""Input generator that floods the sensor's ingestion socket.

Records are written fire-and-forget: nothing is read back from the socket.
That keeps generator overhead out of the measurement but also means sensor
backpressure is only visible as blocking writes. With an unbounded rate the
kernel socket buffer, not the sensor, can become the bottleneck; set
``rate_per_second`` to offer a fixed load instead.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator

from .config import GeneratorConfig
from .errors import GeneratorConnectError, GeneratorWriteError
from .records import RecordSource, stream_records

LOGGER = logging.getLogger("sensor_bench.generator")


@dataclass
class GeneratorStatistics:
    produced: int
    started_at: float
    finished_at: float
    reconnects: int = 0

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def throughput_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.produced / self.duration_s

    def merge(self, other: "GeneratorStatistics") -> "GeneratorStatistics":
        return GeneratorStatistics(
            produced=self.produced + other.produced,
            started_at=min(self.started_at, other.started_at),
            finished_at=max(self.finished_at, other.finished_at),
            reconnects=self.reconnects + other.reconnects,
        )


def connect_unix_socket(
    path: str,
    timeout_s: float,
    stop_event: threading.Event | None = None,
    connect_timeout_s: float = 5.0,
) -> socket.socket:
    """Wait for the socket file to appear and accept us, backing off between tries."""

    backoff = 0.1
    max_backoff = 2.0
    deadline = time.time() + timeout_s
    announced = False

    while True:
        if stop_event is not None and stop_event.is_set():
            raise GeneratorConnectError(f"stopped while waiting for {path}")
        if os.path.exists(path):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(connect_timeout_s)
            try:
                sock.connect(path)
            except OSError as exc:
                sock.close()
                LOGGER.debug("Connection to %s refused: %s", path, exc)
            else:
                sock.settimeout(None)
                return sock
        elif not announced:
            LOGGER.info("Input Generator: Waiting for socket %s...", path)
            announced = True

        if time.time() >= deadline:
            raise GeneratorConnectError(
                f"socket {path} did not accept a connection within {timeout_s:.0f} seconds"
            )
        if stop_event is not None:
            if stop_event.wait(backoff):
                raise GeneratorConnectError(f"stopped while waiting for {path}")
        else:
            time.sleep(backoff)
        backoff = min(backoff * 1.5, max_backoff)


class Pacer:
    """Spaces writes against an absolute schedule so the mean rate does not drift."""

    def __init__(
        self,
        rate_per_second: float,
        stop_event: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._stop_event = stop_event
        self._clock = clock
        self._started = clock()
        self._sent = 0

    def wait(self) -> bool:
        """Block until the next write is due. Returns False when stopped."""

        if self._interval == 0.0:
            return not self._stop_event.is_set()
        due = self._started + self._sent * self._interval
        self._sent += 1
        delay = due - self._clock()
        if delay > 0:
            return not self._stop_event.wait(timeout=delay)
        return not self._stop_event.is_set()


class SocketWriter:
    """One connection to the sensor socket, replaced on write failure."""

    def __init__(self, config: GeneratorConfig, stop_event: threading.Event, name: str) -> None:
        self._config = config
        self._stop_event = stop_event
        self._name = name
        self._sock: socket.socket | None = None
        self.reconnects = 0

    def open(self) -> None:
        self._sock = connect_unix_socket(
            self._config.socket_path,
            self._config.startup_timeout_seconds,
            self._stop_event,
        )
        LOGGER.info("Input Generator (%s): Connected. Starting flood...", self._name)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                LOGGER.debug("error closing socket for %s", self._name, exc_info=True)
            self._sock = None

    def write(self, line: bytes) -> None:
        """Write one whole line, reconnecting up to ``max_reconnects`` times."""

        failures = 0
        while True:
            try:
                if self._sock is None:
                    raise ConnectionError("not connected")
                self._sock.sendall(line)
                return
            except OSError as exc:
                self.close()
                failures += 1
                if failures > self._config.max_reconnects:
                    raise GeneratorWriteError(
                        f"{self._name}: write to {self._config.socket_path} failed "
                        f"after {self._config.max_reconnects} reconnect attempts"
                    ) from exc
                LOGGER.warning(
                    "Input Generator (%s): write failed (%s), reconnecting (%d/%d)",
                    self._name,
                    exc,
                    failures,
                    self._config.max_reconnects,
                )
                if self._stop_event.wait(self._config.reconnect_delay_seconds):
                    raise GeneratorWriteError(f"{self._name}: stopped while reconnecting") from exc
                try:
                    self._sock = connect_unix_socket(
                        self._config.socket_path,
                        self._config.reconnect_delay_seconds,
                        self._stop_event,
                    )
                except GeneratorConnectError:
                    continue
                self.reconnects += 1


class InputGenerator:
    """Writes synthetic alert records to the sensor's Unix socket as fast as allowed."""

    def __init__(self, config: GeneratorConfig, source: RecordSource | None = None) -> None:
        self._config = config
        self._source = source or RecordSource.from_path(config.corpus_path)
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self, duration_seconds: float | None = None) -> GeneratorStatistics:
        duration = duration_seconds if duration_seconds is not None else self._config.duration_seconds
        writers = self._config.writers
        LOGGER.info(
            "Starting Input Generator targeting %s (writers=%d, rate=%s)",
            self._config.socket_path,
            writers,
            f"{self._config.rate_per_second:g}/s" if self._config.rate_limited else "unlimited",
        )

        timer: threading.Timer | None = None
        if duration is not None:
            timer = threading.Timer(duration, self._stop_event.set)
            timer.daemon = True

        results: list[GeneratorStatistics | None] = [None] * writers
        errors: list[Exception] = []

        def worker(index: int) -> None:
            try:
                results[index] = self._write_loop(index)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
                self._stop_event.set()

        started_at = time.time()
        if timer is not None:
            timer.start()
        try:
            if writers == 1:
                results[0] = self._write_loop(0)
            else:
                threads = [
                    threading.Thread(target=worker, args=(index,), name=f"generator-writer-{index}")
                    for index in range(writers)
                ]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join()
        finally:
            if timer is not None:
                timer.cancel()

        if errors:
            raise errors[0]

        stats = GeneratorStatistics(produced=0, started_at=started_at, finished_at=started_at)
        for result in results:
            if result is not None:
                stats = stats.merge(result)
        LOGGER.info(
            "Input Generator finished: %d records in %.2fs (%.0f records/sec, %d reconnects)",
            stats.produced,
            stats.duration_s,
            stats.throughput_per_second,
            stats.reconnects,
        )
        return stats

    def _records_for(self, index: int) -> Iterator[bytes]:
        max_records = self._config.max_records
        if max_records is not None:
            writers = self._config.writers
            # Spread the remainder over the first writers.
            max_records = max_records // writers + (1 if index < max_records % writers else 0)
        return stream_records(
            self._source,
            max_records=max_records,
            stop_event=self._stop_event,
            start=index + 1,
            step=self._config.writers,
        )

    def _write_loop(self, index: int) -> GeneratorStatistics:
        writer = SocketWriter(self._config, self._stop_event, name=f"writer-{index}")
        try:
            writer.open()
        except GeneratorConnectError:
            if self._stop_event.is_set():
                now = time.time()
                return GeneratorStatistics(produced=0, started_at=now, finished_at=now)
            raise

        pacer = Pacer(self._config.rate_per_writer(), self._stop_event)
        produced = 0
        started_at = time.time()
        try:
            for line in self._records_for(index):
                if not pacer.wait():
                    break
                try:
                    writer.write(line)
                except GeneratorWriteError:
                    if self._stop_event.is_set():
                        break
                    raise
                produced += 1
        finally:
            writer.close()
        return GeneratorStatistics(
            produced=produced,
            started_at=started_at,
            finished_at=time.time(),
            reconnects=writer.reconnects,
        )


__all__ = [
    "GeneratorStatistics",
    "InputGenerator",
    "Pacer",
    "SocketWriter",
    "connect_unix_socket",
]
