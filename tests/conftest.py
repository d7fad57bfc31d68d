"""Shared fixtures: a Unix socket line sink, a fake sensor and a live collector."""

import json
import os
import shutil
import socket
import tempfile
import threading
import time

import grpc
import pytest

from sensor_bench.collector import STREAM_DATA_METHOD, Ack, MockCollectorServer
from sensor_bench.config import CollectorConfig


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class LineSink:
    """Unix socket listener that records every newline-terminated line it receives."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.lines: list[bytes] = []
        self.connections = 0
        self._lock = threading.Lock()
        self._server: socket.socket | None = None
        self._clients: list[socket.socket] = []
        self._stop = threading.Event()

    def start(self) -> None:
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(self.path)
        server.listen(16)
        server.settimeout(0.1)
        self._server = server
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                client, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with self._lock:
                self._clients.append(client)
                self.connections += 1
            threading.Thread(target=self._read_loop, args=(client,), daemon=True).start()

    def _read_loop(self, client: socket.socket) -> None:
        with client.makefile("rb") as reader:
            try:
                for line in reader:
                    with self._lock:
                        self.lines.append(line)
            except (OSError, ValueError):
                return

    def snapshot(self) -> list[bytes]:
        with self._lock:
            return list(self.lines)

    def wait_for(self, count: int, timeout: float = 5.0) -> list[bytes]:
        deadline = time.time() + timeout
        while time.time() < deadline:
            lines = self.snapshot()
            if len(lines) >= count:
                return lines
            time.sleep(0.01)
        return self.snapshot()

    def shutdown(self) -> None:
        """Stop listening, drop every client and remove the socket file."""

        self._stop.set()
        if self._server is not None:
            self._server.close()
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.close()
        if os.path.exists(self.path):
            os.unlink(self.path)


class FakeSensor:
    """Reads alert lines from a Unix socket and forwards them to the collector in batches."""

    def __init__(self, socket_path: str, collector_port: int, batch_size: int = 100) -> None:
        self.socket_path = socket_path
        self.collector_port = collector_port
        self.batch_size = batch_size
        self.ack: Ack | None = None
        self.error: BaseException | None = None
        self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._server.bind(self.socket_path)
        self._server.listen(1)
        self._thread.start()

    def join(self, timeout: float = 10.0) -> None:
        self._thread.join(timeout)
        self._server.close()

    def _batches(self, reader):
        batch = []
        for raw in reader:
            record = json.loads(raw)
            batch.append({"id": str(record["flow_id"]), "timestamp": record["timestamp"]})
            if len(batch) >= self.batch_size:
                yield json.dumps(batch).encode("utf-8")
                batch = []
        if batch:
            yield json.dumps(batch).encode("utf-8")

    def _run(self) -> None:
        try:
            client, _ = self._server.accept()
            with client, client.makefile("rb") as reader:
                with grpc.insecure_channel(f"127.0.0.1:{self.collector_port}") as channel:
                    call = channel.stream_unary(STREAM_DATA_METHOD)
                    self.ack = Ack.from_bytes(call(self._batches(reader), timeout=30))
        except BaseException as exc:  # noqa: BLE001
            self.error = exc


@pytest.fixture()
def socket_dir():
    # Unix socket paths are length limited, keep them short.
    path = tempfile.mkdtemp(prefix="sb-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture()
def socket_path(socket_dir):
    return os.path.join(socket_dir, "sensor.sock")


@pytest.fixture()
def line_sink(socket_path):
    sink = LineSink(socket_path)
    sink.start()
    yield sink
    sink.shutdown()


@pytest.fixture()
def collector_config():
    return CollectorConfig(host="127.0.0.1", port=0, max_workers=8, progress_every=0)


@pytest.fixture()
def collector(collector_config):
    server = MockCollectorServer(collector_config)
    server.start()
    yield server
    server.stop(grace=None)


@pytest.fixture()
def channel(collector):
    with grpc.insecure_channel(f"127.0.0.1:{collector.port}") as chan:
        grpc.channel_ready_future(chan).result(timeout=5)
        yield chan


@pytest.fixture()
def fake_clock():
    return FakeClock()


@pytest.fixture()
def make_fake_sensor(socket_path):
    sensors = []

    def factory(collector_port: int, batch_size: int = 100) -> FakeSensor:
        sensor = FakeSensor(socket_path, collector_port, batch_size)
        sensor.start()
        sensors.append(sensor)
        return sensor

    yield factory
    for sensor in sensors:
        sensor.join(timeout=1.0)


@pytest.fixture()
def delayed_line_sink(socket_path):
    """A sink whose socket only appears once the test calls ``start``."""

    sink = LineSink(socket_path)
    yield sink
    sink.shutdown()


@pytest.fixture()
def make_line_sink(socket_path):
    """Factory for sinks on the shared socket path, so a test can bring the endpoint back."""

    sinks = []

    def factory(start: bool = True) -> LineSink:
        sink = LineSink(socket_path)
        if start:
            sink.start()
        sinks.append(sink)
        return sink

    yield factory
    for sink in sinks:
        sink.shutdown()
