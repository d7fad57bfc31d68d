"""Mock collector for the sensor's gRPC egress stream.

The service is ``sensor.SensorService`` with two client-streaming methods.
``StreamEvents`` is bidirectional and answers with JSON acks at the configured
cadence. ``StreamData`` returns a single JSON ack once the stream ends. The
sensor's own collector answers ``StreamData`` with an empty message. Sensors
that ignore the response body are unaffected, and the ack lets a test harness
check what was counted.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from concurrent import futures
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable, Iterator, Sequence

import grpc

from .accumulator import CounterCell, EventCounter
from .config import DEFAULT_REQUIRED_EVENT_FIELDS, CollectorConfig
from .errors import BatchDecodeError, CollectorBindError

LOGGER = logging.getLogger("sensor_bench.collector")

SERVICE_NAME = "sensor.SensorService"
STREAM_EVENTS_METHOD = f"/{SERVICE_NAME}/StreamEvents"
STREAM_DATA_METHOD = f"/{SERVICE_NAME}/StreamData"


def decode_batch(
    payload: bytes,
    required_fields: Sequence[str] = DEFAULT_REQUIRED_EVENT_FIELDS,
) -> list[dict[str, Any]]:
    """Decode one stream message into its events.

    Accepts a JSON array of events or an object with an ``events`` array. An
    empty message is an empty batch. Any event lacking one of
    ``required_fields`` rejects the whole batch.
    """

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BatchDecodeError("batch is not valid UTF-8") from exc
    if not text.strip():
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise BatchDecodeError(f"batch is not valid JSON ({exc.msg})") from exc
    except (ValueError, RecursionError) as exc:
        # Oversized integer literals and pathological nesting.
        raise BatchDecodeError(f"batch could not be decoded ({exc})") from exc

    if isinstance(data, dict):
        if "events" not in data:
            raise BatchDecodeError("batch object has no 'events' field")
        events = data["events"]
    else:
        events = data
    if not isinstance(events, list):
        raise BatchDecodeError(f"batch events must be a list, got {type(events).__name__}")

    for index, event in enumerate(events):
        if not isinstance(event, dict):
            raise BatchDecodeError(f"event {index} is not an object")
        missing = [name for name in required_fields if name not in event]
        if missing:
            raise BatchDecodeError(f"event {index} is missing {', '.join(missing)}")
    return events


@dataclass(frozen=True)
class Ack:
    """Cumulative receipt for one stream, sent back to the sensor."""

    batches: int
    events: int
    rejected: int

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "Ack":
        data = json.loads(payload.decode("utf-8"))
        return cls(batches=data["batches"], events=data["events"], rejected=data["rejected"])


class StreamSession:
    """Receive loop for a single sensor connection."""

    def __init__(
        self,
        cell: CounterCell,
        peer: str = "<unknown>",
        ack_every: int = 1,
        required_fields: Sequence[str] = DEFAULT_REQUIRED_EVENT_FIELDS,
        progress_every: int = 1_000,
        cancel: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.peer = peer
        self._cell = cell
        self._ack_every = ack_every
        self._required_fields = tuple(required_fields)
        self._progress_every = progress_every
        self._cancel = cancel
        self._clock = clock

        self.batches = 0
        self.events = 0
        self.rejected = 0
        self.last_activity = clock()
        self.idle_closed = False

    @property
    def cell(self) -> CounterCell:
        return self._cell

    def ack(self) -> Ack:
        return Ack(batches=self.batches, events=self.events, rejected=self.rejected)

    def idle_for(self) -> float:
        return self._clock() - self.last_activity

    def close_idle(self) -> None:
        self.idle_closed = True
        if self._cancel is not None:
            self._cancel()

    def consume(self, messages: Iterable[bytes]) -> Iterator[Ack]:
        """Count every decodable batch and yield acknowledgments.

        One ack is produced per ``ack_every`` received batches, malformed ones
        included, plus a final ack for any remainder. ``ack_every=0`` only
        produces the final ack.
        """

        LOGGER.info("Server: Accepted stream connection from %s", self.peer)
        pending = 0
        try:
            for payload in messages:
                self.last_activity = self._clock()
                pending += 1
                try:
                    events = decode_batch(payload, self._required_fields)
                except BatchDecodeError as exc:
                    self.rejected += 1
                    LOGGER.warning("Dropping malformed batch from %s: %s", self.peer, exc)
                else:
                    self._cell.add(len(events))
                    self.batches += 1
                    self.events += len(events)
                    if self._progress_every and self.batches % self._progress_every == 0:
                        LOGGER.info(
                            "Received %d batches (%d events) from %s. Last batch size: %d",
                            self.batches,
                            self.events,
                            self.peer,
                            len(events),
                        )

                if self._ack_every and pending >= self._ack_every:
                    pending = 0
                    yield self.ack()
        except grpc.RpcError as exc:
            if self.idle_closed:
                LOGGER.info("Server: Closed idle stream from %s", self.peer)
            else:
                LOGGER.warning("Server: Stream from %s failed: %s", self.peer, exc)
            return
        finally:
            LOGGER.info(
                "Server: Stream ended for %s (%d batches, %d events, %d rejected)",
                self.peer,
                self.batches,
                self.events,
                self.rejected,
            )

        if pending or not self._ack_every:
            yield self.ack()


class IdleWatchdog:
    """Cancels streams that have not delivered a message within the timeout."""

    def __init__(self, timeout_s: float, check_interval_s: float | None = None) -> None:
        self._timeout_s = timeout_s
        self._check_interval_s = check_interval_s or max(timeout_s / 4.0, 0.05)
        self._sessions: set[StreamSession] = set()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def register(self, session: StreamSession) -> None:
        with self._lock:
            self._sessions.add(session)

    def unregister(self, session: StreamSession) -> None:
        with self._lock:
            self._sessions.discard(session)

    def start(self) -> None:
        def runner() -> None:
            while not self._stop_event.wait(timeout=self._check_interval_s):
                self.sweep()

        thread = threading.Thread(target=runner, name="collector-idle-watchdog", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    def sweep(self) -> int:
        with self._lock:
            expired = [
                session
                for session in self._sessions
                if not session.idle_closed and session.idle_for() > self._timeout_s
            ]
        for session in expired:
            LOGGER.info(
                "Closing stream from %s after %.1fs without data",
                session.peer,
                session.idle_for(),
            )
            session.close_idle()
        return len(expired)


class CollectorServicer:
    """gRPC handlers for the sensor streaming service, all feeding one counter."""

    def __init__(
        self,
        counter: EventCounter,
        config: CollectorConfig,
        watchdog: IdleWatchdog | None = None,
    ) -> None:
        self._counter = counter
        self._config = config
        self._watchdog = watchdog
        self._session_ids = itertools.count(start=1)
        self._active = 0
        self._active_lock = threading.Lock()

    @property
    def active_streams(self) -> int:
        with self._active_lock:
            return self._active

    def open_session(self, context: grpc.ServicerContext, ack_every: int) -> StreamSession:
        peer = context.peer() or f"stream-{next(self._session_ids)}"
        session = StreamSession(
            cell=self._counter.cell(peer),
            peer=peer,
            ack_every=ack_every,
            required_fields=self._config.required_fields,
            progress_every=self._config.progress_every,
            cancel=context.cancel,
        )
        with self._active_lock:
            self._active += 1
        if self._watchdog is not None:
            self._watchdog.register(session)
        return session

    def close_session(self, session: StreamSession) -> None:
        if self._watchdog is not None:
            self._watchdog.unregister(session)
        self._counter.retire(session.cell)
        with self._active_lock:
            self._active -= 1

    def stream_events(
        self, request_iterator: Iterator[bytes], context: grpc.ServicerContext
    ) -> Iterator[bytes]:
        session = self.open_session(context, self._config.ack_every)
        try:
            for ack in session.consume(request_iterator):
                yield ack.to_bytes()
        finally:
            self.close_session(session)

    def stream_data(
        self, request_iterator: Iterator[bytes], context: grpc.ServicerContext
    ) -> bytes:
        session = self.open_session(context, ack_every=0)
        ack = session.ack()
        try:
            for ack in session.consume(request_iterator):
                pass
        finally:
            self.close_session(session)
        return ack.to_bytes()


def build_generic_handler(servicer: CollectorServicer) -> grpc.GenericRpcHandler:
    # No serializers: handlers see raw message bytes and decode them themselves,
    # so a malformed batch never fails the whole call.
    return grpc.method_handlers_generic_handler(
        SERVICE_NAME,
        {
            "StreamEvents": grpc.stream_stream_rpc_method_handler(servicer.stream_events),
            "StreamData": grpc.stream_unary_rpc_method_handler(servicer.stream_data),
        },
    )


class MockCollectorServer:
    """Stand-in for the remote collector that the sensor streams batches to."""

    def __init__(self, config: CollectorConfig, counter: EventCounter | None = None) -> None:
        self._config = config
        self.counter = counter or EventCounter()
        self._watchdog = (
            IdleWatchdog(config.idle_timeout_seconds) if config.idle_timeout_seconds > 0 else None
        )
        self.servicer = CollectorServicer(self.counter, config, self._watchdog)
        self._server: grpc.Server | None = None
        self._port: int | None = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("collector server is not started")
        return self._port

    def start(self) -> int:
        server = grpc.server(
            futures.ThreadPoolExecutor(
                max_workers=self._config.max_workers,
                thread_name_prefix="collector-stream",
            )
        )
        server.add_generic_rpc_handlers((build_generic_handler(self.servicer),))
        try:
            port = server.add_insecure_port(self._config.address)
        except RuntimeError as exc:
            raise CollectorBindError(f"failed to listen on {self._config.address}") from exc
        if port == 0:
            raise CollectorBindError(f"failed to listen on {self._config.address}")

        server.start()
        if self._watchdog is not None:
            self._watchdog.start()
        self._server = server
        self._port = port
        LOGGER.info("Mock gRPC Server listening on %s:%d", self._config.host, port)
        return port

    def stop(self, grace: float | None = 1.0) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
        if self._server is not None:
            self._server.stop(grace).wait()
            self._server = None
            LOGGER.info("Mock gRPC Server stopped (%d events counted)", self.counter.value())

    def wait_for_termination(self, timeout: float | None = None) -> bool:
        if self._server is None:
            return True
        return self._server.wait_for_termination(timeout=timeout)


__all__ = [
    "SERVICE_NAME",
    "STREAM_EVENTS_METHOD",
    "STREAM_DATA_METHOD",
    "Ack",
    "CollectorServicer",
    "IdleWatchdog",
    "MockCollectorServer",
    "StreamSession",
    "build_generic_handler",
    "decode_batch",
]
