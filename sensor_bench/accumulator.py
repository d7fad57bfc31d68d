from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

LOGGER = logging.getLogger("sensor_bench.reporter")

REPORT_FORMAT = "Server Throughput: %d events/sec"


class CounterCell:
    """Per-connection shard of an :class:`EventCounter`.

    Only the owning stream writes to a cell, so increments need no lock.
    """

    __slots__ = ("name", "value")

    def __init__(self, name: str) -> None:
        self.name = name
        self.value = 0

    def add(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("counter increments must be >= 0")
        self.value += amount


class EventCounter:
    """Monotonic event total shared by every collector stream.

    Writers never contend: each stream increments its own cell and the reporter
    sums the cells. When a stream ends its cell is retired: the final value is
    folded into a base count and the cell is dropped, so only live connections
    are summed. Base and live cells are published together as one tuple, so a
    reader sees the retired value exactly once and the total never goes
    backwards.
    """

    def __init__(self) -> None:
        self._state: tuple[int, tuple[CounterCell, ...]] = (0, ())
        self._register_lock = threading.Lock()
        self._opened = 0

    def cell(self, name: str = "") -> CounterCell:
        cell = CounterCell(name)
        with self._register_lock:
            base, cells = self._state
            self._state = (base, (*cells, cell))
            self._opened += 1
        return cell

    def retire(self, cell: CounterCell) -> None:
        """Fold a finished cell into the base. Its writer must be done with it."""

        with self._register_lock:
            base, cells = self._state
            if cell not in cells:
                return
            self._state = (base + cell.value, tuple(c for c in cells if c is not cell))

    def value(self) -> int:
        base, cells = self._state
        return base + sum(cell.value for cell in cells)

    @property
    def live_cells(self) -> int:
        return len(self._state[1])

    @property
    def connections(self) -> int:
        """Number of cells handed out since the counter was created."""
        return self._opened


@dataclass(frozen=True)
class ThroughputSample:
    window_start: float
    window_end: float
    event_count: int
    total: int
    warmup: bool = False

    def __post_init__(self) -> None:
        if self.event_count < 0:
            raise ValueError("event_count must be >= 0")
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")

    @property
    def elapsed_s(self) -> float:
        return self.window_end - self.window_start

    @property
    def rate(self) -> int:
        return round(self.event_count / self.elapsed_s)


@dataclass
class SampleHistory:
    """Sink that keeps every sample for export once the run is over."""

    samples: list[ThroughputSample] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __call__(self, sample: ThroughputSample) -> None:
        with self._lock:
            self.samples.append(sample)

    def snapshot(self) -> list[ThroughputSample]:
        with self._lock:
            return list(self.samples)


class ThroughputReporter:
    """Turns the raw event total into one throughput sample per interval.

    Runs on its own timer thread so reporting never sits in the counting path.
    Elapsed time is measured on the monotonic clock rather than assumed from the
    nominal interval, and the first sample is flagged as warm-up when it covers
    less than ``warmup_ratio`` of an interval.
    """

    def __init__(
        self,
        counter: EventCounter,
        interval_s: float = 1.0,
        warmup_ratio: float = 0.5,
        sink: Optional[Callable[[ThroughputSample], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._counter = counter
        self._interval_s = interval_s
        self._warmup_ratio = warmup_ratio
        self._sink = sink
        self._clock = clock
        self._wall_clock = wall_clock

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_total = counter.value()
        self._last_tick = clock()
        self._last_wall = wall_clock()
        self._samples_emitted = 0

    @property
    def last_report_time(self) -> float:
        return self._last_wall

    @property
    def samples_emitted(self) -> int:
        return self._samples_emitted

    def start(self) -> None:
        with self._tick_lock:
            self._last_total = self._counter.value()
            self._last_tick = self._clock()
            self._last_wall = self._wall_clock()

        def runner() -> None:
            while not self._stop_event.wait(timeout=self._interval_s):
                try:
                    self.tick()
                except Exception:  # noqa: BLE001
                    LOGGER.exception("failed to emit throughput report")

        thread = threading.Thread(target=runner, name="throughput-reporter", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self, final_sample: bool = True) -> ThroughputSample | None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        if not final_sample:
            return None
        with self._tick_lock:
            if self._counter.value() == self._last_total:
                return None
        return self.tick()

    def tick(self) -> ThroughputSample | None:
        """Take one snapshot, log the rate and hand the sample to the sink."""

        with self._tick_lock:
            now = self._clock()
            total = self._counter.value()
            elapsed = now - self._last_tick
            if elapsed <= 0:
                LOGGER.debug("skipping report, clock did not advance")
                return None

            delta = total - self._last_total
            warmup = (
                self._samples_emitted == 0
                and elapsed < self._interval_s * self._warmup_ratio
            )
            window_start = self._last_wall
            window_end = window_start + elapsed
            if window_end <= window_start:
                # Elapsed is below the resolution of an epoch timestamp. Leave the
                # delta pending for the next window.
                LOGGER.debug("skipping report, window of %.9fs is too short", elapsed)
                return None
            sample = ThroughputSample(
                window_start=window_start,
                window_end=window_end,
                event_count=delta,
                total=total,
                warmup=warmup,
            )
            self._last_total = total
            self._last_tick = now
            self._last_wall = window_end
            self._samples_emitted += 1

        if warmup:
            LOGGER.info(REPORT_FORMAT + " (warm-up, %.3fs window)", sample.rate, elapsed)
        else:
            LOGGER.info(REPORT_FORMAT, sample.rate)

        if self._sink is not None:
            try:
                self._sink(sample)
            except Exception:  # noqa: BLE001
                LOGGER.exception("throughput sink failed")
        return sample


__all__ = [
    "REPORT_FORMAT",
    "CounterCell",
    "EventCounter",
    "SampleHistory",
    "ThroughputReporter",
    "ThroughputSample",
]
