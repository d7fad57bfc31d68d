from __future__ import annotations


class BenchError(Exception):
    """Base class for errors raised by the benchmark harness."""


class RecordError(BenchError):
    """Raised when a synthetic record does not match the ingestion schema."""


class GeneratorConnectError(BenchError):
    """Raised when the input socket never accepts a connection in time."""


class GeneratorWriteError(BenchError):
    """Raised when the generator runs out of reconnection attempts."""


class BatchDecodeError(BenchError):
    """Raised when a stream message cannot be decoded into an event batch."""


class CollectorBindError(BenchError):
    """Raised when the mock collector cannot listen on its address."""


__all__ = [
    "BenchError",
    "RecordError",
    "GeneratorConnectError",
    "GeneratorWriteError",
    "BatchDecodeError",
    "CollectorBindError",
]
