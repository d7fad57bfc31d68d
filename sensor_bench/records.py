from __future__ import annotations

import copy
import datetime
import itertools
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Sequence

from .errors import RecordError

REQUIRED_RECORD_FIELDS: tuple[str, ...] = ("timestamp", "event_type")

SURICATA_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"

# Placeholder for the per-line sequence number in a pre-rendered template.
_SEQUENCE_SLOT = "__sensor_bench_sequence__"

ALERT_RECORD: dict[str, Any] = {
    "metadata": {
        "sensor_id": "test",
        "sensor_version": "1.0",
        "sent_at": 0,
        "hash_sha256": "hash",
        "read_at": 0,
        "received_at": 0,
    },
    "timestamp": "2023-10-27T10:00:00.000000+0000",
    "flow_id": 123456789,
    "in_iface": "eth0",
    "event_type": "alert",
    "src_ip": "192.168.1.10",
    "src_port": 12345,
    "dest_ip": "10.0.0.1",
    "dest_port": 80,
    "proto": "TCP",
    "alert": {
        "action": "allowed",
        "gid": 1,
        "signature_id": 1000001,
        "rev": 1,
        "signature": "Test Alert",
        "category": "Misc",
        "severity": 3,
    },
    "http": {
        "hostname": "example.com",
        "url": "/",
        "http_user_agent": "Mozilla/5.0",
        "http_content_type": "text/html",
        "http_method": "GET",
        "protocol": "HTTP/1.1",
        "status": 200,
        "length": 1024,
    },
    "app_proto": "http",
    "flow": {
        "pkts_toserver": 10,
        "pkts_toclient": 10,
        "bytes_toserver": 1000,
        "bytes_toclient": 5000,
        "start": "2023-10-27T10:00:00.000000+0000",
    },
}


def validate_record(record: Any) -> dict[str, Any]:
    if not isinstance(record, dict):
        raise RecordError(f"record must be a JSON object, got {type(record).__name__}")
    for name in REQUIRED_RECORD_FIELDS:
        if name not in record:
            raise RecordError(f"record is missing required field {name!r}")
        if not isinstance(record[name], str):
            raise RecordError(f"record field {name!r} must be a string")
    return record


def encode_record(record: dict[str, Any]) -> bytes:
    return json.dumps(record, separators=(",", ":")).encode("utf-8") + b"\n"


@dataclass(frozen=True)
class AlertTemplate:
    """Suricata EVE alert that gets a fresh signature per rendered record.

    The sequence number is written into ``alert.signature_id`` and ``flow_id``
    so the sensor computes a distinct content hash for every line. The record
    is serialised once up front with placeholders in those two slots, and each
    line only joins the pieces around the sequence number.
    """

    base: dict[str, Any] = field(default_factory=lambda: copy.deepcopy(ALERT_RECORD))
    stamp_time: bool = False
    _pieces: tuple[bytes, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        record = self._with_sequence(_SEQUENCE_SLOT)
        text = json.dumps(record, separators=(",", ":"))
        pieces = tuple(part.encode("utf-8") for part in text.split(f'"{_SEQUENCE_SLOT}"'))
        object.__setattr__(self, "_pieces", pieces)

    def _with_sequence(self, value: Any) -> dict[str, Any]:
        record = copy.deepcopy(self.base)
        record["flow_id"] = value
        record.setdefault("alert", {})["signature_id"] = value
        return record

    def to_record(self, sequence: int) -> dict[str, Any]:
        record = self._with_sequence(sequence)
        if self.stamp_time:
            record["timestamp"] = datetime.datetime.now(datetime.timezone.utc).strftime(
                SURICATA_TIME_FORMAT
            )
        return record

    def render(self, sequence: int) -> bytes:
        if self.stamp_time:
            return encode_record(self.to_record(sequence))
        return str(sequence).encode("ascii").join(self._pieces) + b"\n"


def load_corpus(path: Path) -> list[bytes]:
    """Read a JSON lines corpus, validating and compacting every record."""

    lines: list[bytes] = []
    with open(path, "r", encoding="utf-8") as handle:
        for number, raw in enumerate(handle, start=1):
            if not raw.strip():
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise RecordError(f"{path}:{number}: invalid JSON ({exc.msg})") from exc
            try:
                validate_record(record)
            except RecordError as exc:
                raise RecordError(f"{path}:{number}: {exc}") from exc
            lines.append(encode_record(record))
    if not lines:
        raise RecordError(f"corpus {path} contains no records")
    return lines


@dataclass
class RecordSource:
    """Where synthetic lines come from: a replayed corpus or the alert template."""

    corpus: Sequence[bytes] | None = None
    template: AlertTemplate | None = None

    def __post_init__(self) -> None:
        if self.corpus is None and self.template is None:
            self.template = AlertTemplate()
        if self.corpus is not None and not self.corpus:
            raise RecordError("corpus must contain at least one record")

    @classmethod
    def from_path(cls, path: Path | None) -> "RecordSource":
        if path is None:
            return cls()
        return cls(corpus=load_corpus(path))

    def line(self, sequence: int) -> bytes:
        if self.corpus is not None:
            return self.corpus[(sequence - 1) % len(self.corpus)]
        if self.template is None:
            raise RecordError("record source has neither a corpus nor a template")
        return self.template.render(sequence)


def stream_records(
    source: RecordSource,
    max_records: int | None = None,
    stop_event: threading.Event | None = None,
    start: int = 1,
    step: int = 1,
) -> Iterator[bytes]:
    """Yield encoded lines until ``max_records`` is reached or the stop event fires.

    ``start`` and ``step`` let parallel writers interleave disjoint sequence
    numbers over the same source.
    """

    produced = 0
    for sequence in itertools.count(start, step):
        if stop_event is not None and stop_event.is_set():
            return
        if max_records is not None and produced >= max_records:
            return
        yield source.line(sequence)
        produced += 1


__all__ = [
    "REQUIRED_RECORD_FIELDS",
    "ALERT_RECORD",
    "AlertTemplate",
    "RecordSource",
    "encode_record",
    "load_corpus",
    "stream_records",
    "validate_record",
]
