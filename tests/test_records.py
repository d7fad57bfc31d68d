"""Tests for synthetic record building and corpus loading."""

import itertools
import json
import threading

import pytest

from sensor_bench import records
from sensor_bench.errors import RecordError
from sensor_bench.records import (
    AlertTemplate,
    RecordSource,
    encode_record,
    load_corpus,
    stream_records,
    validate_record,
)


class TestValidateRecord:
    def test_accepts_alert_template(self):
        record = AlertTemplate().to_record(1)
        assert validate_record(record) is record

    def test_rejects_non_object(self):
        with pytest.raises(RecordError):
            validate_record(["timestamp", "event_type"])

    def test_rejects_missing_field(self):
        with pytest.raises(RecordError, match="event_type"):
            validate_record({"timestamp": "2023-10-27T10:00:00.000000+0000"})

    def test_rejects_wrong_type(self):
        with pytest.raises(RecordError, match="timestamp"):
            validate_record({"timestamp": 0, "event_type": "alert"})


class TestAlertTemplate:
    def test_render_is_one_json_line(self):
        line = AlertTemplate().render(7)
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        record = json.loads(line)
        assert record["event_type"] == "alert"
        assert record["alert"]["signature_id"] == 7
        assert record["flow_id"] == 7

    def test_sequences_render_distinct_lines(self):
        template = AlertTemplate()
        assert template.render(1) != template.render(2)

    def test_render_does_not_mutate_base(self):
        template = AlertTemplate()
        template.render(42)
        assert template.base["alert"]["signature_id"] == 1000001

    def test_prerendered_line_matches_full_encoding(self):
        template = AlertTemplate()
        for sequence in (1, 9, 10, 123_456_789):
            assert template.render(sequence) == encode_record(template.to_record(sequence))

    def test_custom_base_without_alert_section(self):
        template = AlertTemplate(base={"timestamp": "t", "event_type": "flow"})
        assert json.loads(template.render(3)) == {
            "timestamp": "t",
            "event_type": "flow",
            "flow_id": 3,
            "alert": {"signature_id": 3},
        }

    def test_render_does_not_serialise_per_line(self, monkeypatch):
        template = AlertTemplate()

        def fail(*args, **kwargs):
            raise AssertionError("json.dumps called while rendering")

        monkeypatch.setattr(records.json, "dumps", fail)
        lines = [template.render(sequence) for sequence in range(1, 1_001)]
        assert len(set(lines)) == 1_000

    def test_stamp_time_sets_current_timestamp(self):
        record = AlertTemplate(stamp_time=True).to_record(1)
        assert record["timestamp"] != "2023-10-27T10:00:00.000000+0000"
        validate_record(record)


class TestLoadCorpus:
    def test_loads_and_compacts_records(self, tmp_path):
        path = tmp_path / "corpus.jsonl"
        path.write_text(
            '{"timestamp": "t1", "event_type": "alert"}\n'
            "\n"
            '{"timestamp": "t2", "event_type": "dns", "dns": {"type": "query"}}\n',
            encoding="utf-8",
        )
        lines = load_corpus(path)
        assert lines == [
            b'{"timestamp":"t1","event_type":"alert"}\n',
            b'{"timestamp":"t2","event_type":"dns","dns":{"type":"query"}}\n',
        ]

    def test_invalid_json_reports_line_number(self, tmp_path):
        path = tmp_path / "corpus.jsonl"
        path.write_text('{"timestamp": "t1", "event_type": "alert"}\n{not json\n', encoding="utf-8")
        with pytest.raises(RecordError, match=":2:"):
            load_corpus(path)

    def test_invalid_record_is_rejected(self, tmp_path):
        path = tmp_path / "corpus.jsonl"
        path.write_text('{"event_type": "alert"}\n', encoding="utf-8")
        with pytest.raises(RecordError, match="timestamp"):
            load_corpus(path)

    def test_empty_corpus_is_rejected(self, tmp_path):
        path = tmp_path / "corpus.jsonl"
        path.write_text("\n\n", encoding="utf-8")
        with pytest.raises(RecordError, match="no records"):
            load_corpus(path)


class TestStreamRecords:
    def test_corpus_is_replayed_cyclically(self):
        source = RecordSource(corpus=[b"a\n", b"b\n"])
        assert list(stream_records(source, max_records=5)) == [b"a\n", b"b\n", b"a\n", b"b\n", b"a\n"]

    def test_template_source_is_the_default(self):
        source = RecordSource()
        lines = list(stream_records(source, max_records=3))
        assert [json.loads(line)["flow_id"] for line in lines] == [1, 2, 3]

    def test_interleaved_writers_get_disjoint_sequences(self):
        source = RecordSource()
        first = [json.loads(l)["flow_id"] for l in stream_records(source, 3, start=1, step=2)]
        second = [json.loads(l)["flow_id"] for l in stream_records(source, 3, start=2, step=2)]
        assert first == [1, 3, 5]
        assert second == [2, 4, 6]

    def test_stop_event_ends_stream(self):
        stop = threading.Event()
        lines = stream_records(RecordSource(corpus=[b"x\n"]), stop_event=stop)
        taken = list(itertools.islice(lines, 3))
        stop.set()
        assert len(taken) == 3
        assert list(lines) == []

    def test_empty_corpus_source_is_rejected(self):
        with pytest.raises(RecordError):
            RecordSource(corpus=[])

    def test_source_without_corpus_or_template_raises(self):
        source = RecordSource()
        source.template = None
        with pytest.raises(RecordError, match="neither"):
            source.line(1)
