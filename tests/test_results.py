"""Tests for sample export and summaries."""

import json

import pandas as pd
import pytest

from sensor_bench.accumulator import ThroughputSample
from sensor_bench.results import SAMPLE_COLUMNS, samples_dataframe, summarise, write_results


def make_samples():
    return [
        ThroughputSample(window_start=0.0, window_end=0.2, event_count=100, total=100, warmup=True),
        ThroughputSample(window_start=0.2, window_end=1.2, event_count=1_000, total=1_100),
        ThroughputSample(window_start=1.2, window_end=2.2, event_count=3_000, total=4_100),
    ]


class TestSamplesDataframe:
    def test_columns_and_rates(self):
        df = samples_dataframe(make_samples())
        assert list(df.columns) == SAMPLE_COLUMNS
        assert df["rate"].tolist() == [500, 1_000, 3_000]
        assert df["warmup"].tolist() == [True, False, False]

    def test_empty(self):
        df = samples_dataframe([])
        assert df.empty
        assert list(df.columns) == SAMPLE_COLUMNS


class TestSummarise:
    def test_warmup_is_excluded_from_rates(self):
        summary = summarise(samples_dataframe(make_samples()))
        assert summary["samples"] == 3
        assert summary["steady_samples"] == 2
        assert summary["total_events"] == 4_100
        assert summary["mean_rate"] == 2_000.0
        assert summary["min_rate"] == 1_000
        assert summary["max_rate"] == 3_000
        assert summary["overall_rate"] == pytest.approx(4_100 / 2.2)

    def test_empty(self):
        summary = summarise(samples_dataframe([]))
        assert summary["samples"] == 0
        assert summary["total_events"] == 0


class TestWriteResults:
    def test_writes_csv_and_manifest(self, tmp_path):
        manifest = write_results(
            make_samples(),
            tmp_path / "out",
            extra={"generator": {"produced": 4_100}},
            render_chart=False,
        )

        csv = pd.read_csv(tmp_path / "out" / "throughput_samples.csv")
        assert csv["event_count"].sum() == 4_100
        stored = json.loads((tmp_path / "out" / "benchmark_manifest.json").read_text())
        assert stored == manifest
        assert stored["generator"] == {"produced": 4_100}
        assert stored["summary"]["total_events"] == 4_100
        assert "chart" not in stored

    def test_renders_chart(self, tmp_path):
        manifest = write_results(make_samples(), tmp_path)
        chart = tmp_path / "throughput.png"
        assert manifest["chart"] == str(chart)
        assert chart.stat().st_size > 0
