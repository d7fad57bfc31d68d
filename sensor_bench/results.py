from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from .accumulator import ThroughputSample
from .charts import render_throughput_chart

LOGGER = logging.getLogger("sensor_bench.results")

SAMPLE_COLUMNS = [
    "window_start",
    "window_end",
    "elapsed_s",
    "event_count",
    "total",
    "rate",
    "warmup",
]


def samples_dataframe(samples: Iterable[ThroughputSample]) -> pd.DataFrame:
    rows = [
        {
            "window_start": sample.window_start,
            "window_end": sample.window_end,
            "elapsed_s": sample.elapsed_s,
            "event_count": sample.event_count,
            "total": sample.total,
            "rate": sample.rate,
            "warmup": sample.warmup,
        }
        for sample in samples
    ]
    if not rows:
        return pd.DataFrame(columns=SAMPLE_COLUMNS)
    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)


def summarise(df: pd.DataFrame) -> dict[str, Any]:
    """Steady-state rate statistics; warm-up samples are left out of the rates."""

    if df.empty:
        return {
            "samples": 0,
            "steady_samples": 0,
            "total_events": 0,
            "mean_rate": 0.0,
            "min_rate": 0,
            "max_rate": 0,
            "overall_rate": 0.0,
        }

    steady = df[~df["warmup"].astype(bool)]
    elapsed = float(df["elapsed_s"].sum())
    total_events = int(df["total"].iloc[-1])
    counted = int(df["event_count"].sum())
    return {
        "samples": int(len(df)),
        "steady_samples": int(len(steady)),
        "total_events": total_events,
        "mean_rate": float(steady["rate"].mean()) if not steady.empty else 0.0,
        "min_rate": int(steady["rate"].min()) if not steady.empty else 0,
        "max_rate": int(steady["rate"].max()) if not steady.empty else 0,
        "overall_rate": counted / elapsed if elapsed > 0 else 0.0,
    }


def write_results(
    samples: Iterable[ThroughputSample],
    output_dir: Path,
    extra: dict[str, Any] | None = None,
    render_chart: bool = True,
) -> dict[str, Any]:
    """Store the samples as CSV next to a JSON manifest (and optionally a chart)."""

    output_dir.mkdir(parents=True, exist_ok=True)
    df = samples_dataframe(samples)

    csv_path = output_dir / "throughput_samples.csv"
    df.to_csv(csv_path, index=False)
    LOGGER.info("Saved %d throughput samples to %s", len(df), csv_path)

    manifest: dict[str, Any] = {"summary": summarise(df), "samples_csv": str(csv_path)}
    if extra:
        manifest.update(extra)

    if render_chart and not df.empty:
        chart_path = render_throughput_chart(df, output_dir / "throughput.png")
        manifest["chart"] = str(chart_path)

    manifest_path = output_dir / "benchmark_manifest.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    LOGGER.info("Benchmark manifest written to %s", manifest_path)
    return manifest

