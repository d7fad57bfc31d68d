from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("sensor_bench.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

RATE_COLOR = "#2E86AB"
WARMUP_COLOR = "#F18F01"
MEAN_COLOR = "#C73E1D"


def render_throughput_chart(
    df: pd.DataFrame,
    chart_path: Path,
    title: str = "Server Throughput",
) -> Path:
    """Plot events/sec per reporting window, warm-up windows highlighted."""

    if df.empty:
        LOGGER.warning("No throughput samples available for chart")
        return chart_path

    df = df.copy()
    df["elapsed"] = df["window_end"] - df["window_start"].iloc[0]
    steady = df[~df["warmup"].astype(bool)]
    warmup = df[df["warmup"].astype(bool)]

    fig, ax = plt.subplots(figsize=(12, 6))
    sns.lineplot(
        data=df,
        x="elapsed",
        y="rate",
        marker="o",
        linewidth=2.0,
        markersize=5,
        color=RATE_COLOR,
        ax=ax,
    )
    if not warmup.empty:
        ax.scatter(
            warmup["elapsed"],
            warmup["rate"],
            color=WARMUP_COLOR,
            s=60,
            zorder=3,
            label="warm-up",
        )
    if not steady.empty:
        mean_rate = steady["rate"].mean()
        ax.axhline(
            mean_rate,
            color=MEAN_COLOR,
            linestyle="--",
            linewidth=1.5,
            label=f"mean {mean_rate:,.0f} events/sec",
        )

    ax.set_xlabel("Elapsed (seconds)", fontweight="semibold")
    ax.set_ylabel("Throughput (events/sec)", fontweight="semibold")
    ax.set_title(title, fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="lower right", frameon=True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path

