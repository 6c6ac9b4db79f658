from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from ..clients import Protocol
from .collector import MISSED_ARRIVALS, SESSION_STARTS, duration_metric

LOGGER = logging.getLogger("loadsim.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

PROTOCOL_COLORS = {
    Protocol.HTTP.value: "#2E86AB",
    Protocol.GRPC.value: "#A23B72",
    Protocol.KAFKA.value: "#F18F01",
}
ARRIVAL_COLORS = {
    SESSION_STARTS: "#6A994E",
    MISSED_ARRIVALS: "#C73E1D",
}


def render_charts(samples: pd.DataFrame, output_dir: Path) -> list[Path]:
    """Latency and arrival charts for one run; empty inputs produce no file."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for render in (_render_latency_boxplot, _render_arrivals_chart):
        path = render(samples, output_dir)
        if path is not None:
            LOGGER.info("Rendering chart %s", path)
            paths.append(path)
    return paths


def _style(ax: plt.Axes) -> None:
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.set_axisbelow(True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_color("#CCCCCC")
    ax.spines["bottom"].set_color("#CCCCCC")


def _save(fig: plt.Figure, path: Path) -> Path:
    fig.savefig(path, bbox_inches="tight", facecolor="white", edgecolor="none", dpi=300)
    plt.close(fig)
    return path


def _render_latency_boxplot(samples: pd.DataFrame, output_dir: Path) -> Path | None:
    metrics = [duration_metric(protocol) for protocol in Protocol]
    if samples.empty or "endpoint" not in samples.columns:
        LOGGER.warning("No call latency data available for latency chart")
        return None
    df = samples[samples["metric"].isin(metrics) & samples["endpoint"].notna()].copy()
    if df.empty:
        LOGGER.warning("No call latency data available for latency chart")
        return None

    df["protocol"] = df["metric"].str.replace("_req_duration", "", regex=False)
    order = sorted(df["endpoint"].unique())
    hue_order = [p for p in PROTOCOL_COLORS if p in set(df["protocol"])]

    fig, ax = plt.subplots(figsize=(max(8, len(order) * 1.2), 6))
    sns.boxplot(
        data=df,
        x="endpoint",
        y="value",
        hue="protocol",
        order=order,
        hue_order=hue_order,
        palette=[PROTOCOL_COLORS[p] for p in hue_order],
        ax=ax,
        linewidth=1.5,
        width=0.7,
        showfliers=False,
    )
    ax.set_xlabel("Endpoint", fontweight="semibold", labelpad=12)
    ax.set_ylabel("Latency (ms)", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.set_title("Call Latency by Endpoint", fontweight="bold", pad=15, fontsize=14)
    ax.tick_params(axis="x", rotation=30)
    _style(ax)
    return _save(fig, output_dir / "latency_boxplot.png")


def _render_arrivals_chart(samples: pd.DataFrame, output_dir: Path) -> Path | None:
    if samples.empty:
        LOGGER.warning("No arrival data available for arrivals chart")
        return None
    df = samples[samples["metric"].isin(list(ARRIVAL_COLORS))].copy()
    if df.empty:
        LOGGER.warning("No arrival data available for arrivals chart")
        return None

    start = samples["ts"].min()
    df["second"] = np.floor(df["ts"] - start).astype(int)
    per_second = (
        df.groupby(["second", "metric"])["value"].sum().unstack(fill_value=0.0).sort_index()
    )
    seconds = np.arange(int(per_second.index.max()) + 1)
    per_second = per_second.reindex(seconds, fill_value=0.0)

    fig, ax = plt.subplots(figsize=(12, 5))
    for metric, color in ARRIVAL_COLORS.items():
        if metric in per_second.columns:
            ax.plot(
                per_second.index,
                per_second[metric],
                label=metric.replace("_", " "),
                color=color,
                linewidth=2,
            )
    ax.set_xlabel("Elapsed (s)", fontweight="semibold", labelpad=12)
    ax.set_ylabel("Per second", fontweight="semibold", labelpad=12)
    ax.set_ylim(bottom=0)
    ax.set_title("Session Starts vs Missed Arrivals", fontweight="bold", pad=15, fontsize=14)
    ax.legend(loc="upper right", frameon=True)
    _style(ax)
    return _save(fig, output_dir / "arrivals.png")


__all__ = ["render_charts"]
