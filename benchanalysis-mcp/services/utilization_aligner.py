# services/utilization_aligner.py
"""
Utilization Series Aligner.

Each utilization file holds samples from several nodes reporting on their
own schedule. One run is reduced to one value per elapsed second (ceiling
of the offset from the first sample, summed across nodes). The replicate
runs of one (scenario, label) pair are then truncated to the shortest run
and averaged position by position.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from utils.config import BenchmarkLayout
from utils.file_processor import load_utilization_samples
from utils.models import AveragedSeries, UtilizationSample

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 ** 2
DEFAULT_HORIZON_SECONDS = 600
CLUSTER_ROLES = ("origin", "target")

# Accepted value columns per metric, in lookup order
METRIC_COLUMNS = {
    "memory": ("memory_usage_bytes", "memory_usage"),
    "cpu": ("cpu_usage_percent", "cluster_cpu_usage", "cpu_usage"),
}


# -----------------------------------------------
# Single run
# -----------------------------------------------
def bucket_utilization(df: pd.DataFrame, metric: str = "memory",
                       horizon_seconds: int = DEFAULT_HORIZON_SECONDS) -> Optional[List[UtilizationSample]]:
    """
    Reduce one run's raw samples to one cluster-wide value per second.

    time_index = ceil(timestamp - first timestamp), so a sample 0.3 s into
    the run belongs to second 1. Samples beyond horizon_seconds or with an
    unparseable timestamp/value are dropped. Returns None when the run has
    no usable timestamp or no column for the requested metric.
    """
    if metric not in METRIC_COLUMNS:
        raise ValueError(f"Unknown utilization metric '{metric}'. Expected one of {sorted(METRIC_COLUMNS)}")

    value_column = next((c for c in METRIC_COLUMNS[metric] if c in df.columns), None)
    if value_column is None or "timestamp" not in df.columns:
        return None

    timestamps = pd.to_datetime(df["timestamp"], utc=True, errors="coerce", format="ISO8601")
    if timestamps.isna().all():
        return None

    values = pd.to_numeric(df[value_column], errors="coerce")
    if metric == "memory":
        values = values / BYTES_PER_MB

    elapsed = (timestamps - timestamps.min()).dt.total_seconds()
    frame = pd.DataFrame({"time_index": np.ceil(elapsed), "value": values})
    frame = frame.dropna()
    frame = frame[frame["time_index"] <= horizon_seconds]

    grouped = frame.groupby("time_index", sort=True)["value"].sum()
    return [UtilizationSample(time_index=int(t), cluster_value=float(v)) for t, v in grouped.items()]


async def load_run_series(file_path: Path, metric: str = "memory",
                          horizon_seconds: int = DEFAULT_HORIZON_SECONDS) -> Optional[List[UtilizationSample]]:
    df = await load_utilization_samples(file_path)
    if df is None:
        return None
    return bucket_utilization(df, metric, horizon_seconds)


# -----------------------------------------------
# Replicate runs
# -----------------------------------------------
def average_runs(runs: Iterable[Optional[Sequence[UtilizationSample]]], label: str,
                 metric: str = "memory") -> Optional[AveragedSeries]:
    """
    Element-wise mean over the parsed runs, truncated to the shortest run.

    Runs are matched by position, not by time value; the time index of each
    position is taken from the first contributing run. Returns None when no
    run parsed or the shortest run is empty.
    """
    parsed = [list(run) for run in runs if run is not None]
    if not parsed:
        return None

    min_length = min(len(run) for run in parsed)
    if min_length == 0:
        return None

    matrix = np.array([[s.cluster_value for s in run[:min_length]] for run in parsed], dtype=float)
    means = matrix.mean(axis=0)
    samples = tuple(
        UtilizationSample(time_index=parsed[0][i].time_index, cluster_value=float(means[i]))
        for i in range(min_length)
    )
    return AveragedSeries(label=label, metric=metric, samples=samples, run_count=len(parsed))


async def average_utilization(paths: Sequence[Path], label: str, metric: str = "memory",
                              horizon_seconds: int = DEFAULT_HORIZON_SECONDS) -> Optional[AveragedSeries]:
    """Load the replicate runs concurrently and average them"""
    if not paths:
        return None
    runs = await asyncio.gather(*(load_run_series(p, metric, horizon_seconds) for p in paths))
    parsed = sum(1 for run in runs if run is not None)
    logger.debug("%s: %d of %d utilization runs parsed", label, parsed, len(paths))
    return average_runs(runs, label, metric)


async def collect_utilization_for_combination(
    layout: BenchmarkLayout, database: str, deployment: str, connectivity_tool: str,
    cluster_role: str, metric: str = "memory",
) -> Dict[str, AveragedSeries]:
    """
    The comparison series of one panel: idle baseline, migration tool and
    the connectivity tool's own rerouting. Labels without data are omitted.
    """
    if cluster_role not in CLUSTER_ROLES:
        raise ValueError(f"cluster_role must be one of {CLUSTER_ROLES}, got '{cluster_role}'")

    groups = [
        (layout.connectivity_label("idle"), layout.idle_key(database, deployment)),
        (layout.migration_tool_label,
         layout.scenario_key(connectivity_tool, database, deployment, layout.migration_tool)),
        (layout.connectivity_label(connectivity_tool),
         layout.scenario_key(connectivity_tool, database, deployment, layout.selected_tool_value)),
    ]
    averaged = await asyncio.gather(*(
        average_utilization(layout.utilization_paths(key, cluster_role), label, metric,
                            layout.utilization_horizon_seconds)
        for label, key in groups
    ))
    return {series.label: series for series in averaged if series is not None}


def series_to_frame(series: Iterable[AveragedSeries]) -> pd.DataFrame:
    """Long-format frame (time_index, cluster_value, label) for plotting"""
    rows = [
        {"time_index": s.time_index, "cluster_value": s.cluster_value, "label": averaged.label}
        for averaged in series
        for s in averaged.samples
    ]
    return pd.DataFrame(rows, columns=["time_index", "cluster_value", "label"])
