# services/availability_analyzer.py
"""
Steady-state request analysis over a single client export.

analyze_system_health compares a client-state export (one request per row)
against a database-state snapshot: a GET fails when the client says so, a
POST fails when its content never reached the database. analyze_response_times
computes per-method response time statistics for several labelled datasets
(e.g. Idle vs Migration). Both look only at a window of the run measured in
minutes from the first request.

Rows are read through the same event normalizer as the per-run result
files, so prefixed columns and textual success flags are handled once.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import pandas as pd

from utils.event_normalizer import events_from_frame
from utils.models import GroundTruth, RequestEvent
from utils.statistical_analyzer import calculate_response_time_stats

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = (1.0, 6.0)
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
EVENT_COLUMNS = [f.name for f in dataclasses.fields(RequestEvent)]


# -----------------------------------------------
# Frame preparation
# -----------------------------------------------
def _require_columns(df: pd.DataFrame, source: Any, *columns: str) -> None:
    present = {c.replace("message.", "").replace("message/", "") for c in df.columns}
    for column in columns:
        if column not in present:
            raise ValueError(f"{source} has no '{column}' column.")


def events_to_frame(events: Iterable[RequestEvent]) -> pd.DataFrame:
    """One row per timestamped event, with a UTC 'timestamp' column."""
    rows = [dataclasses.asdict(e) for e in events if e.timestamp is not None]
    frame = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame


def client_frame(df: pd.DataFrame, source: Any = "Client export") -> pd.DataFrame:
    """
    Normalize a raw client export into an event frame.

    Raises:
        ValueError: If the method or timestamp column is missing.
    """
    _require_columns(df, source, "method", "timestamp")
    return events_to_frame(events_from_frame(df))


def filter_time_window(df: pd.DataFrame, window: Tuple[float, float] = DEFAULT_WINDOW_MINUTES,
                       include_start: bool = False, timestamp_col: str = "timestamp") -> pd.DataFrame:
    """
    Keep rows whose elapsed minutes since the first row fall inside window.

    The upper bound is always inclusive; the lower bound only when
    include_start is set.
    """
    if df.empty:
        return df
    elapsed = (df[timestamp_col] - df[timestamp_col].min()).dt.total_seconds() / 60
    start, end = window
    lower = elapsed >= start if include_start else elapsed > start
    return df[lower & (elapsed <= end)]


def _rate(failed: int, total: int) -> Optional[float]:
    if total == 0:
        return None
    return round(failed / total * 100, 2)


def _format_ts(ts: pd.Timestamp) -> str:
    return ts.strftime(TIMESTAMP_FORMAT)


# -----------------------------------------------
# System health
# -----------------------------------------------
def analyze_system_health(client_df: pd.DataFrame, persisted: GroundTruth,
                          window: Tuple[float, float] = DEFAULT_WINDOW_MINUTES) -> Dict[str, Any]:
    """
    Failure rates and the overall downtime window of the steady-state part
    of a run.

    Args:
        client_df: Client export with method, timestamp, content, success
            (optionally 'message.'-prefixed).
        persisted: Database snapshot; POSTs are matched on content only.
        window: (start, end] in minutes from the first request.

    Returns:
        Dictionary with per-method and overall request statistics and the
        downtime period spanning the first to the last failed request.
    """
    client = filter_time_window(client_frame(client_df), window)

    gets = client[client["method"] == "GET"]
    posts = client[client["method"] == "POST"]

    failed_get_mask = gets["success"].eq(False)
    failed_gets = int(failed_get_mask.sum())

    missing_mask = posts["content"].map(lambda c: not persisted.is_persisted(c)).astype(bool)
    failed_posts = int(missing_mask.sum())
    for ts, content in zip(posts.loc[missing_mask, "timestamp"], posts.loc[missing_mask, "content"]):
        logger.debug("POST request content not found in DB: %s UTC %s", _format_ts(ts), content)

    failed_timestamps = pd.concat([gets.loc[failed_get_mask, "timestamp"],
                                   posts.loc[missing_mask, "timestamp"]]).sort_values()

    downtime = None
    if not failed_timestamps.empty:
        start, end = failed_timestamps.iloc[0], failed_timestamps.iloc[-1]
        downtime = {
            "start": _format_ts(start),
            "end": _format_ts(end),
            "duration_seconds": round(float((end - start).total_seconds()), 2),
        }
        logger.info("Downtime period: %s -> %s (%.2f seconds)",
                    downtime["start"], downtime["end"], downtime["duration_seconds"])
    else:
        logger.info("No downtime detected")

    total_requests = int(len(client))
    total_failed = failed_gets + failed_posts
    return {
        "window_minutes": list(window),
        "get_requests": {"total": int(len(gets)), "failed": failed_gets,
                         "failure_rate": _rate(failed_gets, len(gets))},
        "post_requests": {"total": int(len(posts)), "failed": failed_posts,
                          "failure_rate": _rate(failed_posts, len(posts))},
        "all_requests": {"total": total_requests, "failed": total_failed,
                         "failure_rate": _rate(total_failed, total_requests)},
        "downtime": downtime,
    }


# -----------------------------------------------
# Response time comparison
# -----------------------------------------------
def load_response_time_dataset(file_path: Path, dataset: str,
                               window: Tuple[float, float] = DEFAULT_WINDOW_MINUTES) -> pd.DataFrame:
    """
    Load one response-time export and keep rows within [start, end] minutes.

    Raises:
        ValueError: If method, timestamp or response_time_ms is missing.
    """
    df = pd.read_csv(file_path)
    _require_columns(df, file_path, "method", "timestamp", "response_time_ms")
    df = filter_time_window(client_frame(df, file_path), window, include_start=True)
    out = df[["method", "response_time_ms"]].copy()
    out["dataset"] = dataset
    return out


def analyze_response_times(datasets: Mapping[str, Path],
                           window: Tuple[float, float] = DEFAULT_WINDOW_MINUTES):
    """Per (method, dataset) statistics with 95% t confidence intervals"""
    frames = [load_response_time_dataset(path, name, window) for name, path in datasets.items()]
    if not frames:
        return []
    combined = pd.concat(frames, ignore_index=True)
    logger.debug("Response time analysis over %d rows from %d datasets", len(combined), len(frames))
    return calculate_response_time_stats(combined)
