# utils/downtime_detector.py
"""
Downtime Interval Detector.

Downtime is reconstructed from POST outcomes: every maximal run of
consecutive failed POSTs (ordered by timestamp) is one failure period, and
its duration is the distance between the first and the last failure in the
run. When only aggregate counters are available the total is estimated
from the failure ratio instead, and the result is flagged as estimated.
"""

import logging
from typing import Iterable, List, Optional

import pandas as pd

from utils.models import DowntimeResult, FailurePeriod, RequestEvent

logger = logging.getLogger(__name__)


def detect_failure_periods(post_events: Iterable[RequestEvent]) -> List[FailurePeriod]:
    """
    Find the maximal failure runs in a sequence of resolved POST events.

    Events without a parseable timestamp or without a resolved success flag
    are discarded. Ordering is a stable sort on timestamp, so ties keep
    their original order.
    """
    rows = [
        {"ts": event.timestamp, "success": bool(event.success)}
        for event in post_events
        if event.timestamp is not None and event.success is not None
    ]
    if not rows:
        return []

    df = pd.DataFrame(rows)
    df["ts"] = pd.to_datetime(df["ts"], utc=True)
    df = df.sort_values("ts", kind="stable").reset_index(drop=True)

    # run-length encoding: a new run starts wherever the flag changes
    df["run_id"] = (df["success"] != df["success"].shift()).cumsum()
    failures = df[~df["success"]]
    if failures.empty:
        return []

    periods = []
    for _, run in failures.groupby("run_id", sort=True):
        start = run["ts"].iloc[0]
        end = run["ts"].iloc[-1]
        periods.append(FailurePeriod(
            start=start.to_pydatetime(),
            end=end.to_pydatetime(),
            duration_seconds=float((end - start).total_seconds()),
            failed_count=int(len(run)),
        ))
    return periods


def calculate_downtime(post_events: Iterable[RequestEvent]) -> DowntimeResult:
    """Total downtime over all failure periods; 0 when nothing failed."""
    periods = detect_failure_periods(post_events)
    total = float(sum(p.duration_seconds for p in periods))
    for index, period in enumerate(periods, start=1):
        logger.debug(
            "Failure period %d: %.2f seconds (%d failed requests from %s to %s)",
            index, period.duration_seconds, period.failed_count,
            period.start.strftime("%H:%M:%S"), period.end.strftime("%H:%M:%S"),
        )
    return DowntimeResult(total_downtime_seconds=total, failure_periods=tuple(periods), estimated=False)


def estimate_downtime(post_events: Iterable[RequestEvent], failed_posts: float,
                      total_posts: Optional[int] = None) -> DowntimeResult:
    """
    Approximate downtime from aggregate counters.

    downtime ~= (latest - earliest POST timestamp) * failed_posts / total_posts

    total_posts defaults to the number of POST rows. The estimate needs at
    least two valid timestamps; otherwise it is 0.
    """
    posts = [event for event in post_events if event.method == "POST"]
    if total_posts is None:
        total_posts = len(posts)
    timestamps = [event.timestamp for event in posts if event.timestamp is not None]

    if failed_posts <= 0 or total_posts <= 0 or len(timestamps) < 2:
        return DowntimeResult(total_downtime_seconds=0.0, estimated=True)

    span = (max(timestamps) - min(timestamps)).total_seconds()
    estimate = span * (failed_posts / total_posts)
    logger.info(
        "Estimated downtime based on failure rate: %.2f seconds (%d failed out of %d POST requests)",
        estimate, int(failed_posts), total_posts,
    )
    return DowntimeResult(total_downtime_seconds=float(estimate), estimated=True)
