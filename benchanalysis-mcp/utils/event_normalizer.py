# utils/event_normalizer.py
"""
Event Normalizer.

Turns one run's decoded result record into a RawResult. Two record shapes
exist in the experiment archive:

- nested:    results = [{"message": {"method", "timestamp", "content"}, "success", "response_time_ms"}, ...]
- flattened: results = [{"method", "timestamp", "response_time_ms"}, ...] (or a column mapping),
             with success only available through the aggregate counters

Anything else raises ResultShapeError so the caller can exclude the run.
"""

import dataclasses
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from utils.models import (
    FlattenedResult,
    GroundTruth,
    NestedResult,
    RawResult,
    RequestEvent,
    ResultCounters,
)

logger = logging.getLogger(__name__)

COUNTER_KEYS = ("successful_gets", "failed_gets", "successful_posts", "failed_posts")
SERVER_POSTS_KEY = "Server successful POST requests"
METHODS = ("GET", "POST")


class ResultShapeError(ValueError):
    """Raised when a result record is neither nested nor flattened."""


# -----------------------------------------------
# Field coercion
# -----------------------------------------------
def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
    elif isinstance(value, str) and value.strip():
        ts = pd.to_datetime(value.strip(), utc=True, errors="coerce")
    else:
        return None
    if pd.isna(ts):
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.to_pydatetime()


def coerce_success(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if pd.isna(number):
        return None
    return number


def _text(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return str(value)


def _column(row: Dict[str, Any], name: str) -> Any:
    """Look up a message field in a flat row, accepting dotted or slashed prefixes."""
    for candidate in (name, f"message.{name}", f"message/{name}"):
        if candidate in row:
            return row[candidate]
    message = row.get("message")
    if isinstance(message, dict):
        return message.get(name)
    return None


# -----------------------------------------------
# Record parsing
# -----------------------------------------------
def _read_counters(data: Dict[str, Any]) -> Optional[ResultCounters]:
    if not any(key in data for key in COUNTER_KEYS):
        return None
    values = {}
    for key in COUNTER_KEYS:
        raw = data.get(key)
        number = coerce_number(raw) if raw is not None else 0.0
        if number is None:
            raise ResultShapeError(f"Counter '{key}' is not numeric: {raw!r}")
        values[key] = number
    return ResultCounters(**values)


def _derive_counters(events: Iterable[RequestEvent]) -> ResultCounters:
    counts = {key: 0.0 for key in COUNTER_KEYS}
    for event in events:
        if event.success is None:
            continue
        prefix = "successful" if event.success else "failed"
        suffix = "gets" if event.method == "GET" else "posts"
        counts[f"{prefix}_{suffix}"] += 1
    return ResultCounters(**counts)


def _nested_event(item: Dict[str, Any]) -> Optional[RequestEvent]:
    message = item.get("message")
    if not isinstance(message, dict):
        return None
    method = str(message.get("method", "")).upper()
    if method not in METHODS:
        return None
    return RequestEvent(
        timestamp=parse_timestamp(message.get("timestamp")),
        method=method,
        success=coerce_success(item.get("success")),
        content=_text(message.get("content")),
        record_id=_text(message.get("id", item.get("id"))),
        response_time_ms=coerce_number(item.get("response_time_ms")),
    )


def _flat_event(row: Dict[str, Any], success: Optional[bool] = None) -> Optional[RequestEvent]:
    method = str(_column(row, "method") or "").upper()
    if method not in METHODS:
        return None
    return RequestEvent(
        timestamp=parse_timestamp(_column(row, "timestamp")),
        method=method,
        success=success,
        content=_text(_column(row, "content")),
        record_id=_text(_column(row, "id")),
        response_time_ms=coerce_number(_column(row, "response_time_ms")),
    )


def _columns_to_rows(columns: Dict[str, Any]) -> List[Dict[str, Any]]:
    lengths = {len(v) for v in columns.values() if isinstance(v, list)}
    if len(lengths) != 1:
        raise ResultShapeError("Column-oriented results must hold equally long lists.")
    size = lengths.pop()
    return [
        {name: values[i] for name, values in columns.items() if isinstance(values, list)}
        for i in range(size)
    ]


def _is_flat_row(item: Any) -> bool:
    return isinstance(item, dict) and _column(item, "method") is not None and not isinstance(item.get("message"), dict)


def parse_raw_result(data: Any) -> RawResult:
    """
    Resolve one decoded result record into NestedResult or FlattenedResult.

    Raises:
        ResultShapeError: If the record matches neither shape.
    """
    if not isinstance(data, dict):
        raise ResultShapeError(f"Result record must be a JSON object, got {type(data).__name__}.")

    counters = _read_counters(data)
    extras = {
        "server_posts_text": _text(data.get(SERVER_POSTS_KEY)),
        "total_response_time_ms": coerce_number(data.get("total_response_time_ms", data.get("response_time_ms"))),
    }
    results = data.get("results")

    if isinstance(results, list) and results:
        if any(isinstance(item, dict) and isinstance(item.get("message"), dict) for item in results):
            events = tuple(e for e in (_nested_event(i) for i in results if isinstance(i, dict)) if e)
            return NestedResult(events=events, counters=counters or _derive_counters(events), **extras)
        if all(_is_flat_row(item) for item in results):
            rows = results
        else:
            raise ResultShapeError("Result entries carry neither a 'message' object nor a 'method' column.")
    elif isinstance(results, dict) and _column(results, "method") is not None:
        rows = _columns_to_rows(results)
    elif results is None or results == [] or results == {}:
        if counters is None:
            raise ResultShapeError("Record has no 'results' and no aggregate counters.")
        return FlattenedResult(events=(), counters=counters, **extras)
    else:
        raise ResultShapeError(f"Unrecognised 'results' structure: {type(results).__name__}.")

    if counters is None:
        raise ResultShapeError("Flattened results require the aggregate counters.")
    events = tuple(e for e in (_flat_event(row) for row in rows) if e)
    return FlattenedResult(events=events, counters=counters, **extras)


# -----------------------------------------------
# Ground truth and success resolution
# -----------------------------------------------
def load_ground_truth(path: Path) -> GroundTruth:
    """Read a persisted-state snapshot; 'content' values and 'id' values are kept as separate sets."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    if "content" not in df.columns:
        raise ValueError(f"Ground-truth snapshot {path} has no 'content' column.")
    contents = frozenset(df["content"].tolist()) - {""}
    ids = frozenset(df["id"].tolist()) - {""} if "id" in df.columns else frozenset()
    logger.debug("Loaded %d ground-truth entries from %s", len(contents), path)
    return GroundTruth(contents=contents, ids=ids)


def resolve_post_success(events: Iterable[RequestEvent],
                         ground_truth: Optional[GroundTruth] = None) -> List[RequestEvent]:
    """
    Return the POST events with success resolved.

    With a ground truth a POST succeeds iff its content was persisted; an
    event without content is matched by record id against the snapshot ids.
    Without one the recorded flag is kept. Events whose success stays
    unknown are dropped.
    """
    resolved = []
    for event in events:
        if event.method != "POST":
            continue
        if ground_truth is not None:
            event = dataclasses.replace(event, success=ground_truth.is_persisted(event.content, event.record_id))
        if event.success is None:
            continue
        resolved.append(event)
    return resolved


def events_from_frame(df: pd.DataFrame) -> List[RequestEvent]:
    """Build events from a tabular client-state export (one request per row)."""
    events = []
    for row in df.to_dict(orient="records"):
        event = _flat_event(row, success=coerce_success(_coerce_flag(row.get("success"))))
        if event is not None:
            events.append(event)
    return events


def _coerce_flag(value: Any) -> Any:
    # numpy bools from read_csv
    if hasattr(value, "item") and not isinstance(value, str):
        value = value.item()
    return value
