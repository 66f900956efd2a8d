"""
Pytest configuration and experiment-tree builders
"""

import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add the MCP root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from utils.config import BenchmarkLayout  # noqa: E402

START = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def make_nested_record(gets=500, posts=500, failed_post_indexes=(), failed_gets=0,
                       step_seconds=1.0, response_time_ms=20.0, server_posts_text=None):
    """
    A nested result record: GET and POST events interleaved, step_seconds apart.

    POST i (0-based) fails when i is in failed_post_indexes.
    """
    results = []
    ts = START
    for i in range(max(gets, posts)):
        if i < gets:
            results.append({
                "message": {"method": "GET", "timestamp": iso(ts), "content": None},
                "success": i >= failed_gets,
                "response_time_ms": response_time_ms,
            })
        if i < posts:
            results.append({
                "message": {"method": "POST", "timestamp": iso(ts), "content": f"entry-{i}"},
                "success": i not in failed_post_indexes,
                "response_time_ms": response_time_ms * 2,
            })
        ts += timedelta(seconds=step_seconds)

    failed_posts = len([i for i in failed_post_indexes if i < posts])
    record = {
        "successful_gets": gets - failed_gets,
        "failed_gets": failed_gets,
        "successful_posts": posts - failed_posts,
        "failed_posts": failed_posts,
        "results": results,
    }
    if server_posts_text is not None:
        record["Server successful POST requests"] = server_posts_text
    return record


def make_flattened_record(posts=100, failed_posts=10, step_seconds=1.0, gets=0):
    rows = []
    ts = START
    for i in range(posts):
        rows.append({"message.method": "POST", "message.timestamp": iso(ts),
                     "message.content": f"entry-{i}", "response_time_ms": 40})
        ts += timedelta(seconds=step_seconds)
    return {
        "successful_gets": gets,
        "failed_gets": 0,
        "successful_posts": posts - failed_posts,
        "failed_posts": failed_posts,
        "results": rows,
    }


def make_migration_log(start="2025-01-01 10:00:00", end="2025-01-01 10:05:30"):
    lines = [f"{start} [INFO] Initializing kubernetes clients"]
    lines.append("2025-01-01 10:01:00 [INFO] Copying resources")
    if end is not None:
        lines.append(f"{end} [INFO] Migration complete")
    return "\n".join(lines) + "\n"


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def write_scenario(layout, key, records, logs=None):
    """Write one record per run slot (None skips the slot) and optional logs."""
    for path, record in zip(layout.result_paths(key), records):
        if record is not None:
            write_json(path, record)
    if logs is not None:
        for path, log in zip(layout.log_paths(key), logs):
            if path is not None and log is not None:
                write_text(path, log)


def make_utilization_samples(seconds, nodes=2, memory_bytes=1024 ** 2 * 100):
    """Per-node samples at each whole elapsed second from START."""
    samples = []
    for s in range(seconds):
        ts = START + timedelta(seconds=s)
        for node in range(nodes):
            samples.append({
                "timestamp": iso(ts),
                "node": f"node-{node}",
                "memory_usage_bytes": memory_bytes,
                "cpu_usage_percent": 10.0,
            })
    return samples


@pytest.fixture
def layout(tmp_path):
    """A one-database, one-connectivity-tool experiment tree in tmp_path."""
    return BenchmarkLayout(
        base_path=tmp_path / "results",
        output_path=tmp_path / "analysis",
        databases=("postgres",),
        deployment_types=("operator",),
        connectivity_tools=("linkerd",),
    )


@pytest.fixture
def migration_key(layout):
    return layout.scenario_key("linkerd", "postgres", "operator", "clustershift")


@pytest.fixture
def idle_key(layout):
    return layout.idle_key("postgres", "operator")
