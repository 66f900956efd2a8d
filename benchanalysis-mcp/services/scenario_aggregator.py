# services/scenario_aggregator.py
"""
Scenario Aggregator.

Every scenario is processed independently: its run slots are read
concurrently, each slot is reduced to RunMetrics (or recorded as absent /
excluded), and the scenario only becomes COMPLETE when every slot produced
metrics. Anything less marks the whole scenario MISSING; partial averages
are never reported.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import pandas as pd

from utils.config import BenchmarkLayout
from utils.downtime_detector import calculate_downtime, estimate_downtime
from utils.event_normalizer import (
    ResultShapeError,
    load_ground_truth,
    parse_raw_result,
    resolve_post_success,
)
from utils.file_processor import load_json_file, load_log_lines
from utils.log_utils import extract_migration_timing
from utils.models import (
    MISSING,
    AggregationReport,
    BatchDiagnostics,
    FlattenedResult,
    GroundTruth,
    MigrationTiming,
    ProcessingOutcome,
    RawResult,
    RunMetrics,
    RunResult,
    ScenarioKey,
    ScenarioStatus,
    ScenarioSummary,
)
from utils.statistical_analyzer import (
    METRIC_NAMES,
    METRIC_SPECS,
    MIGRATION_ONLY_METRICS,
    summarize_values,
)

logger = logging.getLogger(__name__)

# "1523 (Client: 520)" or "1523 (520)"
RE_SERVER_POSTS = re.compile(r"^\s*(\d+)\s*\((?:Client:\s*)?(\d+)\)")

NO_MIGRATION = MigrationTiming(start=None, end=None, duration_seconds=None)


# -----------------------------------------------
# Per-run metrics
# -----------------------------------------------
def calculate_message_loss_rate(server_posts_text: Optional[str], total_requests: float,
                                seed_entries: int) -> float:
    """
    Share of acknowledged POSTs that never reached the server-side store.

    The server count includes the seed rows written before the client
    started, so those are subtracted first. Unparseable text means no loss
    can be measured and the rate is 0.
    """
    if not server_posts_text or total_requests <= 0:
        return 0.0
    match = RE_SERVER_POSTS.match(server_posts_text)
    if not match:
        return 0.0
    server_posts = int(match.group(1)) - seed_entries
    client_posts = int(match.group(2))
    return (server_posts - client_posts) / total_requests * 100


def _mean_response_time(raw: RawResult, method: str) -> Optional[float]:
    times = [e.response_time_ms for e in raw.events if e.method == method and e.response_time_ms is not None]
    if not times:
        return None
    return float(sum(times) / len(times))


def compute_run_metrics(raw: RawResult, seed_entries: int = 1000, is_idle: bool = False,
                        ground_truth: Optional[GroundTruth] = None,
                        migration_seconds: Optional[float] = None) -> Tuple[RunMetrics, ProcessingOutcome]:
    """
    Derive one run's scalar metrics.

    Raises:
        ResultShapeError: If the record reports no requests at all.
    """
    counters = raw.counters
    total = counters.total_requests
    if total <= 0:
        raise ResultShapeError("Result record reports zero requests.")

    response_get = _mean_response_time(raw, "GET")
    response_post = _mean_response_time(raw, "POST")
    if (response_get is None or response_post is None) and raw.total_response_time_ms is not None:
        overall = raw.total_response_time_ms / total
        response_get = overall if response_get is None else response_get
        response_post = overall if response_post is None else response_post

    outcome = ProcessingOutcome.OK
    downtime = None
    if not is_idle:
        if isinstance(raw, FlattenedResult):
            downtime = estimate_downtime(raw.events, counters.failed_posts)
            outcome = ProcessingOutcome.ESTIMATED
        else:
            downtime = calculate_downtime(resolve_post_success(raw.events, ground_truth))

    metrics = RunMetrics(
        successful_gets=counters.successful_gets,
        successful_posts=counters.successful_posts,
        failed_gets=counters.failed_gets,
        failed_posts=counters.failed_posts,
        availability=counters.successful_requests / total * 100,
        message_loss_rate=calculate_message_loss_rate(raw.server_posts_text, total, seed_entries),
        response_time_get=response_get,
        response_time_post=response_post,
        downtime_seconds=downtime.total_downtime_seconds if downtime else None,
        migration_seconds=None if is_idle else migration_seconds,
        downtime_estimated=bool(downtime and downtime.estimated),
        failure_periods=downtime.failure_periods if downtime else (),
    )
    return metrics, outcome


async def read_migration_timing(log_path: Optional[Path], layout: BenchmarkLayout) -> MigrationTiming:
    if log_path is None:
        return NO_MIGRATION
    if not log_path.exists():
        logger.info("Log file not found: %s", log_path)
        return NO_MIGRATION
    try:
        lines = await load_log_lines(log_path)
    except OSError as e:
        logger.warning("Error reading log file %s: %s", log_path, e)
        return NO_MIGRATION
    return extract_migration_timing(lines, layout.start_marker, layout.end_marker, layout.log_timestamp_format)


def _run_ground_truth(result_path: Path, layout: BenchmarkLayout,
                      ground_truth: Optional[GroundTruth]) -> Optional[GroundTruth]:
    if ground_truth is not None:
        return ground_truth
    snapshot = layout.ground_truth_path(result_path)
    if snapshot is None or not snapshot.exists():
        return None
    try:
        return load_ground_truth(snapshot)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable ground-truth snapshot %s: %s", snapshot, e)
        return None


async def process_run(slot: int, result_path: Path, log_path: Optional[Path], layout: BenchmarkLayout,
                      is_idle: bool = False, ground_truth: Optional[GroundTruth] = None) -> RunResult:
    """Process one run slot; never raises for missing or malformed input"""
    migration = await read_migration_timing(None if is_idle else log_path, layout)
    base = {"slot": slot, "result_path": str(result_path),
            "log_path": str(log_path) if log_path else None, "migration": migration}

    if not result_path.exists():
        logger.warning("Missing run %d: %s", slot, result_path)
        return RunResult(outcome=ProcessingOutcome.ABSENT, reason="result file not found", **base)

    try:
        data = await load_json_file(result_path)
        raw = parse_raw_result(data)
        metrics, outcome = compute_run_metrics(
            raw,
            seed_entries=layout.seed_entries,
            is_idle=is_idle,
            ground_truth=_run_ground_truth(result_path, layout, ground_truth),
            migration_seconds=migration.duration_seconds,
        )
    except ResultShapeError as e:
        logger.warning("Excluding run %d (%s): %s", slot, result_path.name, e)
        return RunResult(outcome=ProcessingOutcome.EXCLUDED, reason=str(e), **base)
    except (OSError, ValueError) as e:
        logger.warning("Error processing file %s: %s", result_path.name, e)
        return RunResult(outcome=ProcessingOutcome.EXCLUDED, reason=f"unreadable result file: {e}", **base)

    if outcome is ProcessingOutcome.ESTIMATED:
        logger.info("Run %d (%s): flattened results, downtime estimated from failure rate",
                    slot, result_path.name)
    return RunResult(outcome=outcome, metrics=metrics, **base)


# -----------------------------------------------
# Scenario level
# -----------------------------------------------
def missing_summary(key: ScenarioKey, runs: Iterable[RunResult] = ()) -> ScenarioSummary:
    """Every metric MISSING, except the migration-only ones of an idle baseline, which stay None"""
    metrics = {
        name: None if key.is_idle and name in MIGRATION_ONLY_METRICS else MISSING
        for name in METRIC_NAMES
    }
    return ScenarioSummary(
        key=key,
        status=ScenarioStatus.MISSING,
        metrics=metrics,
        runs=tuple(runs),
    )


def summarize_runs(key: ScenarioKey, runs: List[RunResult]) -> ScenarioSummary:
    """Mean and sample standard deviation of every metric across complete runs"""
    metrics = {}
    for name, attribute, mean_decimals, sd_decimals in METRIC_SPECS:
        if key.is_idle and name in MIGRATION_ONLY_METRICS:
            metrics[name] = None
            continue
        if name == "Migration_Time":
            values = [run.migration.duration_seconds if run.migration else None for run in runs]
        else:
            values = [getattr(run.metrics, attribute) for run in runs]
        metrics[name] = summarize_values(values, mean_decimals, sd_decimals)
    return ScenarioSummary(key=key, status=ScenarioStatus.COMPLETE, metrics=metrics, runs=tuple(runs))


async def process_scenario(key: ScenarioKey, layout: BenchmarkLayout,
                           ground_truth: Optional[GroundTruth] = None) -> ScenarioSummary:
    """
    PENDING -> COMPLETE | MISSING for one scenario.

    Excluded scenarios go straight to MISSING without touching the
    filesystem. Otherwise the run slots are processed concurrently and the
    scenario completes only if all of them produced metrics.
    """
    if layout.is_excluded(key):
        logger.info("Processing: %s %s %s -> excluded by configuration, marked missing",
                    key.connectivity_tool, key.database, key.deployment)
        return missing_summary(key)

    result_paths = layout.result_paths(key)
    log_paths = layout.log_paths(key)
    runs = await asyncio.gather(*(
        process_run(slot, result_path, log_path, layout, key.is_idle, ground_truth)
        for slot, (result_path, log_path) in enumerate(zip(result_paths, log_paths), start=1)
    ))

    valid = [run for run in runs if run.is_valid]
    if len(valid) != layout.run_count:
        logger.warning("%s %s %s %s: need exactly %d runs, found %d -> missing",
                       key.connectivity_tool, key.database, key.deployment, key.forwarding_tool,
                       layout.run_count, len(valid))
        return missing_summary(key, runs)

    summary = summarize_runs(key, list(runs))
    logger.info("%s %s %s %s: processed %d runs successfully",
                key.connectivity_tool, key.database, key.deployment, key.forwarding_tool, len(runs))
    return summary


async def _process_scenario_safely(key: ScenarioKey, layout: BenchmarkLayout,
                                   ground_truth: Optional[GroundTruth]) -> ScenarioSummary:
    try:
        return await process_scenario(key, layout, ground_truth)
    except Exception:
        logger.exception("Unexpected failure while processing scenario %s", key)
        return missing_summary(key)


def build_diagnostics(summaries: Iterable[ScenarioSummary], layout: BenchmarkLayout) -> BatchDiagnostics:
    diagnostics = BatchDiagnostics()
    for summary in summaries:
        if summary.is_complete:
            diagnostics.complete_scenarios += 1
        else:
            diagnostics.missing_scenarios += 1
            if layout.is_excluded(summary.key):
                diagnostics.excluded_scenarios += 1

        for run in summary.runs:
            if run.outcome is ProcessingOutcome.OK:
                diagnostics.ok_runs += 1
            elif run.outcome is ProcessingOutcome.ESTIMATED:
                diagnostics.estimated_runs += 1
            elif run.outcome is ProcessingOutcome.EXCLUDED:
                diagnostics.excluded_runs += 1
            elif run.outcome is ProcessingOutcome.ABSENT:
                diagnostics.absent_runs += 1

            if run.outcome is not ProcessingOutcome.OK:
                diagnostics.run_issues.append({
                    **summary.key.as_dict(),
                    "slot": run.slot,
                    "outcome": run.outcome.value,
                    "reason": run.reason,
                    "result_path": run.result_path,
                })
            if run.migration is not None and run.migration.out_of_order:
                diagnostics.migration_anomalies.append({
                    **summary.key.as_dict(),
                    "slot": run.slot,
                    "duration_seconds": run.migration.duration_seconds,
                    "log_path": run.log_path,
                })
    return diagnostics


async def aggregate_benchmarks(layout: BenchmarkLayout,
                               ground_truth: Optional[GroundTruth] = None) -> AggregationReport:
    """
    Process every configured scenario and idle baseline concurrently.

    The report always holds one summary per scenario, in configuration
    order (migration scenarios first, then idle baselines).
    """
    keys = layout.migration_scenarios() + layout.idle_scenarios()
    summaries = await asyncio.gather(*(_process_scenario_safely(key, layout, ground_truth) for key in keys))
    diagnostics = build_diagnostics(summaries, layout)
    logger.info("Total scenarios processed: %d (complete: %d, missing: %d)",
                len(summaries), diagnostics.complete_scenarios, diagnostics.missing_scenarios)
    return AggregationReport(summaries=tuple(summaries), diagnostics=diagnostics)


# -----------------------------------------------
# Tabular output
# -----------------------------------------------
def summary_to_row(summary: ScenarioSummary, layout: Optional[BenchmarkLayout] = None) -> dict:
    key = summary.key
    row = {
        "Connectivity_Tool": key.connectivity_tool,
        "Database": key.database,
        "Deployment": key.deployment,
        "Forwarding_Tool": layout.forwarding_label(key) if layout else key.forwarding_tool,
        "Status": summary.status.value,
    }
    for name in METRIC_NAMES:
        value = summary.metrics.get(name)
        has_value = value is not None and value is not MISSING
        row[f"{name}_mean"] = value.mean if has_value else None
        row[f"{name}_sd"] = value.sd if has_value else None
    row["Downtime_Estimated"] = any(run.metrics is not None and run.metrics.downtime_estimated
                                    for run in summary.runs)
    return row


def summaries_to_frame(summaries: Iterable[ScenarioSummary],
                       layout: Optional[BenchmarkLayout] = None) -> pd.DataFrame:
    """One row per scenario; MISSING and not-applicable metrics become NaN"""
    key_columns = ["Connectivity_Tool", "Database", "Deployment", "Forwarding_Tool", "Status"]
    metric_columns = [f"{name}_{stat}" for name in METRIC_NAMES for stat in ("mean", "sd")]
    rows = [summary_to_row(s, layout) for s in summaries]
    frame = pd.DataFrame(rows, columns=key_columns + metric_columns + ["Downtime_Estimated"])
    frame[metric_columns] = frame[metric_columns].astype(float)
    return frame
