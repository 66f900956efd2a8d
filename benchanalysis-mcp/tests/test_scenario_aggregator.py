"""
Tests for per-run processing and the scenario aggregation state machine
"""

import dataclasses

import pandas as pd
import pytest

from conftest import (
    make_flattened_record,
    make_migration_log,
    make_nested_record,
    write_json,
    write_scenario,
    write_text,
)
from services.scenario_aggregator import (
    aggregate_benchmarks,
    calculate_message_loss_rate,
    compute_run_metrics,
    process_run,
    process_scenario,
    summaries_to_frame,
)
from utils.event_normalizer import ResultShapeError, parse_raw_result
from utils.models import MISSING, GroundTruth, MetricSummary, ProcessingOutcome, ScenarioStatus
from utils.statistical_analyzer import METRIC_NAMES


class TestMessageLoss:
    """Test the server-side POST count parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("1510 (Client: 500)", 1.0),
        ("1510 (500)", 1.0),
        ("1500 (Client: 500)", 0.0),
        ("1490 (Client: 500)", -1.0),
        ("unknown", 0.0),
        (None, 0.0),
    ])
    def test_rate(self, text, expected):
        assert calculate_message_loss_rate(text, total_requests=1000, seed_entries=1000) == expected

    def test_custom_seed(self):
        assert calculate_message_loss_rate("60 (50)", total_requests=100, seed_entries=0) == 10.0


class TestComputeRunMetrics:
    """Test the per-run metric derivation."""

    def test_nested_run(self):
        record = make_nested_record(gets=10, posts=10, failed_post_indexes=(3, 4, 5), failed_gets=2)
        metrics, outcome = compute_run_metrics(parse_raw_result(record), migration_seconds=12.5)
        assert outcome is ProcessingOutcome.OK
        assert metrics.successful_gets == 8
        assert metrics.failed_posts == 3
        assert metrics.availability == pytest.approx(15 / 20 * 100)
        assert metrics.downtime_seconds == 2.0
        assert metrics.downtime_estimated is False
        assert metrics.response_time_get == 20.0
        assert metrics.response_time_post == 40.0
        assert metrics.migration_seconds == 12.5

    def test_flattened_run_is_estimated(self):
        raw = parse_raw_result(make_flattened_record(posts=101, failed_posts=10))
        metrics, outcome = compute_run_metrics(raw)
        assert outcome is ProcessingOutcome.ESTIMATED
        assert metrics.downtime_estimated is True
        assert metrics.downtime_seconds == pytest.approx(100 * 10 / 101)

    def test_response_time_fallback(self):
        raw = parse_raw_result({
            "successful_gets": 50, "failed_gets": 0, "successful_posts": 50, "failed_posts": 0,
            "total_response_time_ms": 2500,
        })
        metrics, _ = compute_run_metrics(raw)
        assert metrics.response_time_get == 25.0
        assert metrics.response_time_post == 25.0

    def test_idle_run_has_no_downtime_or_migration(self):
        raw = parse_raw_result(make_nested_record(gets=5, posts=5, failed_post_indexes=(1, 2)))
        metrics, _ = compute_run_metrics(raw, is_idle=True, migration_seconds=30.0)
        assert metrics.downtime_seconds is None
        assert metrics.migration_seconds is None

    def test_ground_truth_decides_post_failures(self):
        raw = parse_raw_result(make_nested_record(gets=0, posts=5))
        persisted = GroundTruth(contents=frozenset({"entry-0", "entry-1", "entry-4"}))
        metrics, _ = compute_run_metrics(raw, ground_truth=persisted)
        assert metrics.downtime_seconds == 1.0

    def test_zero_requests(self):
        raw = parse_raw_result({"successful_gets": 0, "failed_gets": 0, "successful_posts": 0, "failed_posts": 0})
        with pytest.raises(ResultShapeError):
            compute_run_metrics(raw)


class TestProcessRun:
    """Test slot outcomes."""

    @pytest.mark.asyncio
    async def test_absent(self, layout, tmp_path):
        run = await process_run(1, tmp_path / "nope.json", None, layout)
        assert run.outcome is ProcessingOutcome.ABSENT
        assert not run.is_valid

    @pytest.mark.asyncio
    async def test_invalid_json_is_excluded(self, layout, tmp_path):
        path = write_text(tmp_path / "run.json", "{oops")
        run = await process_run(1, path, None, layout)
        assert run.outcome is ProcessingOutcome.EXCLUDED
        assert "unreadable" in run.reason

    @pytest.mark.asyncio
    async def test_wrong_shape_is_excluded(self, layout, tmp_path):
        path = write_json(tmp_path / "run.json", {"results": [{"foo": 1}]})
        run = await process_run(1, path, None, layout)
        assert run.outcome is ProcessingOutcome.EXCLUDED

    @pytest.mark.asyncio
    async def test_migration_from_log(self, layout, tmp_path):
        path = write_json(tmp_path / "run.json", make_nested_record(gets=2, posts=2))
        log = write_text(tmp_path / "run.log", make_migration_log())
        run = await process_run(1, path, log, layout)
        assert run.outcome is ProcessingOutcome.OK
        assert run.migration.duration_seconds == 330.0
        assert run.metrics.migration_seconds == 330.0

    @pytest.mark.asyncio
    async def test_missing_log_is_not_fatal(self, layout, tmp_path):
        path = write_json(tmp_path / "run.json", make_nested_record(gets=2, posts=2))
        run = await process_run(1, path, tmp_path / "run.log", layout)
        assert run.is_valid
        assert run.metrics.migration_seconds is None

    @pytest.mark.asyncio
    async def test_ground_truth_snapshot_next_to_result(self, tmp_path, layout):
        layout = dataclasses.replace(layout, ground_truth_template="{stem}_db_state.csv")
        path = write_json(tmp_path / "run.json", make_nested_record(gets=0, posts=4))
        write_text(tmp_path / "run_db_state.csv", "content\nentry-0\nentry-3\n")
        run = await process_run(1, path, None, layout)
        assert run.metrics.downtime_seconds == 1.0


class TestProcessScenario:
    """Test the exactly-N-runs policy."""

    @pytest.mark.asyncio
    async def test_complete_scenario(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_nested_record()] * 3, logs=[make_migration_log()] * 3)
        summary = await process_scenario(migration_key, layout)
        assert summary.status is ScenarioStatus.COMPLETE
        assert summary.metrics["Availability"] == MetricSummary(mean=100.0, sd=0.0)
        assert summary.metrics["Downtime"] == MetricSummary(mean=0.0, sd=0.0)
        assert summary.metrics["Successful_GET"] == MetricSummary(mean=500.0, sd=0.0)
        assert summary.metrics["Migration_Time"] == MetricSummary(mean=330.0, sd=0.0)

    @pytest.mark.asyncio
    async def test_get_counts_mean_and_sd(self, layout, migration_key):
        records = [make_nested_record(gets=g, posts=10) for g in (100, 102, 98)]
        write_scenario(layout, migration_key, records)
        summary = await process_scenario(migration_key, layout)
        assert summary.metrics["Successful_GET"] == MetricSummary(mean=100.0, sd=2.0)

    @pytest.mark.asyncio
    async def test_two_of_three_runs_is_missing(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_nested_record(), make_nested_record(), None])
        summary = await process_scenario(migration_key, layout)
        assert summary.status is ScenarioStatus.MISSING
        assert all(summary.metrics[name] is MISSING for name in METRIC_NAMES)
        assert [run.outcome for run in summary.runs] == [
            ProcessingOutcome.OK, ProcessingOutcome.OK, ProcessingOutcome.ABSENT,
        ]

    @pytest.mark.asyncio
    async def test_one_excluded_run_is_missing(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_nested_record(), make_nested_record(), {"results": 7}])
        summary = await process_scenario(migration_key, layout)
        assert summary.status is ScenarioStatus.MISSING

    @pytest.mark.asyncio
    async def test_migration_averaged_over_available_logs(self, layout, migration_key):
        logs = [make_migration_log(end="2025-01-01 10:01:00"), make_migration_log(end=None),
                make_migration_log(end="2025-01-01 10:03:00")]
        write_scenario(layout, migration_key, [make_nested_record(gets=5, posts=5)] * 3, logs=logs)
        summary = await process_scenario(migration_key, layout)
        assert summary.is_complete
        assert summary.metrics["Migration_Time"].mean == 120.0

    @pytest.mark.asyncio
    async def test_no_logs_gives_null_migration(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_nested_record(gets=5, posts=5)] * 3)
        summary = await process_scenario(migration_key, layout)
        assert summary.is_complete
        assert summary.metrics["Migration_Time"] is None

    @pytest.mark.asyncio
    async def test_excluded_scenario_reads_nothing(self, layout, migration_key):
        layout = dataclasses.replace(layout, excluded_scenarios=({"connectivity_tool": "linkerd"},))
        write_scenario(layout, migration_key, [make_nested_record()] * 3)
        summary = await process_scenario(migration_key, layout)
        assert summary.status is ScenarioStatus.MISSING
        assert summary.runs == ()

    @pytest.mark.asyncio
    async def test_idle_baseline(self, layout, idle_key):
        write_scenario(layout, idle_key, [make_nested_record(gets=50, posts=50)] * 3)
        summary = await process_scenario(idle_key, layout)
        assert summary.is_complete
        assert summary.metrics["Migration_Time"] is None
        assert summary.metrics["Downtime"] is None
        assert summary.metrics["Availability"].mean == 100.0

    @pytest.mark.asyncio
    async def test_idle_baseline_without_runs(self, layout, idle_key):
        summary = await process_scenario(idle_key, layout)
        assert summary.status is ScenarioStatus.MISSING
        assert summary.metrics["Migration_Time"] is None
        assert summary.metrics["Downtime"] is None
        others = [name for name in METRIC_NAMES if name not in ("Migration_Time", "Downtime")]
        assert all(summary.metrics[name] is MISSING for name in others)

    @pytest.mark.asyncio
    async def test_estimated_runs_still_complete(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_flattened_record(posts=11, failed_posts=1)] * 3)
        summary = await process_scenario(migration_key, layout)
        assert summary.is_complete
        assert all(run.outcome is ProcessingOutcome.ESTIMATED for run in summary.runs)
        assert summary.metrics["Downtime"].mean == pytest.approx(round(10 / 11, 2))


class TestAggregateBenchmarks:
    """Test the whole batch."""

    @pytest.mark.asyncio
    async def test_one_summary_per_scenario_in_order(self, layout, migration_key, idle_key):
        write_scenario(layout, migration_key, [make_nested_record(gets=20, posts=20)] * 3,
                       logs=[make_migration_log()] * 3)
        write_scenario(layout, idle_key, [make_nested_record(gets=20, posts=20)] * 3)

        report = await aggregate_benchmarks(layout)
        keys = [s.key for s in report.summaries]
        assert keys == layout.migration_scenarios() + layout.idle_scenarios()
        assert len(keys) == 3

        statuses = {s.key.forwarding_tool: s.status for s in report.summaries}
        assert statuses == {
            "clustershift": ScenarioStatus.COMPLETE,
            "linkerd": ScenarioStatus.MISSING,
            "none": ScenarioStatus.COMPLETE,
        }
        diagnostics = report.diagnostics
        assert diagnostics.complete_scenarios == 2
        assert diagnostics.missing_scenarios == 1
        assert diagnostics.ok_runs == 6
        assert diagnostics.absent_runs == 3
        assert len(diagnostics.run_issues) == 3

    @pytest.mark.asyncio
    async def test_out_of_order_migration_is_reported(self, layout, migration_key):
        log = make_migration_log(start="2025-01-01 10:05:00", end="2025-01-01 10:04:00")
        write_scenario(layout, migration_key, [make_nested_record(gets=5, posts=5)] * 3, logs=[log, None, None])
        report = await aggregate_benchmarks(layout)
        assert len(report.diagnostics.migration_anomalies) == 1
        assert report.diagnostics.migration_anomalies[0]["duration_seconds"] == -60.0

    @pytest.mark.asyncio
    async def test_deterministic(self, layout, migration_key):
        write_scenario(layout, migration_key, [make_nested_record(gets=g, posts=10) for g in (7, 8, 9)])
        first = await aggregate_benchmarks(layout)
        second = await aggregate_benchmarks(layout)
        assert first.summaries == second.summaries


class TestSummariesToFrame:
    """Test the tabular export."""

    @pytest.mark.asyncio
    async def test_columns_and_missing_values(self, layout, migration_key, idle_key):
        write_scenario(layout, idle_key, [make_nested_record(gets=5, posts=5)] * 3)
        report = await aggregate_benchmarks(layout)
        frame = summaries_to_frame(report.summaries, layout)

        assert list(frame.columns[:5]) == ["Connectivity_Tool", "Database", "Deployment", "Forwarding_Tool", "Status"]
        assert "Availability_mean" in frame.columns and "Downtime_sd" in frame.columns
        assert list(frame["Forwarding_Tool"]) == ["Clustershift", "Linkerd", "none"]

        missing_row = frame.iloc[0]
        assert missing_row["Status"] == "missing"
        assert pd.isna(missing_row["Availability_mean"])

        idle_row = frame.iloc[2]
        assert idle_row["Availability_mean"] == 100.0
        assert pd.isna(idle_row["Downtime_mean"])

    @pytest.mark.asyncio
    async def test_estimated_downtime_is_flagged(self, layout, migration_key, idle_key):
        write_scenario(layout, migration_key, [make_flattened_record(posts=11, failed_posts=1)] * 3)
        write_scenario(layout, idle_key, [make_nested_record(gets=5, posts=5)] * 3)
        report = await aggregate_benchmarks(layout)
        frame = summaries_to_frame(report.summaries, layout)

        assert frame.columns[-1] == "Downtime_Estimated"
        assert list(frame["Downtime_Estimated"]) == [True, False, False]
