# services/benchmark_analyzer.py
import dataclasses
from pathlib import Path
from typing import Any, Dict, Optional

from fastmcp import Context     # ✅ FastMCP 2.x import

from utils.config import BenchmarkLayout, load_benchmark_layout, load_config
from utils.event_normalizer import load_ground_truth
from utils.file_processor import (
    load_client_state,
    write_csv_output,
    write_dataframe_csv,
    write_json_output,
)
from utils.statistical_analyzer import to_native_type
from services.availability_analyzer import analyze_response_times, analyze_system_health
from services.scenario_aggregator import aggregate_benchmarks, summaries_to_frame, summary_to_row
from services.utilization_aligner import (
    CLUSTER_ROLES,
    METRIC_COLUMNS,
    collect_utilization_for_combination,
    series_to_frame,
)

# Load configuration
config = load_config()
benchmark_layout = load_benchmark_layout(config)
artifacts_base = config.get('artifacts', {}).get('artifacts_path')


# -----------------------------------------------
# Helpers
# -----------------------------------------------
def resolve_layout(base_path: Optional[str] = None, output_path: Optional[str] = None) -> BenchmarkLayout:
    """Configured layout, optionally pointed at another experiment tree or output folder"""
    overrides = {}
    if base_path:
        overrides['base_path'] = Path(base_path)
    if output_path:
        overrides['output_path'] = Path(output_path)
    elif artifacts_base and not benchmark_layout.output_path.is_absolute():
        overrides['output_path'] = Path(artifacts_base) / benchmark_layout.output_path
    return dataclasses.replace(benchmark_layout, **overrides) if overrides else benchmark_layout


def _output_dir(layout: BenchmarkLayout) -> Path:
    layout.output_path.mkdir(parents=True, exist_ok=True)
    return layout.output_path


def _clean_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: to_native_type(v) for k, v in row.items()}


# -----------------------------------------------
# Main Functions for the BenchAnalysis MCP
# -----------------------------------------------
async def aggregate_benchmark_results(ctx: Context, base_path: Optional[str] = None,
                                      output_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Aggregate every configured scenario into mean/sd summaries.

    Args:
        ctx: FastMCP workflow context for chaining
        base_path: Experiment tree to read (defaults to benchmark.base_path)
        output_path: Folder for the result artifacts (defaults to benchmark.output_path)

    Returns:
        Dictionary with scenario counts, diagnostics and the written files
    """
    try:
        layout = resolve_layout(base_path, output_path)
        if not layout.base_path.exists():
            error_msg = f"Benchmark results folder not found: {layout.base_path}"
            await ctx.error(error_msg)
            return {"error": error_msg, "status": "failed"}

        await ctx.info(f"Aggregating benchmark results from {layout.base_path}")
        report = await aggregate_benchmarks(layout)
        diagnostics = report.diagnostics

        out_dir = _output_dir(layout)
        csv_file = out_dir / "benchmark_results.csv"
        json_file = out_dir / "benchmark_results.json"

        await write_dataframe_csv(summaries_to_frame(report.summaries, layout), csv_file)
        await write_json_output({
            "scenarios": [_clean_row(summary_to_row(s, layout)) for s in report.summaries],
            "diagnostics": diagnostics.as_dict(),
        }, json_file)

        if diagnostics.migration_anomalies:
            await ctx.info(f"{len(diagnostics.migration_anomalies)} run(s) have out-of-order migration markers")
        await ctx.info(f"Aggregation complete: {diagnostics.complete_scenarios} complete, "
                       f"{diagnostics.missing_scenarios} missing. Files saved to {out_dir}")
        return {
            "status": "success",
            "total_scenarios": len(report.summaries),
            "complete_scenarios": diagnostics.complete_scenarios,
            "missing_scenarios": diagnostics.missing_scenarios,
            "diagnostics": diagnostics.as_dict(),
            "output_files": {"csv": str(csv_file), "json": str(json_file)},
        }

    except Exception as e:
        error_msg = f"Benchmark aggregation failed: {str(e)}"
        await ctx.error(error_msg)
        return {"error": error_msg, "status": "failed"}


async def analyze_utilization(database: str, deployment: str, connectivity_tool: str,
                              cluster_role: str, metric: str, ctx: Context,
                              base_path: Optional[str] = None,
                              output_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Average the replicate utilization runs of one (database, deployment,
    connectivity tool, cluster role) panel and write them as one long CSV.
    """
    try:
        if cluster_role not in CLUSTER_ROLES:
            return {"error": f"cluster_role must be one of {list(CLUSTER_ROLES)}", "status": "failed"}
        if metric not in METRIC_COLUMNS:
            return {"error": f"metric must be one of {sorted(METRIC_COLUMNS)}", "status": "failed"}

        layout = resolve_layout(base_path, output_path)
        await ctx.info(f"Aligning {metric} utilization for {connectivity_tool}/{database}/{deployment} ({cluster_role})")
        series = await collect_utilization_for_combination(
            layout, database, deployment, connectivity_tool, cluster_role, metric
        )
        if not series:
            error_msg = "No utilization runs could be parsed for this combination."
            await ctx.error(error_msg)
            return {"error": error_msg, "status": "no_data"}

        out_dir = _output_dir(layout)
        csv_file = out_dir / f"utilization_{connectivity_tool}_{database}_{deployment}_{cluster_role}_{metric}.csv"
        await write_dataframe_csv(series_to_frame(series.values()), csv_file)

        summary = {}
        for label, averaged in series.items():
            values = [s.cluster_value for s in averaged.samples]
            summary[label] = {
                "runs": averaged.run_count,
                "length": len(averaged),
                "mean": round(sum(values) / len(values), 2),
                "peak": round(max(values), 2),
            }

        await ctx.info(f"Utilization series written to {csv_file}")
        return {
            "status": "success",
            "metric": metric,
            "cluster_role": cluster_role,
            "series": summary,
            "output_files": {"csv": str(csv_file)},
        }

    except Exception as e:
        error_msg = f"Utilization analysis failed: {str(e)}"
        await ctx.error(error_msg)
        return {"error": error_msg, "status": "failed"}


async def analyze_availability(client_state_path: str, database_state_path: str, ctx: Context,
                               output_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Steady-state failure rates and downtime window of one client export,
    checked against a database snapshot.
    """
    try:
        layout = resolve_layout(output_path=output_path)
        client_df = load_client_state(Path(client_state_path))
        if client_df is None:
            error_msg = f"Client state not found or lacks method/timestamp columns: {client_state_path}"
            await ctx.error(error_msg)
            return {"error": error_msg, "status": "failed"}

        persisted = load_ground_truth(Path(database_state_path))
        await ctx.info(f"Analyzing {len(client_df)} client requests against {len(persisted)} persisted entries")
        result = analyze_system_health(client_df, persisted, layout.availability_window_minutes)

        json_file = _output_dir(layout) / "availability_analysis.json"
        await write_json_output(result, json_file)

        await ctx.info(f"Availability analysis saved to {json_file}")
        return {"status": "success", "analysis": result, "output_files": {"json": str(json_file)}}

    except Exception as e:
        error_msg = f"Availability analysis failed: {str(e)}"
        await ctx.error(error_msg)
        return {"error": error_msg, "status": "failed"}


async def compare_response_times(datasets: Dict[str, str], ctx: Context,
                                 output_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Per-method response time statistics for several labelled exports,
    e.g. {"Idle": "...idle.csv", "Migration": "...migration.csv"}.
    """
    try:
        layout = resolve_layout(output_path=output_path)
        missing = [path for path in datasets.values() if not Path(path).exists()]
        if missing:
            error_msg = f"Response time export(s) not found: {', '.join(missing)}"
            await ctx.error(error_msg)
            return {"error": error_msg, "status": "failed"}

        rows = analyze_response_times({name: Path(p) for name, p in datasets.items()},
                                      layout.availability_window_minutes)
        csv_file = _output_dir(layout) / "response_time_stats.csv"
        await write_csv_output(rows, csv_file)

        await ctx.info(f"Response time statistics for {len(rows)} method/dataset groups saved to {csv_file}")
        return {"status": "success", "statistics": rows, "output_files": {"csv": str(csv_file)}}

    except Exception as e:
        error_msg = f"Response time comparison failed: {str(e)}"
        await ctx.error(error_msg)
        return {"error": error_msg, "status": "failed"}


async def get_scenario_matrix(ctx: Context, base_path: Optional[str] = None) -> Dict[str, Any]:
    """List every configured scenario, whether it is excluded and which result files exist"""
    layout = resolve_layout(base_path)
    scenarios = []
    for key in layout.migration_scenarios() + layout.idle_scenarios():
        paths = layout.result_paths(key)
        scenarios.append({
            **key.as_dict(),
            "excluded": layout.is_excluded(key),
            "runs_present": sum(1 for p in paths if p.exists()),
            "runs_expected": layout.run_count,
        })
    await ctx.info(f"{len(scenarios)} scenarios configured under {layout.base_path}")
    return {"status": "success", "base_path": str(layout.base_path), "scenarios": scenarios}
