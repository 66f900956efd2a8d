# benchanalysis.py
import logging
from fastmcp import FastMCP, Context    # ✅ FastMCP 2.x import
from typing import Optional, Dict, Any

from services.benchmark_analyzer import (
    config,
    aggregate_benchmark_results,
    analyze_utilization,
    analyze_availability,
    compare_response_times,
    get_scenario_matrix
)

log_level = config.get('logging', {}).get('log_level', 'INFO')
logging.basicConfig(level=getattr(logging, str(log_level).upper(), logging.INFO),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")

mcp = FastMCP(name="benchanalysis")

@mcp.tool()
async def aggregate_results(ctx: Context, base_path: Optional[str] = None,
                            output_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Aggregate all benchmark scenarios into per-scenario mean/sd summaries.
    A scenario is reported only if all of its runs are usable; otherwise it is marked missing.

    Args:
        ctx: FastMCP workflow context for chaining
        base_path: Optional override of the experiment results folder
        output_path: Optional override of the artifacts folder

    Returns:
        Dictionary with scenario counts, diagnostics and output files
    """
    return await aggregate_benchmark_results(ctx, base_path, output_path)

@mcp.tool()
async def align_utilization(database: str, deployment: str, connectivity_tool: str,
                            cluster_role: str = "origin", metric: str = "memory",
                            ctx: Context = None, base_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Average memory or CPU utilization across runs for Idle, Clustershift and the connectivity tool.

    Args:
        database: Database engine (e.g. postgres, mongo)
        deployment: Deployment type (e.g. operator, stateful)
        connectivity_tool: Connectivity tool (e.g. submariner, linkerd, skupper)
        cluster_role: origin or target
        metric: memory or cpu
        ctx: FastMCP workflow context for chaining
        base_path: Optional override of the experiment results folder

    Returns:
        Dictionary with per-label series summaries and the CSV path
    """
    return await analyze_utilization(database, deployment, connectivity_tool, cluster_role, metric, ctx, base_path)

@mcp.tool()
async def analyze_request_availability(client_state_path: str, database_state_path: str,
                                       ctx: Context) -> Dict[str, Any]:
    """
    Failure rates and downtime window of the steady-state part of a run.

    Args:
        client_state_path: CSV export of client requests
        database_state_path: CSV snapshot of the persisted database rows
        ctx: FastMCP workflow context for chaining

    Returns:
        Dictionary containing GET/POST/overall failure statistics
    """
    return await analyze_availability(client_state_path, database_state_path, ctx)

@mcp.tool()
async def compare_response_time_datasets(datasets: Dict[str, str], ctx: Context) -> Dict[str, Any]:
    """
    Response time statistics with 95% confidence intervals per method and dataset.

    Args:
        datasets: Mapping of dataset label to CSV export path
        ctx: FastMCP workflow context for chaining

    Returns:
        Dictionary containing the statistics rows
    """
    return await compare_response_times(datasets, ctx)

@mcp.tool()
async def list_scenarios(ctx: Context, base_path: Optional[str] = None) -> Dict[str, Any]:
    """
    List configured scenarios with their exclusion flag and available run files.

    Args:
        ctx: FastMCP workflow context for chaining
        base_path: Optional override of the experiment results folder

    Returns:
        Dictionary containing the scenario matrix
    """
    return await get_scenario_matrix(ctx, base_path)

if __name__ == "__main__":
    try:
        mcp.run("stdio")
    except KeyboardInterrupt:
        print("Shutting down Benchmark Analysis MCP…")
