import yaml
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from utils.models import ScenarioKey

IDLE_TOOL = "idle"
IDLE_FORWARDING = "none"


def load_config():
    # Assuming this file is at 'repo/<mcp-server>/utils/config.py', we go up one level.
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

    # Platform-specific config mapping
    config_map = {
        'Darwin': 'config.mac.yaml',
        'Windows': 'config.windows.yaml'
    }

    system = platform.system()
    platform_config = config_map.get(system)

    # Use platform-specific config if it exists, otherwise fall back to config.yaml
    candidate_files = [platform_config, 'config.yaml'] if platform_config else ['config.yaml']

    for filename in candidate_files:
        config_path = os.path.join(repo_root, filename)
        if os.path.exists(config_path):
            with open(config_path, 'r') as file:
                try:
                    return yaml.safe_load(file)
                except yaml.YAMLError as e:
                    raise Exception(f"Error parsing '{filename}': {e}")

    raise FileNotFoundError("No valid configuration file found (checked platform-specific and default).")


# -----------------------------------------------
# Benchmark layout
# -----------------------------------------------
@dataclass(frozen=True)
class BenchmarkLayout:
    """
    Where the experiment files live and which scenarios exist.

    Passed explicitly into the aggregator and the utilization aligner; path
    templates are formatted with the placeholders {conn}, {db}, {dep}, {fwd},
    {run} and {role}, and resolved relative to base_path.
    """
    base_path: Path
    output_path: Path = Path("./analysis")
    databases: Tuple[str, ...] = ("postgres", "mongo")
    deployment_types: Tuple[str, ...] = ("operator", "stateful")
    connectivity_tools: Tuple[str, ...] = ("submariner", "linkerd", "skupper")
    reroute_tools: Tuple[str, ...] = ("clustershift", "selected_tool")
    migration_tool: str = "clustershift"
    selected_tool_value: str = "selected_tool"
    run_count: int = 3
    connectivity_labels: Dict[str, str] = field(default_factory=lambda: {
        "submariner": "Submariner", "linkerd": "Linkerd", "skupper": "Skupper", IDLE_TOOL: "Idle",
    })
    database_labels: Dict[str, str] = field(default_factory=lambda: {
        "postgres": "PostgreSQL", "mongo": "MongoDB",
    })
    deployment_labels: Dict[str, str] = field(default_factory=lambda: {
        "operator": "Operator", "stateful": "StatefulSet",
    })
    migration_tool_label: str = "Clustershift"
    excluded_scenarios: Tuple[Dict[str, str], ...] = ()
    result_template: str = "{conn}/{db}_{dep}_{fwd}/{conn}_{db}_{dep}_{fwd}_{run}.json"
    log_template: str = "{conn}/{db}_{dep}_{fwd}/{conn}_{db}_{dep}_{fwd}_{run}.log"
    idle_result_template: str = "idle_origin/{db}_{dep}/idle_{db}_{dep}_{run}.json"
    utilization_template: str = "{conn}/{db}_{dep}_{fwd}/{conn}_{db}_{dep}_{fwd}_util_{role}_{run}.json"
    idle_utilization_origin_template: str = "idle_origin/{db}_{dep}/idle_{db}_{dep}_util_{run}.json"
    idle_utilization_target_template: str = "idle_target/run{run}.json"
    ground_truth_template: Optional[str] = None
    start_marker: str = r"\[INFO\] Initializing kubernetes clients"
    end_marker: str = r"\[INFO\] Migration complete"
    log_timestamp_format: str = "%Y-%m-%d %H:%M:%S"
    seed_entries: int = 1000
    utilization_horizon_seconds: int = 600
    availability_window_minutes: Tuple[float, float] = (1.0, 6.0)

    # -- scenario enumeration -------------------------------------------------
    def resolve_forwarding_tool(self, connectivity_tool: str, reroute_tool: str) -> str:
        if reroute_tool == self.selected_tool_value:
            return connectivity_tool
        return reroute_tool

    def scenario_key(self, connectivity_tool: str, database: str, deployment: str, reroute_tool: str) -> ScenarioKey:
        return ScenarioKey(
            database=database,
            deployment=deployment,
            connectivity_tool=connectivity_tool,
            forwarding_tool=self.resolve_forwarding_tool(connectivity_tool, reroute_tool),
        )

    def idle_key(self, database: str, deployment: str) -> ScenarioKey:
        return ScenarioKey(database, deployment, IDLE_TOOL, IDLE_FORWARDING)

    def migration_scenarios(self) -> List[ScenarioKey]:
        return [
            self.scenario_key(conn, db, dep, reroute)
            for conn in self.connectivity_tools
            for db in self.databases
            for dep in self.deployment_types
            for reroute in self.reroute_tools
        ]

    def idle_scenarios(self) -> List[ScenarioKey]:
        return [self.idle_key(db, dep) for db in self.databases for dep in self.deployment_types]

    def is_excluded(self, key: ScenarioKey) -> bool:
        """True if every field named by some exclusion rule matches the key."""
        fields = key.as_dict()
        for rule in self.excluded_scenarios:
            if rule and all(fields.get(name) == value for name, value in rule.items()):
                return True
        return False

    # -- file paths ------------------------------------------------------------
    def _format(self, template: str, key: ScenarioKey, run: int, role: str = "") -> Path:
        relative = template.format(
            conn=key.connectivity_tool, db=key.database, dep=key.deployment,
            fwd=key.forwarding_tool, run=run, role=role,
        )
        return self.base_path / relative

    def runs(self) -> range:
        return range(1, self.run_count + 1)

    def result_paths(self, key: ScenarioKey) -> List[Path]:
        template = self.idle_result_template if key.is_idle else self.result_template
        return [self._format(template, key, run) for run in self.runs()]

    def log_paths(self, key: ScenarioKey) -> List[Optional[Path]]:
        if key.is_idle:
            return [None for _ in self.runs()]
        return [self._format(self.log_template, key, run) for run in self.runs()]

    def ground_truth_path(self, result_path: Path) -> Optional[Path]:
        if not self.ground_truth_template:
            return None
        return result_path.with_name(self.ground_truth_template.format(stem=result_path.stem))

    def utilization_paths(self, key: ScenarioKey, cluster_role: str) -> List[Path]:
        if key.is_idle:
            template = (self.idle_utilization_origin_template if cluster_role == "origin"
                        else self.idle_utilization_target_template)
        else:
            template = self.utilization_template
        return [self._format(template, key, run, cluster_role) for run in self.runs()]

    # -- display labels --------------------------------------------------------
    def connectivity_label(self, connectivity_tool: str) -> str:
        return self.connectivity_labels.get(connectivity_tool, connectivity_tool)

    def forwarding_label(self, key: ScenarioKey) -> str:
        if key.is_idle:
            return key.forwarding_tool
        if key.forwarding_tool == self.migration_tool:
            return self.migration_tool_label
        return self.connectivity_label(key.forwarding_tool)


def load_benchmark_layout(config: Dict) -> BenchmarkLayout:
    """
    Build a BenchmarkLayout from the 'benchmark' section of config.yaml.

    Raises:
        ValueError: If the section is missing or holds invalid values.
    """
    bench = (config or {}).get('benchmark')
    if not isinstance(bench, dict):
        raise ValueError("config.yaml must include a 'benchmark' section.")
    if 'base_path' not in bench:
        raise ValueError("'benchmark.base_path' is required.")

    kwargs = {
        "base_path": Path(bench['base_path']),
        "output_path": Path(bench.get('output_path', './analysis')),
    }

    for name in ('databases', 'deployment_types', 'connectivity_tools', 'reroute_tools'):
        if name in bench:
            values = bench[name]
            if not isinstance(values, list) or not values:
                raise ValueError(f"'benchmark.{name}' must be a non-empty list.")
            kwargs[name] = tuple(str(v) for v in values)

    for name in ('migration_tool', 'selected_tool_value'):
        if name in bench:
            kwargs[name] = str(bench[name])

    for name in ('run_count', 'seed_entries', 'utilization_horizon_seconds'):
        if name in bench:
            kwargs[name] = int(bench[name])
    if kwargs.get('run_count', 3) < 1:
        raise ValueError("'benchmark.run_count' must be at least 1.")

    labels = bench.get('labels', {}) or {}
    if 'connectivity' in labels:
        kwargs['connectivity_labels'] = {IDLE_TOOL: "Idle", **labels['connectivity']}
    if 'database' in labels:
        kwargs['database_labels'] = dict(labels['database'])
    if 'deployment' in labels:
        kwargs['deployment_labels'] = dict(labels['deployment'])
    if 'migration_tool' in labels:
        kwargs['migration_tool_label'] = str(labels['migration_tool'])

    excluded = bench.get('excluded_scenarios', []) or []
    if not isinstance(excluded, list) or not all(isinstance(rule, dict) for rule in excluded):
        raise ValueError("'benchmark.excluded_scenarios' must be a list of mappings.")
    kwargs['excluded_scenarios'] = tuple({str(k): str(v) for k, v in rule.items()} for rule in excluded)

    paths = bench.get('paths', {}) or {}
    path_keys = {
        'result': 'result_template',
        'log': 'log_template',
        'idle_result': 'idle_result_template',
        'utilization': 'utilization_template',
        'idle_utilization_origin': 'idle_utilization_origin_template',
        'idle_utilization_target': 'idle_utilization_target_template',
        'ground_truth': 'ground_truth_template',
    }
    for config_key, field_name in path_keys.items():
        if paths.get(config_key):
            template = str(paths[config_key])
            if field_name != 'ground_truth_template' and '{run}' not in template:
                raise ValueError(f"'benchmark.paths.{config_key}' must contain a '{{run}}' placeholder.")
            kwargs[field_name] = template

    markers = bench.get('log_markers', {}) or {}
    if 'start' in markers:
        kwargs['start_marker'] = str(markers['start'])
    if 'end' in markers:
        kwargs['end_marker'] = str(markers['end'])
    if 'timestamp_format' in markers:
        kwargs['log_timestamp_format'] = str(markers['timestamp_format'])

    window = bench.get('availability_window_minutes')
    if window is not None:
        if not isinstance(window, list) or len(window) != 2 or float(window[0]) >= float(window[1]):
            raise ValueError("'benchmark.availability_window_minutes' must be [start, end] with start < end.")
        kwargs['availability_window_minutes'] = (float(window[0]), float(window[1]))

    return BenchmarkLayout(**kwargs)


if __name__ == '__main__':
    # For testing purposes, print both configurations.
    config = load_config()
    print("Loaded general configuration:")
    print(config)
    print(load_benchmark_layout(config))
