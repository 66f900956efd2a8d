# utils/models.py
"""
Record types shared by the benchmark aggregation engine.

Every record is immutable once created. Raw result files are resolved into
one of two RawResult arms (NestedResult / FlattenedResult) exactly once, at
ingestion, so later stages never need to sniff the input shape again.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProcessingOutcome(Enum):
    """How a single run slot was processed."""
    OK = "ok"
    ESTIMATED = "estimated"   # downtime came from the flattened-record fallback
    EXCLUDED = "excluded"     # file present but unusable
    ABSENT = "absent"         # result file missing


class ScenarioStatus(Enum):
    """Scenario aggregation state."""
    PENDING = "pending"
    COMPLETE = "complete"
    MISSING = "missing"


class Missing(Enum):
    """Sentinel for a metric whose scenario did not reach COMPLETE."""
    MISSING = "--"

    def __repr__(self) -> str:
        return "MISSING"


MISSING = Missing.MISSING


# ---------------------------------------------------------------------------
# Request events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestEvent:
    timestamp: Optional[datetime]
    method: str
    success: Optional[bool]
    content: Optional[str] = None
    record_id: Optional[str] = None
    response_time_ms: Optional[float] = None


@dataclass(frozen=True)
class ResultCounters:
    successful_gets: float = 0.0
    failed_gets: float = 0.0
    successful_posts: float = 0.0
    failed_posts: float = 0.0

    @property
    def total_requests(self) -> float:
        return self.successful_gets + self.failed_gets + self.successful_posts + self.failed_posts

    @property
    def successful_requests(self) -> float:
        return self.successful_gets + self.successful_posts


@dataclass(frozen=True)
class NestedResult:
    """Per-event records: each event carries its own success flag."""
    events: Tuple[RequestEvent, ...]
    counters: ResultCounters
    server_posts_text: Optional[str] = None
    total_response_time_ms: Optional[float] = None


@dataclass(frozen=True)
class FlattenedResult:
    """Tabular records: only aggregate counters describe success."""
    events: Tuple[RequestEvent, ...]
    counters: ResultCounters
    server_posts_text: Optional[str] = None
    total_response_time_ms: Optional[float] = None


RawResult = Union[NestedResult, FlattenedResult]


@dataclass(frozen=True)
class GroundTruth:
    """Content and id values of a database-state snapshot, kept apart."""
    contents: FrozenSet[str] = frozenset()
    ids: FrozenSet[str] = frozenset()

    def __len__(self) -> int:
        return len(self.contents)

    def is_persisted(self, content: Optional[str], record_id: Optional[str] = None) -> bool:
        # content decides; the id is only consulted for events without content
        if content is not None:
            return content in self.contents
        return record_id is not None and record_id in self.ids


# ---------------------------------------------------------------------------
# Per-run derived values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FailurePeriod:
    start: datetime
    end: datetime
    duration_seconds: float
    failed_count: int


@dataclass(frozen=True)
class DowntimeResult:
    total_downtime_seconds: float
    failure_periods: Tuple[FailurePeriod, ...] = ()
    estimated: bool = False


@dataclass(frozen=True)
class MigrationTiming:
    start: Optional[datetime]
    end: Optional[datetime]
    duration_seconds: Optional[float]
    out_of_order: bool = False


@dataclass(frozen=True)
class RunMetrics:
    successful_gets: float
    successful_posts: float
    failed_gets: float
    failed_posts: float
    availability: float
    message_loss_rate: float
    response_time_get: Optional[float]
    response_time_post: Optional[float]
    downtime_seconds: Optional[float]
    migration_seconds: Optional[float] = None
    downtime_estimated: bool = False
    failure_periods: Tuple[FailurePeriod, ...] = ()


@dataclass(frozen=True)
class RunResult:
    slot: int
    result_path: str
    outcome: ProcessingOutcome
    metrics: Optional[RunMetrics] = None
    reason: Optional[str] = None
    log_path: Optional[str] = None
    migration: Optional[MigrationTiming] = None

    @property
    def is_valid(self) -> bool:
        return self.metrics is not None


# ---------------------------------------------------------------------------
# Scenario level
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScenarioKey:
    database: str
    deployment: str
    connectivity_tool: str
    forwarding_tool: str

    @property
    def is_idle(self) -> bool:
        return self.connectivity_tool == "idle"

    def as_dict(self) -> Dict[str, str]:
        return {
            "connectivity_tool": self.connectivity_tool,
            "database": self.database,
            "deployment": self.deployment,
            "forwarding_tool": self.forwarding_tool,
        }


@dataclass(frozen=True)
class MetricSummary:
    mean: float
    sd: Optional[float]


MetricValue = Union[MetricSummary, Missing, None]


@dataclass(frozen=True)
class ScenarioSummary:
    key: ScenarioKey
    status: ScenarioStatus
    metrics: Dict[str, MetricValue]
    runs: Tuple[RunResult, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.status is ScenarioStatus.COMPLETE


@dataclass
class BatchDiagnostics:
    """Side-channel counts for one aggregation batch."""
    complete_scenarios: int = 0
    missing_scenarios: int = 0
    excluded_scenarios: int = 0
    ok_runs: int = 0
    estimated_runs: int = 0
    excluded_runs: int = 0
    absent_runs: int = 0
    migration_anomalies: List[Dict[str, object]] = field(default_factory=list)
    run_issues: List[Dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "complete_scenarios": self.complete_scenarios,
            "missing_scenarios": self.missing_scenarios,
            "excluded_scenarios": self.excluded_scenarios,
            "ok_runs": self.ok_runs,
            "estimated_runs": self.estimated_runs,
            "excluded_runs": self.excluded_runs,
            "absent_runs": self.absent_runs,
            "migration_anomalies": list(self.migration_anomalies),
            "run_issues": list(self.run_issues),
        }


@dataclass(frozen=True)
class AggregationReport:
    summaries: Tuple[ScenarioSummary, ...]
    diagnostics: BatchDiagnostics


# ---------------------------------------------------------------------------
# Utilization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UtilizationSample:
    time_index: int
    cluster_value: float


@dataclass(frozen=True)
class AveragedSeries:
    label: str
    metric: str
    samples: Tuple[UtilizationSample, ...]
    run_count: int

    def __len__(self) -> int:
        return len(self.samples)
