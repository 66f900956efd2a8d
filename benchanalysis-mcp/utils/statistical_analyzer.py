# utils/statistical_analyzer.py
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from utils.models import MetricSummary

# -----------------------------------------------
# Metric catalogue
# -----------------------------------------------
# (summary column, RunMetrics attribute, mean decimals, sd decimals)
METRIC_SPECS: List[Tuple[str, str, int, int]] = [
    ("Successful_GET", "successful_gets", 1, 2),
    ("Successful_POST", "successful_posts", 1, 2),
    ("Failed_GET", "failed_gets", 1, 2),
    ("Failed_POST", "failed_posts", 1, 2),
    ("Availability", "availability", 2, 2),
    ("Message_Lost_Rate", "message_loss_rate", 2, 2),
    ("Response_Time_GET", "response_time_get", 2, 2),
    ("Response_Time_POST", "response_time_post", 2, 2),
    ("Migration_Time", "migration_seconds", 2, 2),
    ("Downtime", "downtime_seconds", 2, 2),
]

METRIC_NAMES = [spec[0] for spec in METRIC_SPECS]

# Metrics that have no meaning for an idle baseline
MIGRATION_ONLY_METRICS = ("Migration_Time", "Downtime")


def to_native_type(value):
    """Convert numpy/pandas scalars to Python natives for JSON serialization"""
    if value is None:
        return None
    if isinstance(value, (float, np.floating)) and math.isnan(value):
        return None
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    return value


# -----------------------------------------------
# Cross-run summaries
# -----------------------------------------------
def summarize_values(values: Iterable[Optional[float]], mean_decimals: int = 2,
                     sd_decimals: int = 2) -> Optional[MetricSummary]:
    """
    Sample mean and sample standard deviation (n-1) of the non-null values.

    Returns None when no value is present. sd is None when only one value
    is present.
    """
    series = pd.Series([np.nan if v is None else v for v in values], dtype="float64").dropna()
    if series.empty:
        return None
    mean = round(float(series.mean()), mean_decimals)
    sd = series.std(ddof=1)
    sd = None if pd.isna(sd) else round(float(sd), sd_decimals)
    return MetricSummary(mean=mean, sd=sd)


# -----------------------------------------------
# Response time statistics
# -----------------------------------------------
def confidence_interval(values: pd.Series, confidence: float = 0.95) -> Tuple[Optional[float], Optional[float]]:
    """Two-sided t-distribution confidence interval of the mean."""
    values = values.dropna()
    n = len(values)
    if n < 2:
        return None, None
    mean = values.mean()
    margin = stats.t.ppf((1 + confidence) / 2, n - 1) * values.std(ddof=1) / math.sqrt(n)
    return float(mean - margin), float(mean + margin)


def calculate_response_time_stats(df: pd.DataFrame, confidence: float = 0.95) -> List[Dict[str, Any]]:
    """
    Per (method, dataset) response time statistics.

    Expects columns 'method', 'dataset' and 'response_time_ms'.
    """
    rows = []
    if df.empty:
        return rows
    for (method, dataset), group in df.groupby(["method", "dataset"], sort=True):
        times = pd.to_numeric(group["response_time_ms"], errors="coerce")
        ci_lower, ci_upper = confidence_interval(times, confidence)
        rows.append({
            "method": method,
            "dataset": dataset,
            "avg_response_time": to_native_type(times.mean()),
            "std_dev_response_time": to_native_type(times.std(ddof=1)),
            "ci_lower": ci_lower,
            "ci_upper": ci_upper,
            "n": int(len(group)),
        })
    return rows
