from __future__ import annotations

import csv
import os
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import httpx
from postgrest import APIError
from supabase import Client, create_client

from telemetry.logging_utils import get_logger

logger = get_logger(__name__)

METRICS_TABLE = "metrics"
ERROR_STATUSES = frozenset({"unavailable", "upstream_error", "error"})

# USD per 1K tokens; unknown models are not costed.
MODEL_PRICING_PER_1K = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4.1-mini": {"input": 0.0004, "output": 0.0016},
    "gpt-4o": {"input": 0.005, "output": 0.015},
}

_write_lock = threading.Lock()


@dataclass
class MetricRow:
    component: str
    operation: str = ""
    status: Optional[str] = None
    latency_ms: Optional[float] = None
    pages: Optional[int] = None
    items: Optional[int] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    cost_usd: Optional[float] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def columns(cls) -> List[str]:
        return ["timestamp", *(name for name in cls.__dataclass_fields__ if name != "timestamp")]

    def as_csv(self) -> Dict[str, Any]:
        return {key: "" if value is None else value for key, value in asdict(self).items()}


def metrics_csv_path() -> Path:
    directory = os.getenv("METRICS_DIR")
    root = Path(directory) if directory else Path(__file__).resolve().parent.parent / "metrics"
    return root / "metrics.csv"


@lru_cache(maxsize=1)
def _remote_sink(url: Optional[str], key: Optional[str]) -> Optional[Client]:
    if not (url and key):
        return None
    return create_client(url, key)


def _supabase() -> Optional[Client]:
    return _remote_sink(os.getenv("SUPABASE_URL"), os.getenv("SUPABASE_SERVICE_ROLE_KEY"))


def _append_csv(path: Path, row: MetricRow) -> None:
    with _write_lock:
        path.parent.mkdir(parents=True, exist_ok=True)
        fresh = not path.exists()
        with path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=MetricRow.columns())
            if fresh:
                writer.writeheader()
            writer.writerow(row.as_csv())


def _as_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def estimate_openai_cost(model: Optional[str], tokens_in: Optional[int], tokens_out: Optional[int]) -> Optional[float]:
    pricing = MODEL_PRICING_PER_1K.get((model or "").lower())
    if pricing is None:
        return None
    total = (tokens_in or 0) * pricing["input"] + (tokens_out or 0) * pricing["output"]
    return round(total / 1000.0, 6)


def log_metric(
    component: str,
    operation: Optional[str],
    *,
    status: Optional[str] = None,
    latency_ms: Optional[float] = None,
    pages: Optional[int] = None,
    items: Optional[int] = None,
    tokens_in: Optional[int] = None,
    tokens_out: Optional[int] = None,
    model: Optional[str] = None,
) -> Dict[str, Any]:
    """Record one metric row locally and, when configured, in Supabase.

    Storage failures are logged and never raised: a metric must not fail the
    request that produced it.
    """
    row = MetricRow(
        component=component,
        operation=operation or "",
        status=status,
        latency_ms=None if latency_ms is None else round(latency_ms, 3),
        pages=pages,
        items=items,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        cost_usd=estimate_openai_cost(model, tokens_in, tokens_out),
    )
    try:
        _append_csv(metrics_csv_path(), row)
    except OSError as exc:
        logger.warning("metric_csv_failed", extra={"error": repr(exc)})

    sink = _supabase()
    if sink is not None:
        try:
            sink.table(METRICS_TABLE).insert(asdict(row)).execute()
        except (httpx.HTTPError, APIError) as exc:
            logger.warning("metric_remote_failed", extra={"error": repr(exc)})
    return asdict(row)


@dataclass
class MetricTimer:
    component: str
    operation: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def done(self, **extra: Any) -> Dict[str, Any]:
        return log_metric(self.component, self.operation, latency_ms=self.elapsed_ms, **{**self.fields, **extra})


def start_timer(component: str, operation: Optional[str]) -> MetricTimer:
    return MetricTimer(component=component, operation=operation)


@contextmanager
def timed_operation(component: str, operation: Optional[str]) -> Iterator[MetricTimer]:
    timer = start_timer(component, operation)
    try:
        yield timer
    finally:
        timer.done()


def _read_csv(path: Path, limit: int) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    with path.open("r", newline="", encoding="utf-8") as handle:
        tail = deque(csv.DictReader(handle), maxlen=max(limit, 0))
    return list(reversed(tail))


def fetch_metrics(limit: int = 500) -> List[Dict[str, Any]]:
    """Newest rows from Supabase when reachable; the local CSV otherwise."""
    sink = _supabase()
    if sink is not None:
        try:
            resp = sink.table(METRICS_TABLE).select("*").order("timestamp", desc=True).limit(limit).execute()
        except (httpx.HTTPError, APIError) as exc:
            logger.warning("metric_fetch_failed", extra={"error": repr(exc)})
        else:
            if resp.data:
                return resp.data
    return _read_csv(metrics_csv_path(), limit)


def summarize_metrics(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    latencies: Dict[str, List[float]] = defaultdict(list)
    errors: Dict[str, int] = defaultdict(int)
    spend = 0.0
    for record in records:
        component = record.get("component") or "unknown"
        spend += _as_float(record.get("cost_usd")) or 0.0
        latency = _as_float(record.get("latency_ms"))
        if latency is not None:
            latencies[component].append(latency)
        if record.get("status") in ERROR_STATUSES:
            errors[component] += 1
    return {
        "total_cost_usd": round(spend, 6),
        "average_latency_ms": {name: round(sum(vals) / len(vals), 3) for name, vals in latencies.items()},
        "errors": dict(errors),
        "sample_size": len(records),
    }
