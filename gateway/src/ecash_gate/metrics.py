# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Per-request metrics.

Every terminal settlement (and every unpaid request) writes one
`MetricsRecord` keyed ``metrics:{YYYY-MM-DD}:{unix_ms}:{rand}``. Records expire
after 90 days; the store is bounded so a flood of requests evicts the oldest.
"""

from __future__ import annotations

import secrets
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel

TTL_SECONDS = 90 * 24 * 60 * 60
MAX_RECORDS = 50_000
MAX_SUMMARY_DAYS = 90


class MetricsRecord(BaseModel):
    ts: int
    model: str
    status: int
    ecash_in: int = 0
    price: int = 0
    change: int = 0
    refunded: bool = False
    upstream_ms: int = 0
    error_code: Optional[str] = None
    mint: Optional[str] = None
    stream: bool = False


class ModelBreakdown(BaseModel):
    count: int = 0
    ecash_in: int = 0
    errors: int = 0


class MetricsSummary(BaseModel):
    date_from: str
    date_to: str
    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    ecash_received: int = 0
    estimated_cost: int = 0
    error_breakdown: Dict[str, int] = {}
    model_breakdown: Dict[str, ModelBreakdown] = {}
    avg_latency_ms: int = 0

    def to_json(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"date_from", "date_to"})
        return {"from": self.date_from, "to": self.date_to, **data}


def now_ms() -> int:
    return int(time.time() * 1000)


def record_date(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def parse_date(value: str) -> date:
    """Strict YYYY-MM-DD; raises ValueError otherwise."""
    if len(value) != 10:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD")
    return datetime.strptime(value, "%Y-%m-%d").date()


def summarize_records(records: List[MetricsRecord], date_from: str, date_to: str) -> MetricsSummary:
    summary = MetricsSummary(date_from=date_from, date_to=date_to, total_requests=len(records))
    if not records:
        return summary
    total_latency = 0
    for r in records:
        if r.error_code:
            summary.error_count += 1
            summary.error_breakdown[r.error_code] = summary.error_breakdown.get(r.error_code, 0) + 1
        else:
            summary.success_count += 1
            # what was charged stands in for upstream cost
            summary.estimated_cost += r.price
        summary.ecash_received += r.ecash_in
        total_latency += r.upstream_ms
        mb = summary.model_breakdown.setdefault(r.model, ModelBreakdown())
        mb.count += 1
        mb.ecash_in += r.ecash_in
        if r.error_code:
            mb.errors += 1
    summary.avg_latency_ms = round(total_latency / len(records))
    return summary


class MetricsStore:
    def __init__(self, maxsize: int = MAX_RECORDS, ttl: int = TTL_SECONDS):
        self._records: TTLCache[str, MetricsRecord] = TTLCache(maxsize=maxsize, ttl=ttl)

    def write(self, record: MetricsRecord) -> str:
        key = f"metrics:{record_date(record.ts)}:{record.ts}:{secrets.token_hex(3)}"
        self._records[key] = record
        return key

    def by_date(self, day: str) -> List[MetricsRecord]:
        prefix = f"metrics:{day}:"
        return sorted((r for k, r in list(self._records.items()) if k.startswith(prefix)), key=lambda r: r.ts)

    def errors_by_date(self, day: str) -> List[MetricsRecord]:
        return [r for r in self.by_date(day) if r.error_code]

    def summary(self, date_from: str, date_to: str) -> MetricsSummary:
        """Inclusive range; both ends must parse as YYYY-MM-DD."""
        start, end = parse_date(date_from), parse_date(date_to)
        if (end - start).days >= MAX_SUMMARY_DAYS:
            raise ValueError(f"Date range longer than {MAX_SUMMARY_DAYS} days")
        records: List[MetricsRecord] = []
        day = start
        while day <= end:
            records.extend(self.by_date(day.isoformat()))
            day += timedelta(days=1)
        return summarize_records(records, date_from, date_to)
