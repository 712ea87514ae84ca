"""
Root Cause Analytics
Recurring patterns and co-occurrences across registered discrepancies, plus
per-operator and per-location history.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy.orm import Session

from models import Discrepancy, DiscrepancyStatus, utcnow
from inventory_store import InventoryStore, QueryScope, TimeWindow
from truth_errors import ValidationError


CORRELATION_DIMENSIONS = {"location": "location_code", "sku": "sku"}


def shift_for_hour(hour: int) -> str:
    """Day 06-14, Evening 15-22, Night otherwise."""
    if 6 <= hour <= 14:
        return "Day"
    if 15 <= hour <= 22:
        return "Evening"
    return "Night"


def _by_occurrences(patterns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(patterns, key=lambda p: -p["occurrences"])


class RootCauseAnalytics:
    """
    Aggregations over the discrepancy registry.
    """

    def __init__(self, db: Session, store: InventoryStore):
        self.db = db
        self.store = store

    def _discrepancies_since(self, cutoff: Optional[datetime], **filters) -> List[Discrepancy]:
        query = self.db.query(Discrepancy)
        if cutoff is not None:
            query = query.filter(Discrepancy.created_at >= cutoff)
        for key, value in filters.items():
            query = query.filter(getattr(Discrepancy, key) == value)
        return query.order_by(Discrepancy.created_at.desc(), Discrepancy.id.desc()).all()

    # ═══════════════════════════════════════════════════════════════════════════
    # PATTERNS
    # ═══════════════════════════════════════════════════════════════════════════

    def find_patterns(
        self,
        days: int = 30,
        min_occurrences: int = 3,
        now: Optional[datetime] = None
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Recurring discrepancy groups.

        Args:
            days: Lookback on creation time
            min_occurrences: Minimum group size to report

        Returns:
            location_patterns (location + type), sku_patterns (sku + type),
            time_patterns (hour of detection + type), each ordered by
            occurrences descending
        """
        if days <= 0 or min_occurrences <= 0:
            raise ValidationError("days and min_occurrences must be positive")

        cutoff = (now or utcnow()) - timedelta(days=days)
        rows = self._discrepancies_since(cutoff)
        empty = {"location_patterns": [], "sku_patterns": [], "time_patterns": []}
        if not rows:
            return empty

        df = pd.DataFrame([{
            "sku": d.sku,
            "location_code": d.location_code,
            "type": d.type,
            "variance": d.variance,
            "hour": d.detected_at.hour,
        } for d in rows])

        location_patterns = []
        for (location, dtype), group in df.groupby(["location_code", "type"], sort=True):
            if len(group) < min_occurrences:
                continue
            location_patterns.append({
                "location_code": location,
                "type": dtype,
                "occurrences": int(len(group)),
                "avg_variance": float(group["variance"].mean()),
                "affected_skus": sorted(group["sku"].unique().tolist()),
            })

        sku_patterns = []
        for (sku, dtype), group in df.groupby(["sku", "type"], sort=True):
            if len(group) < min_occurrences:
                continue
            sku_patterns.append({
                "sku": sku,
                "type": dtype,
                "occurrences": int(len(group)),
                "location_count": int(group["location_code"].nunique()),
                "avg_variance": float(group["variance"].mean()),
            })

        time_patterns = []
        for (hour, dtype), group in df.groupby(["hour", "type"], sort=True):
            if len(group) < min_occurrences:
                continue
            time_patterns.append({
                "hour": int(hour),
                "shift": shift_for_hour(int(hour)),
                "type": dtype,
                "occurrences": int(len(group)),
            })

        return {
            "location_patterns": _by_occurrences(location_patterns),
            "sku_patterns": _by_occurrences(sku_patterns),
            "time_patterns": _by_occurrences(time_patterns),
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # CORRELATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def find_correlations(
        self,
        dimension: str = "location",
        window_hours: float = 24,
        min_co_occurrences: int = 3,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """
        Pairs of distinct locations (or SKUs) whose discrepancies tend to be
        detected within window_hours of each other.

        Each discrepancy pair is counted once, keyed by (earlier id's value,
        later id's value).
        """
        if dimension not in CORRELATION_DIMENSIONS:
            raise ValidationError(
                f"Unsupported correlation dimension: {dimension}",
                {"allowed": sorted(CORRELATION_DIMENSIONS)}
            )
        attr = CORRELATION_DIMENSIONS[dimension]

        rows = sorted(self._discrepancies_since(None), key=lambda d: (d.detected_at, d.id))
        window = timedelta(hours=window_hours)

        pairs: Dict[tuple, List[float]] = defaultdict(list)
        for i, first in enumerate(rows):
            for second in rows[i + 1:]:
                apart = second.detected_at - first.detected_at
                if apart >= window:
                    break
                a, b = (first, second) if first.id < second.id else (second, first)
                dim_a, dim_b = getattr(a, attr), getattr(b, attr)
                if dim_a == dim_b:
                    continue
                pairs[(dim_a, dim_b)].append(apart.total_seconds() / 3600)

        correlations = [
            {
                "item1": dim_a,
                "item2": dim_b,
                "co_occurrences": len(hours),
                "avg_hours_apart": sum(hours) / len(hours),
            }
            for (dim_a, dim_b), hours in sorted(pairs.items())
            if len(hours) >= min_co_occurrences
        ]
        correlations.sort(key=lambda c: -c["co_occurrences"])
        return correlations[:limit]

    # ═══════════════════════════════════════════════════════════════════════════
    # OPERATOR / LOCATION HISTORY
    # ═══════════════════════════════════════════════════════════════════════════

    def analyze_operator(self, user_id: str, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Adjustment activity for one operator and discrepancies where they worked."""
        now = now or utcnow()
        window = TimeWindow(start=now - timedelta(days=days), end=now, include_end=True)

        adjustments = [
            a for a in self.store.query_adjustments(QueryScope(), window)
            if a.user_id == user_id
        ]
        adjustments.sort(key=lambda a: a.adjustment_date, reverse=True)

        locations = sorted({a.location_code for a in adjustments})
        related = 0
        if locations:
            related = self.db.query(Discrepancy).filter(
                Discrepancy.location_code.in_(locations),
                Discrepancy.created_at >= window.start,
            ).count()

        total_adjusted = sum(abs(a.adjustment_qty) for a in adjustments)
        by_reason: Dict[str, int] = {}
        for a in adjustments:
            key = a.reason or "unspecified"
            by_reason[key] = by_reason.get(key, 0) + 1

        return {
            "user_id": user_id,
            "period": {"from": window.start.isoformat(), "to": window.end.isoformat()},
            "metrics": {
                "total_adjustments": len(adjustments),
                "total_adjusted": total_adjusted,
                "unique_locations": len(locations),
                "unique_skus": len({a.sku for a in adjustments}),
                "avg_adjustment_size": total_adjusted / len(adjustments) if adjustments else 0.0,
            },
            "adjustments_by_reason": by_reason,
            "related_discrepancies": related,
            "recent_adjustments": [a.to_dict() for a in adjustments[:20]],
        }

    def analyze_location(self, location_code: str, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Discrepancy, adjustment and cycle count history for one location."""
        now = now or utcnow()
        window = TimeWindow(start=now - timedelta(days=days), end=now, include_end=True)
        scope = QueryScope(location_code=location_code)

        discrepancies = self._discrepancies_since(window.start, location_code=location_code)
        adjustments = self.store.query_adjustments(scope, window)
        cycle_counts = self.store.query_cycle_counts(scope, window)

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for d in discrepancies:
            by_type[d.type] = by_type.get(d.type, 0) + 1
            by_severity[d.severity] = by_severity.get(d.severity, 0) + 1

        avg_count_variance = (
            sum(abs(c.variance) for c in cycle_counts) / len(cycle_counts)
            if cycle_counts else 0.0
        )

        operators: List[str] = []
        for a in adjustments:
            if a.user_id and a.user_id not in operators:
                operators.append(a.user_id)

        return {
            "location_code": location_code,
            "period": {"from": window.start.isoformat(), "to": window.end.isoformat()},
            "metrics": {
                "total_discrepancies": len(discrepancies),
                "open_discrepancies": sum(
                    1 for d in discrepancies if d.status == DiscrepancyStatus.OPEN.value
                ),
                "total_adjustments": len(adjustments),
                "total_cycle_counts": len(cycle_counts),
                "avg_cycle_count_variance": avg_count_variance,
            },
            "by_type": by_type,
            "by_severity": by_severity,
            "recent_discrepancies": [d.to_dict() for d in discrepancies[:10]],
            "unique_operators": operators,
        }
