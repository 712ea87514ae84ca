"""
Inventory Truth Engine

Runs the detector bank over a scope and window, registers every finding,
and records the run. Also serves the reporting views built on the same data:

1. Truth summary: accuracy score, open/critical counts, adjustment trends
2. Snapshot reconciliation: additions/removals/changes between two days
3. Drift analysis: fitted trend for one sku/location series
4. Hotspots: locations or SKUs with the most discrepancies

A full run never fails atomically: each detector is isolated and failures
are reported alongside the findings of its siblings.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from typing import Any, Dict, List, Optional, Sequence, Union
import logging
import time
import uuid

import pandas as pd
from sqlalchemy.orm import Session

from models import AnalysisRun, Discrepancy, DiscrepancyStatus, RunStatus, Severity, utcnow
from inventory_store import InventoryStore, QueryScope, SqlInventoryStore, TimeWindow
from detectors import BaseDetector, Finding, build_default_detectors
from discrepancy_registry import DiscrepancyRegistry
from trend_utils import fit_linear_trend, classify_trend
from truth_config import TruthEngineConfig, DEFAULT_CONFIG
from truth_errors import ValidationError

logger = logging.getLogger(__name__)


FULL_ANALYSIS = "full"
HOTSPOT_KINDS = ("location", "sku")
ACCURATE_VARIANCE_PERCENT = 1.0


# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class AnalysisResult:
    """Outcome of one detection run."""
    analysis_id: str
    timestamp: datetime
    analysis_type: str
    scope: QueryScope
    window: TimeWindow
    findings: List[Finding] = field(default_factory=list)
    discrepancies_created: int = 0
    discrepancies_updated: int = 0
    failed_detectors: List[Dict[str, Any]] = field(default_factory=list)
    status: str = RunStatus.RUNNING.value
    execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "timestamp": self.timestamp.isoformat(),
            "analysis_type": self.analysis_type,
            "scope": self.scope.to_dict(),
            "window": self.window.to_dict(),
            "status": self.status,
            "findings": [f.to_dict() for f in self.findings],
            "discrepancies_created": self.discrepancies_created,
            "discrepancies_updated": self.discrepancies_updated,
            "failed_detectors": self.failed_detectors,
            "execution_time_ms": self.execution_time_ms,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class InventoryTruthEngine:
    """
    Orchestrates detection runs and the reporting views.
    """

    def __init__(
        self,
        db: Session,
        store: Optional[InventoryStore] = None,
        detectors: Optional[Sequence[BaseDetector]] = None,
        config: Optional[TruthEngineConfig] = None,
        registry: Optional[DiscrepancyRegistry] = None
    ):
        self.db = db
        self.config = config or DEFAULT_CONFIG
        self.store = store or SqlInventoryStore(db)
        self.registry = registry or DiscrepancyRegistry(db)
        self.detectors = list(detectors) if detectors is not None else build_default_detectors(self.store, self.config)

    @property
    def analysis_types(self) -> List[str]:
        return [FULL_ANALYSIS] + [d.detector_type for d in self.detectors]

    def run_analysis(
        self,
        analysis_type: str = FULL_ANALYSIS,
        scope: Union[QueryScope, Dict[str, Any], None] = None,
        window: Optional[TimeWindow] = None,
        triggered_by: str = "manual"
    ) -> AnalysisResult:
        """
        Run one detector, or all of them, and register the findings.

        Args:
            analysis_type: "full" or a single detector type
            scope: Optional sku/location filter
            window: Time range; defaults to the trailing analysis_window_days
            triggered_by: Who/what triggered the run

        Returns:
            AnalysisResult with findings, created/updated counts and failed detectors
        """
        if analysis_type not in self.analysis_types:
            raise ValidationError(
                f"Unsupported analysis type: {analysis_type}",
                {"allowed": self.analysis_types}
            )
        if not isinstance(scope, QueryScope):
            scope = QueryScope.from_dict(scope)
        window = window or TimeWindow.trailing(self.config.analysis_window_days)

        start_time = time.time()
        result = AnalysisResult(
            analysis_id=f"analysis-{uuid.uuid4().hex[:12]}",
            timestamp=utcnow(),
            analysis_type=analysis_type,
            scope=scope,
            window=window,
        )

        run = AnalysisRun(
            analysis_id=result.analysis_id,
            analysis_type=analysis_type,
            scope_json=scope.to_dict(),
            window_start=window.start,
            window_end=window.end,
            status=RunStatus.RUNNING.value,
            triggered_by=triggered_by,
        )
        self.db.add(run)
        self.db.commit()
        logger.info(f"Analysis {result.analysis_id} started: {analysis_type} {scope.to_dict()}")

        selected = [
            d for d in self.detectors
            if analysis_type == FULL_ANALYSIS or d.detector_type == analysis_type
        ]
        for detector in selected:
            self._run_detector(detector, scope, window, result)

        if not result.failed_detectors:
            result.status = RunStatus.COMPLETED.value
        elif len(result.failed_detectors) < len(selected):
            result.status = RunStatus.PARTIAL.value
        else:
            result.status = RunStatus.FAILED.value
        result.execution_time_ms = (time.time() - start_time) * 1000

        run.status = result.status
        run.completed_at = utcnow()
        run.summary_json = {
            "findings": len(result.findings),
            "discrepancies_created": result.discrepancies_created,
            "discrepancies_updated": result.discrepancies_updated,
            "failed_detectors": result.failed_detectors,
            "execution_time_ms": result.execution_time_ms,
        }
        self.db.commit()

        logger.info(
            f"Analysis {result.analysis_id} {result.status}: {len(result.findings)} findings, "
            f"{result.discrepancies_created} created, {result.discrepancies_updated} updated, "
            f"{len(result.failed_detectors)} detectors failed"
        )
        return result

    def _run_detector(self, detector: BaseDetector, scope: QueryScope, window: TimeWindow,
                      result: AnalysisResult) -> None:
        """Scan and register one detector's findings; a failure is recorded, not raised."""
        try:
            for finding in detector.scan(scope, window):
                recorded = self.registry.record(finding, analysis_id=result.analysis_id)
                result.findings.append(finding)
                if recorded.created:
                    result.discrepancies_created += 1
                else:
                    result.discrepancies_updated += 1
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Detector {detector.detector_type} failed in {result.analysis_id}")
            result.failed_detectors.append({
                "detector": detector.detector_type,
                "error_type": type(e).__name__,
                "message": str(e),
            })

    def get_analysis_run(self, analysis_id: str) -> Optional[AnalysisRun]:
        return self.db.query(AnalysisRun).filter(AnalysisRun.analysis_id == analysis_id).first()

    # ═══════════════════════════════════════════════════════════════════════════
    # TRUTH SUMMARY
    # ═══════════════════════════════════════════════════════════════════════════

    def get_truth_summary(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Dashboard summary over a period (default: trailing 30 days).

        accuracy_score is the share of locations whose aggregate cycle count
        variance is within 1% of system quantity.
        """
        date_to = date_to or utcnow()
        date_from = date_from or date_to - timedelta(days=self.config.analysis_window_days)
        period = TimeWindow(start=date_from, end=date_to, include_end=True)

        accuracy_score, avg_variance_pct = self._location_accuracy(period)

        created = self.db.query(Discrepancy).filter(
            Discrepancy.created_at >= date_from,
            Discrepancy.created_at <= date_to,
        ).all()
        breakdown = []
        open_total = 0
        critical_open = 0
        if created:
            df = _discrepancy_frame(created)
            for (dtype, severity), group in df.groupby(["type", "severity"], sort=True):
                open_count = int(group["is_open"].sum())
                breakdown.append({
                    "type": dtype,
                    "severity": severity,
                    "count": int(len(group)),
                    "open_count": open_count,
                })
                open_total += open_count
                if severity == Severity.CRITICAL.value:
                    critical_open += open_count

        open_rows = self.db.query(Discrepancy).filter(
            Discrepancy.status == DiscrepancyStatus.OPEN.value
        ).all()

        return {
            "period": {"from": date_from.isoformat(), "to": date_to.isoformat()},
            "summary": {
                "accuracy_score": round(accuracy_score, 1),
                "avg_variance_percent": round(avg_variance_pct, 2),
                "open_discrepancies": open_total,
                "critical_issues": critical_open,
            },
            "discrepancy_breakdown": breakdown,
            "adjustment_trends": self._adjustment_trends(period),
            "hotspots": {
                "locations": _open_location_hotspots(open_rows),
                "skus": _open_sku_hotspots(open_rows),
            },
        }

    def _location_accuracy(self, period: TimeWindow):
        counts = self.store.query_cycle_counts(QueryScope(), period)
        if not counts:
            return 0.0, 0.0

        df = pd.DataFrame([{
            "location_code": c.location_code,
            "variance": c.variance,
            "system_qty": c.system_qty,
        } for c in counts])
        per_location = df.groupby("location_code").agg(
            variance=("variance", "sum"),
            system_qty=("system_qty", "sum"),
        )
        system = per_location["system_qty"]
        percent = (per_location["variance"] / system.where(system != 0)) * 100
        percent = percent.fillna(0.0).abs()

        accurate = int((percent <= ACCURATE_VARIANCE_PERCENT).sum())
        return accurate / len(per_location) * 100, float(percent.mean())

    def _adjustment_trends(self, period: TimeWindow, max_days: int = 30) -> List[Dict[str, Any]]:
        adjustments = self.store.query_adjustments(QueryScope(), period)
        if not adjustments:
            return []

        df = pd.DataFrame([{
            "date": a.adjustment_date.date(),
            "positive": a.adjustment_qty if a.adjustment_qty > 0 else 0.0,
            "negative": -a.adjustment_qty if a.adjustment_qty < 0 else 0.0,
        } for a in adjustments])
        daily = df.groupby("date").agg(
            positive_adjustments=("positive", "sum"),
            negative_adjustments=("negative", "sum"),
            adjustment_count=("positive", "size"),
        ).sort_index(ascending=False).head(max_days)

        return [
            {
                "date": day.isoformat(),
                "positive_adjustments": float(row["positive_adjustments"]),
                "negative_adjustments": float(row["negative_adjustments"]),
                "count": int(row["adjustment_count"]),
            }
            for day, row in daily.iterrows()
        ]

    # ═══════════════════════════════════════════════════════════════════════════
    # RECONCILIATION
    # ═══════════════════════════════════════════════════════════════════════════

    def reconcile_snapshot_dates(
        self,
        current_date: date,
        previous_date: Optional[date] = None,
        scope: Union[QueryScope, Dict[str, Any], None] = None
    ) -> Dict[str, Any]:
        """
        Compare the snapshots taken on two days.

        Without previous_date every current row is an addition. When a key
        was snapshotted more than once on a day, the last snapshot counts.
        """
        if current_date is None:
            raise ValidationError("current_date is required")
        if not isinstance(scope, QueryScope):
            scope = QueryScope.from_dict(scope)

        current = self._snapshots_on(current_date, scope)
        previous = self._snapshots_on(previous_date, scope) if previous_date else {}

        additions = []
        changes = []
        unchanged = 0
        for key, curr in current.items():
            prev = previous.get(key)
            if prev is None:
                additions.append(curr.to_dict())
            elif curr.quantity_on_hand != prev.quantity_on_hand:
                changes.append({
                    "sku": curr.sku,
                    "location_code": curr.location_code,
                    "previous_qty": prev.quantity_on_hand,
                    "current_qty": curr.quantity_on_hand,
                    "change": curr.quantity_on_hand - prev.quantity_on_hand,
                })
            else:
                unchanged += 1

        removals = [prev.to_dict() for key, prev in previous.items() if key not in current]

        return {
            "current_date": current_date.isoformat(),
            "previous_date": previous_date.isoformat() if previous_date else None,
            "additions": additions,
            "removals": removals,
            "changes": changes,
            "unchanged": unchanged,
        }

    def _snapshots_on(self, day: date, scope: QueryScope):
        start = datetime.combine(day, dt_time.min)
        window = TimeWindow(start=start, end=start + timedelta(days=1))
        latest = {}
        for snap in self.store.query_inventory_snapshots(scope, window):
            latest[(snap.sku, snap.location_code)] = snap
        return dict(sorted(latest.items()))

    # ═══════════════════════════════════════════════════════════════════════════
    # DRIFT
    # ═══════════════════════════════════════════════════════════════════════════

    def analyze_drift(
        self,
        sku: Optional[str] = None,
        location_code: Optional[str] = None,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Fit a trend line through the snapshot history.

        projected_end_qty extrapolates the fit `days` points past the last one.
        """
        window = TimeWindow.trailing(days, end=now)
        window = TimeWindow(start=window.start, end=window.end, include_end=True)
        history = self.store.query_inventory_snapshots(QueryScope(sku=sku, location_code=location_code), window)

        points = [
            {"x": i, "y": snap.quantity_on_hand, "date": snap.snapshot_date.isoformat()}
            for i, snap in enumerate(history)
        ]
        n = len(points)
        if n < 2:
            return {"trend": "insufficient_data", "data_points": n, "history": points}

        fit = fit_linear_trend((p["x"], p["y"]) for p in points)
        return {
            "trend": classify_trend(fit.slope, self.config.trend_threshold),
            "slope": fit.slope,
            "intercept": fit.intercept,
            "projected_end_qty": fit.value_at(n + days),
            "data_points": n,
            "history": points,
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # HOTSPOTS
    # ═══════════════════════════════════════════════════════════════════════════

    def get_hotspots(
        self,
        kind: str = "location",
        limit: int = 20,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Locations or SKUs ranked by the discrepancies raised against them."""
        if kind not in HOTSPOT_KINDS:
            raise ValidationError(f"Unsupported hotspot type: {kind}", {"allowed": list(HOTSPOT_KINDS)})
        if limit < 1 or days < 1:
            raise ValidationError("limit and days must be positive", {"limit": limit, "days": days})

        cutoff = (now or utcnow()) - timedelta(days=days)
        rows = self.db.query(Discrepancy).filter(Discrepancy.created_at >= cutoff).all()
        if not rows:
            return []

        df = _discrepancy_frame(rows)
        key = "location_code" if kind == "location" else "sku"
        hotspots = []
        for value, group in df.groupby(key, sort=True):
            entry = {
                key: value,
                "total_issues": int(len(group)),
                "critical": int((group["severity"] == Severity.CRITICAL.value).sum()),
                "high": int((group["severity"] == Severity.HIGH.value).sum()),
                "issue_types": sorted(group["type"].unique().tolist()),
            }
            if kind == "location":
                entry["total_variance"] = float(group["variance"].abs().sum())
            else:
                entry["total_variance_value"] = float(group["variance_value"].abs().sum())
            hotspots.append(entry)

        if kind == "location":
            hotspots.sort(key=lambda h: (-h["critical"], -h["high"], -h["total_issues"]))
        else:
            hotspots.sort(key=lambda h: (-h["total_variance_value"], -h["critical"]))
        return hotspots[:limit]


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def _discrepancy_frame(rows: Sequence[Discrepancy]) -> pd.DataFrame:
    return pd.DataFrame([{
        "id": d.id,
        "type": d.type,
        "severity": d.severity,
        "sku": d.sku,
        "location_code": d.location_code,
        "variance": d.variance or 0.0,
        "variance_value": d.variance_value or 0.0,
        "is_open": d.status == DiscrepancyStatus.OPEN.value,
    } for d in rows])


def _open_location_hotspots(open_rows: Sequence[Discrepancy], limit: int = 10) -> List[Dict[str, Any]]:
    if not open_rows:
        return []
    df = _discrepancy_frame(open_rows)
    locations = [
        {
            "location_code": location,
            "issue_count": int(len(group)),
            "critical_count": int((group["severity"] == Severity.CRITICAL.value).sum()),
            "issue_types": sorted(group["type"].unique().tolist()),
        }
        for location, group in df.groupby("location_code", sort=True)
    ]
    locations.sort(key=lambda l: (-l["critical_count"], -l["issue_count"]))
    return locations[:limit]


def _open_sku_hotspots(open_rows: Sequence[Discrepancy], limit: int = 10) -> List[Dict[str, Any]]:
    if not open_rows:
        return []
    df = _discrepancy_frame(open_rows)
    skus = [
        {
            "sku": sku,
            "issue_count": int(len(group)),
            "critical_count": int((group["severity"] == Severity.CRITICAL.value).sum()),
            "total_variance_value": float(group["variance_value"].abs().sum()),
        }
        for sku, group in df.groupby("sku", sort=True)
    ]
    skus.sort(key=lambda s: (-s["total_variance_value"], -s["issue_count"]))
    return skus[:limit]
