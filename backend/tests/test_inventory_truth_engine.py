"""
Unit Tests for the Inventory Truth Engine

Verifies that:
1. A run registers findings and records an AnalysisRun
2. Re-running updates instead of duplicating
3. A failing detector does not abort its siblings
4. Summary, reconciliation, drift and hotspot views compute correctly
"""

import pytest
from datetime import date, datetime, timedelta

import models
from models import AnalysisRun, Discrepancy, RunStatus
from inventory_store import (
    InMemoryInventoryStore, QueryScope, TimeWindow,
    InventorySnapshotRecord, AdjustmentRecord, CycleCountRecord,
)
from detectors import BaseDetector, NegativeOnHandDetector
from inventory_truth_engine import InventoryTruthEngine
from truth_errors import DependencyError, ValidationError
from conftest import BASE_TIME


pytestmark = pytest.mark.unit


def snap(qty, when=BASE_TIME, sku="SKU-A", loc="LOC-01", cost=None):
    return InventorySnapshotRecord(sku=sku, location_code=loc, quantity_on_hand=qty,
                                   snapshot_date=when, unit_cost=cost)


class ExplodingDetector(BaseDetector):
    detector_type = "transaction_gap"

    def scan(self, scope, window):
        raise DependencyError("inventory store unavailable")
        yield


@pytest.fixture
def negative_store():
    return InMemoryInventoryStore(snapshots=[snap(-3, cost=5.0)])


# ═══════════════════════════════════════════════════════════════════════════════
# RUNS
# ═══════════════════════════════════════════════════════════════════════════════

class TestRunAnalysis:

    def test_full_run_registers_single_negative(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(db_session, store=negative_store)

        result = engine.run_analysis("full", window=window)

        assert result.status == RunStatus.COMPLETED.value
        assert [(f.type, f.severity.value, f.variance_value) for f in result.findings] == [
            ("negative_on_hand", "critical", 15.0)
        ]
        assert result.discrepancies_created == 1
        assert result.discrepancies_updated == 0
        assert result.failed_detectors == []
        assert result.analysis_id.startswith("analysis-")

        rows = db_session.query(Discrepancy).all()
        assert len(rows) == 1
        assert rows[0].analysis_id == result.analysis_id

    def test_rerun_updates(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(db_session, store=negative_store)
        engine.run_analysis(window=window)

        second = engine.run_analysis(window=window)

        assert second.discrepancies_created == 0
        assert second.discrepancies_updated == 1
        assert db_session.query(Discrepancy).count() == 1
        assert db_session.query(Discrepancy).one().detection_count == 2

    def test_run_is_recorded(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(db_session, store=negative_store)

        result = engine.run_analysis(scope={"sku": "SKU-A"}, window=window, triggered_by="nightly")

        run = engine.get_analysis_run(result.analysis_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.triggered_by == "nightly"
        assert run.scope_json == {"sku": "SKU-A", "location_code": None}
        assert run.summary_json["findings"] == 1
        assert run.summary_json["discrepancies_created"] == 1
        assert run.completed_at is not None

    def test_single_detector(self, db_session, window):
        store = InMemoryInventoryStore(
            snapshots=[snap(-3)],
            cycle_counts=[CycleCountRecord("SKU-A", "LOC-01", 100.0, 80.0, BASE_TIME)],
        )
        engine = InventoryTruthEngine(db_session, store=store)

        result = engine.run_analysis("cycle_count_variance", window=window)

        assert [f.type for f in result.findings] == ["cycle_count_variance"]

    def test_repeated_counts_keep_newest_observation(self, db_session, window):
        store = InMemoryInventoryStore(cycle_counts=[
            CycleCountRecord("SKU-A", "LOC-01", 100.0, 94.0, BASE_TIME - timedelta(days=2)),
            CycleCountRecord("SKU-A", "LOC-01", 100.0, 40.0, BASE_TIME - timedelta(days=1)),
            CycleCountRecord("SKU-A", "LOC-01", 100.0, 88.0, BASE_TIME),
        ])
        engine = InventoryTruthEngine(db_session, store=store)

        result = engine.run_analysis("cycle_count_variance", window=window)

        assert len(result.findings) == 1
        row = db_session.query(Discrepancy).one()
        assert (row.severity, row.variance, row.detection_count) == ("medium", -12.0, 1)
        assert row.evidence_json["largest_variance"] == -60.0
        assert row.evidence_json["flagged_count_occurrences"] == 3

    def test_many_gaps_keep_largest_and_newest(self, db_session, window):
        start = BASE_TIME - timedelta(hours=60)
        snapshots = [snap(5.0 * i, when=start + timedelta(hours=i)) for i in range(53)]
        snapshots.append(snap(5.0 * 52 + 500, when=start + timedelta(hours=53)))
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore(snapshots=snapshots))

        result = engine.run_analysis("transaction_gap", window=window)

        assert len(result.findings) == 50
        assert result.findings[-1].variance == 500
        row = db_session.query(Discrepancy).one()
        assert (row.severity, row.variance) == ("high", 500.0)

    def test_scope_filters_findings(self, db_session, window):
        store = InMemoryInventoryStore(snapshots=[snap(-3, sku="SKU-A"), snap(-1, sku="SKU-B")])
        engine = InventoryTruthEngine(db_session, store=store)

        result = engine.run_analysis(scope=QueryScope(sku="SKU-B"), window=window)

        assert [f.sku for f in result.findings] == ["SKU-B"]

    def test_failing_detector_is_isolated(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(
            db_session,
            store=negative_store,
            detectors=[NegativeOnHandDetector(negative_store), ExplodingDetector(negative_store)],
        )

        result = engine.run_analysis(window=window)

        assert result.status == RunStatus.PARTIAL.value
        assert len(result.findings) == 1
        assert result.failed_detectors == [{
            "detector": "transaction_gap",
            "error_type": "DependencyError",
            "message": "inventory store unavailable",
        }]
        assert db_session.query(Discrepancy).count() == 1
        run = engine.get_analysis_run(result.analysis_id)
        assert run.status == RunStatus.PARTIAL.value
        assert run.summary_json["failed_detectors"][0]["detector"] == "transaction_gap"

    def test_all_detectors_failing(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(db_session, store=negative_store,
                                      detectors=[ExplodingDetector(negative_store)])

        result = engine.run_analysis(window=window)

        assert result.status == RunStatus.FAILED.value
        assert result.findings == []

    def test_unknown_type_rejected(self, db_session, negative_store):
        engine = InventoryTruthEngine(db_session, store=negative_store)
        with pytest.raises(ValidationError):
            engine.run_analysis("everything")
        assert db_session.query(AnalysisRun).count() == 0

    def test_bad_scope_rejected(self, db_session, negative_store):
        engine = InventoryTruthEngine(db_session, store=negative_store)
        with pytest.raises(ValidationError):
            engine.run_analysis(scope={"warehouse": "W1"})

    def test_default_window_is_trailing(self, db_session):
        recent = models.utcnow() - timedelta(days=1)
        store = InMemoryInventoryStore(snapshots=[snap(-2, when=recent)])
        engine = InventoryTruthEngine(db_session, store=store)

        result = engine.run_analysis()

        assert len(result.findings) == 1
        assert (result.window.end - result.window.start).days == 30

    def test_sql_store_by_default(self, db_session, window):
        db_session.add(models.InventorySnapshot(
            sku="SKU-A", location_code="LOC-01", quantity_on_hand=-4.0, unit_cost=2.0, snapshot_date=BASE_TIME,
        ))
        db_session.commit()
        engine = InventoryTruthEngine(db_session)

        result = engine.run_analysis("negative_on_hand", window=window)

        assert [f.variance_value for f in result.findings] == [8.0]

    def test_to_dict(self, db_session, negative_store, window):
        engine = InventoryTruthEngine(db_session, store=negative_store)
        data = engine.run_analysis(window=window).to_dict()

        assert data["status"] == "completed"
        assert data["findings"][0]["severity"] == "critical"
        assert data["scope"] == {"sku": None, "location_code": None}

    def test_analysis_types(self, db_session, negative_store):
        engine = InventoryTruthEngine(db_session, store=negative_store)
        assert engine.analysis_types[0] == "full"
        assert "mis_slot" in engine.analysis_types


# ═══════════════════════════════════════════════════════════════════════════════
# TRUTH SUMMARY
# ═══════════════════════════════════════════════════════════════════════════════

class TestTruthSummary:

    def test_summary(self, db_session, make_discrepancy):
        store = InMemoryInventoryStore(
            cycle_counts=[
                CycleCountRecord("SKU-A", "LOC-A", 100.0, 100.0, BASE_TIME - timedelta(days=1)),
                CycleCountRecord("SKU-A", "LOC-B", 100.0, 90.0, BASE_TIME - timedelta(days=1)),
            ],
            adjustments=[
                AdjustmentRecord("SKU-A", "LOC-A", 5.0, "FOUND", BASE_TIME - timedelta(days=1)),
                AdjustmentRecord("SKU-A", "LOC-A", -3.0, "DAMAGE", BASE_TIME - timedelta(days=1)),
                AdjustmentRecord("SKU-A", "LOC-B", -2.0, "DAMAGE", BASE_TIME - timedelta(days=2)),
            ],
        )
        make_discrepancy(type="negative_on_hand", severity="critical", location_code="LOC-B")
        make_discrepancy(location_code="LOC-B")
        make_discrepancy(location_code="LOC-A", status="RESOLVED")
        engine = InventoryTruthEngine(db_session, store=store)

        summary = engine.get_truth_summary(BASE_TIME - timedelta(days=30), BASE_TIME + timedelta(days=1))

        assert summary["summary"] == {
            "accuracy_score": 50.0,
            "avg_variance_percent": 5.0,
            "open_discrepancies": 2,
            "critical_issues": 1,
        }
        assert summary["discrepancy_breakdown"] == [
            {"type": "cycle_count_variance", "severity": "medium", "count": 2, "open_count": 1},
            {"type": "negative_on_hand", "severity": "critical", "count": 1, "open_count": 1},
        ]
        assert summary["adjustment_trends"] == [
            {"date": (BASE_TIME - timedelta(days=1)).date().isoformat(),
             "positive_adjustments": 5.0, "negative_adjustments": 3.0, "count": 2},
            {"date": (BASE_TIME - timedelta(days=2)).date().isoformat(),
             "positive_adjustments": 0.0, "negative_adjustments": 2.0, "count": 1},
        ]
        locations = summary["hotspots"]["locations"]
        assert [(l["location_code"], l["issue_count"], l["critical_count"]) for l in locations] == [
            ("LOC-B", 2, 1)
        ]

    def test_empty(self, db_session):
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore())

        summary = engine.get_truth_summary()

        assert summary["summary"]["accuracy_score"] == 0.0
        assert summary["discrepancy_breakdown"] == []
        assert summary["adjustment_trends"] == []
        assert summary["hotspots"] == {"locations": [], "skus": []}


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestReconcileSnapshotDates:

    DAY1 = date(2024, 3, 1)
    DAY2 = date(2024, 3, 2)

    def _at(self, day, hour):
        return datetime.combine(day, datetime.min.time()) + timedelta(hours=hour)

    def _engine(self, db_session):
        store = InMemoryInventoryStore(snapshots=[
            snap(10, self._at(self.DAY1, 8), sku="A", loc="L1"),
            snap(5, self._at(self.DAY1, 8), sku="A", loc="L2"),
            snap(7, self._at(self.DAY1, 8), sku="B", loc="L1"),
            snap(12, self._at(self.DAY2, 8), sku="A", loc="L1"),
            snap(4, self._at(self.DAY2, 8), sku="A", loc="L2"),
            snap(5, self._at(self.DAY2, 10), sku="A", loc="L2"),
            snap(9, self._at(self.DAY2, 8), sku="C", loc="L3"),
        ])
        return InventoryTruthEngine(db_session, store=store)

    def test_diff(self, db_session):
        result = self._engine(db_session).reconcile_snapshot_dates(self.DAY2, self.DAY1)

        assert [(a["sku"], a["location_code"]) for a in result["additions"]] == [("C", "L3")]
        assert [(r["sku"], r["location_code"]) for r in result["removals"]] == [("B", "L1")]
        assert result["changes"] == [{
            "sku": "A", "location_code": "L1", "previous_qty": 10, "current_qty": 12, "change": 2,
        }]
        assert result["unchanged"] == 1

    def test_without_previous_everything_is_added(self, db_session):
        result = self._engine(db_session).reconcile_snapshot_dates(self.DAY2)

        assert len(result["additions"]) == 3
        assert result["removals"] == []
        assert result["previous_date"] is None

    def test_scope(self, db_session):
        result = self._engine(db_session).reconcile_snapshot_dates(self.DAY2, self.DAY1, scope={"sku": "B"})
        assert [(r["sku"], r["location_code"]) for r in result["removals"]] == [("B", "L1")]
        assert result["additions"] == []

    def test_requires_current_date(self, db_session):
        with pytest.raises(ValidationError):
            self._engine(db_session).reconcile_snapshot_dates(None)


# ═══════════════════════════════════════════════════════════════════════════════
# DRIFT & HOTSPOTS
# ═══════════════════════════════════════════════════════════════════════════════

class TestAnalyzeDrift:

    def test_linear_history(self, db_session):
        store = InMemoryInventoryStore(snapshots=[
            snap(10 + 2 * i, BASE_TIME - timedelta(days=4 - i)) for i in range(5)
        ])
        engine = InventoryTruthEngine(db_session, store=store)

        result = engine.analyze_drift("SKU-A", "LOC-01", days=30, now=BASE_TIME)

        assert result["trend"] == "increasing"
        assert result["slope"] == pytest.approx(2.0)
        assert result["intercept"] == pytest.approx(10.0)
        assert result["projected_end_qty"] == pytest.approx(80.0)
        assert result["data_points"] == 5
        assert result["history"][0] == {"x": 0, "y": 10, "date": (BASE_TIME - timedelta(days=4)).isoformat()}

    def test_insufficient_data(self, db_session):
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore(snapshots=[snap(5)]))

        result = engine.analyze_drift("SKU-A", "LOC-01", now=BASE_TIME)

        assert result["trend"] == "insufficient_data"
        assert result["data_points"] == 1


class TestHotspots:

    def test_location_ranking(self, db_session, make_discrepancy):
        make_discrepancy(sku="S1", location_code="L2")
        make_discrepancy(sku="S2", location_code="L2")
        make_discrepancy(sku="S3", location_code="L2")
        make_discrepancy(sku="S1", location_code="L1", type="negative_on_hand", severity="critical")
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore())

        hotspots = engine.get_hotspots("location", now=BASE_TIME + timedelta(days=1))

        assert [(h["location_code"], h["total_issues"], h["critical"]) for h in hotspots] == [
            ("L1", 1, 1), ("L2", 3, 0)
        ]
        assert hotspots[1]["total_variance"] == pytest.approx(60.0)

    def test_sku_ranking_by_value(self, db_session, make_discrepancy):
        make_discrepancy(sku="CHEAP", variance_value=10.0)
        make_discrepancy(sku="PRICEY", variance_value=-500.0)
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore())

        hotspots = engine.get_hotspots("sku", limit=1, now=BASE_TIME + timedelta(days=1))

        assert [(h["sku"], h["total_variance_value"]) for h in hotspots] == [("PRICEY", 500.0)]

    def test_old_discrepancies_excluded(self, db_session, make_discrepancy):
        make_discrepancy(created_at=BASE_TIME - timedelta(days=90))
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore())
        assert engine.get_hotspots(now=BASE_TIME) == []

    def test_invalid_kind(self, db_session):
        engine = InventoryTruthEngine(db_session, store=InMemoryInventoryStore())
        with pytest.raises(ValidationError):
            engine.get_hotspots("user")
