"""
Unit Tests for the Investigation Builder

Covers dossier assembly (window, operators, timeline) and the root-cause
heuristics with their recommendations.
"""

import pytest
from datetime import timedelta

from models import Discrepancy, RootCauseCategory
from inventory_store import (
    InMemoryInventoryStore, OperatorDirectory,
    TransactionRecord, AdjustmentRecord, CycleCountRecord,
)
from investigation_builder import (
    Confidence, InvestigationBuilder, build_timeline, generate_recommendations,
    PossibleCause, TransactionEvent, AdjustmentEvent, CycleCountEvent, DetectionEvent,
)
from truth_errors import NotFoundError
from conftest import BASE_TIME


pytestmark = pytest.mark.unit


def adj(user, qty=-2.0, days_ago=1, loc="LOC-01", id=None, hours=0):
    return AdjustmentRecord(
        sku="SKU-A", location_code=loc, adjustment_qty=qty, reason="DAMAGE",
        adjustment_date=BASE_TIME - timedelta(days=days_ago, hours=hours), user_id=user, id=id,
    )


def tx(tx_type, days_ago=1, frm=None, to="LOC-01", user="U1", qty=10.0, id=None, hours=0):
    return TransactionRecord(
        sku="SKU-A", transaction_type=tx_type, quantity=qty,
        transaction_date=BASE_TIME - timedelta(days=days_ago, hours=hours),
        from_location=frm, to_location=to, user_id=user, id=id,
    )


def cc(system, counted, days_ago=1, counter="U2", id=None):
    return CycleCountRecord(
        sku="SKU-A", location_code="LOC-01", system_qty=system, counted_qty=counted,
        count_date=BASE_TIME - timedelta(days=days_ago), counter_id=counter, id=id,
    )


class BrokenDirectory(OperatorDirectory):
    def resolve_users(self, ids):
        raise ConnectionError("directory offline")


@pytest.fixture
def make_builder(registry, operator_directory):
    def _make(directory=None, **records):
        return InvestigationBuilder(
            registry, InMemoryInventoryStore(**records), directory or operator_directory
        )
    return _make


# ═══════════════════════════════════════════════════════════════════════════════
# DOSSIER
# ═══════════════════════════════════════════════════════════════════════════════

class TestInvestigate:

    def test_missing_discrepancy(self, make_builder):
        with pytest.raises(NotFoundError):
            make_builder().investigate(999)

    def test_window_includes_detection_time(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(adjustments=[
            adj("U1", days_ago=0),     # exactly at detection
            adj("U1", days_ago=8),     # before the lookback
            adj("U1", days_ago=-1),    # after detection
            adj("U1", days_ago=3),
        ])

        dossier = builder.investigate(d.id)

        dates = [a.adjustment_date for a in dossier.related_adjustments]
        assert dates == [BASE_TIME, BASE_TIME - timedelta(days=3)]
        assert dossier.window.include_end is True
        assert dossier.window.end == BASE_TIME

    def test_related_records_newest_first(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(transactions=[tx("PICK", days_ago=4, id=1), tx("PICK", days_ago=2, id=2)])

        dossier = builder.investigate(d.id)

        assert [t.id for t in dossier.related_transactions] == [2, 1]

    def test_operators_resolved_and_unresolved(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(
            transactions=[tx("PICK", user="U1")],
            adjustments=[adj("U9")],
            cycle_counts=[cc(100, 90, counter="U2")],
        )

        dossier = builder.investigate(d.id)

        assert [o.id for o in dossier.involved_operators] == ["U1", "U2"]
        assert dossier.unresolved_operator_ids == ["U9"]
        assert dossier.operator_name("U1") == "Alice Picker"
        assert dossier.operator_name("U9") is None

    def test_directory_failure_is_tolerated(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(
            directory=BrokenDirectory(),
            adjustments=[adj("U1", hours=h) for h in range(5)],
        )

        dossier = builder.investigate(d.id)

        assert dossier.involved_operators == []
        assert dossier.unresolved_operator_ids == ["U1"]
        human = [c for c in dossier.possible_causes if c.category == RootCauseCategory.HUMAN]
        assert human[0].description == "Operator U1 made 5 adjustments"

    def test_involved_locations(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(transactions=[tx("TRANSFER", frm="LOC-01", to="LOC-07")])

        dossier = builder.investigate(d.id)

        assert dossier.involved_locations == ["LOC-01", "LOC-07"]

    def test_investigation_history_attached(self, make_builder, make_discrepancy, registry):
        d = make_discrepancy()
        registry.create_investigation(d.id, "Mis-pick", "human")

        dossier = make_builder().investigate(d.id)

        assert [i["root_cause"] for i in dossier.investigations] == ["Mis-pick"]
        assert dossier.discrepancy["status"] == "INVESTIGATED"

    def test_to_dict(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        data = make_builder(transactions=[tx("PICK")]).investigate(d.id).to_dict()

        assert data["discrepancy"]["id"] == d.id
        assert data["timeline"][-1]["type"] == "discrepancy_detected"
        assert data["recommended_actions"][0]["action"] == "CYCLE_COUNT"
        assert data["window"]["include_end"] is True


# ═══════════════════════════════════════════════════════════════════════════════
# TIMELINE
# ═══════════════════════════════════════════════════════════════════════════════

class TestTimeline:

    def _discrepancy(self):
        return Discrepancy(
            id=7, type="transaction_gap", severity="medium", variance=-20.0, detected_at=BASE_TIME,
        )

    def test_ascending_regardless_of_input_order(self):
        timeline = build_timeline(
            transactions=[tx("PICK", days_ago=2), tx("RECEIPT", days_ago=5)],
            adjustments=[adj("U1", days_ago=3)],
            cycle_counts=[cc(10, 8, days_ago=1)],
            discrepancy=self._discrepancy(),
        )

        assert [e.type for e in timeline] == [
            "transaction", "adjustment", "transaction", "cycle_count", "discrepancy_detected"
        ]
        stamps = [e.timestamp for e in timeline]
        assert stamps == sorted(stamps)

    def test_ties_keep_source_order(self):
        timeline = build_timeline(
            transactions=[tx("PICK", days_ago=0)],
            adjustments=[adj("U1", days_ago=0)],
            cycle_counts=[cc(10, 8, days_ago=0)],
            discrepancy=self._discrepancy(),
        )

        assert [type(e) for e in timeline] == [
            TransactionEvent, AdjustmentEvent, CycleCountEvent, DetectionEvent
        ]

    def test_event_payloads(self):
        timeline = build_timeline(
            transactions=[tx("PUTAWAY", frm="DOCK", to="LOC-01", id=3)],
            adjustments=[],
            cycle_counts=[cc(10, 7)],
            discrepancy=self._discrepancy(),
        )

        transaction = timeline[0].to_dict()
        assert transaction["action"] == "PUTAWAY"
        assert transaction["from"] == "DOCK"
        assert transaction["record_id"] == 3
        assert timeline[0].action == "PUTAWAY"
        assert timeline[1].action == "count"
        assert timeline[1].variance == -3
        assert timeline[2].discrepancy_id == 7
        assert timeline[2].action == "transaction_gap"


# ═══════════════════════════════════════════════════════════════════════════════
# HEURISTICS
# ═══════════════════════════════════════════════════════════════════════════════

class TestPossibleCauses:

    def test_heavy_adjuster_ranked_first(self, make_builder, make_discrepancy):
        d = make_discrepancy(variance=-20.0)
        adjustments = [adj("U1", hours=h) for h in range(5)] + [adj("U2", qty=-1.0, hours=h) for h in range(2)]

        causes = make_builder(adjustments=adjustments).investigate(d.id).possible_causes

        assert causes[0].category == RootCauseCategory.HUMAN
        assert causes[0].confidence == Confidence.HIGH
        assert causes[0].evidence["operator_name"] == "Alice Picker"
        assert causes[0].evidence["adjustment_count"] == 5
        operators = [c.evidence.get("operator_id") for c in causes if c.category == RootCauseCategory.HUMAN]
        assert operators == ["U1"]

        volume = [c for c in causes if c.description.startswith("High adjustment volume")]
        assert len(volume) == 1
        assert volume[0].confidence == Confidence.MEDIUM
        assert volume[0].evidence["total_adjusted"] == -12

    def test_three_adjustments_is_medium(self, make_builder, make_discrepancy):
        d = make_discrepancy(variance=-100.0)
        causes = make_builder(adjustments=[adj("U2", hours=h) for h in range(3)]).investigate(d.id).possible_causes

        assert [(c.category, c.confidence) for c in causes] == [(RootCauseCategory.HUMAN, Confidence.MEDIUM)]

    def test_receipt_without_putaway(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        causes = make_builder(transactions=[tx("RECEIPT")]).investigate(d.id).possible_causes

        assert [c.description for c in causes] == ["Receiving transaction without corresponding putaway"]
        assert causes[0].confidence == Confidence.HIGH

    @pytest.mark.parametrize("tx_type", ["RECEIVE", "RECEIPT"])
    def test_receipt_with_putaway_is_quiet(self, make_builder, make_discrepancy, tx_type):
        d = make_discrepancy()
        builder = make_builder(transactions=[tx(tx_type, hours=2), tx("PUTAWAY", hours=1)])
        assert builder.investigate(d.id).possible_causes == []

    def test_consistent_negative_counts(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        causes = make_builder(cycle_counts=[cc(100, 95, days_ago=1), cc(95, 92, days_ago=2)]).investigate(d.id).possible_causes

        assert [c.description for c in causes] == ["Consistent negative variances in cycle counts"]
        assert "Theft or shrinkage" in causes[0].possible_reasons

    def test_consistent_positive_counts(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        causes = make_builder(cycle_counts=[cc(100, 104)]).investigate(d.id).possible_causes
        assert [c.description for c in causes] == ["Consistent positive variances in cycle counts"]

    def test_mixed_counts_are_quiet(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        builder = make_builder(cycle_counts=[cc(100, 104, days_ago=1), cc(100, 96, days_ago=2)])
        assert builder.investigate(d.id).possible_causes == []

    def test_location_hotspot(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        for sku in ("SKU-X", "SKU-Y", "SKU-Z"):
            make_discrepancy(sku=sku)

        causes = make_builder().investigate(d.id).possible_causes

        assert [(c.category, c.confidence) for c in causes] == [(RootCauseCategory.LOCATION, Confidence.HIGH)]
        assert causes[0].evidence["other_issues_count"] == 3

    def test_sku_hotspot(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        for loc in ("L-2", "L-3", "L-4"):
            make_discrepancy(location_code=loc)

        causes = make_builder().investigate(d.id).possible_causes

        assert [(c.category, c.confidence) for c in causes] == [(RootCauseCategory.PROCESS, Confidence.MEDIUM)]

    def test_hotspot_ignores_closed(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        for sku in ("SKU-X", "SKU-Y", "SKU-Z"):
            make_discrepancy(sku=sku, status="RESOLVED")
        assert make_builder().investigate(d.id).possible_causes == []

    def test_no_evidence_no_causes(self, make_builder, make_discrepancy):
        d = make_discrepancy()
        assert make_builder().investigate(d.id).possible_causes == []


# ═══════════════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestRecommendations:

    def test_follow_ups_per_cause(self, make_builder, make_discrepancy):
        d = make_discrepancy(variance=-20.0)
        adjustments = [adj("U1", qty=-3.0, hours=h) for h in range(5)]

        actions = make_builder(adjustments=adjustments).investigate(d.id).recommended_actions

        assert [(r.priority, r.action) for r in actions] == [
            (1, "CYCLE_COUNT"),
            (2, "TRAINING_REVIEW"),
            (3, "PROCESS_REVIEW"),
            (4, "ADJUSTMENT"),
        ]
        assert actions[1].description == "Review training for operator Alice Picker"
        assert actions[1].assign_to == "supervisor"
        assert actions[3].requires_approval is False

    def test_location_audit(self):
        d = Discrepancy(sku="SKU-A", location_code="LOC-01", variance=-5.0)
        cause = PossibleCause(RootCauseCategory.LOCATION, "hotspot", Confidence.HIGH)

        actions = generate_recommendations(d, [cause])

        assert [r.action for r in actions] == ["CYCLE_COUNT", "LOCATION_AUDIT"]
        assert actions[1].assign_to == "warehouse_ops"

    def test_small_variance_skips_adjustment(self):
        d = Discrepancy(sku="SKU-A", location_code="LOC-01", variance=-10.0)
        assert [r.action for r in generate_recommendations(d, [])] == ["CYCLE_COUNT"]

    def test_large_variance_needs_approval(self):
        d = Discrepancy(sku="SKU-A", location_code="LOC-01", variance=-60.0)

        actions = generate_recommendations(d, [])

        assert actions[-1].action == "ADJUSTMENT"
        assert actions[-1].requires_approval is True
        assert actions[-1].description.endswith("adjust inventory by 60")
        assert "requires_approval" not in actions[0].to_dict()


class TestConfidence:

    def test_ordered_by_rank(self):
        assert Confidence.HIGH > Confidence.MEDIUM > Confidence.LOW > Confidence.SPECULATIVE
        assert sorted([Confidence.LOW, Confidence.HIGH, Confidence.SPECULATIVE, Confidence.MEDIUM]) == [
            Confidence.SPECULATIVE, Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH
        ]

    def test_values_are_lowercase_strings(self):
        assert Confidence.SPECULATIVE.value == "speculative"
