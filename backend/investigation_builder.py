"""
Investigation Builder

For one discrepancy, answers:
- Which transactions, adjustments and counts touched it?
- Which operators were involved?
- In what order did things happen?
- What most plausibly caused it, and what should be done next?

The dossier is assembled from a lookback window ending at (and including)
the detection time, then scored by independent heuristics.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Union
import enum
import logging

from models import Discrepancy, RootCauseCategory
from discrepancy_registry import DiscrepancyRegistry
from inventory_store import (
    InventoryStore, OperatorDirectory, OperatorProfile, QueryScope, TimeWindow,
    TransactionRecord, AdjustmentRecord, CycleCountRecord,
)
from truth_config import TruthEngineConfig, DEFAULT_CONFIG
from truth_errors import DependencyError

logger = logging.getLogger(__name__)


RECEIVING_TYPES = ("RECEIVE", "RECEIPT")
PUTAWAY_TYPE = "PUTAWAY"


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIDENCE
# ═══════════════════════════════════════════════════════════════════════════════

class Confidence(str, enum.Enum):
    """
    How strongly the evidence supports a cause.

    Ordered HIGH > MEDIUM > LOW > SPECULATIVE by rank, never by string value.
    """
    HIGH = "high"                # Strong evidence, high correlation
    MEDIUM = "medium"            # Moderate evidence
    LOW = "low"                  # Weak evidence, possible correlation
    SPECULATIVE = "speculative"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank >= other.rank


_CONFIDENCE_RANK = {
    Confidence.SPECULATIVE: 0,
    Confidence.LOW: 1,
    Confidence.MEDIUM: 2,
    Confidence.HIGH: 3,
}


# ═══════════════════════════════════════════════════════════════════════════════
# DOSSIER STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class PossibleCause:
    """A ranked root-cause hypothesis. Produced fresh on every investigation."""
    category: RootCauseCategory
    description: str
    confidence: Confidence
    evidence: Dict[str, Any] = field(default_factory=dict)
    possible_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "description": self.description,
            "confidence": self.confidence.value,
            "evidence": self.evidence,
            "possible_reasons": list(self.possible_reasons),
        }


@dataclass
class Recommendation:
    priority: int
    action: str
    description: str
    assign_to: str
    requires_approval: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "priority": self.priority,
            "action": self.action,
            "description": self.description,
            "assign_to": self.assign_to,
        }
        if self.requires_approval is not None:
            data["requires_approval"] = self.requires_approval
        return data


# Timeline events: one variant per source, sharing the (timestamp, type) projection.

@dataclass(frozen=True)
class TransactionEvent:
    type: ClassVar[str] = "transaction"
    timestamp: datetime
    action: str
    quantity: float
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    operator: Optional[str] = None
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "action": self.action,
            "quantity": self.quantity,
            "from": self.from_location,
            "to": self.to_location,
            "operator": self.operator,
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class AdjustmentEvent:
    type: ClassVar[str] = "adjustment"
    timestamp: datetime
    action: Optional[str]
    quantity: float
    location: str
    operator: Optional[str] = None
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "action": self.action,
            "quantity": self.quantity,
            "location": self.location,
            "operator": self.operator,
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class CycleCountEvent:
    type: ClassVar[str] = "cycle_count"
    timestamp: datetime
    system_qty: float
    counted_qty: float
    variance: float
    operator: Optional[str] = None
    record_id: Optional[int] = None

    @property
    def action(self) -> str:
        return "count"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "action": self.action,
            "system_qty": self.system_qty,
            "counted_qty": self.counted_qty,
            "variance": self.variance,
            "operator": self.operator,
            "record_id": self.record_id,
        }


@dataclass(frozen=True)
class DetectionEvent:
    type: ClassVar[str] = "discrepancy_detected"
    timestamp: datetime
    action: str
    severity: str
    variance: float
    discrepancy_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "action": self.action,
            "severity": self.severity,
            "variance": self.variance,
            "discrepancy_id": self.discrepancy_id,
        }


TimelineEvent = Union[TransactionEvent, AdjustmentEvent, CycleCountEvent, DetectionEvent]


@dataclass
class InvestigationDossier:
    """Everything assembled for one discrepancy."""
    discrepancy: Dict[str, Any]
    window: TimeWindow
    related_transactions: List[TransactionRecord]
    related_adjustments: List[AdjustmentRecord]
    related_cycle_counts: List[CycleCountRecord]
    involved_operators: List[OperatorProfile]
    unresolved_operator_ids: List[str]
    timeline: List[TimelineEvent]
    possible_causes: List[PossibleCause]
    recommended_actions: List[Recommendation]
    investigations: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def involved_locations(self) -> List[str]:
        seen = [self.discrepancy["location_code"]]
        for tx in self.related_transactions:
            for location in (tx.from_location, tx.to_location):
                if location and location not in seen:
                    seen.append(location)
        return seen

    def operator_name(self, operator_id: str) -> Optional[str]:
        for profile in self.involved_operators:
            if profile.id == operator_id:
                return profile.display_name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discrepancy": self.discrepancy,
            "window": self.window.to_dict(),
            "timeline": [e.to_dict() for e in self.timeline],
            "related_transactions": [t.to_dict() for t in self.related_transactions],
            "related_adjustments": [a.to_dict() for a in self.related_adjustments],
            "related_cycle_counts": [c.to_dict() for c in self.related_cycle_counts],
            "involved_operators": [o.to_dict() for o in self.involved_operators],
            "unresolved_operator_ids": list(self.unresolved_operator_ids),
            "involved_locations": self.involved_locations,
            "possible_causes": [c.to_dict() for c in self.possible_causes],
            "recommended_actions": [r.to_dict() for r in self.recommended_actions],
            "investigations": self.investigations,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# TIMELINE
# ═══════════════════════════════════════════════════════════════════════════════

def build_timeline(
    transactions: Sequence[TransactionRecord],
    adjustments: Sequence[AdjustmentRecord],
    cycle_counts: Sequence[CycleCountRecord],
    discrepancy: Discrepancy
) -> List[TimelineEvent]:
    """
    Merge related events and the detection itself into one ascending sequence.

    The sort is stable: events with equal timestamps keep the order
    transactions, adjustments, cycle counts, detection, and their input
    order within each source.
    """
    events: List[TimelineEvent] = []

    for t in transactions:
        events.append(TransactionEvent(
            timestamp=t.transaction_date,
            action=t.transaction_type,
            quantity=t.quantity,
            from_location=t.from_location,
            to_location=t.to_location,
            operator=t.user_id,
            record_id=t.id,
        ))

    for a in adjustments:
        events.append(AdjustmentEvent(
            timestamp=a.adjustment_date,
            action=a.reason,
            quantity=a.adjustment_qty,
            location=a.location_code,
            operator=a.user_id,
            record_id=a.id,
        ))

    for c in cycle_counts:
        events.append(CycleCountEvent(
            timestamp=c.count_date,
            system_qty=c.system_qty,
            counted_qty=c.counted_qty,
            variance=c.variance,
            operator=c.counter_id,
            record_id=c.id,
        ))

    events.append(DetectionEvent(
        timestamp=discrepancy.detected_at,
        action=discrepancy.type,
        severity=discrepancy.severity,
        variance=discrepancy.variance,
        discrepancy_id=discrepancy.id,
    ))

    return sorted(events, key=lambda e: e.timestamp)


# ═══════════════════════════════════════════════════════════════════════════════
# BUILDER
# ═══════════════════════════════════════════════════════════════════════════════

class InvestigationBuilder:
    """
    Builds investigation dossiers for registered discrepancies.
    """

    def __init__(
        self,
        registry: DiscrepancyRegistry,
        store: InventoryStore,
        operator_directory: OperatorDirectory,
        config: Optional[TruthEngineConfig] = None
    ):
        self.registry = registry
        self.store = store
        self.operator_directory = operator_directory
        self.config = config or DEFAULT_CONFIG

    def investigate(self, discrepancy_id: int) -> InvestigationDossier:
        """
        Assemble the dossier for a discrepancy.

        Args:
            discrepancy_id: Registered discrepancy

        Returns:
            InvestigationDossier with timeline, ranked causes and recommendations

        Raises:
            NotFoundError: unknown discrepancy
            DependencyError: the inventory store is unavailable
        """
        discrepancy = self.registry.get_discrepancy(discrepancy_id)

        window = TimeWindow(
            start=discrepancy.detected_at - timedelta(days=self.config.investigation_lookback_days),
            end=discrepancy.detected_at,
            include_end=True,
        )
        scope = QueryScope(sku=discrepancy.sku, location_code=discrepancy.location_code)

        transactions = sorted(
            self.store.query_transactions(scope, window),
            key=lambda t: t.transaction_date, reverse=True
        )
        adjustments = sorted(
            self.store.query_adjustments(scope, window),
            key=lambda a: a.adjustment_date, reverse=True
        )
        cycle_counts = sorted(
            self.store.query_cycle_counts(scope, window),
            key=lambda c: c.count_date, reverse=True
        )

        operator_ids = _distinct([
            *(t.user_id for t in transactions),
            *(a.user_id for a in adjustments),
            *(c.counter_id for c in cycle_counts),
        ])
        operators = self._resolve_operators(operator_ids)
        resolved_ids = {o.id for o in operators}
        unresolved = [i for i in operator_ids if i not in resolved_ids]

        timeline = build_timeline(transactions, adjustments, cycle_counts, discrepancy)

        causes = self.analyze_possible_causes(discrepancy, transactions, adjustments, cycle_counts, operators)
        recommendations = generate_recommendations(discrepancy, causes, self.config)

        return InvestigationDossier(
            discrepancy=discrepancy.to_dict(),
            window=window,
            related_transactions=transactions,
            related_adjustments=adjustments,
            related_cycle_counts=cycle_counts,
            involved_operators=operators,
            unresolved_operator_ids=unresolved,
            timeline=timeline,
            possible_causes=causes,
            recommended_actions=recommendations,
            investigations=[i.to_dict() for i in self.registry.list_investigations(discrepancy.id)],
        )

    def _resolve_operators(self, operator_ids: List[str]) -> List[OperatorProfile]:
        if not operator_ids:
            return []
        try:
            profiles = self.operator_directory.resolve_users(operator_ids)
        except (DependencyError, ConnectionError, TimeoutError) as e:
            logger.warning(f"Operator lookup failed, continuing with raw ids: {e}")
            return []
        missing = set(operator_ids) - {p.id for p in profiles}
        if missing:
            logger.warning(f"Unresolved operators: {sorted(missing)}")
        return list(profiles)

    # ───────────────────────────────────────────────────────────────────────────
    # Heuristics
    # ───────────────────────────────────────────────────────────────────────────

    def analyze_possible_causes(
        self,
        discrepancy: Discrepancy,
        transactions: Sequence[TransactionRecord],
        adjustments: Sequence[AdjustmentRecord],
        cycle_counts: Sequence[CycleCountRecord],
        operators: Sequence[OperatorProfile]
    ) -> List[PossibleCause]:
        """
        Run every heuristic; none short-circuits another.

        Returns:
            Causes ordered highest confidence first, ties in heuristic order
        """
        causes: List[PossibleCause] = []
        names = {o.id: o.display_name for o in operators}

        # 1. Adjustment volume vs variance
        if adjustments:
            total_adjusted = sum(a.adjustment_qty for a in adjustments)
            if abs(total_adjusted) > abs(discrepancy.variance) * self.config.adjustment_volume_ratio:
                causes.append(PossibleCause(
                    category=RootCauseCategory.PROCESS,
                    description="High adjustment volume may indicate systematic issue",
                    confidence=Confidence.MEDIUM,
                    evidence={
                        "adjustment_count": len(adjustments),
                        "total_adjusted": total_adjusted,
                        "discrepancy_variance": discrepancy.variance,
                    },
                    possible_reasons=[
                        "Receiving errors requiring frequent corrections",
                        "Pick errors being adjusted rather than root-caused",
                        "Damaged inventory being adjusted without investigation",
                    ],
                ))

        # 2. Operator adjustment patterns
        per_operator: Dict[str, int] = {}
        for a in adjustments:
            if a.user_id:
                per_operator[a.user_id] = per_operator.get(a.user_id, 0) + 1

        for user_id, count in per_operator.items():
            if count < self.config.operator_adjustment_threshold:
                continue
            name = names.get(user_id)
            causes.append(PossibleCause(
                category=RootCauseCategory.HUMAN,
                description=f"Operator {name or user_id} made {count} adjustments",
                confidence=(
                    Confidence.HIGH if count >= self.config.operator_adjustment_high_threshold
                    else Confidence.MEDIUM
                ),
                evidence={
                    "operator_id": user_id,
                    "operator_name": name,
                    "adjustment_count": count,
                },
                possible_reasons=[
                    "Training gap - operator may need retraining",
                    "Process confusion - procedures may be unclear",
                    "Equipment issue - scanner or RF gun problems",
                ],
            ))

        # 3. Transaction sequence
        types = [t.transaction_type for t in transactions]
        received = any(t in RECEIVING_TYPES for t in types)
        if received and PUTAWAY_TYPE not in types:
            causes.append(PossibleCause(
                category=RootCauseCategory.PROCESS,
                description="Receiving transaction without corresponding putaway",
                confidence=Confidence.HIGH,
                evidence={"transaction_types": types},
                possible_reasons=[
                    "Product received but not put away to final location",
                    "Putaway transaction not recorded in WMS",
                    "Product sitting in staging area",
                ],
            ))

        # 4. Cycle count direction
        if cycle_counts:
            variances = [c.variance for c in cycle_counts]
            evidence = {"count_count": len(cycle_counts), "variances": variances}
            if all(v < 0 for v in variances):
                causes.append(PossibleCause(
                    category=RootCauseCategory.PROCESS,
                    description="Consistent negative variances in cycle counts",
                    confidence=Confidence.HIGH,
                    evidence=evidence,
                    possible_reasons=[
                        "Unrecorded picks or moves out of location",
                        "Theft or shrinkage",
                        "Damage disposal not recorded",
                    ],
                ))
            elif all(v > 0 for v in variances):
                causes.append(PossibleCause(
                    category=RootCauseCategory.PROCESS,
                    description="Consistent positive variances in cycle counts",
                    confidence=Confidence.HIGH,
                    evidence=evidence,
                    possible_reasons=[
                        "Unrecorded receiving or moves into location",
                        "Returns placed without transaction",
                        "Mis-slot from adjacent location",
                    ],
                ))

        # 5. Location hotspot
        location_issues = self.registry.count_open_at_location(discrepancy.location_code, exclude_id=discrepancy.id)
        if location_issues >= self.config.hotspot_open_threshold:
            causes.append(PossibleCause(
                category=RootCauseCategory.LOCATION,
                description=(
                    f"Location {discrepancy.location_code} has {location_issues} other open discrepancies"
                ),
                confidence=Confidence.HIGH,
                evidence={
                    "location_code": discrepancy.location_code,
                    "other_issues_count": location_issues,
                },
                possible_reasons=[
                    "Location physically problematic (hard to reach, confusing)",
                    "Multiple SKUs in location causing confusion",
                    "Location label damaged or hard to read",
                ],
            ))

        # 6. SKU hotspot
        sku_issues = self.registry.count_open_for_sku(discrepancy.sku, exclude_id=discrepancy.id)
        if sku_issues >= self.config.hotspot_open_threshold:
            causes.append(PossibleCause(
                category=RootCauseCategory.PROCESS,
                description=f"SKU {discrepancy.sku} has {sku_issues} other open discrepancies",
                confidence=Confidence.MEDIUM,
                evidence={
                    "sku": discrepancy.sku,
                    "other_issues_count": sku_issues,
                },
                possible_reasons=[
                    "SKU easily confused with similar item",
                    "Unit of measure confusion (eaches vs cases)",
                    "Barcode scanning issues",
                ],
            ))

        return sorted(causes, key=lambda c: c.confidence, reverse=True)


# ═══════════════════════════════════════════════════════════════════════════════
# RECOMMENDATIONS
# ═══════════════════════════════════════════════════════════════════════════════

def generate_recommendations(
    discrepancy: Discrepancy,
    causes: Sequence[PossibleCause],
    config: TruthEngineConfig = DEFAULT_CONFIG
) -> List[Recommendation]:
    """Cycle count first, then one follow-up per cause, then a gated adjustment."""
    recommendations = [Recommendation(
        priority=1,
        action="CYCLE_COUNT",
        description=f"Perform cycle count at {discrepancy.location_code} for {discrepancy.sku}",
        assign_to="inventory_control",
    )]

    for cause in causes:
        if cause.category == RootCauseCategory.HUMAN:
            who = cause.evidence.get("operator_name") or cause.evidence.get("operator_id")
            recommendations.append(Recommendation(
                priority=2,
                action="TRAINING_REVIEW",
                description=f"Review training for operator {who}",
                assign_to="supervisor",
            ))
        elif cause.category == RootCauseCategory.LOCATION:
            recommendations.append(Recommendation(
                priority=2,
                action="LOCATION_AUDIT",
                description=f"Audit location {discrepancy.location_code} for physical issues",
                assign_to="warehouse_ops",
            ))
        elif cause.category == RootCauseCategory.PROCESS:
            recommendations.append(Recommendation(
                priority=3,
                action="PROCESS_REVIEW",
                description=f"Review related SOP for gaps or clarity issues: {cause.description}",
                assign_to="operations",
            ))

    variance = abs(discrepancy.variance)
    if variance > config.adjustment_recommendation_threshold:
        recommendations.append(Recommendation(
            priority=4,
            action="ADJUSTMENT",
            description=f"After root cause confirmed, adjust inventory by {-discrepancy.variance:g}",
            assign_to="inventory_control",
            requires_approval=variance > config.adjustment_approval_threshold,
        ))

    return recommendations


def _distinct(values) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen
