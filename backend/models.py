"""
Inventory Truth Models

Persistent storage for the inventory time series (snapshots, transactions,
adjustments, cycle counts), operators, and the discrepancy lifecycle
(discrepancies, investigations, analysis runs).
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, JSON, Text,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
import datetime
import enum


Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class DiscrepancyType(str, enum.Enum):
    """Kinds of discrepancy the detector bank can raise."""
    NEGATIVE_ON_HAND = "negative_on_hand"
    UNEXPLAINED_SHORTAGE = "unexplained_shortage"
    UNEXPLAINED_OVERAGE = "unexplained_overage"
    PHANTOM_INVENTORY = "phantom_inventory"
    MIS_SLOT = "mis_slot"
    TRANSACTION_GAP = "transaction_gap"
    CYCLE_COUNT_VARIANCE = "cycle_count_variance"
    ADJUSTMENT_SPIKE = "adjustment_spike"
    DRIFT_DETECTED = "drift_detected"


class Severity(str, enum.Enum):
    """Severity of a discrepancy."""
    CRITICAL = "critical"  # Negative inventory, major variance
    HIGH = "high"          # Significant unexplained variance
    MEDIUM = "medium"      # Moderate variance requiring investigation
    LOW = "low"            # Minor variance, monitor

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class DiscrepancyStatus(str, enum.Enum):
    """Lifecycle of a discrepancy. Only ever advances."""
    OPEN = "OPEN"
    INVESTIGATED = "INVESTIGATED"
    RESOLVED = "RESOLVED"


class RootCauseCategory(str, enum.Enum):
    """Coarse classification of a confirmed root cause."""
    PROCESS = "process"        # Process/procedure breakdown
    HUMAN = "human"            # Operator error, training issue
    SYSTEM = "system"          # WMS/system error
    EXTERNAL = "external"      # Vendor/customer/carrier issue
    EQUIPMENT = "equipment"    # Scanner, forklift, etc.
    LOCATION = "location"      # Physical location issue
    TIMING = "timing"          # Timing/sequence issue
    UNKNOWN = "unknown"


class InvestigationStatus(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    RESOLUTION = "RESOLUTION"


class RunStatus(str, enum.Enum):
    """Status of a detection run."""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"  # Some detectors failed
    FAILED = "failed"


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ═══════════════════════════════════════════════════════════════════════════════
# INVENTORY TIME SERIES
# ═══════════════════════════════════════════════════════════════════════════════

class InventorySnapshot(Base):
    """On-hand quantity for a sku/location at a point in time."""
    __tablename__ = "inventory_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), nullable=False)
    location_code = Column(String(100), nullable=False)
    quantity_on_hand = Column(Float, nullable=False)
    unit_cost = Column(Float, nullable=True)
    snapshot_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_inventory_snapshot_key_date", "sku", "location_code", "snapshot_date"),
    )


class InventoryTransaction(Base):
    """A discrete stock movement (receipt, pick, putaway, transfer...)."""
    __tablename__ = "inventory_transactions"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), nullable=False, index=True)
    transaction_type = Column(String(50), nullable=False)
    from_location = Column(String(100), nullable=True)
    to_location = Column(String(100), nullable=True)
    quantity = Column(Float, nullable=False)  # Unsigned; direction comes from locations
    user_id = Column(String(100), nullable=True)
    transaction_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_transaction_quantity"),
        Index("ix_inventory_transaction_sku_date", "sku", "transaction_date"),
    )


class InventoryAdjustment(Base):
    """A manual correction to on-hand quantity."""
    __tablename__ = "inventory_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), nullable=False)
    location_code = Column(String(100), nullable=False)
    adjustment_qty = Column(Float, nullable=False)  # Signed
    reason = Column(String(200), nullable=True)
    user_id = Column(String(100), nullable=True)
    adjustment_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_inventory_adjustment_key_date", "sku", "location_code", "adjustment_date"),
    )


class CycleCountSnapshot(Base):
    """A physical count reconciled against the system quantity."""
    __tablename__ = "cycle_count_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), nullable=False)
    location_code = Column(String(100), nullable=False)
    system_qty = Column(Float, nullable=False)
    counted_qty = Column(Float, nullable=False)
    variance = Column(Float, nullable=True)          # counted - system
    variance_percent = Column(Float, nullable=True)
    counter_id = Column(String(100), nullable=True)
    count_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_cycle_count_key_date", "sku", "location_code", "count_date"),
    )


class Operator(Base):
    """Warehouse operator profile, resolved by the investigation builder."""
    __tablename__ = "operators"

    id = Column(String(100), primary_key=True)
    username = Column(String(100), nullable=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# DISCREPANCY LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════════

class Discrepancy(Base):
    """
    A detected inventory problem.

    open_key holds "{sku}|{location_code}|{type}" while the discrepancy is
    OPEN and NULL afterwards; the unique constraint on it serialises
    concurrent registrations of the same physical problem.
    """
    __tablename__ = "discrepancies"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)

    sku = Column(String(100), nullable=False, index=True)
    location_code = Column(String(100), nullable=False, index=True)

    expected_qty = Column(Float, nullable=False, default=0.0)
    actual_qty = Column(Float, nullable=False, default=0.0)
    variance = Column(Float, nullable=False, default=0.0)
    variance_percent = Column(Float, nullable=False, default=0.0)
    variance_value = Column(Float, nullable=False, default=0.0)

    status = Column(String(20), nullable=False, default=DiscrepancyStatus.OPEN.value)
    description = Column(Text, nullable=True)
    evidence_json = Column(JSON, nullable=True)

    open_key = Column(String(300), nullable=True)
    analysis_id = Column(String(100), nullable=True)
    detection_count = Column(Integer, nullable=False, default=1)

    detected_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    root_cause = Column(Text, nullable=True)
    root_cause_category = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    investigations = relationship(
        "Investigation",
        back_populates="discrepancy",
        cascade="all, delete-orphan",
        order_by="Investigation.id",
    )

    __table_args__ = (
        UniqueConstraint("open_key", name="uq_discrepancy_open_key"),
        CheckConstraint(_in_clause("status", DiscrepancyStatus), name="ck_discrepancy_status"),
        CheckConstraint(_in_clause("severity", Severity), name="ck_discrepancy_severity"),
        CheckConstraint(_in_clause("type", DiscrepancyType), name="ck_discrepancy_type"),
        Index("ix_discrepancy_status_location", "status", "location_code"),
        Index("ix_discrepancy_status_sku", "status", "sku"),
        Index("ix_discrepancy_detected_at", "detected_at"),
    )

    @staticmethod
    def build_open_key(sku: str, location_code: str, discrepancy_type: str) -> str:
        return f"{sku}|{location_code}|{discrepancy_type}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "sku": self.sku,
            "location_code": self.location_code,
            "expected_qty": self.expected_qty,
            "actual_qty": self.actual_qty,
            "variance": self.variance,
            "variance_percent": self.variance_percent,
            "variance_value": self.variance_value,
            "status": self.status,
            "description": self.description,
            "evidence": self.evidence_json or {},
            "analysis_id": self.analysis_id,
            "detection_count": self.detection_count,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "root_cause": self.root_cause,
            "root_cause_category": self.root_cause_category,
        }


class Investigation(Base):
    """
    A human-confirmed root cause for a discrepancy.

    History is preserved; the most recent row is authoritative.
    """
    __tablename__ = "investigations"

    id = Column(Integer, primary_key=True, index=True)
    discrepancy_id = Column(Integer, ForeignKey("discrepancies.id"), nullable=False, index=True)

    root_cause = Column(Text, nullable=True)
    category = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    assigned_to = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=InvestigationStatus.CONFIRMED.value)

    confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    discrepancy = relationship("Discrepancy", back_populates="investigations")

    __table_args__ = (
        CheckConstraint(_in_clause("status", InvestigationStatus), name="ck_investigation_status"),
        Index("ix_investigation_discrepancy_created", "discrepancy_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "discrepancy_id": self.discrepancy_id,
            "root_cause": self.root_cause,
            "category": self.category,
            "notes": self.notes,
            "assigned_to": self.assigned_to,
            "status": self.status,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AnalysisRun(Base):
    """Record of one detection run."""
    __tablename__ = "analysis_runs"

    id = Column(Integer, primary_key=True, index=True)
    analysis_id = Column(String(100), nullable=False, unique=True)
    analysis_type = Column(String(50), nullable=False)

    scope_json = Column(JSON, nullable=True)
    window_start = Column(DateTime, nullable=True)
    window_end = Column(DateTime, nullable=True)

    status = Column(String(20), default=RunStatus.RUNNING.value)
    summary_json = Column(JSON, nullable=True)
    """
    {
        "findings": int,
        "discrepancies_created": int,
        "discrepancies_updated": int,
        "failed_detectors": [...],
        "execution_time_ms": float
    }
    """
    triggered_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(_in_clause("status", RunStatus), name="ck_analysis_run_status"),
    )
