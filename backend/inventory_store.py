"""
Inventory Store Interface

Query interface the truth engine reads its inputs through, plus the
operator directory used to resolve operator ids into profiles.

Implementations:
- SqlInventoryStore / SqlOperatorDirectory: backed by the ORM tables in models.py
- InMemoryInventoryStore / StaticOperatorDirectory: backed by plain lists, for
  batch jobs over exported data and for tests

Every query returns records ordered ascending by their own date field.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from truth_errors import DependencyError, ValidationError


# ═══════════════════════════════════════════════════════════════════════════════
# SCOPE & WINDOW
# ═══════════════════════════════════════════════════════════════════════════════

SCOPE_KEYS = ("sku", "location_code")


@dataclass(frozen=True)
class QueryScope:
    """Optional sku/location filter. An empty scope matches everything."""
    sku: Optional[str] = None
    location_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueryScope":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("Scope must be an object", {"scope": data})
        unknown = sorted(set(data) - set(SCOPE_KEYS))
        if unknown:
            raise ValidationError(
                f"Unsupported scope keys: {', '.join(unknown)}",
                {"allowed": list(SCOPE_KEYS)}
            )
        for key in SCOPE_KEYS:
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"Scope {key} must be a string", {key: value})
        return cls(sku=data.get("sku") or None, location_code=data.get("location_code") or None)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"sku": self.sku, "location_code": self.location_code}

    def matches(self, sku: str, location_code: Optional[str]) -> bool:
        if self.sku is not None and sku != self.sku:
            return False
        if self.location_code is not None and location_code != self.location_code:
            return False
        return True


@dataclass(frozen=True)
class TimeWindow:
    """
    Time range [start, end).

    include_end makes the range closed on the right, which the investigation
    lookback needs so events stamped exactly at detection time are kept.
    """
    start: datetime
    end: datetime
    include_end: bool = False

    def __post_init__(self):
        if self.start is None or self.end is None:
            raise ValidationError("Window requires both start and end")
        if self.start > self.end or (self.start == self.end and not self.include_end):
            raise ValidationError(
                "Window start must be before window end",
                {"start": self.start.isoformat(), "end": self.end.isoformat()}
            )

    @classmethod
    def trailing(cls, days: int, end: Optional[datetime] = None) -> "TimeWindow":
        """Window covering the `days` days up to `end` (default: now)."""
        if days <= 0:
            raise ValidationError("Window length must be positive", {"days": days})
        end = end or models.utcnow()
        return cls(start=end - timedelta(days=days), end=end)

    def contains(self, timestamp: Optional[datetime]) -> bool:
        if timestamp is None:
            return False
        if timestamp < self.start:
            return False
        if self.include_end:
            return timestamp <= self.end
        return timestamp < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "include_end": self.include_end,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class InventorySnapshotRecord:
    sku: str
    location_code: str
    quantity_on_hand: float
    snapshot_date: datetime
    unit_cost: Optional[float] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class TransactionRecord:
    sku: str
    transaction_type: str
    quantity: float
    transaction_date: datetime
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    user_id: Optional[str] = None
    id: Optional[int] = None

    def touches(self, location_code: str) -> bool:
        return location_code in (self.from_location, self.to_location)

    def signed_quantity_for(self, location_code: str) -> float:
        """Net effect of this movement on one location's on-hand quantity."""
        delta = 0.0
        if self.to_location == location_code:
            delta += abs(self.quantity)
        if self.from_location == location_code:
            delta -= abs(self.quantity)
        return delta

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class AdjustmentRecord:
    sku: str
    location_code: str
    adjustment_qty: float
    reason: Optional[str]
    adjustment_date: datetime
    user_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class CycleCountRecord:
    sku: str
    location_code: str
    system_qty: float
    counted_qty: float
    count_date: datetime
    counter_id: Optional[str] = None
    id: Optional[int] = None
    variance: float = field(init=False)
    variance_percent: float = field(init=False)

    def __post_init__(self):
        variance = self.counted_qty - self.system_qty
        percent = (variance / self.system_qty) * 100 if self.system_qty else 0.0
        object.__setattr__(self, "variance", variance)
        object.__setattr__(self, "variance_percent", percent)

    def to_dict(self) -> Dict[str, Any]:
        return _record_dict(self)


@dataclass(frozen=True)
class OperatorProfile:
    id: str
    display_name: Optional[str] = None
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _record_dict(record) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


# ═══════════════════════════════════════════════════════════════════════════════
# STORE INTERFACE
# ═══════════════════════════════════════════════════════════════════════════════

class InventoryStore(ABC):
    """
    Read-only query interface over the inventory time series.

    Transactions match a location scope through either from_location or
    to_location.
    """

    @abstractmethod
    def query_inventory_snapshots(
        self, scope: QueryScope, window: TimeWindow
    ) -> List[InventorySnapshotRecord]:
        pass

    @abstractmethod
    def query_transactions(
        self, scope: QueryScope, window: TimeWindow
    ) -> List[TransactionRecord]:
        pass

    @abstractmethod
    def query_adjustments(
        self, scope: QueryScope, window: TimeWindow
    ) -> List[AdjustmentRecord]:
        pass

    @abstractmethod
    def query_cycle_counts(
        self, scope: QueryScope, window: TimeWindow
    ) -> List[CycleCountRecord]:
        pass


class OperatorDirectory(ABC):
    """Resolves operator ids into profiles. Unknown ids are simply omitted."""

    @abstractmethod
    def resolve_users(self, ids: Sequence[str]) -> List[OperatorProfile]:
        pass


# ═══════════════════════════════════════════════════════════════════════════════
# SQL IMPLEMENTATION
# ═══════════════════════════════════════════════════════════════════════════════

def _window_filter(column, window: TimeWindow):
    if window.include_end:
        return [column >= window.start, column <= window.end]
    return [column >= window.start, column < window.end]


class SqlInventoryStore(InventoryStore):
    """Inventory store backed by the ORM tables."""

    def __init__(self, db: Session):
        self.db = db

    def query_inventory_snapshots(self, scope, window):
        model = models.InventorySnapshot
        query = self.db.query(model).filter(*_window_filter(model.snapshot_date, window))
        if scope.sku:
            query = query.filter(model.sku == scope.sku)
        if scope.location_code:
            query = query.filter(model.location_code == scope.location_code)
        rows = self._fetch(query.order_by(model.snapshot_date.asc(), model.id.asc()), "inventory snapshots")
        return [
            InventorySnapshotRecord(
                id=row.id,
                sku=row.sku,
                location_code=row.location_code,
                quantity_on_hand=row.quantity_on_hand,
                snapshot_date=row.snapshot_date,
                unit_cost=row.unit_cost,
            )
            for row in rows
        ]

    def query_transactions(self, scope, window):
        model = models.InventoryTransaction
        query = self.db.query(model).filter(*_window_filter(model.transaction_date, window))
        if scope.sku:
            query = query.filter(model.sku == scope.sku)
        if scope.location_code:
            query = query.filter(or_(
                model.from_location == scope.location_code,
                model.to_location == scope.location_code,
            ))
        rows = self._fetch(query.order_by(model.transaction_date.asc(), model.id.asc()), "transactions")
        return [
            TransactionRecord(
                id=row.id,
                sku=row.sku,
                transaction_type=row.transaction_type,
                quantity=row.quantity,
                transaction_date=row.transaction_date,
                from_location=row.from_location,
                to_location=row.to_location,
                user_id=row.user_id,
            )
            for row in rows
        ]

    def query_adjustments(self, scope, window):
        model = models.InventoryAdjustment
        query = self.db.query(model).filter(*_window_filter(model.adjustment_date, window))
        if scope.sku:
            query = query.filter(model.sku == scope.sku)
        if scope.location_code:
            query = query.filter(model.location_code == scope.location_code)
        rows = self._fetch(query.order_by(model.adjustment_date.asc(), model.id.asc()), "adjustments")
        return [
            AdjustmentRecord(
                id=row.id,
                sku=row.sku,
                location_code=row.location_code,
                adjustment_qty=row.adjustment_qty,
                reason=row.reason,
                adjustment_date=row.adjustment_date,
                user_id=row.user_id,
            )
            for row in rows
        ]

    def query_cycle_counts(self, scope, window):
        model = models.CycleCountSnapshot
        query = self.db.query(model).filter(*_window_filter(model.count_date, window))
        if scope.sku:
            query = query.filter(model.sku == scope.sku)
        if scope.location_code:
            query = query.filter(model.location_code == scope.location_code)
        rows = self._fetch(query.order_by(model.count_date.asc(), model.id.asc()), "cycle counts")
        return [
            CycleCountRecord(
                id=row.id,
                sku=row.sku,
                location_code=row.location_code,
                system_qty=row.system_qty,
                counted_qty=row.counted_qty,
                count_date=row.count_date,
                counter_id=row.counter_id,
            )
            for row in rows
        ]

    def _fetch(self, query, what: str):
        try:
            return query.all()
        except SQLAlchemyError as e:
            raise DependencyError(f"Failed to query {what}: {e}") from e


class SqlOperatorDirectory(OperatorDirectory):
    """Operator directory backed by the operators table."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_users(self, ids):
        if not ids:
            return []
        try:
            rows = self.db.query(models.Operator).filter(
                models.Operator.id.in_(list(ids))
            ).all()
        except SQLAlchemyError as e:
            raise DependencyError(f"Failed to resolve operators: {e}") from e
        return [
            OperatorProfile(
                id=row.id,
                display_name=row.full_name or row.username,
                role=row.role,
            )
            for row in rows
        ]


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY IMPLEMENTATION
# ═══════════════════════════════════════════════════════════════════════════════

class InMemoryInventoryStore(InventoryStore):
    """
    Inventory store over plain record lists.

    Input order is irrelevant; results are sorted by date with ties kept in
    input order.
    """

    def __init__(
        self,
        snapshots: Iterable[InventorySnapshotRecord] = (),
        transactions: Iterable[TransactionRecord] = (),
        adjustments: Iterable[AdjustmentRecord] = (),
        cycle_counts: Iterable[CycleCountRecord] = (),
    ):
        self.snapshots = list(snapshots)
        self.transactions = list(transactions)
        self.adjustments = list(adjustments)
        self.cycle_counts = list(cycle_counts)

    def query_inventory_snapshots(self, scope, window):
        rows = [
            r for r in self.snapshots
            if scope.matches(r.sku, r.location_code) and window.contains(r.snapshot_date)
        ]
        return sorted(rows, key=lambda r: r.snapshot_date)

    def query_transactions(self, scope, window):
        rows = []
        for r in self.transactions:
            if scope.sku is not None and r.sku != scope.sku:
                continue
            if scope.location_code is not None and not r.touches(scope.location_code):
                continue
            if window.contains(r.transaction_date):
                rows.append(r)
        return sorted(rows, key=lambda r: r.transaction_date)

    def query_adjustments(self, scope, window):
        rows = [
            r for r in self.adjustments
            if scope.matches(r.sku, r.location_code) and window.contains(r.adjustment_date)
        ]
        return sorted(rows, key=lambda r: r.adjustment_date)

    def query_cycle_counts(self, scope, window):
        rows = [
            r for r in self.cycle_counts
            if scope.matches(r.sku, r.location_code) and window.contains(r.count_date)
        ]
        return sorted(rows, key=lambda r: r.count_date)


class StaticOperatorDirectory(OperatorDirectory):
    """Operator directory over a fixed list of profiles."""

    def __init__(self, profiles: Iterable[OperatorProfile] = ()):
        self._profiles = {p.id: p for p in profiles}

    def resolve_users(self, ids):
        return [self._profiles[i] for i in ids if i in self._profiles]
