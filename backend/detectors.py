"""
Detector Bank

Independent detection algorithms, each scanning one signal of the inventory
time series and yielding Findings (candidate discrepancies) with a computed
severity.

Detectors:
1. Negative On-Hand: snapshot quantity below zero, always critical
2. Transaction Gap: snapshot-to-snapshot change not explained by transactions
3. Cycle Count Variance: physical count disagrees with system quantity
4. Adjustment Spike: daily adjustment volume far above its rolling baseline
5. Drift Detected: fitted gradual change in daily on-hand quantity
6. Unexplained Shortage / Overage: net window reconciliation residual
7. Phantom Inventory: count found nothing where the system held stock
8. Mis-Slot: offsetting short/over counts of one SKU on the same day

Every detector's scan() is a generator: one pass per invocation.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type
import logging

import numpy as np
import pandas as pd

from models import DiscrepancyType, Severity
from inventory_store import (
    InventoryStore, QueryScope, TimeWindow,
    InventorySnapshotRecord, TransactionRecord, CycleCountRecord,
)
from trend_utils import fit_linear_trend, classify_trend
from truth_config import TruthEngineConfig, DEFAULT_CONFIG

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# FINDING
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Finding:
    """
    Transient detector output, prior to registry persistence.

    variance is always actual_qty - expected_qty.
    """
    type: str
    severity: Severity
    sku: str
    location_code: str
    expected_qty: float
    actual_qty: float
    variance_percent: float = 0.0
    variance_value: float = 0.0
    description: str = ""
    evidence: Dict[str, Any] = field(default_factory=dict)
    variance: float = field(init=False)

    def __post_init__(self):
        self.variance = self.actual_qty - self.expected_qty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "sku": self.sku,
            "location_code": self.location_code,
            "expected_qty": self.expected_qty,
            "actual_qty": self.actual_qty,
            "variance": self.variance,
            "variance_percent": self.variance_percent,
            "variance_value": self.variance_value,
            "description": self.description,
            "evidence": self.evidence,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SEVERITY POLICIES
# ═══════════════════════════════════════════════════════════════════════════════

def negative_on_hand_severity() -> Severity:
    return Severity.CRITICAL


def gap_severity(gap: float, config: TruthEngineConfig = DEFAULT_CONFIG) -> Severity:
    """|gap| > 100 HIGH, > 10 MEDIUM, else LOW."""
    magnitude = abs(gap)
    if magnitude > config.gap_high_threshold:
        return Severity.HIGH
    if magnitude > config.gap_medium_threshold:
        return Severity.MEDIUM
    return Severity.LOW


def cycle_count_severity(
    variance: float,
    variance_percent: float,
    config: TruthEngineConfig = DEFAULT_CONFIG
) -> Severity:
    """(|pct| > 20 or |var| > 50) HIGH, (|pct| > 10 or |var| > 20) MEDIUM, else LOW."""
    qty = abs(variance)
    pct = abs(variance_percent)
    if pct > config.cycle_count_high_percent or qty > config.cycle_count_high_qty:
        return Severity.HIGH
    if pct > config.cycle_count_medium_percent or qty > config.cycle_count_medium_qty:
        return Severity.MEDIUM
    return Severity.LOW


def is_cycle_count_variance(
    variance: float,
    variance_percent: float,
    config: TruthEngineConfig = DEFAULT_CONFIG
) -> bool:
    return (
        abs(variance_percent) > config.cycle_count_percent_threshold
        or abs(variance) > config.cycle_count_qty_threshold
    )


def spike_severity(z_score: Optional[float], config: TruthEngineConfig = DEFAULT_CONFIG) -> Severity:
    """z > 3 HIGH, else MEDIUM. A count-only spike (no z) is MEDIUM."""
    if z_score is not None and z_score > config.spike_high_z_threshold:
        return Severity.HIGH
    return Severity.MEDIUM


def drift_severity(percent_drift: float, config: TruthEngineConfig = DEFAULT_CONFIG) -> Severity:
    """|drift %| > 20 HIGH, > 10 MEDIUM, else LOW."""
    magnitude = abs(percent_drift)
    if magnitude > config.drift_high_percent:
        return Severity.HIGH
    if magnitude > config.drift_medium_percent:
        return Severity.MEDIUM
    return Severity.LOW


def percent_of(part: float, whole: float) -> float:
    """part / whole * 100, or 0 when whole is 0."""
    if not whole:
        return 0.0
    return (part / whole) * 100


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTOR INTERFACE
# ═══════════════════════════════════════════════════════════════════════════════

class BaseDetector(ABC):
    """
    One detection algorithm over one signal.

    Subclasses set detector_type and implement scan(). Store failures are
    not caught here; the engine isolates them per detector.
    """

    detector_type: str = ""

    def __init__(self, store: InventoryStore, config: Optional[TruthEngineConfig] = None):
        self.store = store
        self.config = config or DEFAULT_CONFIG

    @abstractmethod
    def scan(self, scope: QueryScope, window: TimeWindow) -> Iterator[Finding]:
        """
        Scan the scope over the window.

        Returns:
            Lazy, one-pass iterator of Findings tagged with detector_type
        """
        pass

    def _finding(self, **kwargs) -> Finding:
        return Finding(type=self.detector_type, **kwargs)


def _group_by_location(records, location_attr: str = "location_code") -> Dict[Tuple[str, str], list]:
    """Group records by (sku, location); input order is kept within each group."""
    groups: Dict[Tuple[str, str], list] = defaultdict(list)
    for record in records:
        groups[(record.sku, getattr(record, location_attr))].append(record)
    return dict(sorted(groups.items()))


def _latest_unit_costs(snapshots: List[InventorySnapshotRecord]) -> Dict[Tuple[str, str], float]:
    costs: Dict[Tuple[str, str], float] = {}
    for snap in snapshots:
        if snap.unit_cost is not None:
            costs[(snap.sku, snap.location_code)] = snap.unit_cost
    return costs


def _transactions_by_location(
    transactions: List[TransactionRecord]
) -> Dict[Tuple[str, str], List[TransactionRecord]]:
    """Index each transaction under every location it touches."""
    index: Dict[Tuple[str, str], List[TransactionRecord]] = defaultdict(list)
    for tx in transactions:
        for location in {tx.from_location, tx.to_location}:
            if location:
                index[(tx.sku, location)].append(tx)
    return index


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ═══════════════════════════════════════════════════════════════════════════════
# 1. NEGATIVE ON-HAND
# ═══════════════════════════════════════════════════════════════════════════════

class NegativeOnHandDetector(BaseDetector):
    """
    One finding per (sku, location) whose on-hand went below zero in the window.

    The latest negative snapshot is reported; value = |qty| × unit cost.
    """

    detector_type = DiscrepancyType.NEGATIVE_ON_HAND.value

    def scan(self, scope, window):
        snapshots = self.store.query_inventory_snapshots(scope, window)
        negatives = [s for s in snapshots if s.quantity_on_hand < 0]

        for (sku, location), group in _group_by_location(negatives).items():
            latest = group[-1]
            qty = latest.quantity_on_hand
            unit_cost = latest.unit_cost or 0.0
            yield self._finding(
                severity=negative_on_hand_severity(),
                sku=sku,
                location_code=location,
                expected_qty=0.0,
                actual_qty=qty,
                variance_percent=-100.0,
                variance_value=abs(qty) * unit_cost,
                description=f"Negative on-hand quantity ({qty:g}) for {sku} at {location}",
                evidence={
                    "current_qty": qty,
                    "unit_cost": unit_cost,
                    "snapshot_id": latest.id,
                    "snapshot_date": _iso(latest.snapshot_date),
                    "negative_snapshot_count": len(group),
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 2. TRANSACTION GAP
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionGapDetector(BaseDetector):
    """
    Consecutive snapshot pairs whose change is not explained by transactions.

    For snapshots prev → cur at one location, the explained change is the sum
    of signed quantities of transactions with prev.date < t <= cur.date that
    touch the location. gap = snapshot_change - transaction_change.
    """

    detector_type = DiscrepancyType.TRANSACTION_GAP.value

    def scan(self, scope, window):
        snapshots = self.store.query_inventory_snapshots(scope, window)
        transactions = _transactions_by_location(self.store.query_transactions(scope, window))

        candidates = []
        for (sku, location), series in _group_by_location(snapshots).items():
            related = transactions.get((sku, location), [])
            for previous, current in zip(series, series[1:]):
                snapshot_change = current.quantity_on_hand - previous.quantity_on_hand
                moved = [
                    tx for tx in related
                    if previous.snapshot_date < tx.transaction_date <= current.snapshot_date
                ]
                transaction_change = sum(tx.signed_quantity_for(location) for tx in moved)
                gap = snapshot_change - transaction_change
                if abs(gap) > self.config.gap_threshold:
                    candidates.append((current.snapshot_date, sku, location, previous, current,
                                       snapshot_change, transaction_change, gap, len(moved)))

        # Largest gaps survive the cap; survivors are emitted oldest first
        candidates.sort(key=lambda c: -abs(c[7]))
        kept = sorted(candidates[:self.config.max_gap_findings], key=lambda c: c[0])
        for (_, sku, location, previous, current,
             snapshot_change, transaction_change, gap, tx_count) in kept:
            yield self._finding(
                severity=gap_severity(gap, self.config),
                sku=sku,
                location_code=location,
                expected_qty=transaction_change,
                actual_qty=snapshot_change,
                variance_percent=percent_of(gap, previous.quantity_on_hand),
                description=(
                    f"Inventory change ({snapshot_change:g}) doesn't match "
                    f"transaction total ({transaction_change:g})"
                ),
                evidence={
                    "previous_qty": previous.quantity_on_hand,
                    "current_qty": current.quantity_on_hand,
                    "previous_snapshot_date": _iso(previous.snapshot_date),
                    "current_snapshot_date": _iso(current.snapshot_date),
                    "snapshot_change": snapshot_change,
                    "transaction_change": transaction_change,
                    "transaction_count": tx_count,
                    "unexplained_gap": gap,
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 3. CYCLE COUNT VARIANCE
# ═══════════════════════════════════════════════════════════════════════════════

class CycleCountVarianceDetector(BaseDetector):
    """
    Counts off by more than 5% or more than 10 units.

    One finding per (sku, location): the latest flagged count is reported,
    with the largest variance seen in the window kept in evidence. Findings
    come out largest variance first and the cap applies after grouping.
    """

    detector_type = DiscrepancyType.CYCLE_COUNT_VARIANCE.value

    def scan(self, scope, window):
        counts = self.store.query_cycle_counts(scope, window)
        flagged = [
            c for c in counts
            if is_cycle_count_variance(c.variance, c.variance_percent, self.config)
        ]

        latest = []
        for group in _group_by_location(flagged).values():
            worst = max(group, key=lambda c: abs(c.variance))
            latest.append((group[-1], worst, len(group)))
        latest.sort(key=lambda item: -abs(item[0].variance))

        for count, worst, occurrences in latest[:self.config.max_cycle_count_findings]:
            yield self._finding(
                severity=cycle_count_severity(count.variance, count.variance_percent, self.config),
                sku=count.sku,
                location_code=count.location_code,
                expected_qty=count.system_qty,
                actual_qty=count.counted_qty,
                variance_percent=count.variance_percent,
                description=(
                    f"Cycle count variance: system showed {count.system_qty:g}, "
                    f"counted {count.counted_qty:g} ({count.variance_percent:.1f}%)"
                ),
                evidence={
                    "cycle_count_id": count.id,
                    "system_qty": count.system_qty,
                    "counted_qty": count.counted_qty,
                    "counter_id": count.counter_id,
                    "count_date": _iso(count.count_date),
                    "flagged_count_occurrences": occurrences,
                    "largest_variance": worst.variance,
                    "largest_variance_date": _iso(worst.count_date),
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 4. ADJUSTMENT SPIKE
# ═══════════════════════════════════════════════════════════════════════════════

class AdjustmentSpikeDetector(BaseDetector):
    """
    Days whose adjustment volume stands out from the (sku, location) baseline.

    The baseline is the trailing spike_lookback_days ending at the window end:
    daily volume = Σ|adjustment_qty|, mean and population standard deviation
    per (sku, location). A day spikes when z >= spike_z_threshold or when it
    holds more than spike_daily_count_threshold adjustments. With zero std
    (a single day, or perfectly uniform volumes) there is no z, so only the
    count rule can fire.

    Only the latest spike day per (sku, location) is reported.
    """

    detector_type = DiscrepancyType.ADJUSTMENT_SPIKE.value

    def scan(self, scope, window):
        baseline = TimeWindow.trailing(self.config.spike_lookback_days, end=window.end)
        adjustments = self.store.query_adjustments(scope, baseline)
        if not adjustments:
            return

        reasons = defaultdict(set)
        for a in adjustments:
            if a.reason:
                reasons[(a.sku, a.location_code, a.adjustment_date.date())].add(a.reason)

        df = pd.DataFrame([{
            "sku": a.sku,
            "location_code": a.location_code,
            "day": a.adjustment_date.date(),
            "volume": abs(a.adjustment_qty),
        } for a in adjustments])

        daily = df.groupby(["sku", "location_code", "day"], sort=True).agg(
            daily_volume=("volume", "sum"),
            daily_count=("volume", "size"),
        ).reset_index()

        first_day = window.start.date()
        spikes = []
        for (sku, location), group in daily.groupby(["sku", "location_code"], sort=True):
            spike_days = []
            volumes = group["daily_volume"].to_numpy(dtype=float)
            mean = float(np.mean(volumes))
            std = float(np.std(volumes))

            for row in group.itertuples(index=False):
                if row.day < first_day:
                    continue
                volume = float(row.daily_volume)
                z_score = (volume - mean) / std if std > 0 else None
                by_z = z_score is not None and z_score >= self.config.spike_z_threshold
                by_count = int(row.daily_count) > self.config.spike_daily_count_threshold
                if by_z or by_count:
                    spike_days.append((row, volume, z_score))

            if spike_days:
                row, volume, z_score = spike_days[-1]
                peak = max((z for _, _, z in spike_days if z is not None), default=None)
                spikes.append((sku, location, row, volume, mean, std, z_score, len(spike_days), peak))

        spikes.sort(key=lambda s: (s[6] is None, -(s[6] or 0.0)))

        for (sku, location, row, volume, mean, std, z_score,
             spike_day_count, peak_z) in spikes[:self.config.max_spike_findings]:
            z_text = f"{z_score:.1f}σ above average" if z_score is not None else "no volume baseline"
            yield self._finding(
                severity=spike_severity(z_score, self.config),
                sku=sku,
                location_code=location,
                expected_qty=mean,
                actual_qty=volume,
                variance_percent=percent_of(volume - mean, mean),
                description=(
                    f"Unusual adjustment activity: {volume:g} units adjusted on "
                    f"{row.day.isoformat()} ({z_text})"
                ),
                evidence={
                    "date": row.day.isoformat(),
                    "daily_volume": volume,
                    "daily_count": int(row.daily_count),
                    "average_volume": mean,
                    "stddev_volume": std,
                    "z_score": z_score,
                    "reasons": sorted(reasons[(sku, location, row.day)]),
                    "spike_day_count": spike_day_count,
                    "peak_z_score": peak_z,
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 5. DRIFT
# ═══════════════════════════════════════════════════════════════════════════════

class DriftDetector(BaseDetector):
    """
    Gradual change in daily-average on-hand quantity.

    Fits a linear trend over (day index, avg qty) across the trailing
    drift_lookback_days ending at the window end and compares the fitted
    first and last values.
    """

    detector_type = DiscrepancyType.DRIFT_DETECTED.value

    def scan(self, scope, window):
        lookback = TimeWindow.trailing(self.config.drift_lookback_days, end=window.end)
        snapshots = self.store.query_inventory_snapshots(scope, lookback)
        if not snapshots:
            return

        df = pd.DataFrame([{
            "sku": s.sku,
            "location_code": s.location_code,
            "day": s.snapshot_date.date(),
            "qty": s.quantity_on_hand,
        } for s in snapshots])
        daily = df.groupby(["sku", "location_code", "day"], sort=True)["qty"].mean().reset_index()

        drifts = []
        for (sku, location), group in daily.groupby(["sku", "location_code"], sort=True):
            quantities = group["qty"].to_numpy(dtype=float)
            n = len(quantities)
            if n < self.config.drift_min_data_points:
                continue

            fit = fit_linear_trend(enumerate(quantities))
            start_qty = fit.value_at(0)
            end_qty = fit.value_at(n - 1)
            absolute_drift = end_qty - start_qty
            percent_drift = percent_of(absolute_drift, start_qty)

            if abs(absolute_drift) > self.config.drift_min_absolute and \
                    abs(percent_drift) > self.config.drift_min_percent:
                drifts.append((sku, location, fit, n, start_qty, end_qty, absolute_drift, percent_drift,
                               group["day"].iloc[0], group["day"].iloc[-1]))

        drifts.sort(key=lambda d: -abs(d[6]))

        for (sku, location, fit, n, start_qty, end_qty,
             absolute_drift, percent_drift, first_day, last_day) in drifts[:self.config.max_drift_findings]:
            yield self._finding(
                severity=drift_severity(percent_drift, self.config),
                sku=sku,
                location_code=location,
                expected_qty=start_qty,
                actual_qty=end_qty,
                variance_percent=percent_drift,
                description=(
                    f"Inventory drift detected: quantity changed from {start_qty:.1f} to "
                    f"{end_qty:.1f} ({percent_drift:.1f}%) over {self.config.drift_lookback_days} days"
                ),
                evidence={
                    "start_qty": start_qty,
                    "end_qty": end_qty,
                    "absolute_drift": absolute_drift,
                    "percent_drift": percent_drift,
                    "data_points": n,
                    "slope": fit.slope,
                    "intercept": fit.intercept,
                    "trend": classify_trend(fit.slope, self.config.trend_threshold),
                    "first_day": first_day.isoformat(),
                    "last_day": last_day.isoformat(),
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 6. UNEXPLAINED SHORTAGE / OVERAGE
# ═══════════════════════════════════════════════════════════════════════════════

class _NetReconciliationDetector(BaseDetector):
    """
    Whole-window reconciliation per (sku, location).

    expected = first snapshot + signed transactions + adjustments recorded
    after it up to the last snapshot; actual = last snapshot. A residual
    beyond gap_threshold in this detector's direction is reported.
    """

    direction = 0

    def scan(self, scope, window):
        snapshots = self.store.query_inventory_snapshots(scope, window)
        transactions = _transactions_by_location(self.store.query_transactions(scope, window))
        adjustments = _group_by_location(self.store.query_adjustments(scope, window))
        costs = _latest_unit_costs(snapshots)

        for (sku, location), series in _group_by_location(snapshots).items():
            if len(series) < 2:
                continue
            first, last = series[0], series[-1]

            def between(ts):
                return first.snapshot_date < ts <= last.snapshot_date

            tx_change = sum(
                tx.signed_quantity_for(location)
                for tx in transactions.get((sku, location), [])
                if between(tx.transaction_date)
            )
            adj_change = sum(
                a.adjustment_qty
                for a in adjustments.get((sku, location), [])
                if between(a.adjustment_date)
            )
            expected = first.quantity_on_hand + tx_change + adj_change
            residual = last.quantity_on_hand - expected

            if abs(residual) <= self.config.gap_threshold or residual * self.direction < 0:
                continue

            label = "shortage" if self.direction < 0 else "overage"
            yield self._finding(
                severity=gap_severity(residual, self.config),
                sku=sku,
                location_code=location,
                expected_qty=expected,
                actual_qty=last.quantity_on_hand,
                variance_percent=percent_of(residual, first.quantity_on_hand),
                variance_value=abs(residual) * costs.get((sku, location), 0.0),
                description=(
                    f"Unexplained {label} of {abs(residual):g} units for {sku} at {location}: "
                    f"expected {expected:g}, on hand {last.quantity_on_hand:g}"
                ),
                evidence={
                    "start_qty": first.quantity_on_hand,
                    "end_qty": last.quantity_on_hand,
                    "start_date": _iso(first.snapshot_date),
                    "end_date": _iso(last.snapshot_date),
                    "transaction_change": tx_change,
                    "adjustment_change": adj_change,
                    "unexplained_qty": residual,
                },
            )


class UnexplainedShortageDetector(_NetReconciliationDetector):
    detector_type = DiscrepancyType.UNEXPLAINED_SHORTAGE.value
    direction = -1


class UnexplainedOverageDetector(_NetReconciliationDetector):
    detector_type = DiscrepancyType.UNEXPLAINED_OVERAGE.value
    direction = 1


# ═══════════════════════════════════════════════════════════════════════════════
# 7. PHANTOM INVENTORY
# ═══════════════════════════════════════════════════════════════════════════════

class PhantomInventoryDetector(BaseDetector):
    """
    System held stock but the count found none.

    Also catches zero-quantity locations that were never cleaned up in the
    system. One finding per (sku, location), latest count wins.
    """

    detector_type = DiscrepancyType.PHANTOM_INVENTORY.value

    def scan(self, scope, window):
        counts = self.store.query_cycle_counts(scope, window)
        phantoms = [c for c in counts if c.counted_qty == 0 and c.system_qty > 0]
        if not phantoms:
            return
        costs = _latest_unit_costs(self.store.query_inventory_snapshots(scope, window))

        for (sku, location), group in _group_by_location(phantoms).items():
            count = group[-1]
            yield self._finding(
                severity=cycle_count_severity(count.variance, count.variance_percent, self.config),
                sku=sku,
                location_code=location,
                expected_qty=count.system_qty,
                actual_qty=0.0,
                variance_percent=count.variance_percent,
                variance_value=count.system_qty * costs.get((sku, location), 0.0),
                description=(
                    f"Phantom inventory: system shows {count.system_qty:g} of {sku} at "
                    f"{location} but the count found none"
                ),
                evidence={
                    "cycle_count_id": count.id,
                    "system_qty": count.system_qty,
                    "counter_id": count.counter_id,
                    "count_date": _iso(count.count_date),
                    "empty_count_occurrences": len(group),
                },
            )


# ═══════════════════════════════════════════════════════════════════════════════
# 8. MIS-SLOT
# ═══════════════════════════════════════════════════════════════════════════════

class MisSlotDetector(BaseDetector):
    """
    Same SKU counted short at one location and over at another on the same day.

    A short count pairs with the first unpaired over count whose variance
    offsets it within mis_slot_tolerance. The finding is raised on the short
    location; the over location is named as the suspected slot.
    """

    detector_type = DiscrepancyType.MIS_SLOT.value

    def scan(self, scope, window):
        # Location scope would hide the offsetting count, so widen to the SKU.
        counts = self.store.query_cycle_counts(QueryScope(sku=scope.sku), window)

        by_day: Dict[Tuple[str, Any], List[CycleCountRecord]] = defaultdict(list)
        for count in counts:
            by_day[(count.sku, count.count_date.date())].append(count)

        for (sku, day), group in sorted(by_day.items()):
            shorts = [c for c in group if c.variance < 0]
            overs = [c for c in group if c.variance > 0]
            used = set()
            for short in shorts:
                if scope.location_code and short.location_code != scope.location_code:
                    continue
                missing = abs(short.variance)
                for i, over in enumerate(overs):
                    if i in used or over.location_code == short.location_code:
                        continue
                    if abs(over.variance - missing) <= self.config.mis_slot_tolerance * missing:
                        used.add(i)
                        yield self._mis_slot(short, over, day)
                        break

    def _mis_slot(self, short: CycleCountRecord, over: CycleCountRecord, day) -> Finding:
        return self._finding(
            severity=cycle_count_severity(short.variance, short.variance_percent, self.config),
            sku=short.sku,
            location_code=short.location_code,
            expected_qty=short.system_qty,
            actual_qty=short.counted_qty,
            variance_percent=short.variance_percent,
            description=(
                f"Possible mis-slot: {abs(short.variance):g} units of {short.sku} missing at "
                f"{short.location_code}, {over.variance:g} extra at {over.location_code}"
            ),
            evidence={
                "count_date": day.isoformat(),
                "suspected_location": over.location_code,
                "short_variance": short.variance,
                "offsetting_variance": over.variance,
                "short_cycle_count_id": short.id,
                "over_cycle_count_id": over.id,
            },
        )


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTOR LIST
# ═══════════════════════════════════════════════════════════════════════════════

DETECTOR_CLASSES: Dict[str, Type[BaseDetector]] = {
    cls.detector_type: cls
    for cls in (
        NegativeOnHandDetector,
        TransactionGapDetector,
        CycleCountVarianceDetector,
        AdjustmentSpikeDetector,
        DriftDetector,
        UnexplainedShortageDetector,
        UnexplainedOverageDetector,
        PhantomInventoryDetector,
        MisSlotDetector,
    )
}


def build_default_detectors(
    store: InventoryStore,
    config: Optional[TruthEngineConfig] = None
) -> List[BaseDetector]:
    """Instantiate every detector, in run order."""
    return [cls(store, config) for cls in DETECTOR_CLASSES.values()]
