"""
Discrepancy Registry

Deduplicates and persists Findings as Discrepancy rows, and owns the
discrepancy lifecycle:

    OPEN ──(investigation confirmed)──► INVESTIGATED ──(resolved)──► RESOLVED

Deduplication key is (sku, location_code, type) while OPEN. The key is
materialised in Discrepancy.open_key under a UNIQUE constraint, so two
overlapping runs cannot both insert the same problem: the loser gets an
IntegrityError, rolls back, and updates the winner instead.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import math

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Discrepancy, Investigation, DiscrepancyStatus, DiscrepancyType,
    InvestigationStatus, RootCauseCategory, Severity, utcnow,
)
from detectors import Finding
from truth_errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


STATUS_ORDER = [
    DiscrepancyStatus.OPEN.value,
    DiscrepancyStatus.INVESTIGATED.value,
    DiscrepancyStatus.RESOLVED.value,
]

SORTABLE_FIELDS = {
    "id": Discrepancy.id,
    "severity": None,  # ranked, see _order_clause
    "type": Discrepancy.type,
    "status": Discrepancy.status,
    "sku": Discrepancy.sku,
    "location_code": Discrepancy.location_code,
    "variance": Discrepancy.variance,
    "variance_percent": Discrepancy.variance_percent,
    "variance_value": Discrepancy.variance_value,
    "detected_at": Discrepancy.detected_at,
    "last_seen_at": Discrepancy.last_seen_at,
    "created_at": Discrepancy.created_at,
}

FILTER_KEYS = ("type", "severity", "status", "sku", "location_code", "date_from", "date_to")

MAX_PAGE_SIZE = 1000


@dataclass
class RegistryResult:
    discrepancy: Discrepancy
    created: bool


# ═══════════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═══════════════════════════════════════════════════════════════════════════════

class DiscrepancyRegistry:
    """
    Persistence and lifecycle for discrepancies and investigations.
    """

    def __init__(self, db: Session):
        self.db = db

    # ───────────────────────────────────────────────────────────────────────────
    # Recording findings
    # ───────────────────────────────────────────────────────────────────────────

    def record(self, finding: Finding, analysis_id: Optional[str] = None) -> RegistryResult:
        """
        Register a finding.

        Updates the OPEN discrepancy with the same (sku, location, type) in
        place, or inserts a new OPEN one.

        Returns:
            RegistryResult; created is True only for a new row
        """
        existing = self.find_open_discrepancy(finding.sku, finding.location_code, finding.type)
        if existing is not None:
            self._refresh(existing, finding, analysis_id)
            self.db.commit()
            return RegistryResult(discrepancy=existing, created=False)

        now = utcnow()
        discrepancy = Discrepancy(
            type=finding.type,
            severity=finding.severity.value,
            sku=finding.sku,
            location_code=finding.location_code,
            expected_qty=finding.expected_qty,
            actual_qty=finding.actual_qty,
            variance=finding.variance,
            variance_percent=finding.variance_percent,
            variance_value=finding.variance_value or 0.0,
            status=DiscrepancyStatus.OPEN.value,
            description=finding.description,
            evidence_json=finding.evidence,
            open_key=Discrepancy.build_open_key(finding.sku, finding.location_code, finding.type),
            analysis_id=analysis_id,
            detection_count=1,
            detected_at=now,
            last_seen_at=now,
        )
        self.db.add(discrepancy)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            winner = self.find_open_discrepancy(finding.sku, finding.location_code, finding.type)
            if winner is None:
                # No competing open record, so a column constraint rejected the finding
                raise ValidationError(
                    "Finding violates a discrepancy constraint",
                    {"open_key": discrepancy.open_key, "error": str(e.orig)}
                ) from e
            # Another run inserted the same open key first
            logger.warning(
                f"Recovered registry race for {winner.open_key}, updating discrepancy {winner.id}"
            )
            self._refresh(winner, finding, analysis_id)
            self.db.commit()
            return RegistryResult(discrepancy=winner, created=False)

        self.db.refresh(discrepancy)
        logger.info(
            f"Created discrepancy {discrepancy.id}: {finding.type} "
            f"{finding.sku}@{finding.location_code} ({finding.severity.value})"
        )
        return RegistryResult(discrepancy=discrepancy, created=True)

    upsert_discrepancy = record

    def _refresh(self, discrepancy: Discrepancy, finding: Finding, analysis_id: Optional[str]) -> None:
        """Overwrite evidence and quantities with the latest finding; detected_at is kept."""
        discrepancy.severity = finding.severity.value
        discrepancy.expected_qty = finding.expected_qty
        discrepancy.actual_qty = finding.actual_qty
        discrepancy.variance = finding.variance
        discrepancy.variance_percent = finding.variance_percent
        discrepancy.variance_value = finding.variance_value or 0.0
        discrepancy.description = finding.description
        discrepancy.evidence_json = finding.evidence
        discrepancy.detection_count = (discrepancy.detection_count or 1) + 1
        discrepancy.last_seen_at = utcnow()
        if analysis_id:
            discrepancy.analysis_id = analysis_id

    # ───────────────────────────────────────────────────────────────────────────
    # Queries
    # ───────────────────────────────────────────────────────────────────────────

    def find_open_discrepancy(self, sku: str, location_code: str, discrepancy_type: str) -> Optional[Discrepancy]:
        return self.db.query(Discrepancy).filter(
            Discrepancy.sku == sku,
            Discrepancy.location_code == location_code,
            Discrepancy.type == discrepancy_type,
            Discrepancy.status == DiscrepancyStatus.OPEN.value,
        ).first()

    def get_discrepancy(self, discrepancy_id: int) -> Discrepancy:
        discrepancy = self.db.query(Discrepancy).filter(Discrepancy.id == discrepancy_id).first()
        if discrepancy is None:
            raise NotFoundError(f"Discrepancy {discrepancy_id} not found", {"discrepancy_id": discrepancy_id})
        return discrepancy

    def list_discrepancies(
        self,
        filters: Optional[Dict[str, Any]] = None,
        sort_by: str = "severity",
        sort_order: str = "desc",
        limit: int = 100,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        Filtered, sorted page of discrepancies.

        Args:
            filters: any of type, severity, status, sku, location_code,
                date_from, date_to (on detected_at)
            sort_by: one of SORTABLE_FIELDS; severity sorts by rank
            sort_order: asc or desc
            limit: page size (1..1000)
            offset: rows to skip

        Returns:
            {"discrepancies": [Discrepancy], "total", "page", "total_pages"}
        """
        if not isinstance(limit, int) or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit})
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be non-negative", {"offset": offset})

        query = self._filtered_query(filters)
        total = query.count()
        rows = query.order_by(
            self._order_clause(sort_by, sort_order),
            Discrepancy.id.desc() if sort_order == "desc" else Discrepancy.id.asc(),
        ).offset(offset).limit(limit).all()

        return {
            "discrepancies": rows,
            "total": total,
            "page": offset // limit + 1,
            "total_pages": math.ceil(total / limit),
        }

    def count_discrepancies(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return self._filtered_query(filters).count()

    def count_open_at_location(self, location_code: str, exclude_id: Optional[int] = None) -> int:
        query = self.db.query(Discrepancy).filter(
            Discrepancy.location_code == location_code,
            Discrepancy.status == DiscrepancyStatus.OPEN.value,
        )
        if exclude_id is not None:
            query = query.filter(Discrepancy.id != exclude_id)
        return query.count()

    def count_open_for_sku(self, sku: str, exclude_id: Optional[int] = None) -> int:
        query = self.db.query(Discrepancy).filter(
            Discrepancy.sku == sku,
            Discrepancy.status == DiscrepancyStatus.OPEN.value,
        )
        if exclude_id is not None:
            query = query.filter(Discrepancy.id != exclude_id)
        return query.count()

    def _filtered_query(self, filters: Optional[Dict[str, Any]]):
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        unknown = sorted(set(filters) - set(FILTER_KEYS))
        if unknown:
            raise ValidationError(f"Unsupported filters: {', '.join(unknown)}", {"allowed": list(FILTER_KEYS)})

        _check_member("type", filters.get("type"), DiscrepancyType)
        _check_member("severity", filters.get("severity"), Severity)
        _check_member("status", filters.get("status"), DiscrepancyStatus)

        query = self.db.query(Discrepancy)
        for key in ("type", "severity", "status", "sku", "location_code"):
            if key in filters:
                query = query.filter(getattr(Discrepancy, key) == filters[key])
        if "date_from" in filters:
            query = query.filter(Discrepancy.detected_at >= _as_datetime("date_from", filters["date_from"]))
        if "date_to" in filters:
            query = query.filter(Discrepancy.detected_at <= _as_datetime("date_to", filters["date_to"]))
        return query

    def _order_clause(self, sort_by: str, sort_order: str):
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Unsupported sort field: {sort_by}", {"allowed": sorted(SORTABLE_FIELDS)})
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Unsupported sort order: {sort_order}", {"allowed": ["asc", "desc"]})

        if sort_by == "severity":
            column = case(
                {member.value: member.rank for member in Severity},
                value=Discrepancy.severity,
                else_=-1,
            )
        else:
            column = SORTABLE_FIELDS[sort_by]
        return column.desc() if sort_order == "desc" else column.asc()

    # ───────────────────────────────────────────────────────────────────────────
    # Investigations
    # ───────────────────────────────────────────────────────────────────────────

    def create_investigation(
        self,
        discrepancy_id: int,
        root_cause: str,
        category: str,
        notes: Optional[str] = None,
        assigned_to: Optional[str] = None
    ) -> Investigation:
        """
        Record a confirmed root cause.

        Moves an OPEN discrepancy to INVESTIGATED and stamps root cause and
        category on it. A RESOLVED discrepancy keeps its status.
        """
        if not root_cause:
            raise ValidationError("root_cause is required")
        _check_member("category", category, RootCauseCategory)

        discrepancy = self.get_discrepancy(discrepancy_id)
        now = utcnow()

        investigation = Investigation(
            discrepancy_id=discrepancy.id,
            root_cause=root_cause,
            category=category,
            notes=notes,
            assigned_to=assigned_to,
            status=InvestigationStatus.CONFIRMED.value,
            confirmed_at=now,
            created_at=now,
        )
        self.db.add(investigation)

        discrepancy.root_cause = root_cause
        discrepancy.root_cause_category = category
        if discrepancy.status == DiscrepancyStatus.OPEN.value:
            self._advance(discrepancy, DiscrepancyStatus.INVESTIGATED.value)

        self.db.commit()
        self.db.refresh(investigation)
        logger.info(
            f"Investigation {investigation.id} confirmed for discrepancy {discrepancy.id}: "
            f"{category} ({discrepancy.status})"
        )
        return investigation

    def resolve_discrepancy(
        self,
        discrepancy_id: int,
        resolution_notes: Optional[str] = None,
        resolved_by: Optional[str] = None
    ) -> Discrepancy:
        """
        Advance INVESTIGATED → RESOLVED. Resolving twice is a no-op.

        An OPEN discrepancy must be investigated first.
        """
        discrepancy = self.get_discrepancy(discrepancy_id)
        if discrepancy.status == DiscrepancyStatus.RESOLVED.value:
            return discrepancy

        self._advance(discrepancy, DiscrepancyStatus.RESOLVED.value)
        now = utcnow()
        discrepancy.resolved_at = now
        self.db.add(Investigation(
            discrepancy_id=discrepancy.id,
            root_cause=discrepancy.root_cause,
            category=discrepancy.root_cause_category,
            notes=resolution_notes,
            assigned_to=resolved_by,
            status=InvestigationStatus.RESOLUTION.value,
            confirmed_at=now,
            created_at=now,
        ))
        self.db.commit()
        self.db.refresh(discrepancy)
        logger.info(f"Discrepancy {discrepancy.id} resolved")
        return discrepancy

    def list_investigations(self, discrepancy_id: int) -> List[Investigation]:
        """Investigation history, newest first."""
        self.get_discrepancy(discrepancy_id)
        return self.db.query(Investigation).filter(
            Investigation.discrepancy_id == discrepancy_id
        ).order_by(Investigation.created_at.desc(), Investigation.id.desc()).all()

    def latest_investigation(self, discrepancy_id: int) -> Optional[Investigation]:
        return self.db.query(Investigation).filter(
            Investigation.discrepancy_id == discrepancy_id
        ).order_by(Investigation.created_at.desc(), Investigation.id.desc()).first()

    def _advance(self, discrepancy: Discrepancy, target: str) -> None:
        """Move status forward exactly one step."""
        current = STATUS_ORDER.index(discrepancy.status)
        wanted = STATUS_ORDER.index(target)
        if wanted != current + 1:
            raise ValidationError(
                f"Cannot move discrepancy {discrepancy.id} from {discrepancy.status} to {target}",
                {"current_status": discrepancy.status, "requested_status": target}
            )
        discrepancy.status = target
        # Leaving OPEN frees the key for a fresh record
        discrepancy.open_key = None


def _check_member(name: str, value: Optional[str], enum_cls) -> None:
    if value is None:
        return
    allowed = [m.value for m in enum_cls]
    if value not in allowed:
        raise ValidationError(f"Unsupported {name}: {value}", {"allowed": allowed})


def _as_datetime(name: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"{name} must be an ISO date", {name: value}) from e
