"""
Inventory Truth API

Endpoints for running detection, browsing discrepancies, investigating root
causes and the pattern/correlation views.

Error mapping:
- NotFoundError → 404
- ValidationError → 400
- ConflictError → 409
- anything else → 500
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from models import Discrepancy, Investigation
from inventory_store import (
    InventoryStore, OperatorDirectory, QueryScope, TimeWindow,
    SqlInventoryStore, SqlOperatorDirectory,
)
from inventory_truth_engine import InventoryTruthEngine
from discrepancy_registry import DiscrepancyRegistry
from investigation_builder import InvestigationBuilder
from cause_graph import build_cause_graph
from root_cause_analytics import RootCauseAnalytics
from truth_config import TruthEngineConfig
from truth_errors import ConflictError, NotFoundError, TruthEngineError, ValidationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter(
    prefix="/truth",
    tags=["inventory-truth"]
)


def get_store(db: Session = Depends(get_db)) -> InventoryStore:
    return SqlInventoryStore(db)


def get_operator_directory(db: Session = Depends(get_db)) -> OperatorDirectory:
    return SqlOperatorDirectory(db)


def get_config() -> TruthEngineConfig:
    return TruthEngineConfig.from_env()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.to_dict())
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.to_dict())
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=e.to_dict())
    logger.exception("Inventory truth request failed")
    message = e.message if isinstance(e, TruthEngineError) else str(e)
    return HTTPException(status_code=500, detail={"error_type": type(e).__name__, "message": message})


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST / RESPONSE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class AnalyzeRequest(BaseModel):
    analysis_type: str = "full"
    scope: Optional[Dict[str, Any]] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    triggered_by: str = "api"


class AssignRequest(BaseModel):
    discrepancy_id: int
    root_cause: str
    category: str
    notes: Optional[str] = None
    assigned_to: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None


class FindingResponse(BaseModel):
    type: str
    severity: str
    sku: str
    location_code: str
    expected_qty: float
    actual_qty: float
    variance: float
    variance_percent: float
    variance_value: float
    description: str
    evidence: Dict[str, Any] = {}


class AnalysisResponse(BaseModel):
    analysis_id: str
    timestamp: datetime
    analysis_type: str
    status: str
    findings: List[FindingResponse] = []
    discrepancies_created: int
    discrepancies_updated: int
    failed_detectors: List[Dict[str, Any]] = []
    execution_time_ms: float


class InvestigationResponse(BaseModel):
    id: int
    discrepancy_id: int
    root_cause: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    assigned_to: Optional[str] = None
    status: str
    confirmed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DiscrepancyResponse(BaseModel):
    id: int
    type: str
    severity: str
    sku: str
    location_code: str
    expected_qty: float
    actual_qty: float
    variance: float
    variance_percent: float
    variance_value: float
    status: str
    description: Optional[str] = None
    evidence: Dict[str, Any] = {}
    analysis_id: Optional[str] = None
    detection_count: int = 1
    detected_at: datetime
    last_seen_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    root_cause: Optional[str] = None
    root_cause_category: Optional[str] = None
    latest_investigation: Optional[InvestigationResponse] = None

    class Config:
        from_attributes = True


class DiscrepancyListResponse(BaseModel):
    discrepancies: List[DiscrepancyResponse]
    total: int
    page: int
    total_pages: int


def _investigation_response(inv: Investigation) -> InvestigationResponse:
    return InvestigationResponse(
        id=inv.id,
        discrepancy_id=inv.discrepancy_id,
        root_cause=inv.root_cause,
        category=inv.category,
        notes=inv.notes,
        assigned_to=inv.assigned_to,
        status=inv.status,
        confirmed_at=inv.confirmed_at,
        created_at=inv.created_at,
    )


def _discrepancy_response(d: Discrepancy, latest: Optional[Investigation] = None) -> DiscrepancyResponse:
    return DiscrepancyResponse(
        id=d.id,
        type=d.type,
        severity=d.severity,
        sku=d.sku,
        location_code=d.location_code,
        expected_qty=d.expected_qty,
        actual_qty=d.actual_qty,
        variance=d.variance,
        variance_percent=d.variance_percent,
        variance_value=d.variance_value,
        status=d.status,
        description=d.description,
        evidence=d.evidence_json or {},
        analysis_id=d.analysis_id,
        detection_count=d.detection_count or 1,
        detected_at=d.detected_at,
        last_seen_at=d.last_seen_at,
        resolved_at=d.resolved_at,
        root_cause=d.root_cause,
        root_cause_category=d.root_cause_category,
        latest_investigation=_investigation_response(latest) if latest else None,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTION & DISCREPANCIES
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/analyze", response_model=AnalysisResponse)
def run_analysis(
    request: AnalyzeRequest,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    config: TruthEngineConfig = Depends(get_config)
):
    """
    Run the detector bank ("full") or a single detector and register findings.

    Detector failures are reported in failed_detectors, not as an error.
    """
    try:
        if (request.window_start is None) != (request.window_end is None):
            raise ValidationError("window_start and window_end must be given together")
        window = None
        if request.window_start is not None:
            window = TimeWindow(start=request.window_start, end=request.window_end)

        engine = InventoryTruthEngine(db, store=store, config=config)
        result = engine.run_analysis(
            analysis_type=request.analysis_type,
            scope=request.scope,
            window=window,
            triggered_by=request.triggered_by,
        )
        return AnalysisResponse(
            analysis_id=result.analysis_id,
            timestamp=result.timestamp,
            analysis_type=result.analysis_type,
            status=result.status,
            findings=[FindingResponse(**f.to_dict()) for f in result.findings],
            discrepancies_created=result.discrepancies_created,
            discrepancies_updated=result.discrepancies_updated,
            failed_detectors=result.failed_detectors,
            execution_time_ms=result.execution_time_ms,
        )
    except Exception as e:
        raise _http_error(e)


@router.get("/discrepancies", response_model=DiscrepancyListResponse)
def list_discrepancies(
    discrepancy_type: Optional[str] = Query(None, alias="type"),
    severity: Optional[str] = None,
    status: Optional[str] = "OPEN",
    sku: Optional[str] = None,
    location_code: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    sort_by: str = "severity",
    sort_order: str = "desc",
    db: Session = Depends(get_db)
):
    """List discrepancies with their latest investigation. status=OPEN by default."""
    try:
        registry = DiscrepancyRegistry(db)
        page = registry.list_discrepancies(
            filters={
                "type": discrepancy_type,
                "severity": severity,
                "status": status or None,
                "sku": sku,
                "location_code": location_code,
            },
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        return DiscrepancyListResponse(
            discrepancies=[
                _discrepancy_response(d, registry.latest_investigation(d.id))
                for d in page["discrepancies"]
            ],
            total=page["total"],
            page=page["page"],
            total_pages=page["total_pages"],
        )
    except Exception as e:
        raise _http_error(e)


@router.get("/discrepancies/{discrepancy_id}/investigations", response_model=List[InvestigationResponse])
def list_investigations(discrepancy_id: int, db: Session = Depends(get_db)):
    """Investigation history for a discrepancy, newest first."""
    try:
        registry = DiscrepancyRegistry(db)
        return [_investigation_response(i) for i in registry.list_investigations(discrepancy_id)]
    except Exception as e:
        raise _http_error(e)


@router.post("/assign", response_model=InvestigationResponse)
def assign_root_cause(request: AssignRequest, db: Session = Depends(get_db)):
    """Confirm a root cause; an OPEN discrepancy moves to INVESTIGATED."""
    try:
        registry = DiscrepancyRegistry(db)
        investigation = registry.create_investigation(
            request.discrepancy_id,
            root_cause=request.root_cause,
            category=request.category,
            notes=request.notes,
            assigned_to=request.assigned_to,
        )
        return _investigation_response(investigation)
    except Exception as e:
        raise _http_error(e)


@router.post("/resolve/{discrepancy_id}", response_model=DiscrepancyResponse)
def resolve_discrepancy(
    discrepancy_id: int,
    request: Optional[ResolveRequest] = None,
    db: Session = Depends(get_db)
):
    """Move an INVESTIGATED discrepancy to RESOLVED."""
    try:
        request = request or ResolveRequest()
        registry = DiscrepancyRegistry(db)
        discrepancy = registry.resolve_discrepancy(
            discrepancy_id,
            resolution_notes=request.resolution_notes,
            resolved_by=request.resolved_by,
        )
        return _discrepancy_response(discrepancy, registry.latest_investigation(discrepancy.id))
    except Exception as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════════════
# REPORTING
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/dashboard")
def get_dashboard(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    config: TruthEngineConfig = Depends(get_config)
) -> Dict[str, Any]:
    try:
        engine = InventoryTruthEngine(db, store=store, config=config)
        return engine.get_truth_summary(date_from=date_from, date_to=date_to)
    except Exception as e:
        raise _http_error(e)


@router.get("/reconciliation")
def get_reconciliation(
    current_date: date,
    previous_date: Optional[date] = None,
    sku: Optional[str] = None,
    location_code: Optional[str] = None,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    config: TruthEngineConfig = Depends(get_config)
) -> Dict[str, Any]:
    """Compare the snapshots of two days."""
    try:
        engine = InventoryTruthEngine(db, store=store, config=config)
        return engine.reconcile_snapshot_dates(
            current_date,
            previous_date,
            scope=QueryScope(sku=sku, location_code=location_code),
        )
    except Exception as e:
        raise _http_error(e)


@router.get("/drift")
def get_drift(
    sku: Optional[str] = None,
    location_code: Optional[str] = None,
    days: int = 30,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    config: TruthEngineConfig = Depends(get_config)
) -> Dict[str, Any]:
    try:
        engine = InventoryTruthEngine(db, store=store, config=config)
        return engine.analyze_drift(sku=sku, location_code=location_code, days=days)
    except Exception as e:
        raise _http_error(e)


@router.get("/hotspots")
def get_hotspots(
    kind: str = Query("location", alias="type"),
    limit: int = 20,
    days: int = 30,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    config: TruthEngineConfig = Depends(get_config)
) -> List[Dict[str, Any]]:
    try:
        engine = InventoryTruthEngine(db, store=store, config=config)
        return engine.get_hotspots(kind=kind, limit=limit, days=days)
    except Exception as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════════════════════════════════
# ROOT CAUSE
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/investigate/{discrepancy_id}")
def investigate(
    discrepancy_id: int,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    directory: OperatorDirectory = Depends(get_operator_directory),
    config: TruthEngineConfig = Depends(get_config)
) -> Dict[str, Any]:
    """Full investigation dossier: timeline, ranked causes, recommendations."""
    try:
        builder = InvestigationBuilder(DiscrepancyRegistry(db), store, directory, config)
        return builder.investigate(discrepancy_id).to_dict()
    except Exception as e:
        raise _http_error(e)


@router.get("/graph/{discrepancy_id}")
def get_cause_graph(
    discrepancy_id: int,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store),
    directory: OperatorDirectory = Depends(get_operator_directory),
    config: TruthEngineConfig = Depends(get_config)
) -> Dict[str, Any]:
    """Cause graph for visualization, with the dossier it was built from."""
    try:
        builder = InvestigationBuilder(DiscrepancyRegistry(db), store, directory, config)
        dossier = builder.investigate(discrepancy_id)
        return {**build_cause_graph(dossier).to_dict(), "investigation": dossier.to_dict()}
    except Exception as e:
        raise _http_error(e)


@router.get("/patterns")
def get_patterns(
    days: int = 30,
    min_occurrences: int = 3,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        return RootCauseAnalytics(db, store).find_patterns(days=days, min_occurrences=min_occurrences)
    except Exception as e:
        raise _http_error(e)


@router.get("/correlations")
def get_correlations(
    dimension: str = "location",
    window_hours: float = 24,
    min_co_occurrences: int = 3,
    limit: int = 20,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store)
) -> List[Dict[str, Any]]:
    try:
        return RootCauseAnalytics(db, store).find_correlations(
            dimension=dimension,
            window_hours=window_hours,
            min_co_occurrences=min_co_occurrences,
            limit=limit,
        )
    except Exception as e:
        raise _http_error(e)


@router.get("/operator-analysis/{user_id}")
def get_operator_analysis(
    user_id: str,
    days: int = 30,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        return RootCauseAnalytics(db, store).analyze_operator(user_id, days=days)
    except Exception as e:
        raise _http_error(e)


@router.get("/location-analysis/{location_code}")
def get_location_analysis(
    location_code: str,
    days: int = 30,
    db: Session = Depends(get_db),
    store: InventoryStore = Depends(get_store)
) -> Dict[str, Any]:
    try:
        return RootCauseAnalytics(db, store).analyze_location(location_code, days=days)
    except Exception as e:
        raise _http_error(e)
