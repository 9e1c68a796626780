import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from circdesk import errors
from circdesk.circulation import CirculationEngine
from circdesk.config import configure_logging, settings
from circdesk.database import get_db_connection, initialize_database
from circdesk.settings_store import LibrarySettings
from circdesk.statistics import StatisticsRecorder

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    initialize_database()
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)


# --- Dependencies ---
@lru_cache(maxsize=1)
def get_library_settings() -> LibrarySettings:
    return LibrarySettings()


def get_engine(library_settings: LibrarySettings = Depends(get_library_settings)) -> CirculationEngine:
    return CirculationEngine(policy=library_settings, statistics=StatisticsRecorder(library_settings=library_settings))


# --- Error mapping ---
_STATUS_BY_ERROR = (
    (errors.NotFoundError, 404),
    (errors.PolicyBlockedError, 403),
    (errors.InvalidStateError, 409),
    (errors.AlreadyInProgressError, 409),
    (errors.ValidationError, 422),
    (errors.StorageError, 500),
)


def status_for(error: errors.CirculationError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 400


@app.exception_handler(errors.CirculationError)
async def circulation_error_handler(request: Request, exc: errors.CirculationError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


# --- Models ---
class BorrowRequest(BaseModel):
    patron_id: int
    asset_code: str
    processed_by: Optional[str] = None


class AssetCodeRequest(BaseModel):
    asset_code: str


class WaiveRequest(BaseModel):
    reason: str


class SettingsUpdate(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


class LoanModel(BaseModel):
    id: int
    patron_id: int
    patron_class: str
    asset_id: int
    borrowed_at: str
    due_date: str
    returned_at: Optional[str] = None
    penalty_amount: str
    payment_status: Optional[str] = None
    payment_date: Optional[str] = None
    remarks: Optional[str] = None


class ClearanceModel(BaseModel):
    patron_id: int
    patron_class: str
    pending_fines: str
    accrued_fines: str
    total_owed: str
    active_loans: int
    max_loans: int
    overdue_loan_ids: List[int]
    unsettled_lost_loan_ids: List[int]
    is_cleared: bool
    block_reasons: List[str]


# --- Health ---
@app.get("/health")
async def health():
    """Lightweight health endpoint with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "version": settings.app_version,
        "db": db_ok,
        "services": {"google_books": settings.enable_google_books},
    }


# --- Circulation ---
@app.post("/loans/borrow")
def borrow(payload: BorrowRequest, engine: CirculationEngine = Depends(get_engine)):
    return engine.borrow(payload.patron_id, payload.asset_code, processed_by=payload.processed_by).to_dict()


@app.post("/loans/return")
def return_asset(payload: AssetCodeRequest, engine: CirculationEngine = Depends(get_engine)):
    return engine.return_asset(payload.asset_code).to_dict()


@app.post("/loans/lost")
def mark_lost(payload: AssetCodeRequest, engine: CirculationEngine = Depends(get_engine)):
    return engine.mark_lost(payload.asset_code).to_dict()


@app.get("/loans/overdue")
def overdue_loans(engine: CirculationEngine = Depends(get_engine)):
    return [item.to_dict() for item in engine.overdue_loans()]


@app.get("/loans", response_model=List[LoanModel])
def loan_history(
    patron_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    engine: CirculationEngine = Depends(get_engine),
):
    return [loan.to_dict() for loan in engine.loan_history(patron_id, limit)]


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.get_loan(loan_id).to_dict()


@app.post("/loans/{loan_id}/pay", response_model=LoanModel)
def pay(loan_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.pay(loan_id).to_dict()


@app.post("/loans/{loan_id}/waive", response_model=LoanModel)
def waive(loan_id: int, payload: WaiveRequest, engine: CirculationEngine = Depends(get_engine)):
    return engine.waive(loan_id, payload.reason).to_dict()


@app.post("/loans/{loan_id}/unpay", response_model=LoanModel)
def unpay(loan_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.unpay(loan_id).to_dict()


# --- Inventory ---
@app.get("/assets/{asset_code}")
def lookup_asset(asset_code: str, engine: CirculationEngine = Depends(get_engine)):
    return engine.lookup_asset(asset_code)


@app.post("/assets/{asset_id}/damaged")
def mark_damaged(asset_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.mark_damaged(asset_id).to_dict()


@app.post("/assets/{asset_id}/repair")
def repair(asset_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.repair(asset_id).to_dict()


@app.post("/assets/{asset_id}/restore")
def restore_from_lost(asset_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.restore_from_lost(asset_id).to_dict()


# --- Patrons ---
@app.get("/patrons/{patron_id}/clearance", response_model=ClearanceModel)
def clearance(patron_id: int, engine: CirculationEngine = Depends(get_engine)):
    return engine.evaluate_clearance(patron_id).to_dict()


@app.get("/patrons/{patron_id}/fines")
def patron_fines(patron_id: int, engine: CirculationEngine = Depends(get_engine)):
    fines, total = engine.patron_fines(patron_id)
    return {"patron_id": patron_id, "total": str(total), "fines": [loan.to_dict() for loan in fines]}


# --- Settings ---
@app.get("/settings")
def read_settings(library_settings: LibrarySettings = Depends(get_library_settings)):
    return library_settings.all_settings()


@app.put("/settings")
def update_settings(payload: SettingsUpdate, library_settings: LibrarySettings = Depends(get_library_settings)):
    if not payload.values:
        raise HTTPException(status_code=422, detail="Provide at least one setting to update.")
    unknown = [key for key in payload.values if key not in library_settings.all_settings()]
    if unknown:
        raise HTTPException(status_code=404, detail=f"Unknown settings: {', '.join(sorted(unknown))}")
    updated = library_settings.bulk_update(payload.values)
    return {"updated": updated, "settings": library_settings.simple_settings()}
