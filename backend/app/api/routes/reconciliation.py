from fastapi import APIRouter, Depends
from sqlmodel import Session

from app.api.deps import get_db, require_admin
from app.models.user import User
from app.schemas.reconciliation import ReconciliationReportRead, ReconciliationRunRequest
from app.services.engine import SigningEngine

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/run", response_model=ReconciliationReportRead)
def run_reconciliation(
    payload: ReconciliationRunRequest | None = None,
    session: Session = Depends(get_db),
    _: User = Depends(require_admin),
) -> ReconciliationReportRead:
    report = SigningEngine(session).run_reconciliation_sweep(payload.now if payload else None)
    return ReconciliationReportRead.model_validate(report, from_attributes=True)
