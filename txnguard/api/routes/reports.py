"""Regulatory report outbox endpoints."""

from fastapi import APIRouter, Depends

from txnguard.domains.screening.reporting import ReportStatus
from txnguard.domains.screening.service import ScreeningEngine, get_engine

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.get("")
async def list_reports(
    status: ReportStatus | None = None,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    reports = await engine.reporting.outbox.list(status)
    return {"items": [r.to_dict() for r in reports], "total": len(reports)}


@router.get("/{transaction_id}")
async def get_report(
    transaction_id: str,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    report = await engine.reporting.outbox.get(transaction_id)
    if report is None:
        raise KeyError(f"No report for transaction {transaction_id}")
    return report.to_dict()
