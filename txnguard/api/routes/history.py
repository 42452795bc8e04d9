"""Transaction history ingestion.

Screening reads history but never writes it: the payment collaborator
records a transaction here once it has settled.
"""

from fastapi import APIRouter, Depends

from txnguard.domains.screening.models import Transaction
from txnguard.domains.screening.orchestrator import validate_transaction
from txnguard.domains.screening.service import ScreeningEngine, get_engine

router = APIRouter(prefix="/api/v1/history", tags=["history"])


@router.post("/transactions", status_code=201)
async def record_transaction(
    transaction: Transaction,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    validate_transaction(transaction)
    await engine.window_store.record(transaction)
    return {"transaction_id": transaction.transaction_id, "recorded": True}
