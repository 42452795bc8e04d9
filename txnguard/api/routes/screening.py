"""Transaction screening endpoints, single and batch."""

import asyncio
from collections import Counter

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from txnguard.domains.screening.models import ComplianceResult, Decision, Transaction
from txnguard.domains.screening.orchestrator import validate_transaction
from txnguard.domains.screening.service import ScreeningEngine, get_engine

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/screening", tags=["screening"])


class BatchScreeningRequest(BaseModel):
    transactions: list[Transaction] = Field(min_length=1, max_length=500)


class BatchSummary(BaseModel):
    total: int
    approved: int
    review: int
    blocked: int
    requires_reporting: int
    top_flags: list[str]


class BatchScreeningResponse(BaseModel):
    results: list[ComplianceResult]
    summary: BatchSummary


def summarize(results: list[ComplianceResult], top_n: int = 5) -> BatchSummary:
    flag_counts = Counter(flag for r in results for flag in r.flags)
    # Ties broken alphabetically so the summary is stable across runs
    ranked = sorted(flag_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return BatchSummary(
        total=len(results),
        approved=sum(1 for r in results if r.decision == Decision.APPROVE),
        review=sum(1 for r in results if r.decision == Decision.REVIEW),
        blocked=sum(1 for r in results if r.decision == Decision.BLOCK),
        requires_reporting=sum(1 for r in results if r.requires_reporting),
        top_flags=[flag for flag, _ in ranked[:top_n]],
    )


@router.post("")
async def screen_transaction(
    transaction: Transaction,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    """Screen one transaction and return the compliance decision."""
    result = await engine.orchestrator.screen(transaction)
    return result.model_dump(mode="json")


@router.post("/batch")
async def screen_batch(
    request: BatchScreeningRequest,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    """Screen a batch concurrently.

    The whole batch is rejected before any screening starts if one
    transaction is invalid, so no side effects fire for a rejected batch.
    """
    for transaction in request.transactions:
        validate_transaction(transaction)

    results = await asyncio.gather(
        *(engine.orchestrator.screen(t) for t in request.transactions)
    )
    response = BatchScreeningResponse(results=list(results), summary=summarize(list(results)))
    logger.info(
        "batch_screened",
        total=response.summary.total,
        approved=response.summary.approved,
        review=response.summary.review,
        blocked=response.summary.blocked,
    )
    return response.model_dump(mode="json")
