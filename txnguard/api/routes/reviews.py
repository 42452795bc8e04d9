"""Manual review queue endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from txnguard.domains.screening.review_queue import Disposition, ReviewStatus
from txnguard.domains.screening.service import ScreeningEngine, get_engine

router = APIRouter(prefix="/api/v1/reviews", tags=["reviews"])


class ReviewResolveRequest(BaseModel):
    disposition: Disposition
    reviewer: str
    notes: str | None = None


@router.get("")
async def list_reviews(
    status: ReviewStatus | None = None,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    items = await engine.review_queue.list(status)
    return {"items": [i.model_dump(mode="json") for i in items], "total": len(items)}


@router.get("/{transaction_id}")
async def get_review(
    transaction_id: str,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    item = await engine.review_queue.get(transaction_id)
    return item.model_dump(mode="json")


@router.put("/{transaction_id}")
async def resolve_review(
    transaction_id: str,
    request: ReviewResolveRequest,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    """Record the reviewer's disposition. A resolved item cannot be resolved again."""
    item = await engine.review_queue.resolve(
        transaction_id, request.disposition, request.reviewer, request.notes
    )
    return item.model_dump(mode="json")
