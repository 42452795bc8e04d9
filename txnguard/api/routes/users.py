"""User profile and limit endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from txnguard.domains.screening.models import CustomerTier, UserProfile
from txnguard.domains.screening.service import ScreeningEngine, get_engine

router = APIRouter(prefix="/api/v1/users", tags=["users"])


class ProfileUpdateRequest(BaseModel):
    identity_verified: bool = False
    tier: CustomerTier = CustomerTier.FREE


@router.put("/{user_id}/profile")
async def update_profile(
    user_id: str,
    request: ProfileUpdateRequest,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    profile = await engine.limits_provider.set_profile(
        UserProfile(user_id=user_id, identity_verified=request.identity_verified, tier=request.tier)
    )
    return profile.model_dump(mode="json")


@router.get("/{user_id}/limits")
async def get_limits(
    user_id: str,
    engine: ScreeningEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    """Limits currently applied to the user, resolved from their profile."""
    profile = await engine.limits_provider.get_profile(user_id)
    limits = await engine.limits_provider.get_limits(user_id)
    return {
        "user_id": user_id,
        "identity_verified": profile.identity_verified,
        "tier": profile.tier.value,
        **limits.model_dump(mode="json"),
    }
