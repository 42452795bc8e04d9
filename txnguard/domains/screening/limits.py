"""Per-transaction, daily and monthly volume limits.

A breach is not evidence of a crime, so on its own it only raises the
transaction to MEDIUM; other checks decide whether it goes higher.
"""

import asyncio
from typing import Protocol

import structlog

from .config import ScreeningConfig, default_config
from .models import (
    CustomerTier,
    Flag,
    LimitCheckResult,
    RiskLevel,
    Transaction,
    UserLimits,
    UserProfile,
)
from .window import TransactionWindow

logger = structlog.get_logger()


class UserLimitsProvider(Protocol):
    async def get_limits(self, user_id: str) -> UserLimits: ...


class InMemoryUserLimitsProvider:
    """Resolves limits from each user's identity status and tier.

    Stands in for the external limits-configuration service. Unknown users
    are treated as unverified free-tier customers.
    """

    def __init__(self, config: ScreeningConfig | None = None) -> None:
        self.config = config or default_config
        self._profiles: dict[str, UserProfile] = {}
        self._lock = asyncio.Lock()

    async def set_profile(self, profile: UserProfile) -> UserProfile:
        async with self._lock:
            self._profiles[profile.user_id] = profile
        logger.info(
            "user_profile_updated",
            user_id=profile.user_id,
            identity_verified=profile.identity_verified,
            tier=profile.tier.value,
        )
        return profile

    async def get_profile(self, user_id: str) -> UserProfile:
        async with self._lock:
            profile = self._profiles.get(user_id)
        return profile or UserProfile(user_id=user_id)

    async def get_limits(self, user_id: str) -> UserLimits:
        return limits_for_profile(await self.get_profile(user_id), self.config)


def limits_for_profile(profile: UserProfile, config: ScreeningConfig = default_config) -> UserLimits:
    lc = config.limits
    if not profile.identity_verified:
        return lc.unverified_limits
    return lc.tier_limits.get(profile.tier.value, lc.tier_limits[CustomerTier.FREE.value])


class LimitEnforcer:
    async def check_limits(
        self,
        transaction: Transaction,
        window: TransactionWindow,
        user_limits: UserLimits,
    ) -> LimitCheckResult:
        amount = transaction.amount
        within_single = amount <= user_limits.single_transaction_limit
        within_daily = window.sum_24h + amount <= user_limits.daily_limit
        within_monthly = window.sum_30d + amount <= user_limits.monthly_limit

        flags: set[str] = set()
        if not within_single:
            flags.add(Flag.SINGLE_TRANSACTION_LIMIT_EXCEEDED.value)
        if not within_daily:
            flags.add(Flag.DAILY_LIMIT_EXCEEDED.value)
        if not within_monthly:
            flags.add(Flag.MONTHLY_LIMIT_EXCEEDED.value)

        if flags:
            logger.info(
                "limits_exceeded",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                flags=sorted(flags),
                daily_total=str(window.sum_24h + amount),
                monthly_total=str(window.sum_30d + amount),
            )

        return LimitCheckResult(
            within_single=within_single,
            within_daily=within_daily,
            within_monthly=within_monthly,
            risk_level=RiskLevel.MEDIUM if flags else RiskLevel.LOW,
            flags=frozenset(flags),
        )
