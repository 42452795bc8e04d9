"""Sanctions screening across pluggable denylist providers.

Every provider exposes the same capability: a ``name``, the ``flag`` raised
when it matches, and ``async screen(transaction) -> list[SanctionsMatch]``.
The screener queries all providers concurrently and aggregates:

  - a match above the acceptance threshold on any list -> BLOCKED, report required
  - no matches anywhere              -> LOW
  - a provider failed, nothing matched elsewhere -> SanctionsProviderError,
    which the orchestrator turns into fail-closed HIGH (an unavailable list is
    a failure to verify, not evidence of a match)

Each provider runs under its own deadline, shorter than the orchestrator's
per-check deadline. A provider that overruns it counts as failed.

Providers here compare normalized names only; fuzzy name matching belongs to
the list services themselves.
"""

import asyncio
import re
from collections.abc import Iterable
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from .config import ScreeningConfig, default_config
from .errors import SanctionsProviderError
from .models import Flag, RiskLevel, SanctionsMatch, SanctionsResult, Transaction

logger = structlog.get_logger()

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")

# Share of the per-check deadline a single provider may use
PROVIDER_DEADLINE_SHARE = 0.8


def normalize_name(name: str) -> str:
    """Lowercase, drop punctuation, and collapse whitespace."""
    return _SPACES.sub(" ", _NON_WORD.sub(" ", name.lower())).strip()


def screened_parties(transaction: Transaction) -> list[tuple[str, str]]:
    """(role, name) pairs for every named party on the transaction."""
    parties = [("beneficiary", transaction.beneficiary)]
    if transaction.payer_name:
        parties.insert(0, ("payer", transaction.payer_name))
    return [(role, name) for role, name in parties if name and name.strip()]


class SanctionsListProvider(Protocol):
    name: str
    flag: str

    async def screen(self, transaction: Transaction) -> list[SanctionsMatch]: ...


class StaticListProvider:
    """A denylist held in memory (e.g. a nightly OFAC SDN export)."""

    def __init__(self, name: str, entries: Iterable[str]) -> None:
        self.name = name
        self.flag = f"{name}_SANCTIONS_MATCH"
        self._exact: dict[str, str] = {}
        self._reordered: dict[str, str] = {}
        for entry in entries:
            normalized = normalize_name(entry)
            if not normalized:
                continue
            self._exact[normalized] = entry
            self._reordered[" ".join(sorted(normalized.split()))] = entry

    async def screen(self, transaction: Transaction) -> list[SanctionsMatch]:
        matches: list[SanctionsMatch] = []
        for role, name in screened_parties(transaction):
            normalized = normalize_name(name)
            if normalized in self._exact:
                matches.append(
                    SanctionsMatch(
                        list_name=self.name,
                        matched_name=self._exact[normalized],
                        party=role,
                        confidence=1.0,
                    )
                )
                continue
            # Same tokens in a different order ("Ahmad Mohammad" / "Mohammad Ahmad")
            reordered = " ".join(sorted(normalized.split()))
            if reordered in self._reordered:
                matches.append(
                    SanctionsMatch(
                        list_name=self.name,
                        matched_name=self._reordered[reordered],
                        party=role,
                        confidence=0.9,
                    )
                )
        return matches


class SanctionedJurisdictionProvider:
    """Matches transactions routed to comprehensively sanctioned countries."""

    def __init__(self, countries: Iterable[str], name: str = "JURISDICTION") -> None:
        self.name = name
        self.flag = Flag.SANCTIONED_COUNTRY.value
        self._countries = frozenset(c.strip().upper() for c in countries)

    async def screen(self, transaction: Transaction) -> list[SanctionsMatch]:
        if transaction.country not in self._countries:
            return []
        return [
            SanctionsMatch(
                list_name=self.name,
                matched_name=transaction.country,
                party="country",
                confidence=1.0,
            )
        ]


class _ProviderMatch(BaseModel):
    matched_name: str
    party: str = ""
    confidence: float = Field(ge=0.0, le=1.0)


class _ProviderResponse(BaseModel):
    matches: list[_ProviderMatch] = Field(default_factory=list)


class HttpListProvider:
    """An external list service reached over HTTP.

    POSTs the transaction's parties and expects
    ``{"matches": [{"matched_name": ..., "party": ..., "confidence": ...}]}``.
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout_seconds: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.flag = f"{name}_SANCTIONS_MATCH"
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def screen(self, transaction: Transaction) -> list[SanctionsMatch]:
        body = {
            "transaction_id": transaction.transaction_id,
            "country": transaction.country,
            "parties": [
                {"role": role, "name": name} for role, name in screened_parties(transaction)
            ],
        }
        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json=body, timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=body)
            response.raise_for_status()
            parsed = _ProviderResponse.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise SanctionsProviderError(self.name, f"{type(exc).__name__}: {exc}") from exc
        except (ValueError, ValidationError) as exc:
            raise SanctionsProviderError(self.name, f"malformed response: {exc}") from exc

        return [
            SanctionsMatch(
                list_name=self.name,
                matched_name=m.matched_name,
                party=m.party,
                confidence=m.confidence,
            )
            for m in parsed.matches
        ]


class SanctionsScreener:
    def __init__(
        self,
        providers: list[SanctionsListProvider],
        config: ScreeningConfig | None = None,
    ) -> None:
        self.providers = list(providers)
        self.config = config or default_config

    def provider_deadline(self) -> float:
        """Seconds each provider gets, always inside the per-check deadline."""
        check_timeout = self.config.orchestration.check_timeout_seconds
        return min(
            self.config.sanctions.provider_timeout_seconds,
            check_timeout * PROVIDER_DEADLINE_SHARE,
        )

    async def check(self, transaction: Transaction) -> SanctionsResult:
        threshold = self.config.sanctions.acceptance_threshold
        deadline = self.provider_deadline()
        outcomes = await asyncio.gather(
            *(
                asyncio.wait_for(provider.screen(transaction), timeout=deadline)
                for provider in self.providers
            ),
            return_exceptions=True,
        )

        matches: list[SanctionsMatch] = []
        flags: set[str] = set()
        failures: list[str] = []

        for provider, outcome in zip(self.providers, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures.append(provider.name)
                logger.warning(
                    "sanctions_provider_failed",
                    provider=provider.name,
                    transaction_id=transaction.transaction_id,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
                continue

            accepted = [m for m in outcome if m.confidence > threshold]
            if accepted:
                matches.extend(accepted)
                flags.add(provider.flag)

        if matches:
            flags.add(Flag.SANCTIONS_MATCH.value)
            logger.warning(
                "sanctions_match",
                transaction_id=transaction.transaction_id,
                user_id=transaction.user_id,
                lists=sorted({m.list_name for m in matches}),
                failed_providers=failures,
            )
            return SanctionsResult(
                risk_level=RiskLevel.BLOCKED,
                flags=frozenset(flags),
                matches=matches,
                requires_reporting=True,
            )

        if failures:
            raise SanctionsProviderError(", ".join(failures), "no answer from provider")

        return SanctionsResult(risk_level=RiskLevel.LOW)


def build_default_providers(
    config: ScreeningConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[SanctionsListProvider]:
    """OFAC, UN and EU lists, sanctioned jurisdictions, and the optional HTTP service."""
    cfg = config or default_config
    sc = cfg.sanctions
    providers: list[SanctionsListProvider] = [
        StaticListProvider("OFAC", sc.ofac_names),
        StaticListProvider("UN", sc.un_names),
        StaticListProvider("EU", sc.eu_names),
        SanctionedJurisdictionProvider(sc.sanctioned_countries),
    ]
    if sc.http_provider_url:
        providers.append(
            HttpListProvider(
                sc.http_provider_name,
                sc.http_provider_url,
                timeout_seconds=sc.http_timeout_seconds,
                client=client,
            )
        )
    return providers
