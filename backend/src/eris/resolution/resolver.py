"""Identity resolution for offender names.

Resolves a published offender name (plus address) against the canonical
offender registry and, when configured, an external company registry:

1. Deterministic: company number or normalized name identifies exactly
   one canonical offender -> ``exact``.
2. Fuzzy: every canonical offender (and external registry hit) is scored;
   candidates at or above ``medium_threshold`` are kept.
   - exactly one kept candidate at or above ``high_threshold`` -> ``high``
   - otherwise any kept candidate -> ``medium`` (routed to review)
   - nothing kept -> ``low`` (a new offender)

Candidates are ordered by score, then by number of linked records, then
by reference string, so identical inputs always produce identical output.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Protocol
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..errors import ConfigurationError, SourceError
from ..logging import get_context_logger, log_resolution_event
from ..models.base import ConfidenceTier, SourceRegistry
from ..models.records import IdentityCandidate, Resolution
from ..models.tables import Offender
from .matcher import NameMatcher, Scorer
from .normalize import clean_company_number, extract_postcode, normalize_name, normalize_postcode

logger = get_context_logger(__name__)


@dataclass
class EntityProfile:
    """What the resolver needs to know about one canonical offender."""

    id: UUID
    name: str
    normalized_name: str
    postcode: str | None = None
    company_number: str | None = None
    linked_records: int = 0


class RegistrySnapshot:
    """In-memory view of the canonical offender registry.

    Loaded at session start and refreshed at page boundaries; the
    reconciler adds offenders it creates so later records in the same
    page can match them.
    """

    def __init__(self, profiles: Iterable[EntityProfile] = ()):
        self._profiles: dict[UUID, EntityProfile] = {}
        self._by_name: dict[str, set[UUID]] = {}
        self._by_company: dict[str, UUID] = {}
        for profile in profiles:
            self.add(profile)

    @classmethod
    async def load(cls, session: AsyncSession) -> "RegistrySnapshot":
        """Read every canonical offender from storage."""
        result = await session.execute(
            select(
                Offender.id,
                Offender.name,
                Offender.normalized_name,
                Offender.postcode,
                Offender.company_number,
                Offender.total_records,
            )
        )
        return cls(
            EntityProfile(
                id=row.id,
                name=row.name,
                normalized_name=row.normalized_name,
                postcode=row.postcode,
                company_number=row.company_number,
                linked_records=row.total_records or 0,
            )
            for row in result
        )

    def add(self, profile: EntityProfile) -> None:
        """Insert or replace a profile."""
        previous = self._profiles.get(profile.id)
        if previous is not None:
            self._by_name.get(previous.normalized_name, set()).discard(previous.id)
        self._profiles[profile.id] = profile
        self._by_name.setdefault(profile.normalized_name, set()).add(profile.id)
        if profile.company_number:
            self._by_company[profile.company_number] = profile.id

    def get(self, entity_id: UUID) -> EntityProfile | None:
        return self._profiles.get(entity_id)

    def by_normalized_name(self, normalized_name: str) -> list[EntityProfile]:
        ids = self._by_name.get(normalized_name, set())
        return sorted((self._profiles[i] for i in ids), key=lambda p: str(p.id))

    def by_company_number(self, company_number: str) -> EntityProfile | None:
        entity_id = self._by_company.get(company_number)
        return self._profiles.get(entity_id) if entity_id else None

    def name_choices(self) -> dict[UUID, str]:
        return {p.id: p.normalized_name for p in self._profiles.values() if p.normalized_name}

    def __iter__(self) -> Iterator[EntityProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)


class RegistryEntry(BaseModel):
    """A company returned by an external registry search."""

    company_number: str
    name: str
    status: str | None = None
    company_type: str | None = None
    address: str | None = None
    postcode: str | None = None


class RegistryIndex(Protocol):
    """External company registry searched during fuzzy matching."""

    source_registry: SourceRegistry

    async def search(self, name: str, limit: int) -> list[RegistryEntry]:
        ...


def external_ref(registry: SourceRegistry, company_number: str) -> str:
    """Reference string for an external registry candidate."""
    return f"{registry.value}:{company_number}"


def _rank_key(candidate: IdentityCandidate) -> tuple:
    return (-candidate.score, -candidate.linked_records, candidate.entity_ref)


class IdentityResolver:
    """Assigns a confidence tier and ranked candidates to an offender name."""

    def __init__(
        self,
        medium_threshold: float = 0.65,
        high_threshold: float = 0.85,
        scorer: str | Scorer = "token_sort_ratio",
        postcode_boost: float = 0.05,
        registry_index: RegistryIndex | None = None,
        max_external_candidates: int = 3,
    ):
        if not 0.0 <= medium_threshold < high_threshold <= 1.0:
            raise ConfigurationError(
                f"Thresholds must satisfy 0 <= medium < high <= 1 "
                f"(got {medium_threshold}, {high_threshold})"
            )
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold
        self.postcode_boost = postcode_boost
        self.matcher = NameMatcher(scorer)
        self.registry_index = registry_index
        self.max_external_candidates = max_external_candidates

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry_index: RegistryIndex | None = None,
        scorer: str | Scorer | None = None,
    ) -> "IdentityResolver":
        return cls(
            medium_threshold=settings.match_medium_threshold,
            high_threshold=settings.match_high_threshold,
            scorer=scorer or settings.match_scorer,
            postcode_boost=settings.postcode_boost,
            registry_index=registry_index,
            max_external_candidates=settings.companies_house_max_candidates,
        )

    async def resolve(
        self,
        name: str,
        address: str | None,
        snapshot: RegistrySnapshot,
        postcode: str | None = None,
        company_number: str | None = None,
    ) -> Resolution:
        """Resolve an offender name against the registry snapshot.

        Args:
            name: Offender name as published
            address: Free-text address (postcode is extracted if not given)
            snapshot: Canonical registry snapshot
            postcode: Explicit postcode, if the source provides one
            company_number: Registration number, if the source provides one

        Returns:
            Resolution with tier and ranked candidates
        """
        normalized = normalize_name(name)
        postcode = normalize_postcode(postcode) or extract_postcode(address)

        resolution = self._deterministic(normalized, postcode, company_number, snapshot)
        if resolution is None:
            resolution = await self._fuzzy(name, normalized, postcode, snapshot)

        best = resolution.best
        log_resolution_event(
            tier=resolution.tier.value,
            offender_name=name,
            matched_entity=best.entity_ref if best else None,
            score=best.score if best else None,
            candidate_count=len(resolution.candidates),
        )
        return resolution

    def _deterministic(
        self,
        normalized: str,
        postcode: str | None,
        company_number: str | None,
        snapshot: RegistrySnapshot,
    ) -> Resolution | None:
        number = clean_company_number(company_number)
        if number:
            profile = snapshot.by_company_number(number)
            if profile is not None:
                return self._exact(normalized, profile)

        if not normalized:
            return None

        matches = snapshot.by_normalized_name(normalized)
        if len(matches) > 1 and postcode:
            matches = [p for p in matches if normalize_postcode(p.postcode) == postcode]
        if len(matches) == 1:
            return self._exact(normalized, matches[0])
        return None

    def _exact(self, normalized: str, profile: EntityProfile) -> Resolution:
        return Resolution(
            tier=ConfidenceTier.EXACT,
            normalized_name=normalized,
            candidates=[
                IdentityCandidate(
                    entity_ref=str(profile.id),
                    name=profile.name,
                    score=1.0,
                    linked_records=profile.linked_records,
                    company_number=profile.company_number,
                    postcode=profile.postcode,
                )
            ],
        )

    async def _fuzzy(
        self,
        name: str,
        normalized: str,
        postcode: str | None,
        snapshot: RegistrySnapshot,
    ) -> Resolution:
        cutoff = max(self.medium_threshold - (self.postcode_boost if postcode else 0.0), 0.0)
        candidates: list[IdentityCandidate] = []

        for entity_id, score in self.matcher.rank(normalized, snapshot.name_choices(), cutoff):
            profile = snapshot.get(entity_id)
            score = self._boost(score, postcode, profile.postcode)
            if score >= self.medium_threshold:
                candidates.append(
                    IdentityCandidate(
                        entity_ref=str(profile.id),
                        name=profile.name,
                        score=score,
                        linked_records=profile.linked_records,
                        company_number=profile.company_number,
                        postcode=profile.postcode,
                    )
                )

        if self.registry_index is not None and normalized:
            candidates.extend(
                await self._external_candidates(name, normalized, postcode, snapshot)
            )

        candidates.sort(key=_rank_key)

        if not candidates:
            tier = ConfidenceTier.LOW
        elif len(candidates) == 1 and candidates[0].score >= self.high_threshold:
            tier = ConfidenceTier.HIGH
        else:
            tier = ConfidenceTier.MEDIUM

        return Resolution(tier=tier, normalized_name=normalized, candidates=candidates)

    async def _external_candidates(
        self,
        name: str,
        normalized: str,
        postcode: str | None,
        snapshot: RegistrySnapshot,
    ) -> list[IdentityCandidate]:
        index = self.registry_index
        try:
            entries = await index.search(name, limit=self.max_external_candidates)
        except SourceError as e:
            # The external index is advisory; resolution continues without it.
            logger.warning(
                f"Registry search failed for {name!r}: {e}",
                extra={"registry": index.source_registry.value},
            )
            return []

        candidates = []
        for entry in entries[: self.max_external_candidates]:
            number = clean_company_number(entry.company_number)
            if not number or snapshot.by_company_number(number) is not None:
                # Already represented by a canonical offender.
                continue
            entry_postcode = normalize_postcode(entry.postcode) or extract_postcode(entry.address)
            score = self._boost(
                self.matcher.score(normalized, normalize_name(entry.name)),
                postcode,
                entry_postcode,
            )
            if score >= self.medium_threshold:
                candidates.append(
                    IdentityCandidate(
                        entity_ref=external_ref(index.source_registry, number),
                        name=entry.name,
                        score=score,
                        source_registry=index.source_registry,
                        company_number=number,
                        address=entry.address,
                        postcode=entry_postcode,
                    )
                )
        return candidates

    def _boost(self, score: float, postcode: str | None, other: str | None) -> float:
        if postcode and normalize_postcode(other) == postcode:
            return round(min(score + self.postcode_boost, 1.0), 6)
        return score
