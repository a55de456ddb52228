"""
Candidate ranking for forward (recipient-driven) and triggered
(donor-driven) searches.

Order: boosted score desc, donor reputation desc, recipient registration asc
(first come, first served), then ids so identical inputs always produce the
same list. The boost affects ordering only; candidates carry the raw
compatibility score that ends up on the match record.
"""
import logging
from datetime import datetime
from typing import List, Optional

from organmatch.core.exceptions import ValidationError
from organmatch.schemas.donor import Donor, OrganType, Recipient
from organmatch.schemas.match import MatchCandidate, Ranking, SkippedCandidate
from organmatch.services.compatibility import (
    DEFAULT_MIN_SCORE,
    compatible_donor_types,
    distance_km,
    donor_reputation,
    is_viable,
    score_pair,
)
from organmatch.services.emergency_priority import EmergencyPriorityResolver
from organmatch.services.interfaces import (
    MatchStore,
    Registry,
    RejectedPairLedger,
    donor_binding_key,
    recipient_binding_key,
)

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 5


def ranking_key(candidate: MatchCandidate):
    return (
        -candidate.boosted_score,
        -candidate.reputation,
        candidate.recipient.registered_at,
        candidate.recipient.id,
        candidate.donor.registered_at,
        candidate.donor.id,
    )


class CandidateRanker:
    def __init__(
        self,
        registry: Registry,
        match_store: MatchStore,
        rejected_pairs: RejectedPairLedger,
        priority: EmergencyPriorityResolver,
        min_score: int = DEFAULT_MIN_SCORE,
        top_n: int = DEFAULT_TOP_N,
    ):
        self.registry = registry
        self.match_store = match_store
        self.rejected_pairs = rejected_pairs
        self.priority = priority
        self.min_score = min_score
        self.top_n = top_n

    async def _is_bound(self, key: str) -> bool:
        return await self.match_store.bound_match_id(key) is not None

    async def _evaluate(
        self,
        donor: Donor,
        recipient: Recipient,
        organ: OrganType,
        now: datetime,
        ranking: Ranking,
    ) -> Optional[MatchCandidate]:
        """Score one pair; filtered or failed pairs return None (failures land in ranking.skipped)."""
        try:
            if await self.rejected_pairs.contains(donor.id, recipient.id, organ):
                logger.debug(f"Pair {donor.id}/{recipient.id}/{organ.value} previously rejected")
                return None

            score = score_pair(donor, recipient)
            if not is_viable(score, self.min_score):
                logger.debug(
                    f"Pair {donor.id}/{recipient.id}/{organ.value} below threshold "
                    f"({score.total} < {self.min_score})"
                )
                return None

            return MatchCandidate(
                donor=donor,
                recipient=recipient,
                organ=organ,
                score=score,
                boost=self.priority.boost_for(recipient, organ, now),
                reputation=donor_reputation(donor),
                distance_km=distance_km(donor.location, recipient.location),
            )
        except ValidationError as e:
            logger.warning(f"Skipping malformed pair {donor.id}/{recipient.id}: {e}")
            ranking.skipped.append(SkippedCandidate(donor_id=donor.id, recipient_id=recipient.id, reason=str(e)))
        except Exception as e:
            logger.error(f"Error scoring pair {donor.id}/{recipient.id}: {e}", exc_info=True)
            ranking.skipped.append(SkippedCandidate(
                donor_id=donor.id, recipient_id=recipient.id, reason=f"{type(e).__name__}: {e}"
            ))
        return None

    def _finish(self, ranking: Ranking, candidates: List[MatchCandidate], top_n: Optional[int]) -> Ranking:
        limit = self.top_n if top_n is None else top_n
        ranking.candidates = sorted(candidates, key=ranking_key)[:limit]
        logger.info(
            f"Ranked {len(candidates)} viable {ranking.organ.value} candidate(s), "
            f"returning {len(ranking.candidates)}, skipped {len(ranking.skipped)}"
        )
        return ranking

    async def rank_for_recipient(self, recipient: Recipient, top_n: Optional[int] = None) -> Ranking:
        """
        Forward search: best available donors for a waiting recipient.

        Raises:
            ValidationError: if the recipient has no organ need or blood type
        """
        if recipient.organ_needed is None or recipient.blood_type is None:
            raise ValidationError(f"Recipient {recipient.id} is missing organ_needed or blood_type")
        organ = recipient.organ_needed
        ranking = Ranking(organ=organ)

        if await self._is_bound(recipient_binding_key(recipient.id, organ)):
            logger.info(f"Recipient {recipient.id} already has a live {organ.value} match")
            return ranking

        feasible = compatible_donor_types(recipient.blood_type)
        now = self.priority.clock()
        candidates = []
        for donor in await self.registry.list_available_donors(organ):
            if donor.blood_type is None:
                logger.warning(f"Skipping donor {donor.id}: missing blood type")
                ranking.skipped.append(SkippedCandidate(donor_id=donor.id, reason="missing blood_type"))
                continue
            if donor.blood_type not in feasible:
                continue
            if await self._is_bound(donor_binding_key(donor.id, organ)):
                continue
            candidate = await self._evaluate(donor, recipient, organ, now, ranking)
            if candidate is not None:
                candidates.append(candidate)

        return self._finish(ranking, candidates, top_n)

    async def rank_for_donor(self, donor: Donor, organ: OrganType, top_n: Optional[int] = None) -> Ranking:
        """
        Triggered search: best waiting recipients for one of a donor's organs.

        Raises:
            ValidationError: if the donor has no blood type or does not offer the organ
        """
        if donor.blood_type is None:
            raise ValidationError(f"Donor {donor.id} is missing blood_type")
        if organ not in donor.organs:
            raise ValidationError(f"Donor {donor.id} does not offer {organ.value}")
        ranking = Ranking(organ=organ)

        if await self._is_bound(donor_binding_key(donor.id, organ)):
            logger.info(f"Donor {donor.id} {organ.value} already has a live match")
            return ranking

        now = self.priority.clock()
        candidates = []
        for recipient in await self.registry.list_pending_recipients(organ):
            if recipient.blood_type is None or recipient.organ_needed is None:
                logger.warning(f"Skipping recipient {recipient.id}: missing blood type or organ")
                ranking.skipped.append(SkippedCandidate(
                    recipient_id=recipient.id, reason="missing blood_type or organ_needed"
                ))
                continue
            if donor.blood_type not in compatible_donor_types(recipient.blood_type):
                continue
            if await self._is_bound(recipient_binding_key(recipient.id, organ)):
                continue
            candidate = await self._evaluate(donor, recipient, organ, now, ranking)
            if candidate is not None:
                candidates.append(candidate)

        return self._finish(ranking, candidates, top_n)
