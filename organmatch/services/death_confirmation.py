"""
Death confirmation: verify the hospital attestation, release the donor's
organs and run a triggered match search for each of them.
"""
import asyncio
import logging
from typing import Callable, Optional

from organmatch.core.exceptions import ConflictError, MatchingError, NotFoundError
from organmatch.schemas.match import CandidateError, DeathConfirmationSummary, SkippedCandidate
from organmatch.services.candidate_ranker import CandidateRanker
from organmatch.services.interfaces import AttestationVerifier, EventStore, Registry
from organmatch.services.match_lifecycle import MatchLifecycleManager

logger = logging.getLogger(__name__)

EVENT_DEATH_PROCESSED = "death.processed"


class DeathConfirmationHandler:
    def __init__(
        self,
        registry: Registry,
        verifier: AttestationVerifier,
        ranker: CandidateRanker,
        lifecycle: MatchLifecycleManager,
        events: EventStore,
        deadline_seconds: Optional[float] = None,
        timer: Optional[Callable[[], float]] = None,
    ):
        self.registry = registry
        self.verifier = verifier
        self.ranker = ranker
        self.lifecycle = lifecycle
        self.events = events
        self.deadline_seconds = deadline_seconds
        self.timer = timer  # monotonic seconds; the event loop clock when unset

    async def confirm_death(
        self,
        donor_id: str,
        certificate_hash: str,
        signature: str,
        deadline_seconds: Optional[float] = None,
    ) -> DeathConfirmationSummary:
        """
        Confirm a donor's death and create pending matches for the released organs.

        One candidate failing never aborts the batch; it is reported in the
        summary. When the deadline passes, matches already created stay and the
        rest is reported as unprocessed.

        Raises:
            UnauthorizedError: if the attestation does not resolve to an authorized hospital
            NotFoundError: if the donor is unknown
        """
        hospital_id = await self.verifier.verify(certificate_hash, signature)

        donor = await self.registry.get_donor(donor_id)
        if donor is None:
            raise NotFoundError(f"Donor {donor_id} not found")
        already_confirmed = donor.death_confirmed_at is not None
        donor = await self.registry.record_death_confirmation(donor_id, certificate_hash, hospital_id)

        if already_confirmed:
            logger.info(f"Donor {donor_id} death already confirmed; re-running match search")
        else:
            logger.info(f"Death of donor {donor_id} confirmed by hospital {hospital_id}")

        summary = DeathConfirmationSummary(
            donor_id=donor_id,
            confirmed_by=hospital_id,
            already_confirmed=already_confirmed,
        )

        limit = self.deadline_seconds if deadline_seconds is None else deadline_seconds
        timer = self.timer or asyncio.get_running_loop().time
        deadline = timer() + limit if limit is not None else None

        def expired() -> bool:
            return deadline is not None and timer() >= deadline

        organs = donor.available_organs()
        for index, organ in enumerate(organs):
            if expired():
                summary.deadline_exceeded = True
                summary.unprocessed_organs.extend(organs[index:])
                break

            try:
                ranking = await self.ranker.rank_for_donor(donor, organ)
            except Exception as e:
                logger.error(f"Ranking {organ.value} of donor {donor_id} failed: {e}", exc_info=True)
                summary.errors.append(CandidateError(organ=organ, error=f"{type(e).__name__}: {e}"))
                continue
            summary.skipped.extend(ranking.skipped)

            for position, candidate in enumerate(ranking.candidates):
                if expired():
                    summary.deadline_exceeded = True
                    summary.unprocessed_candidates += len(ranking.candidates) - position
                    break
                try:
                    summary.created.append(await self.lifecycle.create(candidate))
                except ConflictError as e:
                    logger.info(f"Skipping candidate {candidate.recipient.id} for {organ.value}: {e}")
                    summary.skipped.append(SkippedCandidate(
                        donor_id=donor_id, recipient_id=candidate.recipient.id, reason=str(e)
                    ))
                except Exception as e:
                    level = logging.WARNING if isinstance(e, MatchingError) else logging.ERROR
                    logger.log(
                        level,
                        f"Creating match {donor_id}/{candidate.recipient.id}/{organ.value} failed: {e}",
                        exc_info=level == logging.ERROR,
                    )
                    summary.errors.append(CandidateError(
                        organ=organ, recipient_id=candidate.recipient.id, error=f"{type(e).__name__}: {e}"
                    ))

            if summary.deadline_exceeded:
                summary.unprocessed_organs.extend(organs[index + 1:])
                break

        if summary.deadline_exceeded:
            logger.warning(
                f"Deadline exceeded for donor {donor_id}: {summary.unprocessed_candidates} candidate(s) "
                f"and {len(summary.unprocessed_organs)} organ(s) not processed"
            )

        await self.events.append_event(EVENT_DEATH_PROCESSED, {
            "donor_id": donor_id,
            "hospital_id": hospital_id,
            "certificate_hash": certificate_hash,
            "already_confirmed": already_confirmed,
            "created": [str(m.id) for m in summary.created],
            "errors": len(summary.errors),
            "deadline_exceeded": summary.deadline_exceeded,
        })
        logger.info(
            f"Death confirmation for donor {donor_id}: {summary.created_count} match(es) created, "
            f"{len(summary.skipped)} skipped, {len(summary.errors)} error(s)"
        )
        return summary
