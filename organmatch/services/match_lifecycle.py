"""
Match lifecycle: the only writer of match state.

    pending --accept--> accepted --complete--> completed
    pending --reject--> rejected
    accepted --reject--> rejected   (withdrawal, reason required)

Mutations are serialized in-process with keyed locks and re-checked in the
store with atomic insert-if-absent / transition-if-state-equals, so at most
one live match exists per donor organ and per recipient need. A transition
leaves the match unsettled until its registry writes and ledger fact are
done; a same-actor retry finishes an unsettled match.
"""
import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from organmatch.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from organmatch.schemas.donor import OrganStatus, RecipientStatus
from organmatch.schemas.match import AnonymizedMatch, Match, MatchCandidate, MatchState
from organmatch.schemas.notification import NotificationKind
from organmatch.services.interfaces import (
    EventStore,
    MatchStore,
    Registry,
    RejectedPairLedger,
    donor_binding_key,
    recipient_binding_key,
)
from organmatch.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

EVENT_CREATED = "match.created"
EVENT_ACCEPTED = "match.accepted"
EVENT_REJECTED = "match.rejected"
EVENT_COMPLETED = "match.completed"

STATE_EVENTS = {
    MatchState.PENDING: EVENT_CREATED,
    MatchState.ACCEPTED: EVENT_ACCEPTED,
    MatchState.REJECTED: EVENT_REJECTED,
    MatchState.COMPLETED: EVENT_COMPLETED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyedLocks:
    """Per-key asyncio locks, always acquired in sorted key order.

    A key's lock lives only while some caller holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self):
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, *keys: str):
        ordered = sorted(set(keys))
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())
        try:
            async with contextlib.AsyncExitStack() as stack:
                for key in ordered:
                    await stack.enter_async_context(self._locks[key])
                yield
        finally:
            for key in ordered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class MatchLifecycleManager:
    def __init__(
        self,
        registry: Registry,
        store: MatchStore,
        rejected_pairs: RejectedPairLedger,
        events: EventStore,
        dispatcher: NotificationDispatcher,
        ranker=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.store = store
        self.rejected_pairs = rejected_pairs
        self.events = events
        self.dispatcher = dispatcher
        self.ranker = ranker
        self.clock = clock
        self._locks = KeyedLocks()

    def _fact(self, match: Match, actor: Optional[str] = None) -> Dict[str, Any]:
        return {
            "match_id": str(match.id),
            "donor_id": match.donor_id,
            "recipient_id": match.recipient_id,
            "organ": match.organ.value,
            "state": match.state.value,
            "score": match.score,
            "actor": actor,
            "reason": match.rejection_reason,
            "version": match.version,
            "at": self.clock().isoformat(),
        }

    async def _notify(self, match: Match, kind: NotificationKind) -> None:
        # Delivery problems are recorded by the dispatcher; they never fail the transition.
        try:
            await self.dispatcher.submit(match, kind)
        except Exception as e:
            logger.error(f"Could not dispatch {kind.value} for match {match.id}: {e}", exc_info=True)

    async def _require(self, match_id: uuid.UUID) -> Match:
        match = await self.store.get(match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    async def get(self, match_id: uuid.UUID) -> Match:
        return await self._require(match_id)

    async def list_matches(
        self,
        state: Optional[MatchState] = None,
        donor_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> List[Match]:
        return await self.store.list_matches(state=state, donor_id=donor_id, recipient_id=recipient_id)

    async def anonymized_matches(self) -> List[AnonymizedMatch]:
        return [
            AnonymizedMatch(
                organ=m.organ,
                state=m.state,
                score=m.score,
                created_at=m.created_at,
                closed_at=m.completed_at or m.rejected_at,
            )
            for m in await self.store.list_matches()
        ]

    async def _settle(self, match: Match, actor: Optional[str] = None) -> Match:
        """
        Apply the registry writes and ledger fact belonging to the match's
        current state, then mark it settled.

        Every step is safe to repeat, so an unsettled match left behind by a
        failed call is finished by the same actor's retry.
        """
        if match.state == MatchState.ACCEPTED:
            await self.registry.set_organ_status(match.donor_id, match.organ, OrganStatus.CLAIMED)
            await self.registry.set_recipient_status(match.recipient_id, RecipientStatus.MATCHED)
        elif match.state == MatchState.COMPLETED:
            await self.registry.set_organ_status(match.donor_id, match.organ, OrganStatus.DONATED)
            await self.registry.set_recipient_status(match.recipient_id, RecipientStatus.TRANSPLANTED)
        elif match.state == MatchState.REJECTED and match.accepted_at is not None:
            # Withdrawn after acceptance: organ and recipient go back into the pool
            await self.registry.set_organ_status(match.donor_id, match.organ, OrganStatus.AVAILABLE)
            await self.registry.set_recipient_status(match.recipient_id, RecipientStatus.WAITING)

        await self.events.append_event(STATE_EVENTS[match.state], self._fact(match, actor))
        settled = await self.store.mark_settled(match.id)
        return settled or match

    async def create(self, candidate: MatchCandidate) -> Match:
        """
        Persist a pending match for a ranked candidate.

        Re-submitting the candidate of an existing live match returns that match.

        Raises:
            ConflictError: if the donor organ or recipient need is already bound,
                or the triple was rejected before
        """
        organ = candidate.organ
        donor_id = candidate.donor.id
        recipient_id = candidate.recipient.id
        donor_key = donor_binding_key(donor_id, organ)
        recipient_key = recipient_binding_key(recipient_id, organ)

        async with self._locks.hold(donor_key, recipient_key):
            if await self.rejected_pairs.contains(donor_id, recipient_id, organ):
                raise ConflictError(f"Pair {donor_id}/{recipient_id}/{organ.value} was rejected before")

            match = None
            donor_holder = await self.store.bound_match_id(donor_key)
            recipient_holder = await self.store.bound_match_id(recipient_key)
            if donor_holder is not None and donor_holder == recipient_holder:
                existing = await self.store.get(donor_holder)
                if existing is not None and not existing.state.is_terminal:
                    logger.info(f"Match {existing.id} already exists for {donor_id}/{recipient_id}/{organ.value}")
                    if existing.settled or existing.state != MatchState.PENDING:
                        return existing
                    match = await self._settle(existing)

            if match is None:
                if donor_holder is not None or recipient_holder is not None:
                    raise ConflictError(
                        f"Donor {donor_id} {organ.value} or recipient {recipient_id} already has a live match"
                    )
                match = Match(
                    donor_id=donor_id,
                    recipient_id=recipient_id,
                    organ=organ,
                    score=candidate.score.total,
                    breakdown=candidate.score.breakdown,
                    created_at=self.clock(),
                    settled=False,
                )
                # The store re-checks the bindings atomically (other processes may share it).
                match = await self.store.insert_pending(match, [donor_key, recipient_key])
                match = await self._settle(match)

        logger.info(
            f"Created match {match.id}: donor {donor_id} -> recipient {recipient_id} "
            f"({organ.value}, score {match.score}, boost {candidate.boost})"
        )
        await self._notify(match, NotificationKind.MATCH_FOUND)
        return match

    async def _transition(
        self,
        match: Match,
        new_state: MatchState,
        changes: Dict[str, Any],
        release_bindings: bool,
    ) -> Match:
        updated = await self.store.transition(
            match.id, match.state, new_state, {**changes, "settled": False}, release_bindings=release_bindings
        )
        if updated is None:
            current = await self._require(match.id)
            raise InvalidStateError(
                f"Match {match.id} changed concurrently (now {current.state.value}); "
                f"cannot move to {new_state.value}"
            )
        return updated

    async def accept(self, match_id: uuid.UUID, actor: str) -> Match:
        """
        Raises:
            NotFoundError: unknown match
            InvalidStateError: match is not pending (same-actor retries return the accepted match)
        """
        async with self._locks.hold(f"match:{match_id}"):
            match = await self._require(match_id)
            if match.state == MatchState.ACCEPTED and match.accepted_by == actor:
                if match.settled:
                    return match
                logger.warning(f"Finishing interrupted acceptance of match {match_id}")
            elif match.state != MatchState.PENDING:
                raise InvalidStateError(f"Cannot accept match {match_id} in state {match.state.value}")
            else:
                match = await self._transition(
                    match,
                    MatchState.ACCEPTED,
                    {"accepted_at": self.clock(), "accepted_by": actor},
                    release_bindings=False,
                )
            updated = await self._settle(match, actor)

        logger.info(f"Match {match_id} accepted by {actor}")
        await self._notify(updated, NotificationKind.MATCH_ACCEPTED)
        return updated

    async def reject(self, match_id: uuid.UUID, actor: str, reason: Optional[str] = None) -> Match:
        """
        Reject a pending match or withdraw an accepted one.

        The triple is recorded permanently before the bindings are released,
        and the recipient goes back through ranking.

        Raises:
            NotFoundError: unknown match
            InvalidStateError: match already terminal (same-actor retries return the rejected match)
            ValidationError: withdrawing an accepted match without a reason
        """
        match = await self._require(match_id)
        keys = (
            f"match:{match_id}",
            donor_binding_key(match.donor_id, match.organ),
            recipient_binding_key(match.recipient_id, match.organ),
        )
        async with self._locks.hold(*keys):
            match = await self._require(match_id)
            if match.state == MatchState.REJECTED and match.rejected_by == actor:
                if match.settled:
                    return match
                logger.warning(f"Finishing interrupted rejection of match {match_id}")
            elif match.state.is_terminal:
                raise InvalidStateError(f"Cannot reject match {match_id} in state {match.state.value}")
            else:
                if match.state == MatchState.ACCEPTED and not (reason and reason.strip()):
                    raise ValidationError("A reason is required to withdraw an accepted match")
                await self.rejected_pairs.record(match.donor_id, match.recipient_id, match.organ, reason)
                match = await self._transition(
                    match,
                    MatchState.REJECTED,
                    {"rejected_at": self.clock(), "rejected_by": actor, "rejection_reason": reason},
                    release_bindings=True,
                )
            updated = await self._settle(match, actor)

        logger.info(f"Match {match_id} rejected by {actor}: {updated.rejection_reason or 'no reason given'}")
        await self._notify(updated, NotificationKind.MATCH_REJECTED)

        try:
            await self.propose_for_recipient(updated.recipient_id)
        except Exception as e:
            logger.error(f"Re-ranking recipient {updated.recipient_id} after rejection failed: {e}", exc_info=True)
        return updated

    async def complete(self, match_id: uuid.UUID, actor: str) -> Match:
        """
        Raises:
            NotFoundError: unknown match
            InvalidStateError: match is not accepted (same-actor retries return the completed match)
        """
        async with self._locks.hold(f"match:{match_id}"):
            match = await self._require(match_id)
            if match.state == MatchState.COMPLETED and match.completed_by == actor:
                if match.settled:
                    return match
                logger.warning(f"Finishing interrupted completion of match {match_id}")
            elif match.state != MatchState.ACCEPTED:
                raise InvalidStateError(f"Cannot complete match {match_id} in state {match.state.value}")
            else:
                match = await self._transition(
                    match,
                    MatchState.COMPLETED,
                    {"completed_at": self.clock(), "completed_by": actor},
                    release_bindings=True,
                )
            updated = await self._settle(match, actor)

        logger.info(f"Match {match_id} completed by {actor}")
        await self._notify(updated, NotificationKind.MATCH_COMPLETED)
        return updated

    async def propose_for_recipient(self, recipient_id: str) -> Optional[Match]:
        """
        Forward search: rank donors for a waiting recipient and create a match
        with the best candidate that is still free. None when nothing fits.
        """
        if self.ranker is None:
            return None
        recipient = await self.registry.get_recipient(recipient_id)
        if recipient is None:
            raise NotFoundError(f"Recipient {recipient_id} not found")
        if recipient.status != RecipientStatus.WAITING:
            logger.info(f"Recipient {recipient_id} is {recipient.status.value}; not proposing")
            return None

        ranking = await self.ranker.rank_for_recipient(recipient)
        for candidate in ranking.candidates:
            try:
                return await self.create(candidate)
            except ConflictError as e:
                logger.info(f"Candidate donor {candidate.donor.id} taken meanwhile: {e}")
        logger.info(f"No compatible donor currently available for recipient {recipient_id}")
        return None
