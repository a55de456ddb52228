"""
Bridge from ledger events to engine operations.

The ledger publishes hospital and recipient actions (accept, reject,
complete, death confirmation). Each is replayed into the lifecycle manager
or the death confirmation handler; both are idempotent, so redelivered
events are harmless.
"""
import logging
import uuid
from typing import Any, Dict

from organmatch.core.exceptions import MatchingError
from organmatch.services.death_confirmation import DeathConfirmationHandler
from organmatch.services.interfaces import EventStore
from organmatch.services.match_lifecycle import MatchLifecycleManager

logger = logging.getLogger(__name__)

ACCEPT_REQUESTED = "match.accept_requested"
REJECT_REQUESTED = "match.reject_requested"
COMPLETE_REQUESTED = "match.complete_requested"
DEATH_CONFIRMED = "death.confirmed"


class LedgerActionBridge:
    def __init__(
        self,
        events: EventStore,
        lifecycle: MatchLifecycleManager,
        deaths: DeathConfirmationHandler,
    ):
        self.events = events
        self.lifecycle = lifecycle
        self.deaths = deaths

    def register(self) -> None:
        self.events.subscribe(ACCEPT_REQUESTED, self.handle)
        self.events.subscribe(REJECT_REQUESTED, self.handle)
        self.events.subscribe(COMPLETE_REQUESTED, self.handle)
        self.events.subscribe(DEATH_CONFIRMED, self.handle)
        logger.info("Ledger action bridge subscribed")

    async def handle(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._dispatch(event_type, payload)
        except MatchingError as e:
            # Rejected actions are final for this event; they are not retried.
            logger.warning(f"Ledger event {event_type} not applied: {e}")
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed ledger event {event_type}: {e!r}")

    async def _dispatch(self, event_type: str, payload: Dict[str, Any]) -> None:
        if event_type == DEATH_CONFIRMED:
            await self.deaths.confirm_death(
                payload["donor_id"], payload["certificate_hash"], payload["signature"]
            )
            return

        match_id = uuid.UUID(str(payload["match_id"]))
        actor = payload["actor"]
        if event_type == ACCEPT_REQUESTED:
            await self.lifecycle.accept(match_id, actor)
        elif event_type == REJECT_REQUESTED:
            await self.lifecycle.reject(match_id, actor, payload.get("reason"))
        elif event_type == COMPLETE_REQUESTED:
            await self.lifecycle.complete(match_id, actor)
        else:
            logger.debug(f"Ignoring ledger event {event_type}")
