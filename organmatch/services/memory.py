"""
In-memory adapters for the collaborator contracts.

Used when no database or registry service is configured, and by the tests.
Each instance is independent; nothing here is module-level state.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from organmatch.core.exceptions import ConflictError, NotFoundError, TransientDeliveryError
from organmatch.schemas.donor import Donor, OrganStatus, OrganType, Recipient, RecipientStatus
from organmatch.schemas.match import Match, MatchState
from organmatch.schemas.notification import Notification
from organmatch.services.interfaces import (
    EventHandler,
    EventStore,
    MatchStore,
    NotificationLog,
    NotificationTransport,
    Registry,
    RejectedPairLedger,
)

logger = logging.getLogger(__name__)


class InMemoryRegistry(Registry):
    def __init__(self, donors: Optional[List[Donor]] = None, recipients: Optional[List[Recipient]] = None):
        self._donors: Dict[str, Donor] = {}
        self._recipients: Dict[str, Recipient] = {}
        for donor in donors or []:
            self.add_donor(donor)
        for recipient in recipients or []:
            self.add_recipient(recipient)

    def add_donor(self, donor: Donor) -> Donor:
        self._donors[donor.id] = donor.model_copy(deep=True)
        return donor

    def add_recipient(self, recipient: Recipient) -> Recipient:
        self._recipients[recipient.id] = recipient.model_copy(deep=True)
        return recipient

    async def list_available_donors(self, organ: OrganType) -> List[Donor]:
        return [
            d.model_copy(deep=True) for d in self._donors.values()
            if d.organs.get(organ) == OrganStatus.AVAILABLE
        ]

    async def list_pending_recipients(self, organ: OrganType) -> List[Recipient]:
        return [
            r.model_copy(deep=True) for r in self._recipients.values()
            if r.organ_needed == organ and r.status == RecipientStatus.WAITING
        ]

    async def get_donor(self, donor_id: str) -> Optional[Donor]:
        donor = self._donors.get(donor_id)
        return donor.model_copy(deep=True) if donor else None

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        recipient = self._recipients.get(recipient_id)
        return recipient.model_copy(deep=True) if recipient else None

    async def set_organ_status(self, donor_id: str, organ: OrganType, status: OrganStatus) -> None:
        donor = self._donors.get(donor_id)
        if donor is None:
            raise NotFoundError(f"Donor {donor_id} not found")
        donor.organs[organ] = status

    async def set_recipient_status(self, recipient_id: str, status: RecipientStatus) -> None:
        recipient = self._recipients.get(recipient_id)
        if recipient is None:
            raise NotFoundError(f"Recipient {recipient_id} not found")
        recipient.status = status

    async def record_death_confirmation(self, donor_id: str, certificate_hash: str, hospital_id: str) -> Donor:
        donor = self._donors.get(donor_id)
        if donor is None:
            raise NotFoundError(f"Donor {donor_id} not found")
        if donor.death_confirmed_at is None:
            donor.death_confirmed_at = datetime.now(timezone.utc)
            donor.death_certificate_hash = certificate_hash
            donor.death_confirmed_by = hospital_id
        for organ, status in donor.organs.items():
            if status == OrganStatus.REGISTERED:
                donor.organs[organ] = OrganStatus.AVAILABLE
        return donor.model_copy(deep=True)


class InMemoryEventStore(EventStore):
    """Push-based: handlers run as part of append_event."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    async def append_event(self, event_type: str, payload: Dict[str, Any]) -> str:
        event_id = str(uuid.uuid4())
        self.events.append((event_id, event_type, dict(payload)))
        for handler in list(self._handlers.get(event_type, [])):
            try:
                await handler(event_type, dict(payload))
            except Exception as e:
                # The fact is already recorded; a failing subscriber must not undo it.
                logger.error(f"Handler for event {event_type} ({event_id}) failed: {e}", exc_info=True)
        return event_id

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [payload for _, kind, payload in self.events if kind == event_type]


class InMemoryMatchStore(MatchStore):
    def __init__(self):
        self._matches: Dict[uuid.UUID, Match] = {}
        self._bindings: Dict[str, uuid.UUID] = {}
        self._lock = asyncio.Lock()

    async def insert_pending(self, match: Match, binding_keys: List[str]) -> Match:
        async with self._lock:
            held = [key for key in binding_keys if key in self._bindings]
            if held:
                raise ConflictError(f"Binding already held: {', '.join(held)}")
            self._matches[match.id] = match.model_copy(deep=True)
            for key in binding_keys:
                self._bindings[key] = match.id
            return match.model_copy(deep=True)

    async def transition(
        self,
        match_id: uuid.UUID,
        expected: MatchState,
        new_state: MatchState,
        changes: Dict[str, Any],
        release_bindings: bool = False,
    ) -> Optional[Match]:
        async with self._lock:
            current = self._matches.get(match_id)
            if current is None or current.state != expected:
                return None
            updated = current.model_copy(
                update={**changes, "state": new_state, "version": current.version + 1},
                deep=True,
            )
            self._matches[match_id] = updated
            if release_bindings:
                for key in [k for k, v in self._bindings.items() if v == match_id]:
                    del self._bindings[key]
            return updated.model_copy(deep=True)

    async def get(self, match_id: uuid.UUID) -> Optional[Match]:
        match = self._matches.get(match_id)
        return match.model_copy(deep=True) if match else None

    async def list_matches(
        self,
        state: Optional[MatchState] = None,
        donor_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> List[Match]:
        matches = [
            m for m in self._matches.values()
            if (state is None or m.state == state)
            and (donor_id is None or m.donor_id == donor_id)
            and (recipient_id is None or m.recipient_id == recipient_id)
        ]
        return [m.model_copy(deep=True) for m in sorted(matches, key=lambda m: (m.created_at, str(m.id)))]

    async def bound_match_id(self, binding_key: str) -> Optional[uuid.UUID]:
        return self._bindings.get(binding_key)

    async def mark_settled(self, match_id: uuid.UUID) -> Optional[Match]:
        async with self._lock:
            current = self._matches.get(match_id)
            if current is None:
                return None
            current.settled = True
            return current.model_copy(deep=True)


class InMemoryRejectedPairLedger(RejectedPairLedger):
    def __init__(self):
        self._pairs: Dict[Tuple[str, str, str], Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def record(self, donor_id: str, recipient_id: str, organ: OrganType, reason: Optional[str] = None) -> bool:
        key = (donor_id, recipient_id, organ.value)
        async with self._lock:
            if key in self._pairs:
                return False
            self._pairs[key] = reason
            return True

    async def contains(self, donor_id: str, recipient_id: str, organ: OrganType) -> bool:
        return (donor_id, recipient_id, organ.value) in self._pairs

    def __len__(self):
        return len(self._pairs)


class InMemoryNotificationLog(NotificationLog):
    def __init__(self):
        self._notifications: Dict[uuid.UUID, Notification] = {}

    async def add(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification.model_copy(deep=True)
        return notification

    async def update(self, notification: Notification) -> Notification:
        stored = self._notifications.get(notification.id)
        updated = notification.model_copy(deep=True)
        if stored is not None and stored.read:
            # Delivery updates never clear the read flag
            updated.read, updated.read_at = True, stored.read_at
        self._notifications[notification.id] = updated
        return notification

    async def for_match(self, match_id: uuid.UUID) -> List[Notification]:
        found = [n for n in self._notifications.values() if n.match_id == match_id]
        return [n.model_copy(deep=True) for n in sorted(found, key=lambda n: (n.created_at, n.party.value))]

    async def for_address(self, address: str, unread_only: bool = False) -> List[Notification]:
        found = [
            n for n in self._notifications.values()
            if n.address == address and not (unread_only and n.read)
        ]
        return [n.model_copy(deep=True) for n in sorted(found, key=lambda n: (n.created_at, str(n.id)))]

    async def mark_read(self, notification_id: uuid.UUID, read_at: datetime) -> Optional[Notification]:
        notification = self._notifications.get(notification_id)
        if notification is None:
            return None
        if not notification.read:
            notification.read = True
            notification.read_at = read_at
        return notification.model_copy(deep=True)

    def all(self) -> List[Notification]:
        return [n.model_copy(deep=True) for n in self._notifications.values()]


class RecordingTransport(NotificationTransport):
    """Keeps every delivered payload; can simulate transient and permanent failures."""

    def __init__(self, transient_failures: Optional[Dict[str, int]] = None, unreachable: Optional[set] = None):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.calls = 0
        self._transient_failures = dict(transient_failures or {})
        self._unreachable = set(unreachable or ())

    async def send(self, address: str, payload: Dict[str, Any]) -> bool:
        self.calls += 1
        if address in self._unreachable:
            return False
        remaining = self._transient_failures.get(address, 0)
        if remaining > 0:
            self._transient_failures[address] = remaining - 1
            raise TransientDeliveryError(f"Temporary failure sending to {address}")
        self.sent.append((address, dict(payload)))
        return True
