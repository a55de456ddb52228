"""
Collaborator contracts consumed by the matching engine.

The engine owns none of these: donor/recipient registries, the ledger event
store, hospital attestation and notification transports are supplied by the
deployment. Stores for match state, the rejected-pair ledger and the
notification log must provide atomic check-and-set semantics.
"""
import uuid
from datetime import datetime
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from organmatch.schemas.donor import Donor, OrganStatus, OrganType, Recipient, RecipientStatus
from organmatch.schemas.match import Match, MatchState
from organmatch.schemas.notification import Notification

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]
PairKey = Tuple[str, str, str]


def donor_binding_key(donor_id: str, organ: OrganType) -> str:
    return f"donor:{donor_id}:{organ.value}"


def recipient_binding_key(recipient_id: str, organ: OrganType) -> str:
    return f"recipient:{recipient_id}:{organ.value}"


class Registry(ABC):
    """Donor/recipient source of truth."""

    @abstractmethod
    async def list_available_donors(self, organ: OrganType) -> List[Donor]:
        """Donors with the organ in AVAILABLE state."""

    @abstractmethod
    async def list_pending_recipients(self, organ: OrganType) -> List[Recipient]:
        """Recipients still WAITING for the organ."""

    @abstractmethod
    async def get_donor(self, donor_id: str) -> Optional[Donor]:
        ...

    @abstractmethod
    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        ...

    @abstractmethod
    async def set_organ_status(self, donor_id: str, organ: OrganType, status: OrganStatus) -> None:
        ...

    @abstractmethod
    async def set_recipient_status(self, recipient_id: str, status: RecipientStatus) -> None:
        ...

    @abstractmethod
    async def record_death_confirmation(self, donor_id: str, certificate_hash: str, hospital_id: str) -> Donor:
        """Mark REGISTERED organs AVAILABLE and stamp the confirmation; no-op when already confirmed."""


class EventStore(ABC):
    """Ledger boundary: append-only facts plus subscriptions."""

    @abstractmethod
    async def append_event(self, event_type: str, payload: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        ...


class AttestationVerifier(ABC):
    @abstractmethod
    async def verify(self, certificate_hash: str, signature: str) -> str:
        """Return the attesting hospital id or raise UnauthorizedError."""


class NotificationTransport(ABC):
    @abstractmethod
    async def send(self, address: str, payload: Dict[str, Any]) -> bool:
        """Return True when delivered; raise TransientDeliveryError for retryable failures."""


class MatchStore(ABC):
    @abstractmethod
    async def insert_pending(self, match: Match, binding_keys: List[str]) -> Match:
        """Persist a new match and claim its binding keys atomically; ConflictError if any key is held."""

    @abstractmethod
    async def transition(
        self,
        match_id: uuid.UUID,
        expected: MatchState,
        new_state: MatchState,
        changes: Dict[str, Any],
        release_bindings: bool = False,
    ) -> Optional[Match]:
        """Apply the transition only if the stored state equals `expected`; None otherwise."""

    @abstractmethod
    async def get(self, match_id: uuid.UUID) -> Optional[Match]:
        ...

    @abstractmethod
    async def list_matches(
        self,
        state: Optional[MatchState] = None,
        donor_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> List[Match]:
        ...

    @abstractmethod
    async def bound_match_id(self, binding_key: str) -> Optional[uuid.UUID]:
        """The live match holding the key, if any."""

    @abstractmethod
    async def mark_settled(self, match_id: uuid.UUID) -> Optional[Match]:
        """Flag the match's side effects as applied; does not bump the version."""


class RejectedPairLedger(ABC):
    @abstractmethod
    async def record(self, donor_id: str, recipient_id: str, organ: OrganType, reason: Optional[str] = None) -> bool:
        """Insert if absent; True when newly recorded."""

    @abstractmethod
    async def contains(self, donor_id: str, recipient_id: str, organ: OrganType) -> bool:
        ...


class NotificationLog(ABC):
    @abstractmethod
    async def add(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def update(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def for_match(self, match_id: uuid.UUID) -> List[Notification]:
        ...

    @abstractmethod
    async def for_address(self, address: str, unread_only: bool = False) -> List[Notification]:
        """A party's inbox, oldest first."""

    @abstractmethod
    async def mark_read(self, notification_id: uuid.UUID, read_at: datetime) -> Optional[Notification]:
        """Set the read flag (first read time is kept); None for an unknown id."""
