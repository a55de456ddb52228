"""
Notification fan-out for match events.

Each match event produces one notification per reachable party (recipient,
donor, recipient's hospital, donor's hospital). Notifications are logged
before any send is attempted, so nothing is dropped without a record.
Delivery is at-least-once; consumers dedupe with NotificationInbox.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from organmatch.core.exceptions import NotFoundError, TransientDeliveryError
from organmatch.schemas.donor import Donor, Recipient
from organmatch.schemas.match import Match
from organmatch.schemas.notification import Notification, NotificationKind, PartyType
from organmatch.services.interfaces import NotificationLog, NotificationTransport, Registry
from organmatch.services.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    def __init__(
        self,
        registry: Registry,
        transport: NotificationTransport,
        log: NotificationLog,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.transport = transport
        self.log = log
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.worker = None

    def use_worker(self, worker) -> None:
        """Hand deliveries to a background worker instead of sending inline."""
        self.worker = worker

    def _payload(
        self,
        match: Match,
        kind: NotificationKind,
        party: PartyType,
        recipient: Optional[Recipient],
        extra: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        payload = {
            "type": kind.value,
            "party": party.value,
            "match_id": str(match.id),
            "organ": match.organ.value,
            "state": match.state.value,
            "compatibility": match.score,
            "donor_id": match.donor_id,
            "recipient_id": match.recipient_id,
            "timestamp": self.clock().isoformat(),
        }
        if recipient is not None:
            payload["urgency"] = recipient.urgency.value
        if match.rejection_reason:
            payload["reason"] = match.rejection_reason
        if extra:
            payload.update(extra)
        return payload

    async def build(
        self,
        match: Match,
        kind: NotificationKind,
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[Notification]:
        """One notification per party with a known address; absent parties are skipped."""
        donor: Optional[Donor] = await self.registry.get_donor(match.donor_id)
        recipient: Optional[Recipient] = await self.registry.get_recipient(match.recipient_id)

        parties: List[Tuple[PartyType, Optional[str]]] = [
            (PartyType.RECIPIENT, recipient.address if recipient else None),
            (PartyType.DONOR, donor.address if donor else None),
            # Hospital ids double as their notification address
            (PartyType.RECIPIENT_HOSPITAL, recipient.hospital_id if recipient else None),
            (PartyType.DONOR_HOSPITAL, donor.hospital_id if donor else None),
        ]

        now = self.clock()
        notifications = []
        for party, address in parties:
            if not address:
                logger.debug(f"No {party.value} address for match {match.id}; skipping {kind.value}")
                continue
            notifications.append(Notification(
                match_id=match.id,
                kind=kind,
                party=party,
                address=address,
                payload=self._payload(match, kind, party, recipient, extra),
                created_at=now,
            ))
        return notifications

    async def submit(
        self,
        match: Match,
        kind: NotificationKind,
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[Notification]:
        """
        Record and dispatch the notifications for a match event.

        With a running worker the sends happen in the background and this
        returns immediately; otherwise each notification is delivered inline.
        """
        notifications = await self.build(match, kind, extra)
        for notification in notifications:
            await self.log.add(notification)

        if self.worker is not None and self.worker.running:
            for notification in notifications:
                self.worker.enqueue(notification)
            return notifications

        return [await self.deliver(notification) for notification in notifications]

    async def _send_once(self, notification: Notification) -> None:
        delivered = await self.transport.send(notification.address, notification.payload)
        if not delivered:
            raise TransientDeliveryError(f"Transport did not confirm delivery to {notification.address}")

    async def deliver(self, notification: Notification) -> Notification:
        """Send with retries; the outcome (success or last error) is always written to the log."""

        def count_attempt(attempt: int) -> None:
            notification.attempts += 1

        context = f"{notification.kind.value} -> {notification.party.value} for match {notification.match_id}"
        try:
            await self.retry_policy.run(
                self._send_once, notification, context=context, on_attempt=count_attempt
            )
            notification.delivered = True
            notification.delivered_at = self.clock()
            notification.error = None
        except RetryExhaustedError as e:
            notification.delivered = False
            notification.error = str(e.last_error or e)
            logger.warning(f"Notification {notification.id} undelivered: {notification.error}")
        except Exception as e:
            notification.delivered = False
            notification.error = f"{type(e).__name__}: {e}"
            logger.error(f"Notification {notification.id} failed permanently: {e}", exc_info=True)

        await self.log.update(notification)
        return notification

    async def inbox(self, address: str, unread_only: bool = False) -> List[Notification]:
        """Everything addressed to one party, oldest first."""
        return await self.log.for_address(address, unread_only=unread_only)

    async def mark_read(self, notification_id: uuid.UUID) -> Notification:
        """
        Raises:
            NotFoundError: unknown notification
        """
        notification = await self.log.mark_read(notification_id, self.clock())
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification


class NotificationInbox:
    """Consumer-side dedupe for at-least-once delivery."""

    def __init__(self):
        self._seen: Set[Tuple[str, str, str]] = set()
        self.accepted: List[Dict[str, Any]] = []

    def receive(self, payload: Dict[str, Any]) -> bool:
        """Accept the payload unless (match, party, kind) was already seen."""
        key = (payload["match_id"], payload["party"], payload["type"])
        if key in self._seen:
            return False
        self._seen.add(key)
        self.accepted.append(payload)
        return True
