"""
SQLAlchemy adapters for match state, the rejected-pair ledger, the
notification log and the ledger event store.

Exclusivity comes from the database: bindings and rejected pairs are
primary-key inserts, transitions are `UPDATE ... WHERE state = expected`.
Several engine processes can therefore share one database.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from organmatch.core.exceptions import ConflictError
from organmatch.models import LedgerEvent, MatchBinding, MatchRecord, NotificationRecord, RejectedPair
from organmatch.schemas.donor import OrganType
from organmatch.schemas.match import Match, MatchState, ScoreBreakdown
from organmatch.schemas.notification import Notification
from organmatch.services.interfaces import (
    EventHandler,
    EventStore,
    MatchStore,
    NotificationLog,
    RejectedPairLedger,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_match(record: MatchRecord) -> Match:
    return Match(
        id=record.id,
        donor_id=record.donor_id,
        recipient_id=record.recipient_id,
        organ=OrganType(record.organ),
        score=record.score,
        breakdown=ScoreBreakdown.model_validate(record.breakdown),
        state=MatchState(record.state),
        created_at=_aware(record.created_at),
        accepted_at=_aware(record.accepted_at),
        rejected_at=_aware(record.rejected_at),
        completed_at=_aware(record.completed_at),
        accepted_by=record.accepted_by,
        rejected_by=record.rejected_by,
        completed_by=record.completed_by,
        rejection_reason=record.rejection_reason,
        version=record.version,
        settled=record.settled,
    )


class SqlMatchStore(MatchStore):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def insert_pending(self, match: Match, binding_keys: List[str]) -> Match:
        async with self.session_factory() as session:
            session.add(MatchRecord(
                id=match.id,
                donor_id=match.donor_id,
                recipient_id=match.recipient_id,
                organ=match.organ.value,
                score=match.score,
                breakdown=match.breakdown.model_dump(),
                state=match.state.value,
                created_at=match.created_at,
                version=match.version,
                settled=match.settled,
            ))
            await session.flush()
            for key in binding_keys:
                session.add(MatchBinding(key=key, match_id=match.id))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info(f"Binding conflict inserting match {match.id}: {e.orig}")
                raise ConflictError(f"Binding already held: {', '.join(binding_keys)}")
        return match

    async def transition(
        self,
        match_id: uuid.UUID,
        expected: MatchState,
        new_state: MatchState,
        changes: Dict[str, Any],
        release_bindings: bool = False,
    ) -> Optional[Match]:
        async with self.session_factory() as session:
            result = await session.execute(
                update(MatchRecord)
                .where(MatchRecord.id == match_id, MatchRecord.state == expected.value)
                .values(**changes, state=new_state.value, version=MatchRecord.version + 1)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            if release_bindings:
                await session.execute(delete(MatchBinding).where(MatchBinding.match_id == match_id))
            await session.commit()
        return await self.get(match_id)

    async def get(self, match_id: uuid.UUID) -> Optional[Match]:
        async with self.session_factory() as session:
            record = await session.get(MatchRecord, match_id)
            return _to_match(record) if record else None

    async def list_matches(
        self,
        state: Optional[MatchState] = None,
        donor_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> List[Match]:
        query = select(MatchRecord)
        if state is not None:
            query = query.where(MatchRecord.state == state.value)
        if donor_id is not None:
            query = query.where(MatchRecord.donor_id == donor_id)
        if recipient_id is not None:
            query = query.where(MatchRecord.recipient_id == recipient_id)
        query = query.order_by(MatchRecord.created_at, MatchRecord.id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_match(r) for r in result.scalars().all()]

    async def bound_match_id(self, binding_key: str) -> Optional[uuid.UUID]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MatchBinding.match_id).where(MatchBinding.key == binding_key)
            )
            return result.scalar_one_or_none()

    async def mark_settled(self, match_id: uuid.UUID) -> Optional[Match]:
        async with self.session_factory() as session:
            await session.execute(update(MatchRecord).where(MatchRecord.id == match_id).values(settled=True))
            await session.commit()
        return await self.get(match_id)


class SqlRejectedPairLedger(RejectedPairLedger):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self, donor_id: str, recipient_id: str, organ: OrganType, reason: Optional[str] = None) -> bool:
        async with self.session_factory() as session:
            session.add(RejectedPair(
                donor_id=donor_id,
                recipient_id=recipient_id,
                organ=organ.value,
                reason=reason,
                rejected_at=datetime.now(timezone.utc),
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def contains(self, donor_id: str, recipient_id: str, organ: OrganType) -> bool:
        async with self.session_factory() as session:
            record = await session.get(RejectedPair, (donor_id, recipient_id, organ.value))
            return record is not None


def _to_notification(record: NotificationRecord) -> Notification:
    notification = Notification.model_validate(record)
    notification.created_at = _aware(notification.created_at)
    notification.delivered_at = _aware(notification.delivered_at)
    notification.read_at = _aware(notification.read_at)
    return notification


class SqlNotificationLog(NotificationLog):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def add(self, notification: Notification) -> Notification:
        async with self.session_factory() as session:
            session.add(NotificationRecord(
                id=notification.id,
                match_id=notification.match_id,
                kind=notification.kind.value,
                party=notification.party.value,
                address=notification.address,
                payload=notification.payload,
                delivered=notification.delivered,
                attempts=notification.attempts,
                error=notification.error,
                created_at=notification.created_at,
                delivered_at=notification.delivered_at,
                read=notification.read,
                read_at=notification.read_at,
            ))
            await session.commit()
        return notification

    async def update(self, notification: Notification) -> Notification:
        async with self.session_factory() as session:
            await session.execute(
                update(NotificationRecord)
                .where(NotificationRecord.id == notification.id)
                .values(
                    delivered=notification.delivered,
                    attempts=notification.attempts,
                    error=notification.error,
                    delivered_at=notification.delivered_at,
                )
            )
            await session.commit()
        return notification

    async def for_match(self, match_id: uuid.UUID) -> List[Notification]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationRecord)
                .where(NotificationRecord.match_id == match_id)
                .order_by(NotificationRecord.created_at, NotificationRecord.party)
            )
            return [_to_notification(r) for r in result.scalars().all()]

    async def for_address(self, address: str, unread_only: bool = False) -> List[Notification]:
        query = select(NotificationRecord).where(NotificationRecord.address == address)
        if unread_only:
            query = query.where(NotificationRecord.read.is_(False))
        query = query.order_by(NotificationRecord.created_at, NotificationRecord.id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_notification(r) for r in result.scalars().all()]

    async def mark_read(self, notification_id: uuid.UUID, read_at: datetime) -> Optional[Notification]:
        async with self.session_factory() as session:
            await session.execute(
                update(NotificationRecord)
                .where(NotificationRecord.id == notification_id, NotificationRecord.read.is_(False))
                .values(read=True, read_at=read_at)
            )
            await session.commit()
            record = await session.get(NotificationRecord, notification_id)
            return _to_notification(record) if record else None


class SqlEventStore(EventStore):
    """
    Durable append-only event table.

    Subscribers are fed by polling (`poll_once`, driven by the ledger poller
    in the worker); the cursor starts at the events present when polling
    begins unless `from_beginning` is set.
    """

    def __init__(self, session_factory: async_sessionmaker, from_beginning: bool = False):
        self.session_factory = session_factory
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._cursor: Optional[int] = 0 if from_beginning else None

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    async def append_event(self, event_type: str, payload: Dict[str, Any]) -> str:
        event_id = uuid.uuid4()
        async with self.session_factory() as session:
            session.add(LedgerEvent(
                id=event_id,
                event_type=event_type,
                payload=dict(payload),
                created_at=datetime.now(timezone.utc),
            ))
            await session.commit()
        return str(event_id)

    async def poll_once(self, limit: int = 100) -> int:
        """Hand new events to subscribers; returns how many events were read."""
        async with self.session_factory() as session:
            if self._cursor is None:
                self._cursor = (await session.execute(select(func.max(LedgerEvent.seq)))).scalar() or 0
                return 0
            result = await session.execute(
                select(LedgerEvent).where(LedgerEvent.seq > self._cursor).order_by(LedgerEvent.seq).limit(limit)
            )
            events = result.scalars().all()

        for event in events:
            self._cursor = event.seq
            for handler in list(self._handlers.get(event.event_type, [])):
                try:
                    await handler(event.event_type, dict(event.payload))
                except Exception as e:
                    logger.error(f"Handler for event {event.event_type} ({event.id}) failed: {e}", exc_info=True)
        return len(events)
