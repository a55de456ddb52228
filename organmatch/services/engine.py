"""
Engine assembly: wires the matching components to their adapters.

Nothing here is a module-level singleton; the FastAPI app builds one engine
in its lifespan and tests build their own.
"""
import logging
from typing import Optional

from organmatch.core.config import Settings
from organmatch.database import create_engine, create_session_factory, init_db
from organmatch.services.attestation import Ed25519AttestationVerifier
from organmatch.services.candidate_ranker import CandidateRanker
from organmatch.services.death_confirmation import DeathConfirmationHandler
from organmatch.services.emergency_priority import ElevationBoard, EmergencyPriorityResolver
from organmatch.services.interfaces import (
    AttestationVerifier,
    EventStore,
    MatchStore,
    NotificationLog,
    NotificationTransport,
    Registry,
    RejectedPairLedger,
)
from organmatch.services.ledger_actions import LedgerActionBridge
from organmatch.services.match_lifecycle import MatchLifecycleManager
from organmatch.services.memory import (
    InMemoryEventStore,
    InMemoryMatchStore,
    InMemoryNotificationLog,
    InMemoryRegistry,
    InMemoryRejectedPairLedger,
)
from organmatch.services.notification_dispatcher import NotificationDispatcher
from organmatch.services.registry_client import RegistryClient
from organmatch.services.retry import RetryPolicy
from organmatch.services.sql_store import SqlEventStore, SqlMatchStore, SqlNotificationLog, SqlRejectedPairLedger
from organmatch.services.transports import WebhookTransport
from organmatch.worker import LedgerPoller, NotificationWorker

logger = logging.getLogger(__name__)


class MatchingEngine:
    def __init__(
        self,
        registry: Registry,
        match_store: MatchStore,
        rejected_pairs: RejectedPairLedger,
        notification_log: NotificationLog,
        events: EventStore,
        transport: NotificationTransport,
        verifier: AttestationVerifier,
        settings: Optional[Settings] = None,
        elevations: Optional[ElevationBoard] = None,
        retry_policy: Optional[RetryPolicy] = None,
        db_engine=None,
    ):
        self.settings = settings or Settings()
        self.registry = registry
        self.match_store = match_store
        self.rejected_pairs = rejected_pairs
        self.notification_log = notification_log
        self.events = events
        self.transport = transport
        self.verifier = verifier
        self.db_engine = db_engine

        self.elevations = elevations or ElevationBoard()
        self.priority = EmergencyPriorityResolver(
            self.elevations,
            urgency_boosts=self.settings.urgency_boosts,
            elevation_boosts=self.settings.elevation_boosts,
        )
        self.ranker = CandidateRanker(
            registry,
            match_store,
            rejected_pairs,
            self.priority,
            min_score=self.settings.MATCH_MIN_SCORE,
            top_n=self.settings.MATCH_TOP_N,
        )
        self.dispatcher = NotificationDispatcher(
            registry,
            transport,
            notification_log,
            retry_policy=retry_policy or RetryPolicy(
                max_attempts=self.settings.NOTIFY_MAX_ATTEMPTS,
                base_delay=self.settings.NOTIFY_BASE_DELAY_SECONDS,
                max_delay=self.settings.NOTIFY_MAX_DELAY_SECONDS,
            ),
        )
        self.lifecycle = MatchLifecycleManager(
            registry, match_store, rejected_pairs, events, self.dispatcher, ranker=self.ranker
        )
        self.deaths = DeathConfirmationHandler(
            registry,
            verifier,
            self.ranker,
            self.lifecycle,
            events,
            deadline_seconds=self.settings.DEATH_CONFIRMATION_DEADLINE_SECONDS,
        )
        self.ledger_bridge = LedgerActionBridge(events, self.lifecycle, self.deaths)
        self.ledger_bridge.register()

        self.worker = NotificationWorker(self.dispatcher, max_concurrent=self.settings.WORKER_MAX_CONCURRENT)
        self.dispatcher.use_worker(self.worker)
        self.poller = (
            LedgerPoller(events, poll_interval=self.settings.LEDGER_POLL_INTERVAL)
            if isinstance(events, SqlEventStore) else None
        )

    @classmethod
    def in_memory(
        cls,
        transport: NotificationTransport,
        verifier: AttestationVerifier,
        registry: Optional[Registry] = None,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "MatchingEngine":
        return cls(
            registry=registry or InMemoryRegistry(),
            match_store=InMemoryMatchStore(),
            rejected_pairs=InMemoryRejectedPairLedger(),
            notification_log=InMemoryNotificationLog(),
            events=InMemoryEventStore(),
            transport=transport,
            verifier=verifier,
            settings=settings,
            retry_policy=retry_policy,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: Optional[Registry] = None,
        transport: Optional[NotificationTransport] = None,
        verifier: Optional[AttestationVerifier] = None,
    ) -> "MatchingEngine":
        """Pick SQL or in-memory stores and the HTTP or in-memory registry from configuration."""
        if registry is None:
            if settings.REGISTRY_BASE_URL:
                registry = RegistryClient(
                    settings.REGISTRY_BASE_URL,
                    timeout=settings.REGISTRY_TIMEOUT_SECONDS,
                    retry_policy=RetryPolicy(
                        max_attempts=settings.REGISTRY_MAX_ATTEMPTS,
                        base_delay=settings.NOTIFY_BASE_DELAY_SECONDS,
                        max_delay=settings.NOTIFY_MAX_DELAY_SECONDS,
                    ),
                )
            else:
                logger.warning("REGISTRY_BASE_URL not set; using an empty in-memory registry")
                registry = InMemoryRegistry()
        transport = transport or WebhookTransport(timeout=settings.REGISTRY_TIMEOUT_SECONDS)
        verifier = verifier or Ed25519AttestationVerifier(settings.authorized_hospital_keys)

        if not settings.DATABASE_URL:
            logger.warning("DATABASE_URL not set; match state is kept in memory only")
            return cls.in_memory(transport, verifier, registry=registry, settings=settings)

        db_engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        session_factory = create_session_factory(db_engine)
        return cls(
            registry=registry,
            match_store=SqlMatchStore(session_factory),
            rejected_pairs=SqlRejectedPairLedger(session_factory),
            notification_log=SqlNotificationLog(session_factory),
            events=SqlEventStore(session_factory),
            transport=transport,
            verifier=verifier,
            settings=settings,
            db_engine=db_engine,
        )

    async def start(self) -> None:
        if self.db_engine is not None:
            await init_db(self.db_engine)
            logger.info("Database tables ready")
        if self.settings.WORKER_ENABLED:
            await self.worker.start()
            if self.poller is not None:
                await self.poller.start()
        else:
            logger.info("Worker is disabled in configuration; notifications are delivered inline")

    async def stop(self) -> None:
        if self.poller is not None:
            await self.poller.stop()
        await self.worker.stop()
        for component in (self.registry, self.transport):
            aclose = getattr(component, "aclose", None)
            if aclose is not None:
                await aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("Matching engine stopped")
