"""
Background workers: notification delivery from an asyncio queue and
ledger event polling.
"""
import asyncio
import logging
from typing import Optional, Set

from organmatch.schemas.notification import Notification

logger = logging.getLogger(__name__)


class NotificationWorker:
    """Delivers queued notifications with at most `max_concurrent` sends in flight."""

    def __init__(self, dispatcher, max_concurrent: int = 4):
        self.dispatcher = dispatcher
        self.max_concurrent = max_concurrent
        self.queue: asyncio.Queue = asyncio.Queue()
        self.running = False
        self.tasks: Set[asyncio.Task] = set()

    def enqueue(self, notification: Notification) -> None:
        self.queue.put_nowait(notification)

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        logger.info(f"Starting notification worker (max_concurrent={self.max_concurrent})")
        self.tasks = {asyncio.create_task(self._consume(i)) for i in range(self.max_concurrent)}

    async def _consume(self, slot: int) -> None:
        while True:
            notification: Notification = await self.queue.get()
            try:
                await self.dispatcher.deliver(notification)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker slot {slot} failed on notification {notification.id}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self.queue.join()

    async def stop(self, drain: bool = True) -> None:
        logger.info("Stopping notification worker...")
        self.running = False
        if drain and self.tasks:
            pending = self.queue.qsize()
            if pending:
                logger.info(f"Waiting for {pending} queued notification(s)...")
            await self.queue.join()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks = set()
        logger.info("Notification worker stopped")


class LedgerPoller:
    """Periodically feeds new ledger events to subscribers of a polling event store."""

    def __init__(self, event_store, poll_interval: float = 2.0):
        self.event_store = event_store
        self.poll_interval = poll_interval
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        logger.info(f"Starting ledger poller (poll_interval={self.poll_interval}s)")
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self.running:
            try:
                read = await self.event_store.poll_once()
                if read:
                    logger.debug(f"Ledger poller handled {read} event(s)")
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Ledger poll failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def stop(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Ledger poller stopped")
