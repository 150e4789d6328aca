import asyncio
import logging
from typing import Iterable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from reconciler.config import (
    BACKFILL_BLOCKS,
    RESYNC_INTERVAL_SECONDS,
    WRITE_RETRY_ATTEMPTS,
    WRITE_TIMEOUT_SECONDS,
)
from reconciler.events import ChainEvent, ChainLog, EventKind, parse_event
from reconciler.handlers import Outcome, apply_event, is_recorded, record_dead_letter
from reconciler.schemas import ListenerStatus
from reconciler.source import EventSource

logger = logging.getLogger(__name__)


class BlockchainListener:
    """Mirrors the payment contract's events into the database.

    ``start`` replays the last ``backfill_blocks`` blocks of historical events,
    then follows the live stream in a background task, reconnecting with
    exponential backoff whenever the source fails. Every event goes through
    ``reconcile``, which is idempotent per transaction hash / subscription id.
    """

    def __init__(
        self,
        source: EventSource,
        session_factory,
        publisher=None,
        backfill_blocks: int = BACKFILL_BLOCKS,
        historical_kinds: Iterable[EventKind] = (EventKind.PAYMENT_MADE,),
        live_kinds: Iterable[EventKind] = tuple(EventKind),
        resync_interval: float = RESYNC_INTERVAL_SECONDS,
        write_timeout: float = WRITE_TIMEOUT_SECONDS,
        write_attempts: int = WRITE_RETRY_ATTEMPTS,
        write_retry_wait=None,
        reconnect_wait=None,
        reconnect_stop=None,
    ):
        self.source = source
        self.session_factory = session_factory
        self.publisher = publisher
        self.backfill_blocks = backfill_blocks
        self.historical_kinds = tuple(historical_kinds)
        self.live_kinds = tuple(live_kinds)
        self.resync_interval = resync_interval
        self.write_timeout = write_timeout
        self.write_attempts = write_attempts
        self.write_retry_wait = write_retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self.reconnect_wait = reconnect_wait or wait_exponential(multiplier=1, min=1, max=60)
        self.reconnect_stop = reconnect_stop or stop_never

        self.is_listening = False
        self.last_block: Optional[int] = None
        self.synced_block: Optional[int] = None
        self._cursor: Optional[int] = None
        self._tasks = []

    async def start(self):
        if self.is_listening:
            logger.info("Blockchain listener already running")
            return
        if self._tasks:
            # Left behind by a live stream that gave up
            await self.stop()

        self.is_listening = True
        logger.info("Starting blockchain listener...")
        logger.info(f"Monitoring contract: {self.source.describe().get('contract_address')}")

        # Backfill finishes before the live stream starts
        await self.sync_historical()
        from_block = self.synced_block + 1 if self.synced_block is not None else None

        self._tasks = [asyncio.create_task(self._run_live(from_block), name="blockchain-live")]
        if self.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._run_resync(), name="blockchain-resync"))
        logger.info("Blockchain listener started successfully")

    async def stop(self):
        if not self.is_listening and not self._tasks:
            return

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.is_listening = False
        logger.info("Blockchain listener stopped")

    async def status(self) -> ListenerStatus:
        try:
            current_block = await self.source.block_number()
        except Exception as e:
            logger.warning(f"Could not read current block: {e}")
            current_block = None
        info = self.source.describe()
        return ListenerStatus(
            is_listening=self.is_listening,
            contract_address=info.get("contract_address", ""),
            rpc_url=info.get("rpc_url", ""),
            current_block=current_block,
            last_block=self.last_block,
        )

    async def sync_historical(self) -> int:
        logger.info("Syncing historical events...")
        try:
            current_block = await self.source.block_number()
            from_block = max(0, current_block - self.backfill_blocks)
            logs = await self.source.fetch(self.historical_kinds, from_block, current_block)
        except Exception as e:
            logger.error(f"Error syncing historical events: {e}")
            return 0

        for log in logs:
            try:
                await self.reconcile(log)
            except Exception:
                # reconcile has already logged and dead-lettered it
                continue

        self.synced_block = current_block
        logger.info(f"Synced {len(logs)} historical events up to block {current_block}")
        return len(logs)

    async def reconcile(self, log: ChainLog) -> Outcome:
        try:
            event = parse_event(log)
        except ValidationError as e:
            logger.warning(
                f"Rejected malformed {log.kind.value} event {log.transaction_hash or '<no hash>'}: "
                f"{e.error_count()} invalid field(s)"
            )
            return Outcome.REJECTED

        try:
            outcome = await self._write_with_retry(event)
        except Exception as e:
            logger.error(f"Error handling {log.kind.value} event {log.transaction_hash}: {e}")
            await self._dead_letter(log, e)
            raise

        if self.last_block is None or log.block_number > self.last_block:
            self.last_block = log.block_number

        if outcome == Outcome.APPLIED and self.publisher is not None:
            try:
                await self.publisher.publish(event)
            except Exception as e:
                logger.error(f"Error publishing {log.kind.value} event {log.transaction_hash}: {e}")
        return outcome

    async def _write_with_retry(self, event: ChainEvent) -> Outcome:
        # Only timeouts are retried; any other failure is final
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(asyncio.TimeoutError),
            stop=stop_after_attempt(self.write_attempts),
            wait=self.write_retry_wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                outcome = await asyncio.wait_for(self._write(event), timeout=self.write_timeout)
        return outcome

    async def _write(self, event: ChainEvent) -> Outcome:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    return await apply_event(session, event)
            except IntegrityError:
                # Another caller inserted the same key between our check and insert
                if await is_recorded(session, event):
                    logger.info(f"Concurrent duplicate {event.kind.value} event: {event.transaction_hash}")
                    return Outcome.DUPLICATE
                raise

    async def _dead_letter(self, log: ChainLog, error: BaseException):
        try:
            async with self.session_factory() as session:
                await record_dead_letter(session, log, error)
        except Exception as e:
            logger.exception(f"Could not dead-letter {log.kind.value} event {log.transaction_hash}: {e}")

    async def _run_live(self, from_block: Optional[int]):
        self._cursor = from_block
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=self.reconnect_wait,
            stop=self.reconnect_stop,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._consume_stream()
        except Exception as e:
            logger.error(f"Live event stream stopped after repeated failures: {e}")
            self.is_listening = False
            # Nothing may keep writing once the listener reports itself stopped
            for task in self._tasks:
                if task is not asyncio.current_task():
                    task.cancel()

    async def _consume_stream(self):
        if self._cursor is None:
            # Pin the start so a reconnect rescans from here, not from a later head
            self._cursor = await self.source.block_number() + 1
        async for log in self.source.stream(self.live_kinds, self._cursor, on_progress=self._checkpoint):
            try:
                await self.reconcile(log)
            except Exception:
                # reconcile has already logged and dead-lettered it
                pass
            # Resume from the same block after a reconnect; duplicates are skipped
            self._advance(log.block_number)

    def _checkpoint(self, block_number: int):
        self._advance(block_number + 1)

    def _advance(self, block_number: int):
        if self._cursor is None or block_number > self._cursor:
            self._cursor = block_number

    async def _run_resync(self):
        while True:
            await asyncio.sleep(self.resync_interval)
            await self.sync_historical()
