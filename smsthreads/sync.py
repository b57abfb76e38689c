"""
Polling sync engine.

Keeps the local cache in step with the provider's message log:

1. start() pulls everything newer than the stored watermark (the whole
   history on first run) before polling begins
2. a single background task then waits for the next tick, pulls again,
   persists, and emits one ServerEvent per thread with new messages
3. a successful pull re-arms the wait with the short poll interval, a
   failed one with the long backoff interval
4. resume() cuts the pending wait short when the last successful pull is
   older than the resume threshold (e.g. after the host slept)
5. dispose() is terminal: the task is cancelled and any tick that still
   fires exits without touching the store

Only one cycle ever runs at a time; a slow provider call delays the next
tick instead of overlapping it.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from smsthreads.mappers import group_by_thread, to_message_records, to_message_views
from smsthreads.metrics import record_events_emitted, record_messages_stored, record_poll_outcome
from smsthreads.remote import RemoteSource
from smsthreads.schemas import CurrentUser, MessageRecord, ServerEvent, SyncStatus
from smsthreads.storage import get_watermark, upsert_messages

logger = logging.getLogger(__name__)

EventCallback = Callable[[ServerEvent], None]

DEFAULT_POLL_INTERVAL = 8.0
DEFAULT_BACKOFF_INTERVAL = 60.0
DEFAULT_RESUME_THRESHOLD = 5.0
DEFAULT_WATERMARK_MARGIN_MS = 2000


class SyncEngine:
    """
    Watermark-based incremental poller for one account session.

    Usage:
        engine = SyncEngine(session_factory, source, current_user, on_event=publish)
        await engine.start()
        # ... later ...
        engine.resume()
        await engine.dispose()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        source: RemoteSource,
        current_user: CurrentUser,
        on_event: Optional[EventCallback] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        backoff_interval: float = DEFAULT_BACKOFF_INTERVAL,
        resume_threshold: float = DEFAULT_RESUME_THRESHOLD,
        watermark_margin_ms: int = DEFAULT_WATERMARK_MARGIN_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._source = source
        self._current_user = current_user
        self._on_event = on_event
        self.poll_interval = poll_interval
        self.backoff_interval = backoff_interval
        self.resume_threshold = resume_threshold
        self.watermark_margin_ms = watermark_margin_ms
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._disposed = False
        self._polling = False
        self._last_success: Optional[float] = None

        self.last_success_at: Optional[datetime] = None
        self.consecutive_failures = 0
        self.error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def next_since(self) -> Optional[int]:
        """Lower bound for the next fetch: watermark plus safety margin, or None when empty."""
        with self._session_factory() as db:
            watermark = get_watermark(db)
        if watermark is None:
            return None
        return watermark + self.watermark_margin_ms

    async def start(self) -> None:
        """
        Run the initial pull, then launch the polling task.

        Raises:
            SQLAlchemyError: If the initial pull cannot be persisted
        """
        if self._task is not None:
            logger.warning("Sync engine already running")
            return
        if self._disposed:
            raise RuntimeError("Sync engine was disposed")

        logger.info(f"Starting sync for {self._current_user.phone_number}")
        ok = await self.poll_once()
        if self._disposed:
            return

        delay = self.poll_interval if ok else self.backoff_interval
        self._task = asyncio.create_task(self._run(delay), name="sms-sync")
        self._task.add_done_callback(self._on_task_done)

    async def poll_once(self) -> bool:
        """
        Pull, persist and notify once.

        Provider failures of any kind are swallowed and reported as False.
        Storage failures propagate.

        Returns:
            True if the pull succeeded (even when it returned nothing new)
        """
        if self._disposed:
            return False

        started = time.perf_counter()
        since = self.next_since()
        logger.debug(f"Polling provider since={since}")

        self._polling = True
        try:
            raw_messages = await self._source.get_messages_of_number(since)
        except Exception as e:
            self.consecutive_failures += 1
            record_poll_outcome("failure", time.perf_counter() - started)
            logger.warning(
                f"Poll failed ({self.consecutive_failures} in a row), "
                f"retrying in {self.backoff_interval}s: {e}"
            )
            return False
        finally:
            self._polling = False

        if self._disposed:
            logger.debug("Disposed during fetch, dropping results")
            return False

        records = to_message_records(raw_messages, self._current_user.phone_number)
        with self._session_factory() as db:
            new_ids = set(upsert_messages(db, records))

        self._last_success = self._clock()
        self.last_success_at = datetime.now(timezone.utc)
        self.consecutive_failures = 0
        record_poll_outcome("success", time.perf_counter() - started)
        record_messages_stored(len(new_ids), "sync")

        if new_ids:
            logger.info(f"Poll stored {len(new_ids)} new messages")
            self._notify([record for record in records if record.id in new_ids])
        return True

    def resume(self) -> bool:
        """
        Poll immediately if the last successful pull is older than the threshold.

        A pull already in flight counts as polling now: the wake is not
        armed again, so no second pull follows it back-to-back.

        Returns:
            True if the pending tick was cut short
        """
        if self._disposed or self._task is None:
            return False
        if self._polling:
            logger.debug("Resume ignored, a pull is in flight")
            return False
        if self._last_success is not None:
            elapsed = self._clock() - self._last_success
            if elapsed <= self.resume_threshold:
                logger.debug(f"Resume ignored, last pull {elapsed:.1f}s ago")
                return False
        logger.info("Resuming sync: polling now")
        self._wake.set()
        return True

    async def dispose(self) -> None:
        """Stop polling for good. Safe to call more than once."""
        if self._disposed:
            return
        logger.info("Disposing sync engine")
        self._disposed = True
        self._wake.set()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def status(self) -> SyncStatus:
        return SyncStatus(
            running=self.running,
            last_success_at=self.last_success_at,
            consecutive_failures=self.consecutive_failures,
            watermark=None if self._disposed else self._watermark(),
            error=str(self.error) if self.error else None,
        )

    def _watermark(self) -> Optional[int]:
        with self._session_factory() as db:
            return get_watermark(db)

    async def _run(self, delay: float) -> None:
        while not self._disposed:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
                logger.debug("Pending tick cut short")
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._disposed:
                break

            ok = await self.poll_once()
            delay = self.poll_interval if ok else self.backoff_interval

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug("Sync task was cancelled")
        elif task.exception() is not None:
            self.error = task.exception()
            logger.error(f"Sync task crashed: {self.error!r}")
        else:
            logger.debug("Sync task completed")

    def _notify(self, records: list[MessageRecord]) -> None:
        """Emit one event per thread so a large pull does not flood the host."""
        if self._on_event is None:
            return
        threads = group_by_thread(records)
        for thread_key, thread_records in threads.items():
            event = ServerEvent(
                thread_id=thread_key,
                entries=to_message_views(thread_records, self._current_user),
            )
            try:
                self._on_event(event)
            except Exception:
                logger.exception(f"Event handler failed for thread {thread_key}")
        record_events_emitted(len(threads))
