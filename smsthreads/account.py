"""
Account session: the query facade served to the host.

One AccountSession exists per logged-in account. It owns the account's
cache file, its remote source and its sync engine, and composes the store
with the projection to answer thread and message reads.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from smsthreads.config import Settings
from smsthreads.errors import InitializationError, SendFailedError
from smsthreads.logging_utils import set_account
from smsthreads.mappers import to_message_record, to_message_view
from smsthreads.metrics import record_messages_stored, record_send_outcome
from smsthreads.remote import RemoteSource, TwilioSource
from smsthreads.schemas import (
    CurrentUser,
    Message,
    MessagePage,
    SessionCredentials,
    SyncStatus,
    ThreadPage,
)
from smsthreads.storage import (
    check_db_health,
    create_store,
    get_message_by_id,
    list_messages,
    list_threads,
    mark_read,
    upsert_messages,
)
from smsthreads.sync import EventCallback, SyncEngine
from smsthreads.utils import parse_cursor, parse_thread_cursor, thread_cursor

logger = logging.getLogger(__name__)


class AccountSession:
    """
    Facade over one account's cache, remote source and sync engine.

    Usage:
        account = AccountSession(settings)
        await account.init({"sid": ..., "token": ..., "number": ...})
        page = account.get_threads()
        ...
        await account.dispose()
    """

    def __init__(self, settings: Settings, source: Optional[RemoteSource] = None):
        self.settings = settings
        self.source = source if source is not None else TwilioSource()
        self.credentials: Optional[SessionCredentials] = None
        self.current_user: Optional[CurrentUser] = None
        self.db_path: Optional[Path] = None
        self.sync: Optional[SyncEngine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._subscribers: list[EventCallback] = []

    @property
    def ready(self) -> bool:
        return self.current_user is not None and self._session_factory is not None

    async def init(
        self,
        credentials: Union[SessionCredentials, dict[str, Any], None],
        start_sync: bool = True,
    ) -> None:
        """
        Log in, open the account's cache and start syncing.

        Args:
            credentials: Serialized session ({sid, token, number})
            start_sync: Run the initial pull and start polling

        Raises:
            InitializationError: If credentials are missing or malformed;
                nothing is started in that case
        """
        if not credentials:
            logger.error("No session credentials in init()")
            raise InitializationError("No session credentials")
        try:
            creds = SessionCredentials.model_validate(credentials)
        except ValidationError as e:
            logger.error(f"Malformed session credentials: {e.error_count()} errors")
            raise InitializationError(f"Malformed session credentials: {e}") from e

        set_account(creds.number)
        await self.source.login(creds.sid, creds.token, creds.number)
        self.credentials = creds
        self.current_user = await self.source.get_current_user()

        self.db_path = Path(self.settings.DATA_DIR) / f"{self.current_user.id}.sqlite"
        self._session_factory = create_store(self.db_path)
        self.sync = SyncEngine(
            self._session_factory,
            self.source,
            self.current_user,
            on_event=self._publish,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
            backoff_interval=self.settings.BACKOFF_INTERVAL_SECONDS,
            resume_threshold=self.settings.RESUME_THRESHOLD_SECONDS,
            watermark_margin_ms=self.settings.WATERMARK_MARGIN_MS,
        )
        logger.info(f"Account session initialized for {creds.number}")

        if start_sync:
            await self.sync.start()

    def serialize_session(self) -> Optional[dict[str, str]]:
        return self.credentials.model_dump() if self.credentials else None

    def _require_ready(self) -> sessionmaker:
        if not self.ready:
            raise InitializationError("Account session is not initialized")
        return self._session_factory

    def _page_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.DEFAULT_PAGE_LIMIT
        return max(1, min(limit, self.settings.MAX_PAGE_LIMIT))

    # =========================================================================
    # Reads
    # =========================================================================

    def get_current_user(self) -> CurrentUser:
        self._require_ready()
        return self.current_user

    def get_threads(self, cursor: Optional[str] = None, limit: Optional[int] = None) -> ThreadPage:
        """
        List threads, most recently active first.

        The provider has no thread listing, so every thread is materialized
        from the cache and the page is sliced locally. The cursor is the
        (latest activity, thread id) position of the last thread already
        delivered, matching the order threads are listed in, so threads
        last active at the same instant are never skipped. Each thread
        embeds only its newest page of messages.
        """
        session_factory = self._require_ready()
        before = parse_thread_cursor(cursor)
        limit = self._page_limit(limit)

        with session_factory() as db:
            threads = list_threads(db, self.current_user, page_limit=self.settings.DEFAULT_PAGE_LIMIT)

        def position(thread) -> tuple[int, str]:
            return int(thread.messages.items[-1].cursor), thread.id

        if before is not None:
            threads = [thread for thread in threads if position(thread) < before]
        page = threads[:limit]
        return ThreadPage(
            items=page,
            has_more=len(page) == limit,
            oldest_cursor=thread_cursor(*position(page[-1])) if page else None,
        )

    def get_messages(self, thread_key: str, cursor: Optional[str] = None, limit: Optional[int] = None) -> MessagePage:
        """
        One page of a thread, oldest first.

        Without a cursor the newest `limit` messages are returned; with one,
        up to `limit` messages strictly older than it. has_more means the
        page came back full.
        """
        session_factory = self._require_ready()
        before = parse_cursor(cursor)
        limit = self._page_limit(limit)

        with session_factory() as db:
            items = list_messages(db, thread_key, self.current_user, limit, before)
        return MessagePage(
            items=items,
            has_more=len(items) == limit,
            oldest_cursor=items[0].cursor if items else None,
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        session_factory = self._require_ready()
        with session_factory() as db:
            record = get_message_by_id(db, message_id)
        return to_message_view(record, self.current_user)

    def sync_status(self) -> Optional[SyncStatus]:
        return self.sync.status() if self.sync else None

    def check_health(self) -> bool:
        if not self.ready:
            return False
        return check_db_health(self._session_factory)

    # =========================================================================
    # Writes
    # =========================================================================

    def mark_read(self, thread_key: str, message_id: str) -> int:
        """
        Mark a thread read up to and including a message.

        An unknown message id (or one from another thread) is a normal
        transient state, not an error: nothing changes.

        Returns:
            Number of messages newly flagged as read
        """
        session_factory = self._require_ready()
        with session_factory() as db:
            record = get_message_by_id(db, message_id)
            if record is None or record.other_participant != thread_key:
                logger.debug(f"Read receipt for unknown message {message_id} in {thread_key}")
                return 0
            return mark_read(db, thread_key, record.timestamp)

    async def send_message(self, thread_key: str, text: str) -> Message:
        """
        Send a message to a thread's counterpart and store it.

        Raises:
            SendFailedError: If the provider rejects the send; the cache is
                left untouched
        """
        session_factory = self._require_ready()
        try:
            raw = await self.source.send_message(thread_key, text)
        except Exception as e:
            record_send_outcome("failed")
            logger.error(f"Send to {thread_key} failed: {e}")
            raise SendFailedError(thread_key, str(e)) from e

        record = to_message_record(raw, self.current_user.phone_number)
        with session_factory() as db:
            new_ids = upsert_messages(db, [record])
        record_send_outcome("sent")
        record_messages_stored(len(new_ids), "send")
        logger.info(f"Message {record.id} sent to {thread_key}")
        return to_message_view(record, self.current_user)

    # =========================================================================
    # Events and lifecycle
    # =========================================================================

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register a change-notification callback.

        Returns:
            A function that removes the callback again
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event) -> None:
        for callback in list(self._subscribers):
            callback(event)

    def on_resume(self) -> bool:
        """Host woke up (e.g. from sleep); poll now if the cache may be stale."""
        return self.sync.resume() if self.sync else False

    async def dispose(self) -> None:
        """Stop polling and release the remote client and the cache engine."""
        if self.sync is not None:
            await self.sync.dispose()
        await self.source.close()
        if self._session_factory is not None:
            self._session_factory.kw["bind"].dispose()
            self._session_factory = None
        self._subscribers.clear()
        logger.info("Account session disposed")
