"""
Tests for the local message store.

Tests cover:
- Idempotent upserts and new-id reporting
- Read state surviving re-fetches
- Watermark on empty and populated caches
- Thread derivation and unread flags
- Cursor pagination boundaries
- Read-state monotonicity
- Schema creation and version marker
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.dml import Insert

from smsthreads.schemas import MessageRecord
from smsthreads.storage import (
    SCHEMA_VERSION,
    check_db_health,
    create_store,
    get_all_records,
    get_message_by_id,
    get_schema_version,
    get_thread_records,
    get_watermark,
    list_messages,
    list_threads,
    mark_read,
    upsert_messages,
)


def record(message_id: str, other: str, ts: int, is_sender: bool = False, is_read: bool = False, body: str = "") -> MessageRecord:
    return MessageRecord(
        id=message_id,
        body=body or f"body {message_id}",
        other_participant=other,
        is_sender=is_sender,
        is_read=is_read,
        timestamp=ts,
    )


@pytest.fixture
def five_message_thread(db):
    upsert_messages(db, [record(f"m{i}", "+2", i * 100) for i in range(1, 6)])
    return db


class TestUpsert:
    """Test idempotent batch upserts."""

    def test_new_ids_reported(self, db):
        new_ids = upsert_messages(db, [record("a", "+2", 100), record("b", "+2", 200)])

        assert new_ids == ["a", "b"]
        assert len(get_all_records(db)) == 2

    def test_upsert_twice_same_state(self, db):
        batch = [record("a", "+2", 100), record("b", "+3", 200)]
        upsert_messages(db, batch)
        before = get_all_records(db)

        new_ids = upsert_messages(db, batch)

        assert new_ids == []
        assert get_all_records(db) == before

    def test_new_data_wins(self, db):
        upsert_messages(db, [record("a", "+2", 100, body="old")])
        upsert_messages(db, [record("a", "+2", 100, body="new")])

        assert get_message_by_id(db, "a").body == "new"

    def test_reupsert_keeps_read_state(self, db):
        upsert_messages(db, [record("a", "+2", 100)])
        mark_read(db, "+2", 100)

        upsert_messages(db, [record("a", "+2", 100, is_read=False)])

        assert get_message_by_id(db, "a").is_read is True

    def test_duplicate_ids_in_one_batch(self, db):
        new_ids = upsert_messages(db, [record("a", "+2", 100, body="first"), record("a", "+2", 100, body="second")])

        assert new_ids == ["a"]
        assert get_message_by_id(db, "a").body == "second"

    def test_empty_batch(self, db):
        assert upsert_messages(db, []) == []

    def test_failed_batch_leaves_nothing_behind(self, db, monkeypatch):
        upsert_messages(db, [record("a", "+2", 100, body="original")])
        before = get_all_records(db)
        real_execute = db.execute

        def execute_then_fail(statement, *args, **kwargs):
            result = real_execute(statement, *args, **kwargs)
            # Rows are written, then the batch fails before commit
            if isinstance(statement, Insert):
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return result

        monkeypatch.setattr(db, "execute", execute_then_fail)
        batch = [record("a", "+2", 100, body="changed"), record("b", "+3", 500), record("c", "+2", 600)]

        with pytest.raises(OperationalError):
            upsert_messages(db, batch)

        monkeypatch.undo()
        assert get_all_records(db) == before
        assert get_watermark(db) == 100
        assert get_message_by_id(db, "b") is None


class TestWatermark:
    """Test the max-timestamp watermark."""

    def test_empty_cache_has_no_watermark(self, db):
        assert get_watermark(db) is None

    def test_watermark_is_max_timestamp(self, db):
        upsert_messages(db, [record("a", "+2", 300), record("b", "+3", 100), record("c", "+2", 200)])
        assert get_watermark(db) == 300


class TestLookup:
    """Test single-message lookup."""

    def test_found(self, db):
        upsert_messages(db, [record("a", "+2", 100, is_sender=True)])
        found = get_message_by_id(db, "a")

        assert found.other_participant == "+2"
        assert found.is_sender is True
        assert found.timestamp == 100

    def test_miss_returns_none(self, db):
        assert get_message_by_id(db, "missing") is None


class TestListThreads:
    """Test thread derivation from the flat table."""

    def test_one_thread_per_counterpart(self, db, current_user):
        upsert_messages(db, [
            record("a", "+2", 100),
            record("b", "+3", 200),
            record("c", "+2", 300),
            record("d", "+4", 400),
        ])
        threads = list_threads(db, current_user)

        assert sorted(t.id for t in threads) == ["+2", "+3", "+4"]
        assert [t.id for t in threads] == ["+4", "+2", "+3"]

    def test_unread_flags(self, db, current_user):
        upsert_messages(db, [
            record("a", "+2", 100),
            record("b", "+2", 200),
            record("c", "+3", 300),
        ])
        mark_read(db, "+2", 200)

        threads = {t.id: t for t in list_threads(db, current_user)}

        assert threads["+2"].is_unread is False
        assert threads["+2"].last_read_message_id == "b"
        assert threads["+3"].is_unread is True
        assert threads["+3"].last_read_message_id is None

    def test_empty_cache(self, db, current_user):
        assert list_threads(db, current_user) == []


class TestListMessages:
    """Test per-thread pages and cursor boundaries."""

    def test_newest_page_in_ascending_order(self, five_message_thread, current_user):
        page = list_messages(five_message_thread, "+2", current_user, limit=2)
        assert [m.id for m in page] == ["m4", "m5"]

    def test_pages_to_exhaustion(self, five_message_thread, current_user):
        sizes = []
        seen = []
        cursor = None
        while True:
            page = list_messages(five_message_thread, "+2", current_user, limit=2, before_timestamp=cursor)
            if not page:
                break
            sizes.append(len(page))
            seen.extend(m.id for m in page)
            if len(page) < 2:
                break
            cursor = int(page[0].cursor)

        assert sizes == [2, 2, 1]
        assert sorted(seen) == ["m1", "m2", "m3", "m4", "m5"]
        assert len(seen) == len(set(seen))

    def test_cursor_excludes_boundary(self, five_message_thread, current_user):
        page = list_messages(five_message_thread, "+2", current_user, limit=10, before_timestamp=300)
        assert [m.id for m in page] == ["m1", "m2"]

    def test_other_threads_excluded(self, five_message_thread, current_user):
        upsert_messages(five_message_thread, [record("x", "+3", 1000)])
        page = list_messages(five_message_thread, "+2", current_user, limit=10)
        assert "x" not in [m.id for m in page]

    def test_unknown_thread_is_empty(self, db, current_user):
        assert list_messages(db, "+9", current_user, limit=10) == []


class TestMarkRead:
    """Test threshold read marking."""

    def test_marks_up_to_threshold(self, five_message_thread):
        changed = mark_read(five_message_thread, "+2", 300)

        assert changed == 3
        read = {r.id: r.is_read for r in get_thread_records(five_message_thread, "+2")}
        assert read == {"m1": True, "m2": True, "m3": True, "m4": False, "m5": False}

    def test_never_unmarks(self, five_message_thread):
        mark_read(five_message_thread, "+2", 400)
        changed = mark_read(five_message_thread, "+2", 100)

        assert changed == 0
        read = [r.is_read for r in get_thread_records(five_message_thread, "+2")]
        assert read == [True, True, True, True, False]

    def test_only_target_thread(self, five_message_thread):
        upsert_messages(five_message_thread, [record("x", "+3", 100)])
        mark_read(five_message_thread, "+2", 500)

        assert get_message_by_id(five_message_thread, "x").is_read is False


class TestSchema:
    """Test lazy creation of the cache file."""

    def test_creates_parent_dirs_and_table(self, tmp_path):
        path = tmp_path / "nested" / "account.sqlite"
        factory = create_store(path)
        try:
            assert path.exists()
            assert check_db_health(factory) is True
            assert get_schema_version(factory.kw["bind"]) == SCHEMA_VERSION
        finally:
            factory.kw["bind"].dispose()

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "account.sqlite"
        factory = create_store(path)
        with factory() as session:
            upsert_messages(session, [record("a", "+2", 100)])
        factory.kw["bind"].dispose()

        reopened = create_store(path)
        try:
            with reopened() as session:
                assert get_message_by_id(session, "a") is not None
        finally:
            reopened.kw["bind"].dispose()

    def test_column_names(self, db):
        columns = [row[1] for row in db.execute(text("PRAGMA table_info(messages)"))]
        assert columns == ["id", "body", "otherParticipant", "isSender", "isRead", "timestamp"]
