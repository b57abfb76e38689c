"""
Projection between provider records, cache records and host views.

The provider only exposes a flat log of directed messages, so threads are
inferred here: every message sharing a counterpart number belongs to the
same pairwise thread. Nothing in this module performs I/O.
"""

from typing import Iterable, Optional

from smsthreads.schemas import (
    CurrentUser,
    Message,
    MessagePage,
    MessageRecord,
    RawMessage,
    Thread,
    User,
)
from smsthreads.utils import hash_phone_number, ms_to_datetime


def _sort_key(record: MessageRecord) -> tuple[int, str]:
    return (record.timestamp, record.id)


def to_message_record(raw: RawMessage, self_number: str) -> MessageRecord:
    """
    Normalize a provider record relative to the account's own number.

    Outgoing messages are stored already read: the account has seen what
    it sent.
    """
    is_sender = raw.from_number == self_number
    other_participant = raw.to if is_sender else raw.from_number
    return MessageRecord(
        id=raw.id,
        body=raw.body or "",
        other_participant=other_participant,
        is_sender=is_sender,
        is_read=is_sender,
        timestamp=raw.date_created,
    )


def to_message_records(raws: Iterable[RawMessage], self_number: str) -> list[MessageRecord]:
    return [to_message_record(raw, self_number) for raw in raws]


def to_user(phone_number: str) -> User:
    """Synthesize a participant; the number is the only profile data available."""
    return User(
        id=hash_phone_number(phone_number),
        phone_number=phone_number,
        display_name=phone_number,
    )


def group_by_thread(records: Iterable[MessageRecord]) -> dict[str, list[MessageRecord]]:
    """
    Group records by thread key.

    Returns:
        Mapping of counterpart number to that thread's records, each list
        ordered by timestamp ascending (id breaks ties)
    """
    threads: dict[str, list[MessageRecord]] = {}
    for record in records:
        threads.setdefault(record.other_participant, []).append(record)
    for thread_records in threads.values():
        thread_records.sort(key=_sort_key)
    return threads


def to_message_view(record: Optional[MessageRecord], current_user: CurrentUser) -> Optional[Message]:
    """
    Map a cache record to a thread message.

    A lookup miss maps to None rather than raising; read-receipt flows treat
    "no such message yet" as a normal state.
    """
    if record is None:
        return None
    sender_id = current_user.id if record.is_sender else hash_phone_number(record.other_participant)
    return Message(
        id=record.id,
        thread_id=record.other_participant,
        sender_id=sender_id,
        text=record.body,
        timestamp=ms_to_datetime(record.timestamp),
        is_sender=record.is_sender,
        is_read=record.is_read,
        cursor=str(record.timestamp),
    )


def to_message_views(records: Iterable[MessageRecord], current_user: CurrentUser) -> list[Message]:
    return [to_message_view(record, current_user) for record in records]


def to_thread_view(
    thread_key: str,
    records: list[MessageRecord],
    current_user: CurrentUser,
    page_limit: Optional[int] = None,
) -> Thread:
    """
    Build the view of one thread from all of its records.

    The thread is unread when its most recent message is not also its most
    recent read message. With a page_limit only the newest page of messages
    is embedded; read state is still derived from every record.

    Raises:
        ValueError: If records is empty (a thread only exists through its messages)
    """
    if not records:
        raise ValueError(f"Thread {thread_key} has no messages")

    ordered = sorted(records, key=_sort_key)
    latest = ordered[-1]
    last_read = next((record for record in reversed(ordered) if record.is_read), None)
    last_read_id = last_read.id if last_read else None

    counterpart = to_user(thread_key)
    embedded = ordered if page_limit is None else ordered[-page_limit:]
    messages = to_message_views(embedded, current_user)
    return Thread(
        id=thread_key,
        title=counterpart.phone_number,
        is_unread=last_read_id != latest.id,
        last_read_message_id=last_read_id,
        timestamp=ms_to_datetime(latest.timestamp),
        participants=[current_user, counterpart],
        messages=MessagePage(
            items=messages,
            has_more=len(embedded) < len(ordered),
            oldest_cursor=messages[0].cursor,
        ),
    )


def to_thread_views(
    records: Iterable[MessageRecord],
    current_user: CurrentUser,
    page_limit: Optional[int] = None,
) -> list[Thread]:
    """
    Derive every thread present in a set of records, most recently active first.
    """
    threads = [
        to_thread_view(thread_key, thread_records, current_user, page_limit)
        for thread_key, thread_records in group_by_thread(records).items()
    ]
    threads.sort(key=lambda thread: (thread.timestamp, thread.id), reverse=True)
    return threads
