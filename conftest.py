"""
Pytest configuration and shared fixtures.

Settings are reloaded before any package imports so tests never pick up a
stale cached instance. The remote provider is replaced by FakeSource.
"""

import asyncio
from typing import Optional

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from smsthreads.config import Settings, get_settings
get_settings.cache_clear()

from smsthreads.errors import ProviderError  # noqa: E402
from smsthreads.schemas import CurrentUser, RawMessage  # noqa: E402
from smsthreads.storage import create_store  # noqa: E402
from smsthreads.utils import hash_phone_number  # noqa: E402


SELF_NUMBER = "+1"


class FakeSource:
    """In-memory stand-in for the provider's message log."""

    def __init__(self):
        self.number: Optional[str] = None
        self.sid: Optional[str] = None
        self.token: Optional[str] = None
        self.messages: list[RawMessage] = []
        self.calls: list[Optional[int]] = []
        self.fail = False
        self.fail_send = False
        self.closed = False
        # When set, listings wait on it after being recorded
        self.gate: Optional[asyncio.Event] = None
        self._next_sid = 0

    def add(self, message_id: str, from_number: str, to: str, ts: int, body: str = "") -> RawMessage:
        message = RawMessage(id=message_id, body=body, from_number=from_number, to=to, date_created=ts)
        self.messages.append(message)
        return message

    async def login(self, sid: str, token: str, number: str) -> None:
        self.sid = sid
        self.token = token
        self.number = number

    async def get_messages_of_number(self, since_ms: Optional[int] = None) -> list[RawMessage]:
        self.calls.append(since_ms)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ProviderError("provider unavailable")
        matching = [
            m for m in self.messages
            if since_ms is None or m.date_created >= since_ms
        ]
        return sorted(matching, key=lambda m: (m.date_created, m.id))

    async def send_message(self, counterpart: str, text: str) -> RawMessage:
        if self.fail_send:
            raise ProviderError("message rejected")
        self._next_sid += 1
        latest = max((m.date_created for m in self.messages), default=0)
        return self.add(f"SM{self._next_sid}", self.number, counterpart, latest + 1000, text)

    async def get_current_user(self) -> CurrentUser:
        return CurrentUser(
            id=hash_phone_number(self.number),
            phone_number=self.number,
            display_name=self.number,
        )

    async def close(self) -> None:
        self.closed = True


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATA_DIR": str(tmp_path / "data"),
        "TWILIO_ACCOUNT_SID": None,
        "TWILIO_AUTH_TOKEN": None,
        "TWILIO_NUMBER": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def current_user() -> CurrentUser:
    return CurrentUser(
        id=hash_phone_number(SELF_NUMBER),
        phone_number=SELF_NUMBER,
        display_name=SELF_NUMBER,
    )


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a fresh cache file for each test."""
    factory = create_store(tmp_path / "cache.sqlite")
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return make_settings(tmp_path)
