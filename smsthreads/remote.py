"""
Remote source adapter: the provider's flat message log.

`RemoteSource` is the contract the sync engine and the account session
consume. `TwilioSource` implements it on top of the Twilio SDK's async
HTTP client.
"""

import logging
from typing import Optional, Protocol

from twilio.base.exceptions import TwilioException
from twilio.http.async_http_client import AsyncTwilioHttpClient
from twilio.rest import Client

from smsthreads.errors import NotLoggedInError, ProviderError
from smsthreads.schemas import CurrentUser, RawMessage
from smsthreads.utils import datetime_to_ms, hash_phone_number, ms_to_datetime, now_ms

logger = logging.getLogger(__name__)


class RemoteSource(Protocol):
    number: Optional[str]

    async def login(self, sid: str, token: str, number: str) -> None:
        ...

    async def get_messages_of_number(self, since_ms: Optional[int] = None) -> list[RawMessage]:
        """Messages sent from and to the account's number, oldest first."""
        ...

    async def send_message(self, counterpart: str, text: str) -> RawMessage:
        ...

    async def get_current_user(self) -> CurrentUser:
        ...

    async def close(self) -> None:
        ...


def _to_raw_message(instance) -> RawMessage:
    """Convert a Twilio MessageInstance to a RawMessage."""
    created = instance.date_created
    return RawMessage(
        id=instance.sid,
        body=instance.body or "",
        from_number=instance.from_,
        to=instance.to,
        date_created=datetime_to_ms(created) if created else now_ms(),
    )


class TwilioSource:
    """
    Twilio Programmable Messaging as a RemoteSource.

    Twilio has no "messages of a number" listing, so the union of the
    outbound (from_) and inbound (to) listings is fetched and merged.
    """

    def __init__(self):
        self._client: Optional[Client] = None
        self._http_client: Optional[AsyncTwilioHttpClient] = None
        self.sid: Optional[str] = None
        self.token: Optional[str] = None
        self.number: Optional[str] = None

    async def login(self, sid: str, token: str, number: str) -> None:
        logger.info(f"Logging in to Twilio as {number}")
        self.sid = sid
        self.token = token
        self.number = number
        self._http_client = AsyncTwilioHttpClient()
        self._client = Client(sid, token, http_client=self._http_client)

    def _require_client(self) -> Client:
        if self._client is None or self.number is None:
            raise NotLoggedInError("Twilio source used before login()")
        return self._client

    async def get_messages_of_number(self, since_ms: Optional[int] = None) -> list[RawMessage]:
        """
        Fetch every message sent from or to the account's number.

        Args:
            since_ms: Optional lower bound (epoch ms) passed to Twilio's
                DateSent> filter; None fetches the whole history

        Returns:
            Messages deduplicated by sid, sorted ascending by creation time

        Raises:
            ProviderError: If Twilio rejects either listing
        """
        client = self._require_client()
        filters = {}
        if since_ms is not None:
            filters["date_sent_after"] = ms_to_datetime(since_ms)

        logger.debug(f"Listing Twilio messages for {self.number}, since={since_ms}")
        try:
            outbound = await client.messages.list_async(from_=self.number, **filters)
            inbound = await client.messages.list_async(to=self.number, **filters)
        except TwilioException as e:
            logger.warning(f"Twilio message listing failed: {e}")
            raise ProviderError(str(e)) from e

        merged = {}
        for instance in [*outbound, *inbound]:
            merged[instance.sid] = _to_raw_message(instance)
        messages = sorted(merged.values(), key=lambda m: (m.date_created, m.id))
        logger.info(f"Fetched {len(messages)} messages ({len(outbound)} outbound, {len(inbound)} inbound)")
        return messages

    async def send_message(self, counterpart: str, text: str) -> RawMessage:
        """
        Send an SMS from the account's number.

        Raises:
            ProviderError: If Twilio rejects the message
        """
        client = self._require_client()
        logger.info(f"Sending message to {counterpart}")
        try:
            instance = await client.messages.create_async(to=counterpart, from_=self.number, body=text)
        except TwilioException as e:
            logger.warning(f"Twilio send to {counterpart} failed: {e}")
            raise ProviderError(str(e)) from e
        return _to_raw_message(instance)

    async def get_current_user(self) -> CurrentUser:
        self._require_client()
        return CurrentUser(
            id=hash_phone_number(self.number),
            phone_number=self.number,
            display_name=self.number or "Twilio",
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close()
        self._client = None
        self._http_client = None
