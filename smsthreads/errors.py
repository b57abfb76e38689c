"""
Exception types raised by the account session and the remote adapter.

Lookup misses are not errors and never raise; they come back as None or
as an empty page.
"""


class SmsThreadsError(Exception):
    """Base class for all application errors."""


class InitializationError(SmsThreadsError):
    """Session credentials are missing or malformed; polling never starts."""


class NotLoggedInError(SmsThreadsError):
    """The remote source was used before login()."""


class ProviderError(SmsThreadsError):
    """The remote provider call failed (network, auth, rate limit...)."""


class SendFailedError(SmsThreadsError):
    """A user-initiated send was rejected by the provider."""

    def __init__(self, thread_key: str, reason: str):
        self.thread_key = thread_key
        self.reason = reason
        super().__init__(f"Failed to send message to {thread_key}: {reason}")
