"""Bearer-token session with a fixed one-hour lifetime.

A ``TokenSession`` is created only after a successful connection test and
dies on logout, when its deadline passes, or the moment any API call comes
back with an authentication failure.  There is no refresh: after expiry
the user enters a new token.

Expiry arithmetic is pure (callers pass ``now``); the periodic check lives
in ``ExpiryWatcher`` so the scheduling can be owned by whoever renders the
countdown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Union

from src.capacities.errors import TokenFormatError

logger = logging.getLogger("capacities.session")

TOKEN_TTL = timedelta(hours=1)
MIN_TOKEN_LENGTH = 20
BEARER_PREFIX = "Bearer "
TOKEN_PREFIXES = ("sk-", "cap_")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_token_format(raw: str) -> str:
    """Return the normalized token or raise ``TokenFormatError``.

    Format only: a token that passes may still be rejected by the API.
    """
    token = (raw or "").strip()
    if not token:
        raise TokenFormatError("Please enter your API token")
    if token.startswith(BEARER_PREFIX):
        token = token[len(BEARER_PREFIX):].strip()
        if not token:
            raise TokenFormatError("Please enter your API token")
    if not token.startswith(TOKEN_PREFIXES) and len(token) < MIN_TOKEN_LENGTH:
        raise TokenFormatError("Invalid token format. Please check your API token.")
    return token


def mask_token(token: str) -> str:
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}…{token[-4:]}"


@dataclass
class TokenSession:
    value: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    invalidated_reason: str | None = None

    @classmethod
    def create(cls, raw_token: str, now: datetime | None = None) -> TokenSession:
        token = validate_token_format(raw_token)
        issued = now or utc_now()
        return cls(value=token, issued_at=issued, expires_at=issued + TOKEN_TTL)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))

    @property
    def invalidated(self) -> bool:
        return self.invalidated_reason is not None

    def is_valid(self, now: datetime) -> bool:
        return not self.invalidated and not self.is_expired(now)

    def invalidate(self, reason: str) -> None:
        if self.invalidated_reason is None:
            logger.info("Session %s invalidated: %s", self.masked(), reason)
            self.invalidated_reason = reason

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.value}"}

    def masked(self) -> str:
        return mask_token(self.value)


ExpiredCallback = Callable[[TokenSession], Union[None, Awaitable[None]]]


class ExpiryWatcher:
    """Poll the clock every ``interval`` seconds; fire ``on_expired`` once.

    Firing invalidates the session but cancels nothing already in flight;
    those calls are rejected by the dead session on their next step.
    """

    def __init__(
        self,
        session: TokenSession,
        on_expired: ExpiredCallback,
        clock: Clock = utc_now,
        interval: float = 1.0,
    ) -> None:
        self.session = session
        self._on_expired = on_expired
        self._clock = clock
        self._interval = interval
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self.check():
                result = self._on_expired(self.session)
                if asyncio.iscoroutine(result):
                    await result
                return

    def check(self) -> bool:
        """One tick: True once the session is no longer usable."""
        if self.session.invalidated:
            return True
        if self.session.is_expired(self._clock()):
            self.session.invalidate("token expired")
            return True
        return False
