"""
miniapp_auth/sessions.py

Session lifecycle on top of the token layer.

States are not stored anywhere: a request is Authenticated iff it carries a
token the codec accepts, Anonymous otherwise. Every accepted token is
re-issued with a fresh expiry (sliding renewal), so an active user is never
logged out while a quiet one drops off after SESSION_TTL_SECONDS.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .init_data import Verified
from .models import SessionClaims, SessionUser
from .session_tokens import SessionCodec, SessionTokenError, SessionTokenFailure

DEFAULT_SESSION_TTL_SECONDS = 60 * 60

Clock = Callable[[], float]


@dataclass(frozen=True)
class IssuedSession:
    """A token plus the claims it carries; the caller stores the token."""

    token: str
    claims: SessionClaims

    @property
    def expires_at(self) -> float:
        return self.claims.expires_at


@dataclass(frozen=True)
class SessionCheck:
    claims: Optional[SessionClaims] = None
    failure: Optional[SessionTokenFailure] = None

    @property
    def authenticated(self) -> bool:
        return self.claims is not None


ANONYMOUS = SessionCheck()


class SessionManager:
    def __init__(
        self,
        codec: SessionCodec,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Clock = time.time,
    ):
        self.codec = codec
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _issue(self, user: SessionUser, now: float) -> IssuedSession:
        # millisecond precision so two renewals within one second still differ
        claims = SessionClaims(user=user, expires_at=round(now + self.ttl_seconds, 3))
        return IssuedSession(token=self.codec.issue(claims, now), claims=claims)

    def login(self, outcome: Verified, now: Optional[float] = None) -> IssuedSession:
        """Anonymous -> Authenticated on verified launch data."""
        now = self.now() if now is None else now
        return self._issue(SessionUser.from_telegram(outcome.user), now)

    def check(self, token: Optional[str], now: Optional[float] = None) -> SessionCheck:
        if not token:
            return ANONYMOUS
        now = self.now() if now is None else now
        try:
            return SessionCheck(claims=self.codec.verify(token, now))
        except SessionTokenError as e:
            return SessionCheck(failure=e.reason)

    def current(self, token: Optional[str], now: Optional[float] = None) -> Optional[SessionClaims]:
        return self.check(token, now).claims

    def refresh(self, claims: SessionClaims, now: Optional[float] = None) -> IssuedSession:
        """New claims for the same user with expiry pushed to now + ttl."""
        now = self.now() if now is None else now
        return self._issue(claims.user, now)

    def renew(self, token: Optional[str], now: Optional[float] = None) -> Optional[IssuedSession]:
        """Authenticated -> Authenticated (renewed), or None when Anonymous."""
        now = self.now() if now is None else now
        claims = self.current(token, now)
        if claims is None:
            return None
        return self.refresh(claims, now)
