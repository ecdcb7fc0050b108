from typing import Optional

from pydantic import BaseModel, ConfigDict


class TelegramUser(BaseModel):
    """The `user` object embedded in mini app launch data."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: Optional[bool] = None
    photo_url: Optional[str] = None


class SessionUser(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: int
    username: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_telegram(cls, user: TelegramUser) -> "SessionUser":
        return cls(id=user.id, username=user.username, display_name=user.first_name)


class SessionClaims(BaseModel):
    """What a session cookie proves. Renewal builds a new instance."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user: SessionUser
    expires_at: float  # Unix seconds, millisecond precision


class AuthRequest(BaseModel):
    initData: str
