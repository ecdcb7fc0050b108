from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .session_tokens import load_signing_key

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram bot token; launch data is signed with a key derived from it.
    # Left empty, every login is rejected with ConfigurationMissing.
    BOT_TOKEN: str = ""

    # HS256 key for session cookies (generate with: openssl rand -hex 32)
    SESSION_SECRET: str

    SESSION_TTL_SECONDS: int = 3600
    INIT_DATA_MAX_AGE_SECONDS: int = 300

    SESSION_COOKIE_NAME: str = "session"
    COOKIE_SECURE: bool = False

    # requests under these prefixes are redirected to "/" without a session
    PROTECTED_PREFIXES: Annotated[list[str], NoDecode] = ["/protected"]

    AUDIT_DIR: Path = BASE_DIR.parent / "audit"
    AUDIT_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"

    @field_validator("BOT_TOKEN")
    @classmethod
    def normalize_bot_token(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("SESSION_SECRET")
    @classmethod
    def check_session_secret(cls, v: str) -> str:
        """
        The session key is validated once, here, so a weak key stops the
        process before any request is served instead of failing per call.
        """
        v = (v or "").strip()
        load_signing_key(v)
        return v

    @field_validator("SESSION_TTL_SECONDS", "INIT_DATA_MAX_AGE_SECONDS")
    @classmethod
    def positive_seconds(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v

    @field_validator("SESSION_COOKIE_NAME")
    @classmethod
    def normalize_cookie_name(cls, v: str) -> str:
        return (v or "").strip() or "session"

    @field_validator("PROTECTED_PREFIXES", mode="before")
    @classmethod
    def normalize_prefixes(cls, v):
        # accept PROTECTED_PREFIXES="/protected,/admin" from env
        if isinstance(v, str):
            v = [p for p in v.split(",")]
        out = []
        for p in v or []:
            p = str(p).strip().rstrip("/")
            if not p:
                continue
            if not p.startswith("/"):
                p = "/" + p
            out.append(p)
        return out

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @property
    def signing_key(self) -> bytes:
        return load_signing_key(self.SESSION_SECRET)


settings = Settings()
