"""
miniapp_auth/init_data.py

Verification of Telegram Mini App launch data ("initData").

The client hands us the raw query string the Telegram client injected into
the web view:

    query_id=...&user=%7B%22id%22%3A42...%7D&auth_date=1700000000&hash=<hex>

Telegram signs it with a key derived from the bot token:

    secret_key = HMAC-SHA256(key="WebAppData", msg=bot_token)
    hash       = hex( HMAC-SHA256(key=secret_key, msg=data_check_string) )

where data_check_string is every field except `hash`, sorted by key, each
rendered as `key=value`, joined with "\\n".

Contract:
- verify_init_data() never raises on bad input. Every failure is returned
  as a Rejected outcome carrying a RejectReason.
- The function is pure apart from the `now` argument. The caller supplies
  the clock; nothing here reads configuration or logs.
- Freshness only bounds the age of the payload (now - auth_date > max_age).
  A payload dated in the future is not rejected.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Tuple, Union
from urllib.parse import parse_qsl, urlencode

from cryptography.hazmat.primitives import constant_time, hashes, hmac
from pydantic import ValidationError

from .models import TelegramUser

WEB_APP_DATA_KEY = b"WebAppData"
DEFAULT_MAX_AGE_SECONDS = 300

# longest value that fits a signed 64-bit Unix timestamp
MAX_TIMESTAMP_DIGITS = 19


class RejectReason(str, Enum):
    CONFIGURATION_MISSING = "ConfigurationMissing"
    MISSING_SIGNATURE = "MissingSignature"
    MISSING_TIMESTAMP = "MissingTimestamp"
    MALFORMED_TIMESTAMP = "MalformedTimestamp"
    STALE_PAYLOAD = "StalePayload"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    MISSING_USER_DATA = "MissingUserData"
    MALFORMED_USER_DATA = "MalformedUserData"


REJECT_MESSAGES: Dict[RejectReason, str] = {
    RejectReason.CONFIGURATION_MISSING: "BOT_TOKEN is not set",
    RejectReason.MISSING_SIGNATURE: "Hash is missing from initData",
    RejectReason.MISSING_TIMESTAMP: "auth_date is missing from initData",
    RejectReason.MALFORMED_TIMESTAMP: "auth_date is not a valid timestamp",
    RejectReason.STALE_PAYLOAD: "Telegram data is older than 5 minutes",
    RejectReason.SIGNATURE_MISMATCH: "Hash validation failed",
    RejectReason.MISSING_USER_DATA: "User data is missing",
    RejectReason.MALFORMED_USER_DATA: "Error parsing user data",
}


@dataclass(frozen=True)
class Verified:
    claims: Dict[str, str]
    user: TelegramUser

    @property
    def message(self) -> str:
        return "Validation successful"


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason

    @property
    def message(self) -> str:
        return REJECT_MESSAGES[self.reason]


VerificationOutcome = Union[Verified, Rejected]


# -----------------------------------------------------------------------------
# HMAC chain
# -----------------------------------------------------------------------------
def _hmac_sha256(key: bytes, message: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(message)
    return h.finalize()


def derive_secret_key(bot_token: str) -> bytes:
    return _hmac_sha256(WEB_APP_DATA_KEY, bot_token.encode("utf-8"))


def build_check_string(pairs: Iterable[Tuple[str, str]]) -> str:
    """
    Canonical data-check-string.

    Sorting is by key only and stable, so repeated keys keep their
    relative order. Python str ordering is code point ordering, which is
    the same as ordering the UTF-8 bytes.
    """
    ordered = sorted(pairs, key=lambda kv: kv[0])
    return "\n".join(f"{k}={v}" for k, v in ordered)


def compute_init_data_hash(pairs: Iterable[Tuple[str, str]], bot_token: str) -> str:
    check_string = build_check_string(pairs)
    return _hmac_sha256(derive_secret_key(bot_token), check_string.encode("utf-8")).hex()


def sign_init_data(fields: Dict[str, str], bot_token: str) -> str:
    """
    Produce a signed launch payload the way the Telegram client does.

    Used by tests and local tooling to fake a mini app launch.
    """
    pairs = [(k, str(v)) for k, v in fields.items() if k != "hash"]
    signed = pairs + [("hash", compute_init_data_hash(pairs, bot_token))]
    return urlencode(signed)


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def _parse_pairs(raw: str) -> List[Tuple[str, str]]:
    return parse_qsl(raw or "", keep_blank_values=True)


def _first(pairs: List[Tuple[str, str]], key: str):
    for k, v in pairs:
        if k == key:
            return v
    return None


def verify_init_data(
    raw: str,
    bot_token: str,
    now: float,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
) -> VerificationOutcome:
    if not bot_token:
        return Rejected(RejectReason.CONFIGURATION_MISSING)

    pairs = _parse_pairs(raw)

    received_hash = _first(pairs, "hash")
    if not received_hash:
        return Rejected(RejectReason.MISSING_SIGNATURE)
    pairs = [(k, v) for k, v in pairs if k != "hash"]

    auth_date = _first(pairs, "auth_date")
    if not auth_date:
        return Rejected(RejectReason.MISSING_TIMESTAMP)

    # plain unsigned decimal only; int() alone would accept "+5", " 5", "1_0"
    if not (auth_date.isascii() and auth_date.isdigit()) or len(auth_date) > MAX_TIMESTAMP_DIGITS:
        return Rejected(RejectReason.MALFORMED_TIMESTAMP)
    try:
        auth_ts = int(auth_date)
    except ValueError:
        return Rejected(RejectReason.MALFORMED_TIMESTAMP)

    # strict ">": a payload exactly max_age seconds old is still fresh
    if int(now) - auth_ts > max_age_seconds:
        return Rejected(RejectReason.STALE_PAYLOAD)

    calculated = compute_init_data_hash(pairs, bot_token)
    if not constant_time.bytes_eq(calculated.encode("ascii"), received_hash.encode("utf-8")):
        return Rejected(RejectReason.SIGNATURE_MISMATCH)

    claims = dict(pairs)

    user_json = claims.get("user")
    if not user_json:
        return Rejected(RejectReason.MISSING_USER_DATA)

    try:
        user = TelegramUser.model_validate_json(user_json)
    except ValidationError:
        return Rejected(RejectReason.MALFORMED_USER_DATA)

    return Verified(claims=claims, user=user)


class InitDataVerifier:
    """Holds the bot token and freshness window fixed at startup."""

    def __init__(self, bot_token: str, max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS):
        self._bot_token = bot_token or ""
        self.max_age_seconds = max_age_seconds

    @property
    def configured(self) -> bool:
        return bool(self._bot_token)

    def verify(self, raw: str, now: float) -> VerificationOutcome:
        return verify_init_data(raw, self._bot_token, now, self.max_age_seconds)
