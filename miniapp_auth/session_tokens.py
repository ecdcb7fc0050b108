# miniapp_auth/session_tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module is the *token layer* for browser sessions.
#
# Responsibilities:
#   - Issue and verify compact, signed, expiring session tokens
#   - Deterministic payload serialization (canonical JSON)
#   - Strict decoding: anything that is not exactly what we would have
#     produced is rejected
#
# What this module is NOT:
#   - Not a cookie layer (main.py owns transport)
#   - Not stateful: no revocation list, no store
#
# Token wire format (compact JWS, HS256):
#
#     <header_b64url>.<payload_b64url>.<signature_b64url>
#
# Where:
#   - header    = {"alg":"HS256","typ":"JWT"} (fixed, never trusted from input)
#   - payload   = canonical JSON {"exp":..,"iat":..,"user":{..}}
#                 exp is a NumericDate with millisecond precision, iat whole seconds
#   - signature = HMAC-SHA256(key, ascii(header_b64url + "." + payload_b64url))
#
# The key is process-wide configuration. It never appears in a token.
# -----------------------------------------------------------------------------


import base64
import binascii
import json
import math
from enum import Enum
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from pydantic import ValidationError

from .models import SessionClaims, SessionUser

MIN_KEY_BYTES = 32

_HEADER = {"alg": "HS256", "typ": "JWT"}


class SessionTokenFailure(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"


class SessionTokenError(Exception):
    def __init__(self, reason: SessionTokenFailure, detail: str = ""):
        super().__init__(detail or reason.value)
        self.reason = reason


# -----------------------------------------------------------------------------
# Base64 / JSON helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Strict inverse of b64url_encode.

    Rejects characters outside the URL-safe alphabet, explicit padding and
    non-canonical encodings (trailing bits set), so every token has exactly
    one accepted spelling.
    """
    try:
        raw = base64.b64decode(
            (s + "=" * (-len(s) % 4)).encode("ascii"),
            altchars=b"-_",
            validate=True,
        )
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("invalid base64url") from e

    if b64url_encode(raw) != s:
        raise ValueError("non-canonical base64url")
    return raw


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


_HEADER_B64 = b64url_encode(_canonical_json_bytes(_HEADER))


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_signing_key(secret: str) -> bytes:
    """
    Turn the configured secret into HMAC key bytes.

    The secret is used as UTF-8 bytes (no decoding step) and must carry at
    least 256 bits. Called at settings load so a weak key is fatal at startup.
    """
    if not secret:
        raise ValueError("SESSION_SECRET is not set")
    key = secret.encode("utf-8")
    if len(key) < MIN_KEY_BYTES:
        raise ValueError(
            f"SESSION_SECRET must be at least {MIN_KEY_BYTES} bytes for HS256 (got {len(key)})"
        )
    return key


# -----------------------------------------------------------------------------
# Signing primitives
# -----------------------------------------------------------------------------
def _sign(key: bytes, signing_input: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(signing_input)
    return h.finalize()


def _verify(key: bytes, signing_input: bytes, sig: bytes) -> None:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(signing_input)
    h.verify(sig)  # constant time, raises InvalidSignature


def encode_token(key: bytes, payload_obj: Dict[str, Any]) -> str:
    payload_b64 = b64url_encode(_canonical_json_bytes(payload_obj))
    signing_input = f"{_HEADER_B64}.{payload_b64}"
    sig = _sign(key, signing_input.encode("ascii"))
    return signing_input + "." + b64url_encode(sig)


def decode_token(key: bytes, token: str) -> Dict[str, Any]:
    """
    Verify structure and signature, return the raw payload object.

    Does NOT enforce expiry or claim shape. Raises SessionTokenError.
    """
    parts = str(token).split(".")
    if len(parts) != 3:
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "bad token format")
    header_b64, payload_b64, sig_b64 = parts

    if header_b64 != _HEADER_B64:
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "unsupported token header")

    try:
        sig = b64url_decode(sig_b64)
        payload_bytes = b64url_decode(payload_b64)
    except ValueError as e:
        raise SessionTokenError(SessionTokenFailure.MALFORMED, str(e)) from e

    try:
        _verify(key, f"{header_b64}.{payload_b64}".encode("ascii"), sig)
    except InvalidSignature as e:
        raise SessionTokenError(SessionTokenFailure.INVALID_SIGNATURE) from e

    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "payload is not JSON") from e

    if not isinstance(obj, dict):
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "payload must be an object")
    return obj


# -----------------------------------------------------------------------------
# Session codec
# -----------------------------------------------------------------------------
def _split_claims(obj: Dict[str, Any]) -> Tuple[float, int, Dict[str, Any]]:
    exp = obj.get("exp")
    iat = obj.get("iat")
    user = obj.get("user")
    # bool is an int subclass; a JSON true is not a timestamp
    if not isinstance(exp, (int, float)) or isinstance(exp, bool) or not math.isfinite(exp):
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "exp must be a finite number")
    if not isinstance(iat, int) or isinstance(iat, bool):
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "iat must be int")
    if not isinstance(user, dict):
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "user must be an object")
    if set(obj) != {"exp", "iat", "user"}:
        raise SessionTokenError(SessionTokenFailure.MALFORMED, "unexpected claims")
    return exp, iat, user


class SessionCodec:
    """
    issue(): SessionClaims -> token
    verify(): token -> SessionClaims, or SessionTokenError
    """

    def __init__(self, key: bytes):
        if len(key) < MIN_KEY_BYTES:
            raise ValueError(f"signing key must be at least {MIN_KEY_BYTES} bytes")
        self._key = key

    def issue(self, claims: SessionClaims, now: float) -> str:
        payload = {
            "user": claims.user.model_dump(),
            "iat": int(now),
            "exp": claims.expires_at,
        }
        return encode_token(self._key, payload)

    def verify(self, token: str, now: float) -> SessionClaims:
        obj = decode_token(self._key, token)
        exp, _iat, user = _split_claims(obj)

        try:
            claims = SessionClaims(user=SessionUser.model_validate(user, strict=True), expires_at=exp)
        except ValidationError as e:
            raise SessionTokenError(SessionTokenFailure.MALFORMED, "bad user claims") from e

        if now >= exp:
            raise SessionTokenError(SessionTokenFailure.EXPIRED)
        return claims

