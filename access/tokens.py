"""
Signed status tokens.

A status token authenticates the public "check my membership" page without a
session table. The server only keeps a hash of the current token; bumping a
user's ``token_version`` changes the derived token and so invalidates every
token issued before it.

Compact format (issued)::

    b64url(0x01 || uuid bytes (16) || version (4, big-endian)) "." b64url(hmac[:16])

Legacy format (verified only)::

    b64url("<uuid>:<version>") "." b64url(hmac)
"""

import base64
import binascii
import hashlib
import hmac
import struct
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

MIN_SECRET_LENGTH = 32
COMPACT_MARKER = 0x01
COMPACT_SIGNATURE_BYTES = 16
MAX_TOKEN_VERSION = 0xFFFFFFFF


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("malformed base64url segment") from e


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _sign(secret: bytes, payload: bytes) -> bytes:
    return hmac.new(secret, payload, hashlib.sha256).digest()


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    token_version: int


class CompactTokenCodec:
    name = "compact"

    def encode(self, secret: bytes, claims: TokenClaims) -> str:
        if not 0 <= claims.token_version <= MAX_TOKEN_VERSION:
            raise ValueError(f"token version out of range: {claims.token_version}")
        payload = (
            bytes([COMPACT_MARKER])
            + uuid.UUID(claims.user_id).bytes
            + struct.pack(">I", claims.token_version)
        )
        signature = _sign(secret, payload)[:COMPACT_SIGNATURE_BYTES]
        return f"{b64url_encode(payload)}.{b64url_encode(signature)}"

    def decode(self, secret: bytes, token: str) -> Optional[TokenClaims]:
        payload, signature = _split(token)
        if len(payload) != 21 or payload[0] != COMPACT_MARKER:
            return None
        expected = _sign(secret, payload)[:COMPACT_SIGNATURE_BYTES]
        if not hmac.compare_digest(expected, signature):
            return None
        user_id = str(uuid.UUID(bytes=payload[1:17]))
        (version,) = struct.unpack(">I", payload[17:21])
        return TokenClaims(user_id, version)


class LegacyTextTokenCodec:
    name = "legacy"

    def encode(self, secret: bytes, claims: TokenClaims) -> str:
        payload = f"{claims.user_id}:{claims.token_version}".encode("utf-8")
        return f"{b64url_encode(payload)}.{b64url_encode(_sign(secret, payload))}"

    def decode(self, secret: bytes, token: str) -> Optional[TokenClaims]:
        payload, signature = _split(token)
        if not hmac.compare_digest(_sign(secret, payload), signature):
            return None
        try:
            user_part, version_part = payload.decode("utf-8").rsplit(":", 1)
            user_id = str(uuid.UUID(user_part))
            version = int(version_part)
        except ValueError:
            return None
        if version < 0:
            return None
        return TokenClaims(user_id, version)


def _split(token: str) -> tuple[bytes, bytes]:
    if token.count(".") != 1:
        raise ValueError("token must have exactly two segments")
    payload_part, signature_part = token.split(".")
    return b64url_decode(payload_part), b64url_decode(signature_part)


class StatusTokenService:
    """Issues compact tokens and verifies every codec in preference order."""

    def __init__(self, secret: str, codecs: Optional[Sequence] = None):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"status token secret must be at least {MIN_SECRET_LENGTH} characters")
        self._secret = secret.encode("utf-8")
        self.codecs = tuple(codecs) if codecs else (CompactTokenCodec(), LegacyTextTokenCodec())

    def issue(self, user_id: str, token_version: int) -> str:
        return self.codecs[0].encode(self._secret, TokenClaims(user_id, token_version))

    def decode(self, token: str) -> Optional[TokenClaims]:
        token = (token or "").strip()
        for codec in self.codecs:
            try:
                claims = codec.decode(self._secret, token)
            except ValueError:
                continue
            if claims is not None:
                return claims
        return None

    def derive_current(self, user_id: str, token_version: int, stored_hash: str) -> Optional[str]:
        """Re-derive the token whose hash is stored, trying each codec in order."""
        claims = TokenClaims(user_id, token_version)
        for codec in self.codecs:
            candidate = codec.encode(self._secret, claims)
            if hmac.compare_digest(hash_token(candidate), stored_hash):
                return candidate
        return None

    def verify(self, token: str, *, user_id: str, token_version: int, stored_hash: str) -> bool:
        claims = self.decode(token)
        if claims is None:
            return False
        if claims.user_id != user_id or claims.token_version != token_version:
            return False
        return hmac.compare_digest(hash_token(token.strip()), stored_hash)
