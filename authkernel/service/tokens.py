from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authkernel.logging import get_logger
from authkernel.service.clock import Clock, SystemClock
from authkernel.service.errors import (
    AccessTokenExpiredError,
    AccessTokenMissingError,
    InfrastructureError,
    InvalidAccessTokenError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenMissingError,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    session_id: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    secret: str
    expires_at: datetime


class _Malformed(Exception):
    pass


class _Expired(Exception):
    def __init__(self, payload: dict[str, Any]):
        super().__init__("token expired")
        self.payload = payload


def _to_timestamp(moment: datetime) -> float:
    # Millisecond precision keeps the expiry boundary exact
    return round(moment.timestamp(), 3)


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenCodec:
    """Signs and verifies HS256 credential envelopes and mints secrets.

    Access tokens carry ``sub`` (user), ``sid`` (session) and ``exp``.
    Refresh tokens wrap the session's current opaque secret in ``jti`` so the
    caller holds one string; only the secret's SHA-256 hash is ever stored.
    The codec has no persistence and no knowledge of users.
    """

    def __init__(
        self,
        signing_key: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        clock: Optional[Clock] = None,
    ) -> None:
        if not signing_key:
            raise InfrastructureError(
                "Token signing key is not configured", detail={"component": "token_codec"}
            )
        self._key = signing_key.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.clock = clock or SystemClock()

    # -- JWT primitives --------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        """Verify ``token`` and return its payload.

        Signature, algorithm, issuer, audience and type are checked before
        expiry, so a forged token never reports as merely expired.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise _Malformed("segment count")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise _Malformed("header")
        if not isinstance(header, dict):
            raise _Malformed("header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise _Malformed("algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise _Malformed("signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise _Malformed("payload")
        if not isinstance(payload, dict):
            raise _Malformed("payload")
        if payload.get("iss") != self.issuer:
            raise _Malformed("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise _Malformed("audience")
        if payload.get("token_type") != token_type:
            raise _Malformed("token_type")
        if not payload.get("sub") or not payload.get("sid"):
            raise _Malformed("subject")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise _Malformed("exp")
        if _to_timestamp(self.clock.now()) >= exp:
            raise _Expired(payload)
        return payload

    # -- access tokens ---------------------------------------------------

    def issue_access_token(self, user_id: str, session_id: str) -> tuple[str, datetime]:
        now = self.clock.now()
        exp = _to_timestamp(now + self.access_ttl)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "sid": session_id,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": _to_timestamp(now),
            "exp": exp,
        }
        return self._encode_jwt(payload), _from_timestamp(exp)

    def verify_access_token(self, token: Optional[str]) -> AccessClaims:
        if not token:
            raise AccessTokenMissingError()
        try:
            payload = self._decode_jwt(token, ACCESS_TOKEN_TYPE)
        except _Expired as exc:
            raise AccessTokenExpiredError(detail={"session_id": exc.payload.get("sid")})
        except _Malformed as exc:
            raise InvalidAccessTokenError(detail={"reason": str(exc)})
        return AccessClaims(
            user_id=str(payload["sub"]),
            session_id=str(payload["sid"]),
            expires_at=_from_timestamp(payload["exp"]),
            jti=str(payload.get("jti", "")),
        )

    # -- refresh tokens --------------------------------------------------

    def issue_refresh_token(
        self, user_id: str, session_id: str, secret: str, expires_at: datetime
    ) -> str:
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "sid": session_id,
            "token_type": REFRESH_TOKEN_TYPE,
            "jti": secret,
            "iat": _to_timestamp(self.clock.now()),
            "exp": _to_timestamp(expires_at),
        }
        return self._encode_jwt(payload)

    def decode_refresh_token(self, token: Optional[str]) -> RefreshClaims:
        if not token:
            raise RefreshTokenMissingError()
        try:
            payload = self._decode_jwt(token, REFRESH_TOKEN_TYPE)
        except _Expired as exc:
            raise RefreshTokenExpiredError(detail={"session_id": exc.payload.get("sid")})
        except _Malformed as exc:
            raise InvalidRefreshTokenError(detail={"reason": str(exc)})
        secret = payload.get("jti")
        if not isinstance(secret, str) or not secret:
            raise InvalidRefreshTokenError(detail={"reason": "secret"})
        return RefreshClaims(
            user_id=str(payload["sub"]),
            session_id=str(payload["sid"]),
            secret=secret,
            expires_at=_from_timestamp(payload["exp"]),
        )

    # -- secrets ---------------------------------------------------------

    @staticmethod
    def generate_opaque_secret(byte_length: int = 32) -> str:
        return secrets.token_urlsafe(byte_length)

    @staticmethod
    def generate_hex_token(byte_length: int = 32) -> str:
        return secrets.token_hex(byte_length)

    @staticmethod
    def generate_numeric_code(length: int = 6) -> str:
        """Uniform numeric code without a leading zero."""
        if length < 1:
            raise ValueError("code length must be positive")
        low = 10 ** (length - 1)
        return str(low + secrets.randbelow(10**length - low))

    @staticmethod
    def hash_secret(secret: str) -> str:
        return hashlib.sha256(secret.encode()).hexdigest()

    @staticmethod
    def secrets_match(left: str, right: str) -> bool:
        return hmac.compare_digest(left.encode(), right.encode())
