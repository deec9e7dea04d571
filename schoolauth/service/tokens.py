from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from schoolauth.config import Settings
from schoolauth.logging import get_logger

logger = get_logger(__name__)

FIRST_PASSWORD_SCOPE = "first_password"


def hash_refresh_token(raw: str) -> str:
    """One-way digest stored on the session in place of the raw refresh token."""
    return hashlib.sha256(raw.encode()).hexdigest()


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenIssuer:
    """HS256 access and first-login tokens plus opaque refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_access_token(self, user_id: str) -> str:
        return self._sign(
            {"id": user_id},
            timedelta(minutes=self.settings.access_token_ttl_minutes),
        )

    def issue_first_login_token(self, user_id: str) -> str:
        return self._sign(
            {"id": user_id, "scope": FIRST_PASSWORD_SCOPE},
            timedelta(minutes=self.settings.first_login_token_ttl_minutes),
        )

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_hex(40)

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        """Claims of a correctly signed, unexpired token, else None."""
        return self._decode_jwt(token)

    def verify_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("scope") or not payload.get("id"):
            return None
        return payload

    def verify_first_login_token(self, token: str) -> tuple[Optional[dict[str, Any]], Optional[str]]:
        """Returns (claims, failure) where failure is ``invalid`` or ``scope``."""
        payload = self._decode_jwt(token)
        if not payload:
            return None, "invalid"
        if payload.get("scope") != FIRST_PASSWORD_SCOPE:
            return None, "scope"
        return payload, None

    def _sign(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = self._now()
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            # Two tokens minted in the same second must still differ
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
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

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
