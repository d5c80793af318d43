from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import TokenError
from authcore.storage.models import TokenType, User

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    email: str
    role: str
    token_type: TokenType
    jti: str
    iat: int
    exp: int

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenService:
    """HS256 access/refresh tokens backed by the revocation registry."""

    def __init__(self, store: "AuthStore", settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
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
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
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
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        return payload

    def _issue(self, user: User, token_type: TokenType, ttl_seconds: int) -> Tuple[str, str]:
        now = int(time.time())
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "token_type": token_type.value,
            "jti": jti,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        return self._encode_jwt(payload), jti

    def issue_access(self, user: User) -> Tuple[str, str]:
        return self._issue(user, TokenType.ACCESS, self.settings.jwt_access_expiry)

    def issue_refresh(self, user: User) -> Tuple[str, str]:
        return self._issue(user, TokenType.REFRESH, self.settings.jwt_refresh_expiry)

    def decode(self, token: str, expected_type: TokenType) -> TokenClaims:
        """Check signature, issuer, audience, expiry and type. No store access."""
        payload = self._decode_jwt(token or "")
        if payload is None:
            raise TokenError("invalid token")
        try:
            exp = int(payload["exp"])
            claims = TokenClaims(
                sub=str(payload["sub"]),
                email=str(payload.get("email") or ""),
                role=str(payload.get("role") or "customer"),
                token_type=TokenType(payload["token_type"]),
                jti=str(payload["jti"]),
                iat=int(payload.get("iat") or 0),
                exp=exp,
            )
        except (KeyError, TypeError, ValueError):
            raise TokenError("invalid token")
        if exp <= time.time() - self.settings.jwt_leeway_seconds:
            raise TokenError("token expired")
        if claims.token_type != expected_type:
            raise TokenError("wrong token type")
        return claims

    def ensure_not_revoked(self, claims: TokenClaims) -> None:
        if self.store.is_token_revoked(claims.jti):
            logger.info("token_revoked_rejected", jti=claims.jti, token_type=claims.token_type.value)
            raise TokenError("token revoked")

    def validate(self, token: str, expected_type: TokenType) -> TokenClaims:
        claims = self.decode(token, expected_type)
        self.ensure_not_revoked(claims)
        return claims
