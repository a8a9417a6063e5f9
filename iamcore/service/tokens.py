from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from iamcore.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: str
    roles: List[str]
    role_names: List[str] = field(default_factory=list)
    issued_at: int = 0
    expires_at: int = 0
    token_id: str = ""


class SessionTokenService:
    """Stateless HS256 bearer tokens carrying identity and a role snapshot.

    ``validate`` returns ``None`` for every failure (bad shape, bad signature,
    wrong algorithm/issuer/audience, expiry) so callers cannot tell them apart.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        default_ttl_minutes: int = 7 * 24 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("session token secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.default_ttl_minutes = default_ttl_minutes
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def issue(
        self,
        user_id: str,
        email: str,
        role_ids: Sequence[str],
        ttl_minutes: Optional[int] = None,
        *,
        role_names: Sequence[str] = (),
    ) -> str:
        now = int(self._clock())
        ttl = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            "roles": list(role_ids),
            "role_names": list(role_names),
            "iat": now,
            "exp": now + ttl * 60,
            "jti": uuid.uuid4().hex,
            "token_type": "session",
        }
        return self._encode_jwt(payload)

    def validate(self, token: Optional[str]) -> Optional[SessionClaims]:
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "session":
            return None
        roles = payload.get("roles")
        if not payload.get("sub") or not isinstance(roles, list):
            return None
        return SessionClaims(
            user_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            roles=[str(r) for r in roles],
            role_names=[str(r) for r in payload.get("role_names") or []],
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
            token_id=str(payload.get("jti", "")),
        )

    def ttl_seconds(self, ttl_minutes: Optional[int] = None) -> int:
        return (self.default_ttl_minutes if ttl_minutes is None else ttl_minutes) * 60

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None
        return payload
