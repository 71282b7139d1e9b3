from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from filehaven.config import Settings
from filehaven.logging import get_logger
from filehaven.service.errors import SigningKeyMissingError
from filehaven.storage.models import User

logger = get_logger(__name__)

DEFAULT_ROLE = "user"
OAUTH_STATE_TTL_SECONDS = 10 * 60


def normalize_role(role: Optional[str]) -> str:
    """The one place a missing role becomes ``"user"``."""
    return role or DEFAULT_ROLE


@dataclass(frozen=True)
class SessionClaims:
    """Snapshot of an identity taken at sign-in and carried in the session token."""

    id: str
    email: str
    name: Optional[str] = None
    provider: Optional[str] = None
    phone: Optional[str] = None
    role: str = DEFAULT_ROLE
    picture: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sub"] = self.id
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["SessionClaims"]:
        subject = payload.get("id") or payload.get("sub")
        email = payload.get("email")
        if not subject or not email:
            return None
        return cls(
            id=str(subject),
            email=str(email),
            name=payload.get("name"),
            provider=payload.get("provider"),
            phone=payload.get("phone"),
            role=normalize_role(payload.get("role")),
            picture=payload.get("picture"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_claims(user: User, *, picture: Optional[str] = None) -> SessionClaims:
    """Copy the public attributes of ``user`` into a claim set.

    Password material lives in the credential record, so it never reaches here.
    """
    return SessionClaims(
        id=user.id,
        email=user.email,
        name=user.name,
        provider=user.provider,
        phone=user.phone,
        role=normalize_role(user.role),
        picture=picture,
        created_at=_iso(user.created_at),
        updated_at=_iso(user.updated_at),
    )


def reconstruct_session_view(claims: SessionClaims) -> dict[str, Any]:
    """Public-facing session shape returned to clients."""
    return {
        "user": {
            "id": claims.id,
            "name": claims.name,
            "email": claims.email,
            "image": claims.picture,
            "provider": claims.provider,
            "phone": claims.phone,
            "role": normalize_role(claims.role),
            "created_at": claims.created_at,
            "updated_at": claims.updated_at,
        }
    }


class SessionTokens:
    """HS256 tokens signed with ``AUTH_SECRET``.

    Session tokens carry :class:`SessionClaims`; the same signing scheme backs the
    short-lived OAuth state cookie under a separate audience. ``decode_claims``
    never raises; every failure means "no session".
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=60)

    @property
    def ttl_seconds(self) -> int:
        return self.settings.session_ttl_minutes * 60

    @property
    def oauth_state_audience(self) -> str:
        return f"{self.settings.jwt_audience}:oauth-state"

    def encode(self, claims: SessionClaims, *, now: Optional[float] = None) -> str:
        return self._encode_jwt(
            claims.to_payload(),
            audience=self.settings.jwt_audience,
            ttl_seconds=self.ttl_seconds,
            now=now,
        )

    def decode_claims(self, token: Optional[str]) -> Optional[SessionClaims]:
        payload = self._safe_decode(token, audience=self.settings.jwt_audience)
        if payload is None:
            return None
        return SessionClaims.from_payload(payload)

    def encode_oauth_state(self, state: str, callback_url: str) -> str:
        return self._encode_jwt(
            {"state": state, "callback_url": callback_url},
            audience=self.oauth_state_audience,
            ttl_seconds=OAUTH_STATE_TTL_SECONDS,
        )

    def decode_oauth_state(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        return self._safe_decode(token, audience=self.oauth_state_audience)

    def _safe_decode(
        self, token: Optional[str], *, audience: str
    ) -> Optional[dict[str, Any]]:
        if not token or not self.settings.auth_secret:
            return None
        try:
            return self._decode_jwt(token, audience=audience)
        except Exception as exc:
            logger.warning("jwt_decode_failed", error=str(exc))
            return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.auth_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(
        self,
        payload: dict[str, Any],
        *,
        audience: str,
        ttl_seconds: int,
        now: Optional[float] = None,
    ) -> str:
        if not self.settings.auth_secret:
            logger.error("jwt_secret_missing")
            raise SigningKeyMissingError()
        issued_at = int(now if now is not None else time.time())
        payload = {
            **payload,
            "iss": self.settings.jwt_issuer,
            "aud": audience,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, audience: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        header = json.loads(self._decode_segment(header_b64))
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        payload = json.loads(self._decode_segment(payload_b64))
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = aud == audience
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
