from __future__ import annotations

import secrets
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union
from urllib.parse import urlencode, urlparse

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from filehaven.config import Settings
from filehaven.logging import get_logger
from filehaven.service.errors import (
    AuthenticationError,
    ConflictError,
    DuplicateIdentityError,
    OAuthStateError,
    ProviderNotConfiguredError,
    ValidationError,
)
from filehaven.service.tokens import SessionClaims, SessionTokens, build_claims
from filehaven.storage.errors import ConstraintViolation
from filehaven.storage.models import User

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

PASSWORD_ALGO = "argon2id"
MAX_PASSWORD_LENGTH = 128

# Zero-width and bidi override characters can make two addresses look alike
_INVISIBLE_CHARS = frozenset(
    [chr(c) for c in (0x200B, 0x200C, 0x200D, 0xFEFF)]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)

logger = get_logger(__name__)


class AuthProvider(str, Enum):
    """Provider tag asserted at sign-in; stored as a plain string."""

    CREDENTIALS = "credentials"
    GOOGLE = "google"

    @property
    def is_federated(self) -> bool:
        return self is not AuthProvider.CREDENTIALS


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        provider: Optional[str] = None,
        role: str = "user",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class FederatedSignIn:
    user: User
    picture: Optional[str]
    callback_url: str


def normalize_email(value: str) -> str:
    """Canonical form every store lookup and insert uses, whatever the provider."""
    cleaned = "".join(c for c in value if c not in _INVISIBLE_CHARS)
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def safe_callback_url(callback_url: Optional[str]) -> str:
    """Only same-site relative paths are followed after sign-in."""
    if not callback_url:
        return "/"
    parsed = urlparse(callback_url)
    if parsed.scheme or parsed.netloc:
        return "/"
    if not callback_url.startswith("/") or callback_url.startswith("//"):
        return "/"
    if "\\" in callback_url:
        return "/"
    return callback_url


class AuthService:
    """Credential checks, identity resolution and sign-in completion."""

    def __init__(
        self, store: AuthStore, settings: Settings, tokens: SessionTokens
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tokens = tokens
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when there is no real hash so failures cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._oauth_code_registry: dict[str, dict] = {}
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        self._check_hash(self._dummy_hash, password)

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    async def verify_credentials(
        self, email: Optional[str], password: Optional[str]
    ) -> Optional[User]:
        """Return the identity for a matching email/password pair, else ``None``.

        Missing fields, oversized passwords, unknown email, federated-only
        account and wrong password all look alike to the caller and each cost
        one hash verification.
        """
        if not email or not password or len(password) > MAX_PASSWORD_LENGTH:
            self._burn_verification((password or "")[:MAX_PASSWORD_LENGTH])
            return None
        user = self.store.get_user_by_email(normalize_email(email))
        record = self.store.get_password_record(user.id) if user else None
        if not user or not record:
            self._burn_verification(password)
            self.logger.info("login_failed", reason="no_local_credential")
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self._burn_verification(password)
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return None
        if not self._check_hash(stored_hash, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            return None
        return user

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        if not email or not password:
            raise ValidationError("email and password are required")
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise DuplicateIdentityError("email")
        if phone and self.store.get_user_by_phone(phone):
            raise DuplicateIdentityError("phone")
        try:
            user = self.store.create_user(
                email,
                name,
                phone=phone or None,
                provider=AuthProvider.CREDENTIALS.value,
                role="user",
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            if exc.field:
                raise DuplicateIdentityError(exc.field)
            raise ConflictError(exc.message, detail=exc.detail)
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def resolve_identity(
        self,
        email: Optional[str],
        name: Optional[str],
        provider: Union[AuthProvider, str],
        identity: Optional[User] = None,
    ) -> Optional[User]:
        """Map a successful authentication onto the canonical identity.

        Local sign-ins pass the verified ``identity`` straight through. Federated
        sign-ins reuse the identity stored under ``email`` or create it on first
        login; a concurrent duplicate create falls back to the stored record.
        """
        if not email:
            self.logger.warning("sign_in_rejected_missing_email", provider=str(provider))
            return None
        email = normalize_email(email)
        try:
            provider = AuthProvider(provider)
        except ValueError:
            self.logger.warning("sign_in_rejected_unknown_provider", provider=provider)
            return None

        if not provider.is_federated:
            if identity is None or identity.email != email:
                return None
            return identity

        existing = self.store.get_user_by_email(email)
        if existing is None:
            try:
                created = self.store.create_user(
                    email, name or "", provider=provider.value, role="user"
                )
            except ConstraintViolation:
                existing = self.store.get_user_by_email(email)
                if existing is None:
                    raise
            else:
                self.logger.info(
                    "federated_identity_created",
                    user_id=created.id,
                    provider=provider.value,
                )
                return created

        if existing.provider != provider.value:
            if not self.settings.allow_federated_account_linking:
                self.logger.warning(
                    "federated_login_rejected_provider_mismatch",
                    user_id=existing.id,
                    stored_provider=existing.provider,
                    provider=provider.value,
                )
                return None
            self.logger.warning(
                "federated_login_linked_existing",
                user_id=existing.id,
                stored_provider=existing.provider,
                provider=provider.value,
            )
        return existing

    def issue_session(
        self, user: User, *, picture: Optional[str] = None
    ) -> tuple[SessionClaims, str]:
        claims = build_claims(user, picture=picture)
        return claims, self.tokens.encode(claims)

    # google
    def start_google_signin(self, callback_url: Optional[str]) -> tuple[str, str]:
        """Return the provider authorization URL and the signed state cookie value."""
        client_id = self.settings.google_client_id
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not redirect_uri:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ProviderNotConfiguredError("google")
        state = secrets.token_urlsafe(24)
        state_cookie = self.tokens.encode_oauth_state(
            state, safe_callback_url(callback_url)
        )
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}", state_cookie

    def register_oauth_code(self, code: str, payload: dict) -> None:
        """Record an exchanged OAuth payload for testing or offline flows."""

        self._oauth_code_registry[code] = payload

    async def _exchange_google_code(self, code: str) -> Optional[dict]:
        # Pre-registered payloads only stand in for the provider in test mode
        if self.settings.test_mode:
            registered = self._oauth_code_registry.pop(code, None)
            if registered is not None:
                return registered

        client_id = self.settings.google_client_id
        client_secret = self.settings.google_client_secret
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider="google")
            return None

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    return None

                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=e.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("oauth_exchange_error", provider="google", error=str(e))
            return None

        if not isinstance(userinfo, dict):
            self.logger.error("oauth_userinfo_invalid_format", provider="google")
            return None
        return {
            "email": userinfo.get("email"),
            "name": userinfo.get("name"),
            "picture": userinfo.get("picture"),
        }

    async def complete_google_signin(
        self, code: Optional[str], state: Optional[str], state_cookie: Optional[str]
    ) -> FederatedSignIn:
        stored = self.tokens.decode_oauth_state(state_cookie)
        if not stored or not state or not secrets.compare_digest(
            str(stored.get("state", "")).encode(), state.encode()
        ):
            self.logger.warning("oauth_state_invalid", provider="google")
            raise OAuthStateError("invalid oauth state")
        if not code:
            raise AuthenticationError("missing authorization code")
        identity = await self._exchange_google_code(code)
        if not identity:
            raise AuthenticationError("google sign-in failed")
        user = await self.resolve_identity(
            identity.get("email"), identity.get("name"), AuthProvider.GOOGLE
        )
        if user is None:
            raise AuthenticationError("google sign-in failed")
        return FederatedSignIn(
            user=user,
            picture=identity.get("picture"),
            callback_url=safe_callback_url(stored.get("callback_url")),
        )
