"""Request gate deciding allow, redirect-to-sign-in or reject for every path.

Order of evaluation:

1. ``/api``: ``/api/public`` and ``/api/auth`` pass; everything else needs an
   ``x-api-key`` header equal to ``API_KEY``. No session logic applies.
2. Pages: auth pages, ``/``, ``/about``, dotted paths and static assets pass.
3. ``/dashboard`` requires an admin session.
4. ``/files`` and ``/upload`` (and their sub-paths) require any session.
5. Everything else passes.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import urlencode

from filehaven.config import Settings
from filehaven.logging import get_logger
from filehaven.service.tokens import SessionClaims, SessionTokens

logger = get_logger(__name__)

API_PREFIX = "/api"
PUBLIC_API_PREFIXES = ("/api/public", "/api/auth")
AUTH_PAGE_PREFIX = "/auth"
PUBLIC_PAGE_PREFIXES = ("/about",)
STATIC_PREFIX = "/static"
ADMIN_PREFIX = "/dashboard"
PROTECTED_ROUTES = ("/files", "/upload")
API_KEY_HEADER = "x-api-key"


class AccessAction(str, Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"
    REJECT = "reject"


@dataclass(frozen=True)
class AccessDecision:
    action: AccessAction
    reason: str
    location: Optional[str] = None
    claims: Optional[SessionClaims] = None

    @property
    def allowed(self) -> bool:
        return self.action is AccessAction.ALLOW

    @classmethod
    def allow(cls, reason: str, claims: Optional[SessionClaims] = None) -> "AccessDecision":
        return cls(AccessAction.ALLOW, reason, claims=claims)


def is_protected_route(path: str) -> bool:
    return any(path == route or path.startswith(route + "/") for route in PROTECTED_ROUTES)


def is_public_page(path: str) -> bool:
    return (
        path.startswith(AUTH_PAGE_PREFIX)
        or path == "/"
        or path.startswith(PUBLIC_PAGE_PREFIXES)
        or "." in path
        or path.startswith(STATIC_PREFIX)
    )


def api_key_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    # An unset server key never matches, so a misconfigured deployment fails closed
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class AccessPolicy:
    def __init__(self, settings: Settings, tokens: SessionTokens) -> None:
        self.settings = settings
        self.tokens = tokens

    def signin_redirect(self, callback_path: Optional[str] = None) -> str:
        if callback_path is None:
            return self.settings.signin_path
        return f"{self.settings.signin_path}?{urlencode({'callbackUrl': callback_path})}"

    def session_claims(self, cookies: Mapping[str, str]) -> Optional[SessionClaims]:
        token = cookies.get(self.settings.session_cookie_name)
        if not token:
            return None
        try:
            return self.tokens.decode_claims(token)
        except Exception as exc:
            logger.warning("session_decode_unexpected_error", error=str(exc))
            return None

    def evaluate(
        self,
        path: str,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
    ) -> AccessDecision:
        if path.startswith(API_PREFIX):
            return self._evaluate_api(path, headers)

        if is_public_page(path):
            return AccessDecision.allow("public_page")

        if path.startswith(ADMIN_PREFIX):
            claims = self.session_claims(cookies)
            if claims is None:
                return AccessDecision(
                    AccessAction.REDIRECT,
                    "admin_unauthenticated",
                    location=self.signin_redirect(path),
                )
            if not claims.is_admin:
                return AccessDecision(
                    AccessAction.REDIRECT,
                    "admin_role_required",
                    location=self.signin_redirect(),
                    claims=claims,
                )
            return AccessDecision.allow("admin", claims)

        if is_protected_route(path):
            claims = self.session_claims(cookies)
            if claims is None:
                return AccessDecision(
                    AccessAction.REDIRECT,
                    "session_required",
                    location=self.signin_redirect(path),
                )
            return AccessDecision.allow("session", claims)

        return AccessDecision.allow("open_page")

    def _evaluate_api(self, path: str, headers: Mapping[str, str]) -> AccessDecision:
        if path.startswith(PUBLIC_API_PREFIXES):
            return AccessDecision.allow("public_api")
        if api_key_matches(headers.get(API_KEY_HEADER), self.settings.api_key):
            return AccessDecision.allow("api_key")
        return AccessDecision(AccessAction.REJECT, "api_key_invalid")
