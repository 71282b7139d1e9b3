"""Unit tests for request classification.

The policy is exercised directly with plain header/cookie mappings; HTTP-level
behaviour lives in test_access_middleware.py.
"""

import pytest

from filehaven.config import Settings
from filehaven.service.access import (
    AccessAction,
    AccessPolicy,
    api_key_matches,
    is_protected_route,
)
from filehaven.service.tokens import SessionTokens, build_claims
from filehaven.storage.memory import MemoryStore

API_KEY = "unit-api-key"


@pytest.fixture
def settings():
    return Settings(auth_secret="unit-test-signing-secret", api_key=API_KEY)


@pytest.fixture
def tokens(settings):
    return SessionTokens(settings)


@pytest.fixture
def policy(settings, tokens):
    return AccessPolicy(settings, tokens)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cookie_for(settings, tokens, store):
    def _cookie(role: str = "user"):
        user = store.create_user(f"{role}-{len(store.users)}@example.com", provider="credentials", role=role)
        return {settings.session_cookie_name: tokens.encode(build_claims(user))}

    return _cookie


class TestApiBranch:
    @pytest.mark.parametrize(
        "path",
        ["/api/users", "/api/loginlog/abc", "/api/register", "/api", "/apix", "/api/files/a/b.txt"],
    )
    def test_gated_paths_need_the_key(self, policy, path):
        assert policy.evaluate(path, {}, {}).action is AccessAction.REJECT
        assert policy.evaluate(path, {"x-api-key": "wrong"}, {}).action is AccessAction.REJECT
        assert policy.evaluate(path, {"x-api-key": API_KEY}, {}).allowed

    @pytest.mark.parametrize(
        "path",
        ["/api/public/share/1", "/api/auth/session", "/api/auth/callback/google", "/api/publicity"],
    )
    def test_public_and_provider_paths_pass_without_key(self, policy, path):
        assert policy.evaluate(path, {}, {}).allowed

    def test_session_never_substitutes_for_the_key(self, policy, cookie_for):
        decision = policy.evaluate("/api/users", {}, cookie_for("admin"))

        assert decision.action is AccessAction.REJECT

    def test_unset_server_key_fails_closed(self, tokens):
        unconfigured = Settings(auth_secret="unit-test-signing-secret", api_key=None)
        policy = AccessPolicy(unconfigured, tokens)

        assert policy.evaluate("/api/users", {"x-api-key": ""}, {}).action is AccessAction.REJECT
        assert policy.evaluate("/api/users", {"x-api-key": "None"}, {}).action is AccessAction.REJECT

    def test_api_key_comparison(self):
        assert api_key_matches("k", "k")
        assert not api_key_matches("k", "K")
        assert not api_key_matches(None, "k")
        assert not api_key_matches("k", None)


class TestPublicPages:
    @pytest.mark.parametrize(
        "path",
        [
            "/",
            "/auth/signin",
            "/auth/register",
            "/about",
            "/about/team",
            "/favicon.ico",
            "/static/app.js",
            "/static/fonts",
            "/dashboard/report.pdf",
            "/files/logo.png",
            "/authors",
        ],
    )
    def test_exempt_without_session(self, policy, path):
        assert policy.evaluate(path, {}, {}).allowed


class TestAdminPages:
    def test_no_session_redirects_with_callback(self, policy):
        decision = policy.evaluate("/dashboard/users", {}, {})

        assert decision.action is AccessAction.REDIRECT
        assert decision.location == "/auth/signin?callbackUrl=%2Fdashboard%2Fusers"

    def test_non_admin_redirects_without_callback(self, policy, cookie_for):
        decision = policy.evaluate("/dashboard", {}, cookie_for("user"))

        assert decision.action is AccessAction.REDIRECT
        assert decision.location == "/auth/signin"

    def test_admin_passes(self, policy, cookie_for):
        decision = policy.evaluate("/dashboard/loginlogs", {}, cookie_for("admin"))

        assert decision.allowed
        assert decision.claims.role == "admin"

    def test_plain_prefix_match(self, policy):
        assert policy.evaluate("/dashboards", {}, {}).action is AccessAction.REDIRECT

    def test_garbage_cookie_counts_as_signed_out(self, policy, settings):
        cookies = {settings.session_cookie_name: "not-a-token"}

        decision = policy.evaluate("/dashboard", {}, cookies)

        assert decision.action is AccessAction.REDIRECT
        assert "callbackUrl=%2Fdashboard" in decision.location

    def test_cookie_under_other_name_is_ignored(self, policy, cookie_for, settings):
        cookies = {f"other.{k}": v for k, v in cookie_for("admin").items()}

        assert policy.evaluate("/dashboard", {}, cookies).action is AccessAction.REDIRECT


class TestProtectedRoutes:
    @pytest.mark.parametrize("path", ["/files", "/files/user", "/upload", "/upload/batch/2"])
    def test_no_session_redirects_with_callback(self, policy, path):
        decision = policy.evaluate(path, {}, {})

        assert decision.action is AccessAction.REDIRECT
        assert decision.location.startswith("/auth/signin?callbackUrl=")

    @pytest.mark.parametrize("role", ["user", "admin"])
    def test_any_session_passes(self, policy, cookie_for, role):
        assert policy.evaluate("/files", {}, cookie_for(role)).allowed

    @pytest.mark.parametrize("path", ["/filesystem", "/uploads", "/share/abc", "/profile"])
    def test_other_pages_are_open(self, policy, path):
        assert policy.evaluate(path, {}, {}).allowed

    def test_route_matching(self):
        assert is_protected_route("/files")
        assert is_protected_route("/files/")
        assert not is_protected_route("/files2")


class TestDeterminism:
    def test_same_request_same_decision(self, policy, cookie_for):
        cookies = cookie_for("user")

        first = policy.evaluate("/dashboard/files", {}, cookies)
        second = policy.evaluate("/dashboard/files", {}, cookies)

        assert first == second

    def test_custom_signin_path(self, tokens):
        settings = Settings(auth_secret="unit-test-signing-secret", api_key=API_KEY, signin_path="/login")
        policy = AccessPolicy(settings, tokens)

        assert policy.evaluate("/upload", {}, {}).location == "/login?callbackUrl=%2Fupload"
