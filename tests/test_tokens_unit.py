"""Unit tests for session claims and HS256 session tokens."""

import base64
import json
import time
from dataclasses import fields

import pytest

from filehaven.config import Settings
from filehaven.service.errors import ServerError
from filehaven.service.tokens import (
    SessionClaims,
    SessionTokens,
    build_claims,
    normalize_role,
    reconstruct_session_view,
)
from filehaven.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(auth_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def tokens(settings):
    return SessionTokens(settings)


@pytest.fixture
def user():
    store = MemoryStore()
    return store.create_user(
        "alice@example.com", "Alice", phone="+15550100", provider="credentials", role="admin"
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestBuildClaims:
    def test_copies_identity_attributes(self, user):
        claims = build_claims(user)

        assert claims.id == user.id
        assert claims.email == "alice@example.com"
        assert claims.name == "Alice"
        assert claims.phone == "+15550100"
        assert claims.provider == "credentials"
        assert claims.role == "admin"
        assert claims.created_at == user.created_at.isoformat()

    def test_claims_have_no_password_field(self, user):
        names = {f.name for f in fields(SessionClaims)}
        payload = build_claims(user).to_payload()

        assert not any("password" in name for name in names)
        assert not any("password" in key for key in payload)

    def test_missing_role_normalizes_to_user(self, user):
        user.role = ""
        assert build_claims(user).role == "user"
        assert normalize_role(None) == "user"
        assert normalize_role("admin") == "admin"


class TestEncodeDecode:
    def test_round_trip_preserves_identity(self, tokens, user):
        token = tokens.encode(build_claims(user))

        decoded = tokens.decode_claims(token)

        assert decoded is not None
        assert decoded.id == user.id
        assert decoded.email == user.email
        assert decoded.role == user.role
        assert decoded.provider == user.provider

    def test_decoding_twice_is_identical(self, tokens, user):
        token = tokens.encode(build_claims(user))

        assert tokens.decode_claims(token) == tokens.decode_claims(token)

    def test_payload_carries_registered_claims(self, tokens, user, settings):
        token = tokens.encode(build_claims(user))
        payload_b64 = token.split(".")[1]
        payload = json.loads(tokens._decode_segment(payload_b64))

        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["sub"] == user.id
        assert payload["exp"] - payload["iat"] == settings.session_ttl_minutes * 60

    @pytest.mark.parametrize(
        "token",
        [None, "", "garbage", "a.b", "a.b.c.d", "!!!.###.$$$"],
    )
    def test_malformed_tokens_decode_to_none(self, tokens, token):
        assert tokens.decode_claims(token) is None

    def test_tampered_signature_is_rejected(self, tokens, user):
        token = tokens.encode(build_claims(user))
        header, payload, signature = token.split(".")
        forged_payload = json.loads(tokens._decode_segment(payload))
        forged_payload["role"] = "admin" if user.role != "admin" else "user"

        forged = f"{header}.{_b64(forged_payload)}.{signature}"

        assert tokens.decode_claims(forged) is None

    def test_token_signed_with_other_secret_is_rejected(self, tokens, user):
        other = SessionTokens(Settings(auth_secret="a-completely-different-secret"))
        token = other.encode(build_claims(user))

        assert tokens.decode_claims(token) is None

    def test_none_algorithm_is_rejected(self, tokens, user):
        token = tokens.encode(build_claims(user))
        _, payload, _ = token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        assert tokens.decode_claims(unsigned) is None

    def test_expired_token_is_rejected(self, tokens, user, settings):
        issued = time.time() - settings.session_ttl_minutes * 60 - 3600
        token = tokens.encode(build_claims(user), now=issued)

        assert tokens.decode_claims(token) is None

    def test_recently_expired_token_within_leeway_is_accepted(self, tokens, user, settings):
        issued = time.time() - settings.session_ttl_minutes * 60 - 10
        token = tokens.encode(build_claims(user), now=issued)

        assert tokens.decode_claims(token) is not None

    def test_wrong_audience_is_rejected(self, user, settings):
        issuer = SessionTokens(settings.model_copy(update={"jwt_audience": "other-app"}))
        token = issuer.encode(build_claims(user))

        assert SessionTokens(settings).decode_claims(token) is None

    def test_oauth_state_token_is_not_a_session(self, tokens):
        state_token = tokens.encode_oauth_state("nonce", "/files")

        assert tokens.decode_claims(state_token) is None
        assert tokens.decode_oauth_state(state_token)["callback_url"] == "/files"


class TestMissingSecret:
    def test_encode_fails_closed(self, user):
        tokens = SessionTokens(Settings(auth_secret=None))

        with pytest.raises(ServerError):
            tokens.encode(build_claims(user))

    def test_decode_returns_none(self, tokens, user):
        token = tokens.encode(build_claims(user))
        unsigned = SessionTokens(Settings(auth_secret=None))

        assert unsigned.decode_claims(token) is None


class TestSessionView:
    def test_view_exposes_public_attributes(self, user):
        claims = build_claims(user, picture="https://example.com/a.png")

        view = reconstruct_session_view(claims)

        assert view["user"]["email"] == user.email
        assert view["user"]["image"] == "https://example.com/a.png"
        assert view["user"]["role"] == "admin"
        assert view["user"]["phone"] == "+15550100"

    def test_short_claims_default_role(self):
        claims = SessionClaims.from_payload({"sub": "u-1", "email": "old@example.com"})

        assert claims is not None
        assert claims.role == "user"
        assert reconstruct_session_view(claims)["user"]["role"] == "user"

    def test_payload_without_email_is_not_a_session(self):
        assert SessionClaims.from_payload({"sub": "u-1"}) is None
