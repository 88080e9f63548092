"""Security tests for bearer-token identity"""
import time

import jwt
import pytest
from fastapi import HTTPException

from app.core.security import ANONYMOUS, Identity, decode_identity, get_identity, require_identity

from conftest import TEST_JWT_SECRET, make_token


@pytest.mark.critical
class TestDecodeIdentity:
    """Test JWT decoding into caller identity"""

    def test_valid_token(self):
        identity = decode_identity(make_token("user-42", "Buyer@Example.COM"))
        assert identity == Identity(user_id="user-42", email="buyer@example.com")

    def test_id_claim_fallback(self):
        token = jwt.encode({"id": 42, "email": "buyer@example.com"}, TEST_JWT_SECRET, algorithm="HS256")
        assert decode_identity(token).user_id == "42"

    def test_expired_token_is_anonymous(self):
        token = make_token(exp=int(time.time()) - 60)
        assert decode_identity(token) is ANONYMOUS

    def test_wrong_secret_is_anonymous(self):
        token = make_token(secret="another-secret-with-enough-length-for-hs256")
        assert decode_identity(token).is_anonymous

    def test_garbage_token_is_anonymous(self):
        assert decode_identity("not-a-jwt").is_anonymous

    def test_no_secret_configured_is_anonymous(self, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "JWT_SECRET", "")
        assert decode_identity(make_token()).is_anonymous


@pytest.mark.high
class TestIdentityDependencies:
    """Test optional and required identity dependencies"""

    def test_bearer_header_parsed(self):
        identity = get_identity(f"Bearer {make_token()}")
        assert identity.user_id == "user-42"

    def test_non_bearer_scheme_ignored(self):
        assert get_identity(f"Basic {make_token()}").is_anonymous

    def test_missing_header_is_anonymous(self):
        assert get_identity(None) is ANONYMOUS

    def test_require_identity_rejects_anonymous(self):
        with pytest.raises(HTTPException) as exc_info:
            require_identity(ANONYMOUS)
        assert exc_info.value.status_code == 401

    def test_require_identity_needs_email(self):
        with pytest.raises(HTTPException):
            require_identity(Identity(user_id="user-42"))

    def test_require_identity_passes_through(self):
        identity = Identity(user_id="user-42", email="buyer@example.com")
        assert require_identity(identity) is identity
