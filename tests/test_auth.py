"""Tests for bearer tokens and caller construction."""
import jwt
import pytest

from clickhouse_admin.auth import bearer_token, build_caller, make_access_token, parse_access_token
from clickhouse_admin.config import settings
from clickhouse_admin.errors import AuthenticationRequired
from clickhouse_admin.permissions import LIVE_QUERIES_KILL, LIVE_QUERIES_VIEW, PermissionStore


class StubPermissionStore(PermissionStore):
    def __init__(self, permissions=None, roles=None, error=None):
        self.permissions = set(permissions or [])
        self.roles = set(roles or [])
        self.error = error

    def get_user_permissions(self, user_id):
        if self.error:
            raise self.error
        return set(self.permissions)

    def get_user_roles(self, user_id):
        return set(self.roles)


class TestTokens:
    def test_round_trip(self):
        token = make_access_token("u1", [LIVE_QUERIES_VIEW])
        payload = parse_access_token(token)
        assert payload["sub"] == "u1"
        assert payload["permissions"] == [LIVE_QUERIES_VIEW]

    def test_expired(self):
        token = make_access_token("u1", ttl_minutes=-1)
        with pytest.raises(AuthenticationRequired, match="expired"):
            parse_access_token(token)

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "u1", "typ": "access", "iss": settings.jwt_issuer, "aud": settings.jwt_audience},
            "another-secret",
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationRequired):
            parse_access_token(token)

    def test_wrong_audience(self):
        token = jwt.encode(
            {"sub": "u1", "typ": "access", "iss": settings.jwt_issuer, "aud": "someone-else"},
            settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationRequired):
            parse_access_token(token)

    def test_missing_token(self):
        with pytest.raises(AuthenticationRequired):
            parse_access_token("")


class TestBearerHeader:
    def test_extracts_token(self):
        assert bearer_token("Bearer abc.def") == "abc.def"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "abc"])
    def test_rejects_malformed_headers(self, header):
        with pytest.raises(AuthenticationRequired):
            bearer_token(header)


class TestBuildCaller:
    def test_merges_store_permissions(self):
        caller = build_caller(
            {"sub": "u1", "permissions": [LIVE_QUERIES_VIEW]},
            StubPermissionStore([LIVE_QUERIES_KILL]),
            ip_address="10.0.0.1",
        )
        assert caller.permissions == frozenset({LIVE_QUERIES_VIEW, LIVE_QUERIES_KILL})
        assert caller.ip_address == "10.0.0.1"
        assert caller.is_admin is False

    def test_super_admin_role(self):
        caller = build_caller({"sub": "u1"}, StubPermissionStore(roles=["super_admin"]))
        assert caller.is_admin is True
        assert caller.can("anything:at_all")

    def test_store_failure_keeps_token_claims(self):
        caller = build_caller(
            {"sub": "u1", "permissions": [LIVE_QUERIES_VIEW]},
            StubPermissionStore(error=RuntimeError("db down")),
        )
        assert caller.permissions == frozenset({LIVE_QUERIES_VIEW})
