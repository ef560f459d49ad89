"""
Tests for Google sign-in and JWT session authentication.
"""
import pytest
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import jwt
from fastapi import HTTPException
from sqlalchemy import select

from config import settings
from db_models import OAuthState, User, UserSession
from middleware.auth import _parse_bearer_token, decode_access_token, issue_access_token
from services.identity_provider import IdentityProfile


def alice_profile(**overrides) -> IdentityProfile:
    fields = {"subject": "google-sub-alice", "email": "alice@farm.test", "name": "Alice", "email_verified": True}
    fields.update(overrides)
    return IdentityProfile(**fields)


async def start_login(client) -> str:
    res = await client.get("/auth/google/url")
    assert res.status_code == 200
    body = res.json()
    assert parse_qs(urlparse(body["authorizationUrl"]).query)["state"] == [body["state"]]
    return body["state"]


class TestBearerParsing:

    @pytest.mark.unit
    def test_parses_bearer(self):
        assert _parse_bearer_token("Bearer abc.def") == "abc.def"
        assert _parse_bearer_token("bearer abc") == "abc"

    @pytest.mark.unit
    def test_rejects_other_schemes(self):
        assert _parse_bearer_token(None) is None
        assert _parse_bearer_token("Basic abc") is None
        assert _parse_bearer_token("Bearer ") is None


class TestAccessTokens:

    @pytest.mark.unit
    def test_round_trip_claims(self):
        expires = datetime.utcnow() + timedelta(minutes=5)
        token = issue_access_token(user_id=7, role="customer", jti="abc", expires_at=expires)

        claims = decode_access_token(token)
        assert claims["sub"] == "7"
        assert claims["role"] == "customer"
        assert claims["jti"] == "abc"
        assert claims["iss"] == settings.jwt_issuer

    @pytest.mark.unit
    def test_expired_token_rejected(self):
        token = issue_access_token(
            user_id=7, role="customer", jti="old", expires_at=datetime.utcnow() - timedelta(minutes=1)
        )
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)
        assert exc_info.value.status_code == 401

    @pytest.mark.unit
    def test_foreign_signature_rejected(self):
        now = datetime.now(timezone.utc)
        forged = jwt.encode(
            {"iss": settings.jwt_issuer, "sub": "1", "jti": "x", "iat": int(now.timestamp()),
             "exp": int((now + timedelta(minutes=5)).timestamp())},
            "some-other-secret",
            algorithm="HS256",
        )
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(forged)
        assert exc_info.value.status_code == 401


class TestSessions:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_missing_token_401(self, client):
        assert (await client.get("/api/user/me")).status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_logout_revokes_token(self, client, auth_headers, sample_user):
        headers = await auth_headers(sample_user)
        assert (await client.get("/api/user/me", headers=headers)).status_code == 200

        assert (await client.post("/auth/logout", headers=headers)).status_code == 200

        res = await client.get("/api/user/me", headers=headers)
        assert res.status_code == 401
        assert res.json()["error"]["message"] == "Session has been signed out."

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_token_without_session_row_rejected(self, client, sample_user):
        token = issue_access_token(
            user_id=sample_user.id, role="customer", jti="never-issued",
            expires_at=datetime.utcnow() + timedelta(minutes=5),
        )
        res = await client.get("/api/user/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401


class TestGoogleLogin:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_login_redirects_to_google(self, client):
        res = await client.get("/auth/google/login")
        assert res.status_code == 302
        assert res.headers["location"].startswith("https://accounts.google.test/")

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_callback_creates_customer_and_session(self, client, db_session, identity):
        identity.profiles["code-1"] = alice_profile()
        state = await start_login(client)

        res = await client.get("/auth/google/callback", params={"code": "code-1", "state": state})

        assert res.status_code == 200
        body = res.json()
        assert body["tokenType"] == "Bearer"
        assert body["user"]["email"] == "alice@farm.test"
        assert body["user"]["role"] == "customer"

        me = await client.get("/api/user/me", headers={"Authorization": f"Bearer {body['accessToken']}"})
        assert me.json()["data"]["email"] == "alice@farm.test"

        sessions = (await db_session.execute(select(UserSession))).scalars().all()
        assert len(sessions) == 1

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_second_login_reuses_user(self, client, db_session, identity):
        identity.profiles["code-1"] = alice_profile()
        identity.profiles["code-2"] = alice_profile(name="Alice B.")

        await client.get("/auth/google/callback", params={"code": "code-1", "state": await start_login(client)})
        await client.get("/auth/google/callback", params={"code": "code-2", "state": await start_login(client)})

        users = (await db_session.execute(select(User))).scalars().all()
        assert len(users) == 1
        await db_session.refresh(users[0])
        assert users[0].name == "Alice B."
        assert users[0].last_login_at is not None

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_admin_email_gets_admin_role(self, client, identity):
        identity.profiles["code-a"] = alice_profile(subject="google-sub-admin", email="admin@farm.test")

        res = await client.get("/auth/google/callback", params={"code": "code-a", "state": await start_login(client)})

        assert res.json()["user"]["role"] == "admin"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_state_cannot_be_reused(self, client, identity):
        identity.profiles["code-1"] = alice_profile()
        state = await start_login(client)

        first = await client.get("/auth/google/callback", params={"code": "code-1", "state": state})
        replay = await client.get("/auth/google/callback", params={"code": "code-1", "state": state})

        assert first.status_code == 200
        assert replay.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, client, identity):
        identity.profiles["code-1"] = alice_profile()
        res = await client.get("/auth/google/callback", params={"code": "code-1", "state": "forged"})
        assert res.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, client, db_session, identity):
        identity.profiles["code-1"] = alice_profile()
        db_session.add(OAuthState(state="stale-state", expires_at=datetime.utcnow() - timedelta(minutes=1)))
        await db_session.commit()

        res = await client.get("/auth/google/callback", params={"code": "code-1", "state": "stale-state"})
        assert res.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unverified_email_forbidden(self, client, identity):
        identity.profiles["code-u"] = alice_profile(email_verified=False)
        res = await client.get("/auth/google/callback", params={"code": "code-u", "state": await start_login(client)})
        assert res.status_code == 403

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_failed_exchange_is_bad_gateway(self, client):
        res = await client.get("/auth/google/callback", params={"code": "bogus", "state": await start_login(client)})
        assert res.status_code == 502

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_provider_error_param(self, client):
        res = await client.get("/auth/google/callback", params={"error": "access_denied"})
        assert res.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_email_taken_by_another_account_conflicts(self, client, db_session, identity, sample_user, other_user):
        other_id = other_user.id
        identity.profiles["code-b"] = alice_profile(subject="google-sub-bob", email="alice@farm.test", name="Bob")
        state = await start_login(client)

        res = await client.get("/auth/google/callback", params={"code": "code-b", "state": state})

        assert res.status_code == 409
        assert res.json()["error"]["code"] == "conflict"
        bob = (await db_session.execute(select(User).where(User.id == other_id))).scalar_one()
        await db_session.refresh(bob)
        assert bob.email == "bob@farm.test"
        replay = await client.get("/auth/google/callback", params={"code": "code-b", "state": state})
        assert replay.status_code == 400
