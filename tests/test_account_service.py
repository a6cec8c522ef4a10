"""
Tests for the account service adapter (HTTP + Redis persistence).

Run with:
    pytest tests/test_account_service.py -v
"""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from pos_client.account_service import (
    AUTH_STORAGE_KEY,
    SIGNED_IN,
    SIGNED_OUT,
    TOKEN_REFRESHED,
    AccountService,
    AccountServiceError,
    AuthSession,
    AuthUser,
    SessionPersistence,
)


def token_body(token="tok-1", role="cashier", expires_in=3600):
    return {
        "access_token": token,
        "refresh_token": "ref-1",
        "expires_in": expires_in,
        "token_type": "bearer",
        "user": {
            "id": "user-1",
            "email": "cashier@example.com",
            "user_metadata": {"name": "Cash Ier", "role": role},
            "app_metadata": {"role": "user"},
        },
    }


@pytest.fixture
def redis_mock():
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.setex = AsyncMock()
    redis.delete = AsyncMock()
    return redis


@pytest.fixture
def storage_bus():
    bus = MagicMock()
    bus.publish = AsyncMock()
    bus.subscribe = MagicMock(return_value=MagicMock())
    return bus


def make_service(handler, redis_mock, storage_bus=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AccountService(
        "http://auth.test/auth/v1",
        api_key="anon-key",
        persistence=SessionPersistence(redis_mock, "tab-1"),
        storage_bus=storage_bus,
        http_client=http,
    )


class TestPayloads:
    def test_role_from_user_metadata(self):
        session = AuthSession.from_payload(token_body(role="manager"))
        assert session.user.role == "manager"
        assert session.user.name == "Cash Ier"

    def test_role_defaults_to_user(self):
        user = AuthUser.from_payload({"id": "u-2", "email": "x@example.com"})
        assert user.role == "user"

    def test_incomplete_session_rejected(self):
        with pytest.raises(AccountServiceError) as exc_info:
            AuthSession.from_payload({"access_token": "tok"})
        assert exc_info.value.code == "INVALID_SESSION"

    def test_expiry_with_leeway(self):
        session = AuthSession.from_payload(token_body(expires_in=60))
        assert not session.is_expired()
        assert session.is_expired(leeway=300)


@pytest.mark.asyncio
class TestAccountService:
    async def test_sign_in_persists_and_emits(self, redis_mock, storage_bus):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=token_body())

        service = make_service(handler, redis_mock, storage_bus)
        events = []
        service.on_auth_state_change(lambda event, session: events.append(event))

        session = await service.sign_in_with_password("cashier@example.com", "secret")

        assert session.access_token == "tok-1"
        assert requests[0].url.params["grant_type"] == "password"
        assert requests[0].headers["apikey"] == "anon-key"
        assert json.loads(requests[0].content) == {"email": "cashier@example.com", "password": "secret"}
        redis_mock.setex.assert_awaited_once()
        assert redis_mock.setex.await_args.args[0] == "session:tab-1"
        storage_bus.publish.assert_awaited_once()
        key, value = storage_bus.publish.await_args.args
        assert key == AUTH_STORAGE_KEY
        assert json.loads(value)["event"] == SIGNED_IN
        assert events == [SIGNED_IN]

    async def test_sign_in_rejected(self, redis_mock):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"})

        service = make_service(handler, redis_mock)

        with pytest.raises(AccountServiceError) as exc_info:
            await service.sign_in_with_password("cashier@example.com", "wrong")

        assert exc_info.value.status == 400
        assert exc_info.value.message == "Invalid login credentials"
        redis_mock.setex.assert_not_awaited()

    async def test_sign_in_requires_credentials(self, redis_mock):
        service = make_service(lambda request: httpx.Response(500), redis_mock)
        with pytest.raises(AccountServiceError) as exc_info:
            await service.sign_in_with_password("", "")
        assert exc_info.value.code == "VALIDATION_ERROR"

    async def test_unreachable_service_is_network_error(self, redis_mock):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = make_service(handler, redis_mock)
        with pytest.raises(AccountServiceError) as exc_info:
            await service.refresh_session("ref-1")
        assert exc_info.value.is_network_error

    async def test_get_session_refreshes_expired_token(self, redis_mock):
        stale = AuthSession.from_payload({**token_body(token="old"), "expires_at": time.time() - 10})
        redis_mock.get = AsyncMock(return_value=json.dumps(stale.to_dict()))
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=token_body(token="fresh"))

        service = make_service(handler, redis_mock)
        events = []
        service.on_auth_state_change(lambda event, session: events.append(event))

        session = await service.get_session()

        assert session.access_token == "fresh"
        assert requests[0].url.params["grant_type"] == "refresh_token"
        assert events == [TOKEN_REFRESHED]

    async def test_rejected_refresh_clears_persisted_session(self, redis_mock):
        stale = AuthSession.from_payload({**token_body(token="old"), "expires_at": time.time() - 10})
        redis_mock.get = AsyncMock(return_value=json.dumps(stale.to_dict()))

        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid Refresh Token"})

        service = make_service(handler, redis_mock)
        with pytest.raises(AccountServiceError):
            await service.get_session()

        redis_mock.delete.assert_awaited_once_with("session:tab-1")

    async def test_unreachable_refresh_keeps_persisted_session(self, redis_mock):
        stale = AuthSession.from_payload({**token_body(token="old"), "expires_at": time.time() - 10})
        redis_mock.get = AsyncMock(return_value=json.dumps(stale.to_dict()))

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        service = make_service(handler, redis_mock)
        with pytest.raises(AccountServiceError) as exc_info:
            await service.get_session()

        assert exc_info.value.is_network_error
        redis_mock.delete.assert_not_awaited()

    async def test_get_session_without_persisted_session(self, redis_mock):
        service = make_service(lambda request: httpx.Response(500), redis_mock)
        assert await service.get_session() is None

    async def test_sign_out_clears_persistence_when_revoke_fails(self, redis_mock, storage_bus):
        service = make_service(lambda request: httpx.Response(500, json={"msg": "boom"}), redis_mock, storage_bus)
        events = []
        service.on_auth_state_change(lambda event, session: events.append(event))

        with pytest.raises(AccountServiceError):
            await service.sign_out("tok-1")

        redis_mock.delete.assert_awaited_once_with("session:tab-1")
        storage_bus.publish.assert_awaited_once_with(AUTH_STORAGE_KEY, None)
        assert events == [SIGNED_OUT]


class TestStorageWatch:
    """Session changes made by another instance."""

    def test_watch_is_idempotent(self, redis_mock, storage_bus):
        service = make_service(lambda request: httpx.Response(200), redis_mock, storage_bus)
        service.watch_storage()
        service.watch_storage()
        assert storage_bus.subscribe.call_count == 1

    def test_remote_sign_out(self, redis_mock):
        service = make_service(lambda request: httpx.Response(200), redis_mock)
        events = []
        service.on_auth_state_change(lambda event, session: events.append((event, session)))

        service._on_storage_change(AUTH_STORAGE_KEY, None)

        assert events == [(SIGNED_OUT, None)]

    def test_remote_refresh(self, redis_mock):
        service = make_service(lambda request: httpx.Response(200), redis_mock)
        events = []
        service.on_auth_state_change(lambda event, session: events.append((event, session)))
        session = AuthSession.from_payload(token_body(token="tok-7"))
        value = json.dumps({"event": TOKEN_REFRESHED, "session": session.to_dict()})

        service._on_storage_change(AUTH_STORAGE_KEY, value)
        service._on_storage_change("pos-terminals-data", value)

        assert len(events) == 1
        assert events[0][0] == TOKEN_REFRESHED
        assert events[0][1].access_token == "tok-7"

    def test_remote_sign_in(self, redis_mock):
        service = make_service(lambda request: httpx.Response(200), redis_mock)
        events = []
        service.on_auth_state_change(lambda event, session: events.append(event))
        session = AuthSession.from_payload(token_body())

        service._on_storage_change(AUTH_STORAGE_KEY, json.dumps({"event": SIGNED_IN, "session": session.to_dict()}))

        assert events == [SIGNED_IN]

    def test_invalid_payload_ignored(self, redis_mock):
        service = make_service(lambda request: httpx.Response(200), redis_mock)
        events = []
        service.on_auth_state_change(lambda event, session: events.append(event))
        service._on_storage_change(AUTH_STORAGE_KEY, "{not json")
        assert events == []
