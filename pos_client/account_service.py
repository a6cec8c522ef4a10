"""
Account Service Adapter
=======================

HTTP adapter for the remote account (auth) service. It exposes the small
surface the session layer needs:

    - sign_in_with_password(email, password)
    - get_session(): the persisted session, refreshed when its token expired
    - refresh_session(refresh_token)
    - sign_out(access_token)
    - on_auth_state_change(callback): unsolicited session changes

Wire format (GoTrue-style REST):
    POST {base}/token?grant_type=password        {"email", "password"}
    POST {base}/token?grant_type=refresh_token   {"refresh_token"}
    POST {base}/logout                            Authorization: Bearer <token>

Persisted sessions live in Redis under ``session:{client_id}``. Session
writes are also announced on the cross-tab StorageBus so that other
instances observe sign-in, refresh and sign-out made here. The published value
is ``{"event", "session"}``, or empty on sign-out.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .roles import role_from_claims

logger = logging.getLogger("pos_client.account_service")

AUTH_STORAGE_KEY = "pos-auth-session"

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

AuthCallback = Callable[[str, Optional["AuthSession"]], None]


class AccountServiceError(Exception):
    """Failure reported by (or while reaching) the account service."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code or "AUTH_ERROR"

    @property
    def is_network_error(self) -> bool:
        return self.code == "NETWORK_ERROR"


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str
    role: str
    name: str = ""
    created_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        user_metadata = payload.get("user_metadata") or {}
        email = payload.get("email") or ""
        return cls(
            id=str(payload["id"]),
            email=email,
            role=role_from_claims(user_metadata, payload.get("app_metadata")),
            name=user_metadata.get("name") or email,
            created_at=payload.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "user_metadata": {"name": self.name, "role": self.role},
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: float
    user: AuthUser
    token_type: str = "bearer"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthSession":
        if not payload.get("access_token") or not payload.get("user"):
            raise AccountServiceError("Incomplete session returned by account service", code="INVALID_SESSION")
        expires_at = payload.get("expires_at")
        if expires_at is None:
            expires_at = time.time() + float(payload.get("expires_in") or 3600)
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or "",
            expires_at=float(expires_at),
            user=AuthUser.from_payload(payload["user"]),
            token_type=payload.get("token_type") or "bearer",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "user": self.user.to_dict(),
        }

    def is_expired(self, leeway: float = 0.0, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at <= now + leeway


class SessionPersistence:
    """Redis-backed storage for the current client's session."""

    def __init__(self, redis_client, client_id: str, ttl: int = 7 * 24 * 3600):
        self.redis = redis_client
        self.client_id = client_id
        self.ttl = ttl

    @property
    def key(self) -> str:
        return f"session:{self.client_id}"

    async def load(self) -> Optional[AuthSession]:
        raw = await self.redis.get(self.key)
        if not raw:
            return None
        return AuthSession.from_payload(json.loads(raw))

    async def save(self, session: AuthSession) -> None:
        await self.redis.setex(self.key, self.ttl, json.dumps(session.to_dict()))

    async def clear(self) -> None:
        await self.redis.delete(self.key)


class AccountService:
    """Client for the remote account service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        persistence: Optional[SessionPersistence] = None,
        storage_bus=None,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_leeway: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.persistence = persistence
        self.storage_bus = storage_bus
        self.refresh_leeway = refresh_leeway
        self._http = http_client
        self._listeners: List[AuthCallback] = []
        self._unsubscribe_storage: Optional[Callable[[], None]] = None

    def _get_headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    # ───────────────────────────────────────────
    # Transport
    # ───────────────────────────────────────────

    async def _post(self, path: str, payload: Optional[dict] = None, access_token: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                response = await self._http.post(url, json=payload, headers=self._get_headers(access_token), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=self._get_headers(access_token))
        except httpx.TimeoutException:
            logger.error("account_request_timeout path=%s", path)
            raise AccountServiceError("Account service timed out", code="NETWORK_ERROR")
        except httpx.HTTPError as e:
            logger.error("account_request_failed path=%s error=%s", path, repr(e))
            raise AccountServiceError(f"Account service unreachable: {e}", code="NETWORK_ERROR")

        if response.status_code == 204 or not response.content:
            if response.is_success:
                return {}

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.is_success:
            message = (
                body.get("error_description")
                or body.get("msg")
                or body.get("message")
                or (body.get("error") if isinstance(body.get("error"), str) else None)
                or f"HTTP {response.status_code}"
            )
            code = body.get("error_code") or body.get("code") or body.get("error")
            raise AccountServiceError(message, status=response.status_code, code=str(code) if code else None)

        return body

    # ───────────────────────────────────────────
    # Auth operations
    # ───────────────────────────────────────────

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        if not email or not password:
            raise AccountServiceError("Email and password are required", status=400, code="VALIDATION_ERROR")

        body = await self._post("/token?grant_type=password", {"email": email, "password": password})
        session = AuthSession.from_payload(body)
        logger.info("account_sign_in uid=%s", session.user.id)
        await self._store(session, SIGNED_IN)
        self._emit(SIGNED_IN, session)
        return session

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        if not refresh_token:
            raise AccountServiceError("No refresh token available", status=401, code="REFRESH_TOKEN_MISSING")

        body = await self._post("/token?grant_type=refresh_token", {"refresh_token": refresh_token})
        session = AuthSession.from_payload(body)
        logger.info("account_token_refreshed uid=%s expires_at=%s", session.user.id, int(session.expires_at))
        await self._store(session, TOKEN_REFRESHED)
        self._emit(TOKEN_REFRESHED, session)
        return session

    async def sign_out(self, access_token: Optional[str]) -> None:
        """Revoke the remote session; local persistence is cleared even if the revoke fails."""
        try:
            if access_token:
                await self._post("/logout", None, access_token=access_token)
        finally:
            await self._store(None, SIGNED_OUT)
            self._emit(SIGNED_OUT, None)
            logger.info("account_sign_out")

    async def get_session(self) -> Optional[AuthSession]:
        """Return the persisted session, refreshing it first when its token is (about to be) expired."""
        if self.persistence is None:
            return None
        session = await self.persistence.load()
        if session is None:
            return None
        if session.is_expired(self.refresh_leeway):
            logger.info("account_persisted_session_expired uid=%s", session.user.id)
            try:
                return await self.refresh_session(session.refresh_token)
            except AccountServiceError as e:
                # Refresh token rejected: the stored session can never be restored
                if not e.is_network_error:
                    await self.persistence.clear()
                    logger.info("account_persisted_session_cleared uid=%s code=%s", session.user.id, e.code)
                raise
        return session

    async def _store(self, session: Optional[AuthSession], event: str) -> None:
        try:
            if self.persistence is not None:
                if session is None:
                    await self.persistence.clear()
                else:
                    await self.persistence.save(session)
        except Exception as e:
            logger.error("account_persist_failed error=%s", repr(e))

        if self.storage_bus is not None:
            value = json.dumps({"event": event, "session": session.to_dict()}) if session is not None else None
            await self.storage_bus.publish(AUTH_STORAGE_KEY, value)

    # ───────────────────────────────────────────
    # Auth state notifications
    # ───────────────────────────────────────────

    def on_auth_state_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, session: Optional[AuthSession]) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, session)
            except Exception as e:
                logger.error("auth_listener_error event=%s error=%s", event, repr(e))

    def watch_storage(self) -> None:
        """Follow session changes made by other instances through the StorageBus."""
        if self.storage_bus is None or self._unsubscribe_storage is not None:
            return
        self._unsubscribe_storage = self.storage_bus.subscribe(self._on_storage_change)

    def unwatch_storage(self) -> None:
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None

    def _on_storage_change(self, key: str, value: Optional[str]) -> None:
        if key != AUTH_STORAGE_KEY:
            return
        if not value:
            self._emit(SIGNED_OUT, None)
            return
        try:
            data = json.loads(value)
            session = AuthSession.from_payload(data.get("session") or {})
        except (ValueError, KeyError, AttributeError, AccountServiceError) as e:
            logger.warning("auth_storage_payload_invalid error=%s", repr(e))
            return
        event = SIGNED_IN if data.get("event") == SIGNED_IN else TOKEN_REFRESHED
        self._emit(event, session)
