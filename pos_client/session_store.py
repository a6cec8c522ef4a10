"""
Authoritative authentication state for the client.

The store owns the current Session. Every change, whether it comes from an
explicit call (sign-in, refresh, sign-out) or from an unsolicited account
service notification, goes through ``_apply`` so both paths share the same
replace-or-clear semantics.

``loading`` stays True until the first resolution of ``initialize()`` (or of
an auth notification). While loading, the authentication status is unknown,
not negative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from .account_service import TOKEN_REFRESHED, AccountService, AccountServiceError, AuthSession, AuthUser
from .roles import has_any_capability, has_capability

logger = logging.getLogger("pos_client.session")

Observer = Callable[["SessionStore"], None]


@dataclass(frozen=True)
class Session:
    user_id: str
    email: str
    role: str
    token_expiry: float
    access_token: str
    refresh_token: str

    @classmethod
    def from_auth(cls, auth: AuthSession) -> "Session":
        return cls(
            user_id=auth.user.id,
            email=auth.user.email,
            role=auth.user.role,
            token_expiry=auth.expires_at,
            access_token=auth.access_token,
            refresh_token=auth.refresh_token,
        )


class SessionStore:
    def __init__(self, account_service: AccountService):
        self._account = account_service
        self._session: Optional[Session] = None
        self._user: Optional[AuthUser] = None
        self.loading = True
        self._observers: List[Observer] = []
        self._refresh_task: Optional[asyncio.Task] = None
        # Bumped whenever the session ends or a new sign-in starts
        self._generation = 0
        self._unsubscribe_account: Optional[Callable[[], None]] = account_service.on_auth_state_change(
            self._on_auth_state_changed
        )

    # ------------
    # State access
    # ------------
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user(self) -> Optional[AuthUser]:
        return self._user

    @property
    def access_token(self) -> Optional[str]:
        """Token injected into API requests; read at send time."""
        return self._session.access_token if self._session else None

    def is_authenticated(self) -> bool:
        return self._session is not None and self._user is not None

    def has_role(self, role: str) -> bool:
        if self._session is None:
            return False
        return has_capability(self._session.role, role)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        if self._session is None:
            return False
        return has_any_capability(self._session.role, roles)

    # -----------
    # Observers
    # -----------
    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception as e:
                logger.error("session_observer_error error=%s", repr(e))

    def _end_generation(self) -> None:
        """Invalidate any refresh started for the current session."""
        self._generation += 1
        task = self._refresh_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _apply(self, auth: Optional[AuthSession]) -> None:
        if auth is None:
            changed = self._session is not None
            self._session = None
            self._user = None
            self._end_generation()
        else:
            new_session = Session.from_auth(auth)
            changed = new_session != self._session
            self._session = new_session
            self._user = auth.user
        if changed:
            self._notify()

    def _on_auth_state_changed(self, event: str, auth: Optional[AuthSession]) -> None:
        logger.info("auth_state_changed event=%s uid=%s", event, auth.user.id if auth else None)
        if event == TOKEN_REFRESHED and auth is not None:
            # A refresh only renews the session it was started for
            if self._session is None or self._session.user_id != auth.user.id:
                logger.info("token_refresh_ignored uid=%s", auth.user.id)
                return
        self._apply(auth)
        if self.loading:
            self.loading = False
            self._notify()

    # -----------
    # Operations
    # -----------
    async def initialize(self) -> Optional[Session]:
        """Restore a persisted session; a missing one is a normal state."""
        try:
            auth = await self._account.get_session()
            if auth is not None:
                self._apply(auth)
                logger.info("session_restored uid=%s", auth.user.id)
        except Exception as e:
            logger.error("session_initialize_failed error=%s", repr(e))
        finally:
            self.loading = False
            self._notify()
        return self._session

    async def sign_in(self, email: str, password: str) -> Tuple[AuthUser, Session]:
        self._end_generation()
        try:
            auth = await self._account.sign_in_with_password(email, password)
        except AccountServiceError as e:
            logger.warning("sign_in_failed email=%s code=%s", email, e.code)
            raise
        self._apply(auth)
        return auth.user, self._session

    async def sign_out(self) -> None:
        """Clear the local session even when the remote revoke fails."""
        token = self.access_token
        self._end_generation()
        try:
            await self._account.sign_out(token)
        except Exception as e:
            logger.error("sign_out_remote_failed error=%s", repr(e))
        finally:
            self._apply(None)

    async def refresh_session(self) -> Session:
        """Concurrent callers share a single refresh request.

        Raises ``AccountServiceError`` (code ``SESSION_ENDED``) when the
        session is signed out or replaced while the refresh is running.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh())
        task = self._refresh_task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            raise AccountServiceError("Session ended during refresh", status=401, code="SESSION_ENDED")

    async def _refresh(self) -> Session:
        generation = self._generation
        try:
            if self._session is None:
                raise AccountServiceError("No active session to refresh", status=401, code="NO_SESSION")
            auth = await self._account.refresh_session(self._session.refresh_token)
        except Exception as e:
            logger.error("refresh_session_failed error=%s", repr(e))
            if generation == self._generation:
                await self.sign_out()
            raise
        if generation != self._generation:
            logger.warning("refresh_result_discarded uid=%s", auth.user.id)
            raise AccountServiceError("Session ended during refresh", status=401, code="SESSION_ENDED")
        self._apply(auth)
        return self._session

    def close(self) -> None:
        if self._unsubscribe_account is not None:
            self._unsubscribe_account()
            self._unsubscribe_account = None
        self._observers.clear()
