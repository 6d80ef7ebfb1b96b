# services/session_service.py
"""
Anonymous session management.

Holds the single process-wide session. A session is obtained lazily on the
first authenticated call and replaced only after the backend rejects its
token; there is no preemptive refresh.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

import httpx

from bunkd.config import Settings, settings as default_settings
from bunkd.schemas.session import AuthState, Session
from bunkd.services.errors import (
    AnonymousSignInDisabled,
    AuthError,
    NetworkError,
    SessionUnavailable,
)
from bunkd.services.http_helpers import (
    base_headers,
    decode_body,
    extract_message,
    matches_signature,
    open_client,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthState], None]


def is_anonymous_disabled(status_code: int, body: Any, signatures: List[str]) -> bool:
    """
    Decide whether a failed sign-in means "anonymous auth is turned off".

    The machine-readable error_code is checked first, then the message text.
    A bare 400/422 with no message is the auth server's shape for a disabled
    provider on older deployments.
    """
    if isinstance(body, dict):
        code = body.get("error_code") or body.get("code")
        if isinstance(code, str) and matches_signature(code, signatures):
            return True
    message = extract_message(body)
    if matches_signature(message, signatures):
        return True
    return status_code in (400, 422) and not message


def session_from_payload(payload: Any) -> Session:
    if not isinstance(payload, dict):
        raise SessionUnavailable("No session returned from anonymous sign in")
    user = payload.get("user") or {}
    access_token = payload.get("access_token")
    user_id = user.get("id")
    if not access_token or not user_id:
        raise SessionUnavailable("No session returned from anonymous sign in")
    return Session(
        user_id=user_id,
        access_token=access_token,
        expires_at=payload.get("expires_at"),
        is_anonymous=user.get("is_anonymous", True),
        refresh_token=payload.get("refresh_token"),
    )


class SessionManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or default_settings
        self._transport = transport
        self._session: Optional[Session] = None
        self._rejected: Optional[Session] = None
        self._state = AuthState()
        self._listeners: List[StateListener] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for AuthState changes. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Auth state listener raised")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> AuthState:
        """
        Start-up path for host applications: never raises.

        Failures end up in `state` (is_authenticated=False, anonymous_disabled,
        error) so the app can still boot and show a warning.
        """
        logger.info("Initializing authentication...")
        try:
            await self.ensure_session()
        except AuthError as e:
            logger.error(f"Failed to initialize auth: {e}")
        return self._state

    async def ensure_session(self) -> Session:
        """
        Return the current session, signing in anonymously if there is none.

        Raises AnonymousSignInDisabled or SessionUnavailable if sign-in fails.
        """
        session = self._session
        if session is not None:
            return session

        # Concurrent callers wait for the one sign-in already underway.
        async with self._lock:
            if self._session is not None:
                return self._session
            return await self._sign_in()

    def invalidate(self, session: Session) -> None:
        """Drop `session` after the backend rejected its token."""
        if self._session is not None and self._session.access_token == session.access_token:
            logger.warning(f"Session token {session.token_prefix} rejected; it will be replaced on next use")
            self._session = None
            self._rejected = session
            self._publish(is_authenticated=False, user_id=None)

    async def verify_token(self, session: Session) -> bool:
        """Ask the auth server whether `session`'s token is still accepted."""
        url = f"{self.settings.SUPABASE_URL.rstrip('/')}/auth/v1/user"
        try:
            async with open_client(self.settings, self._transport) as client:
                response = await client.get(url, headers=base_headers(self.settings, session.access_token))
        except httpx.TransportError as e:
            raise NetworkError(f"Token verification failed: {e}") from e
        accepted = response.is_success
        logger.info(f"Token {session.token_prefix} {'accepted' if accepted else 'rejected'} by auth endpoint")
        return accepted

    async def _sign_in(self) -> Session:
        rejected = self._rejected
        if rejected is not None and rejected.refresh_token:
            session = await self._refresh(rejected)
            if session is not None:
                return self._adopt(session)

        logger.info("No session found, signing in anonymously...")
        base = self.settings.SUPABASE_URL.rstrip("/")
        try:
            async with open_client(self.settings, self._transport) as client:
                response = await client.post(
                    f"{base}/auth/v1/signup",
                    headers=base_headers(self.settings, self.settings.SUPABASE_ANON_KEY),
                    json={"data": {}},
                )
        except httpx.TransportError as e:
            self._publish(initialized=True, is_authenticated=False, error=str(e))
            raise SessionUnavailable(f"Anonymous sign-in failed: {e}") from e

        body = decode_body(response)
        if not response.is_success:
            message = extract_message(body, fallback=response.reason_phrase)
            if is_anonymous_disabled(response.status_code, body, self.settings.ANON_DISABLED_SIGNATURES):
                logger.warning(f"Anonymous sign-ins are disabled on the backend: {message}")
                self._publish(
                    initialized=True,
                    is_authenticated=False,
                    anonymous_disabled=True,
                    error=message or "Anonymous sign-ins are disabled",
                )
                raise AnonymousSignInDisabled(f"Anonymous sign-in failed: {message}")
            self._publish(initialized=True, is_authenticated=False, error=message)
            raise SessionUnavailable(f"Anonymous sign-in failed ({response.status_code}): {message}")

        try:
            session = session_from_payload(body)
        except SessionUnavailable as e:
            self._publish(initialized=True, is_authenticated=False, error=str(e))
            raise
        logger.info(f"Signed in anonymously: {session.user_id}")
        return self._adopt(session)

    async def _refresh(self, rejected: Session) -> Optional[Session]:
        """Try to keep the same identity via the refresh token; None if that fails."""
        base = self.settings.SUPABASE_URL.rstrip("/")
        try:
            async with open_client(self.settings, self._transport) as client:
                response = await client.post(
                    f"{base}/auth/v1/token",
                    params={"grant_type": "refresh_token"},
                    headers=base_headers(self.settings, self.settings.SUPABASE_ANON_KEY),
                    json={"refresh_token": rejected.refresh_token},
                )
        except httpx.TransportError as e:
            logger.warning(f"Session refresh failed: {e}")
            return None
        if not response.is_success:
            logger.warning(f"Session refresh rejected ({response.status_code}); signing in again")
            return None
        try:
            return session_from_payload(decode_body(response))
        except SessionUnavailable:
            return None

    def _adopt(self, session: Session) -> Session:
        # Whole-value replacement: readers see either the old or the new session.
        self._session = session
        self._rejected = None
        self._publish(
            initialized=True,
            is_authenticated=True,
            anonymous_disabled=False,
            user_id=session.user_id,
            error=None,
        )
        return session
