"""Session/identity boundary over Supabase Auth.

``SessionProvider`` is the thin adapter over ``client.auth``.
``SessionHandle`` is the injected, per-app session object with an explicit
``init → ready → disposed`` lifecycle; it owns the cached profile and
guarantees a profile row exists after sign-in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from src.common.exceptions import FetchError, PersistError, ServiceDeskError
from src.common.models import Actor, Profile, Role

from .client import PROFILES_TABLE, SupabaseGateway

logger = logging.getLogger(__name__)

PROFILE_MAX_ATTEMPTS = 3
PROFILE_BACKOFF_BASE = 0.5
DEFAULT_DISPLAY_NAME = "User"

# Postgres "insufficient_privilege": row-level security refused the insert.
RLS_DENIED_CODE = "42501"


class AuthEvent(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"


class SessionState(str, Enum):
    INIT = "init"
    READY = "ready"
    DISPOSED = "disposed"


class AuthError(ServiceDeskError):
    """Sign-in, sign-up or sign-out was refused by the provider."""


@dataclass
class AuthSession:
    """Opaque session bound to a user id."""

    user_id: str
    email: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    access_token: str = ""

    @classmethod
    def from_supabase(cls, session: Any) -> Optional[AuthSession]:
        if session is None or getattr(session, "user", None) is None:
            return None
        user = session.user
        return cls(
            user_id=str(user.id),
            email=getattr(user, "email", "") or "",
            metadata=dict(getattr(user, "user_metadata", None) or {}),
            access_token=getattr(session, "access_token", "") or "",
        )


def _map_event(raw: Any) -> Optional[AuthEvent]:
    name = str(getattr(raw, "value", raw)).upper()
    return {
        "SIGNED_IN": AuthEvent.SIGNED_IN,
        "INITIAL_SESSION": AuthEvent.SIGNED_IN,
        "SIGNED_OUT": AuthEvent.SIGNED_OUT,
        "TOKEN_REFRESHED": AuthEvent.TOKEN_REFRESHED,
    }.get(name)


class SessionProvider:
    """Adapter over ``client.auth`` returning ``AuthSession`` values."""

    def __init__(self, gateway: SupabaseGateway):
        self._gateway = gateway

    async def get_current_session(self) -> Optional[AuthSession]:
        client = await self._gateway.get_client()
        try:
            session = await client.auth.get_session()
        except Exception as exc:
            raise AuthError(f"Could not read session: {exc}") from exc
        return AuthSession.from_supabase(session)

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        client = await self._gateway.get_client()
        try:
            response = await client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as exc:
            raise AuthError(f"Sign-in failed: {exc}") from exc
        session = AuthSession.from_supabase(response.session)
        if session is None:
            raise AuthError("Sign-in returned no session")
        return session

    async def sign_up(
        self, email: str, password: str, metadata: Optional[dict[str, Any]] = None
    ) -> Optional[AuthSession]:
        """Register a user. Returns None while email confirmation is pending."""
        client = await self._gateway.get_client()
        try:
            response = await client.auth.sign_up(
                {"email": email, "password": password, "options": {"data": metadata or {}}}
            )
        except Exception as exc:
            raise AuthError(f"Sign-up failed: {exc}") from exc
        return AuthSession.from_supabase(response.session)

    async def sign_out(self) -> None:
        client = await self._gateway.get_client()
        try:
            await client.auth.sign_out()
        except Exception as exc:
            raise AuthError(f"Sign-out failed: {exc}") from exc

    async def on_change(
        self, callback: Callable[[AuthEvent, Optional[AuthSession]], None]
    ) -> Callable[[], None]:
        """Subscribe to auth changes. Returns an unsubscribe function."""
        client = await self._gateway.get_client()

        def _listener(raw_event: Any, raw_session: Any) -> None:
            event = _map_event(raw_event)
            if event is None:
                return
            callback(event, AuthSession.from_supabase(raw_session))

        subscription = client.auth.on_auth_state_change(_listener)
        return subscription.unsubscribe


class SessionHandle:
    """Injected session: current AuthSession + cached Profile.

    Lifecycle: INIT → READY (after ``start``) → DISPOSED (after ``dispose``).
    """

    def __init__(
        self,
        gateway: SupabaseGateway,
        provider: Optional[SessionProvider] = None,
        backoff_base: float = PROFILE_BACKOFF_BASE,
    ):
        self._gateway = gateway
        self._provider = provider or SessionProvider(gateway)
        self._backoff_base = backoff_base
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._listeners: list[Callable[[AuthEvent, SessionHandle], None]] = []
        self._pending: set[asyncio.Future] = set()
        self.state = SessionState.INIT
        self.session: Optional[AuthSession] = None
        self.profile: Optional[Profile] = None

    @property
    def actor(self) -> Optional[Actor]:
        if self.profile is None:
            return None
        return Actor.from_profile(self.profile)

    @property
    def is_admin(self) -> bool:
        return self.profile is not None and self.profile.role is Role.ADMIN

    def add_listener(self, listener: Callable[[AuthEvent, SessionHandle], None]) -> None:
        self._listeners.append(listener)

    async def start(self) -> SessionHandle:
        """Restore any existing session, load its profile, watch auth changes."""
        if self.state is SessionState.DISPOSED:
            raise ServiceDeskError("Session handle already disposed")
        self.session = await self._provider.get_current_session()
        if self.session is not None:
            self.profile = await self.ensure_profile(self.session)
        self._unsubscribe = await self._provider.on_change(self._on_auth_change)
        self.state = SessionState.READY
        return self

    async def sign_in(self, email: str, password: str) -> Profile:
        self.session = await self._provider.sign_in_with_password(email, password)
        self.profile = await self.ensure_profile(self.session)
        return self.profile

    async def sign_up(self, email: str, password: str, full_name: str, phone: str = "") -> Optional[Profile]:
        self.session = await self._provider.sign_up(
            email, password, {"full_name": full_name, "phone": phone}
        )
        if self.session is None:
            return None
        self.profile = await self.ensure_profile(self.session)
        return self.profile

    async def sign_out(self) -> None:
        try:
            await self._provider.sign_out()
        finally:
            self.session = None
            self.profile = None

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._pending):
            task.cancel()
        self._listeners.clear()
        self.state = SessionState.DISPOSED

    def _on_auth_change(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        if self.state is SessionState.DISPOSED:
            return
        if event is AuthEvent.SIGNED_OUT:
            self.session = None
            self.profile = None
            self._notify(event)
            return
        if session is None:
            return
        self.session = session
        # Same user already loaded: keep the cached profile.
        if self.profile is not None and self.profile.id == session.user_id:
            self._notify(event)
            return
        task = asyncio.ensure_future(self._reload_profile(event, session))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reload_profile(self, event: AuthEvent, session: AuthSession) -> None:
        profile = await self.ensure_profile(session)
        if self.state is SessionState.DISPOSED:
            return
        self.profile = profile
        self._notify(event)

    def _notify(self, event: AuthEvent) -> None:
        for listener in list(self._listeners):
            listener(event, self)

    # --- Profile bootstrap ---

    @staticmethod
    def _fallback_profile(session: AuthSession) -> Profile:
        return Profile(
            id=session.user_id,
            email=session.email,
            full_name=session.metadata.get("full_name") or DEFAULT_DISPLAY_NAME,
            phone=session.metadata.get("phone") or "",
            role=Role.CUSTOMER,
            has_seen_guide=False,
        )

    async def ensure_profile(self, session: AuthSession) -> Profile:
        """Fetch the profile row, creating it if missing.

        Retries with exponential backoff (0.5s, 1s). When row-level security
        refuses the insert, or retries run out, an ephemeral customer
        profile is returned so the app can still start.
        """
        for attempt in range(1, PROFILE_MAX_ATTEMPTS + 1):
            try:
                row = await self._gateway.select_one(PROFILES_TABLE, {"id": session.user_id})
                if row is not None:
                    return Profile(**row)
                fallback = self._fallback_profile(session)
                try:
                    created = await self._gateway.insert(
                        PROFILES_TABLE,
                        fallback.to_row(exclude={"has_seen_guide", "created_at"}),
                    )
                except PersistError as exc:
                    if getattr(exc.__cause__, "code", None) == RLS_DENIED_CODE:
                        logger.warning("Profile creation skipped due to RLS.")
                        return fallback
                    raise
                return Profile(**created[0]) if created else fallback
            except (FetchError, PersistError) as exc:
                logger.warning(
                    "Profile fetch attempt %d/%d failed: %s",
                    attempt,
                    PROFILE_MAX_ATTEMPTS,
                    exc,
                )
                if attempt >= PROFILE_MAX_ATTEMPTS:
                    break
                await asyncio.sleep(self._backoff_base * 2 ** (attempt - 1))

        logger.error("Profile fetch failed after max retries. Using fallback.")
        return self._fallback_profile(session)
