"""
Per-portal state: the current auth session, role, view and form pre-fill.

A ``PortalState`` is the single owner of that state for one browser. It is
updated from its ``AuthClient`` event stream only, so the view router and the
migration trigger always observe the same sequence of auth events.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Optional

from lastwishes.db import DbClient
from lastwishes.errors import BackendError
from lastwishes.identity import AuthClient, AuthEvent, AuthSession, User
from lastwishes.migration import MigrationTrigger
from lastwishes.session_store import SessionStore

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


class View(str, Enum):
    HOME = "home"
    LOGIN = "login"
    SIGNUP = "signup"
    RESET_PASSWORD = "reset_password"
    DASHBOARD = "dashboard"


AUTH_VIEWS = frozenset({View.LOGIN, View.SIGNUP, View.RESET_PASSWORD})


class ViewRouter:
    """Event-driven transitions between the portal's top-level views."""

    def __init__(self, initial: View = View.HOME):
        self.view = initial

    def on_auth_event(self, event: AuthEvent, session: Optional[AuthSession]) -> View:
        if event == AuthEvent.PASSWORD_RECOVERY:
            self.view = View.RESET_PASSWORD
        elif event == AuthEvent.SIGNED_IN and session is not None:
            if self.view in AUTH_VIEWS:
                self.view = View.DASHBOARD
        elif session is None and self.view == View.DASHBOARD:
            self.view = View.HOME
        return self.view

    def navigate(self, view: View, *, has_session: bool) -> View:
        if view == View.DASHBOARD and not has_session:
            view = View.LOGIN
        self.view = view
        return self.view


class PortalState:
    def __init__(
        self,
        portal_id: str,
        auth: AuthClient,
        *,
        db: DbClient,
        markers: SessionStore,
        migrate: Callable[[str, Optional[str]], object],
    ):
        self.portal_id = portal_id
        self.auth = auth
        self.db = db
        self._lock = threading.RLock()
        session = auth.get_session()
        self.router = ViewRouter(View.DASHBOARD if session else View.HOME)
        self.role: Optional[str] = self._load_role(session)
        # Pre-fill for the sign-up/login forms (``email``, ``name``).
        self.prefill: dict[str, str] = {}
        self.migration_trigger = MigrationTrigger(portal_id, markers, migrate)
        self._subscriptions = [
            auth.on_auth_state_change(self._on_auth_event),
            auth.on_auth_state_change(self.migration_trigger),
        ]

    def _load_role(self, session: Optional[AuthSession]) -> Optional[str]:
        if session is None:
            return None
        try:
            return self.db.get_user_role(session.user.id)
        except BackendError as exc:
            logger.error("Failed to load role for user_id=%s: %s", session.user.id, exc.message)
            return None

    def _on_auth_event(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        with self._lock:
            self.role = self._load_role(session)
            previous = self.router.view
            view = self.router.on_auth_event(event, session)
        if view != previous:
            logger.debug("Portal %s: %s -> %s on %s", self.portal_id, previous.value, view.value, event.value)

    @property
    def session(self) -> Optional[AuthSession]:
        return self.auth.get_session()

    def refresh_if_expired(self) -> Optional[AuthSession]:
        # Refresh tokens are single-use: one refresh at a time per portal.
        with self._lock:
            return self.auth.ensure_fresh_session()

    @property
    def user(self) -> Optional[User]:
        session = self.session
        return session.user if session else None

    @property
    def view(self) -> View:
        return self.router.view

    @property
    def is_admin(self) -> bool:
        return self.session is not None and self.role == ADMIN_ROLE

    def navigate(self, view: View) -> View:
        with self._lock:
            return self.router.navigate(view, has_session=self.session is not None)

    def set_prefill(self, **values: Optional[str]) -> None:
        with self._lock:
            for key, value in values.items():
                if value:
                    self.prefill[key] = value
                else:
                    self.prefill.pop(key, None)

    def clear_prefill(self) -> None:
        with self._lock:
            self.prefill.clear()

    def snapshot(self) -> dict:
        user = self.user
        return {
            "view": self.view.value,
            "user": user.as_dict() if user else None,
            "role": self.role,
            "is_admin": self.is_admin,
            "prefill": dict(self.prefill),
        }

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def expire(self) -> None:
        """Close the portal for good and drop its session markers."""
        self.close()
        self.migration_trigger.markers.clear(self.portal_id)


class PortalRegistry:
    """
    In-process map of portal id to its state, created on first use.

    Portals idle for longer than ``idle_ttl_seconds`` are evicted on the next
    lookup; their subscriptions are closed and their markers dropped.
    """

    def __init__(
        self,
        factory: Callable[[str], PortalState],
        *,
        idle_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory
        self.idle_ttl_seconds = idle_ttl_seconds
        self.clock = clock
        self._portals: dict[str, PortalState] = {}
        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def get_or_create(self, portal_id: Optional[str]) -> PortalState:
        with self._lock:
            now = self.clock()
            self._evict_idle(now)
            if portal_id and portal_id in self._portals:
                self._last_seen[portal_id] = now
                return self._portals[portal_id]
            # Unknown ids are never adopted; the caller gets a fresh portal.
            portal_id = uuid.uuid4().hex
            portal = self.factory(portal_id)
            self._portals[portal_id] = portal
            self._last_seen[portal_id] = now
            return portal

    def _evict_idle(self, now: float) -> None:
        if self.idle_ttl_seconds is None:
            return
        cutoff = now - self.idle_ttl_seconds
        idle = [portal_id for portal_id, seen in self._last_seen.items() if seen < cutoff]
        for portal_id in idle:
            portal = self._portals.pop(portal_id)
            del self._last_seen[portal_id]
            portal.expire()
        if idle:
            logger.info("Evicted %d idle portal(s)", len(idle))

    def get(self, portal_id: str) -> Optional[PortalState]:
        return self._portals.get(portal_id)

    def __len__(self) -> int:
        return len(self._portals)

    def clear(self) -> None:
        with self._lock:
            for portal in self._portals.values():
                portal.close()
            self._portals.clear()
            self._last_seen.clear()
