"""
Identity service clients and the per-portal auth client.

``IdentityService`` is the stateless contract with the backend's auth API
(token in, result out). ``AuthClient`` wraps it for one portal session: it
holds the current session and delivers ``(event, session_or_none)`` to its
subscribers, the same stream the view router and migration trigger observe.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

import requests

from lastwishes.errors import AuthError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15  # seconds
SESSION_LIFETIME_SECONDS = 3600
REFRESH_LEEWAY_SECONDS = 30


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
    MFA_CHALLENGE_VERIFIED = "MFA_CHALLENGE_VERIFIED"


@dataclass
class User:
    id: str
    email: Optional[str]
    user_metadata: dict = field(default_factory=dict)

    @property
    def display_name(self) -> Optional[str]:
        return self.user_metadata.get("name")

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "user_metadata": dict(self.user_metadata),
        }


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    user: User
    expires_at: float = field(
        default_factory=lambda: time.time() + SESSION_LIFETIME_SECONDS
    )


@dataclass
class MfaFactor:
    id: str
    factor_type: str = "totp"
    status: str = "unverified"
    friendly_name: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "factor_type": self.factor_type,
            "status": self.status,
            "friendly_name": self.friendly_name,
        }


@dataclass
class MfaEnrollment:
    factor_id: str
    qr_code: str
    secret: str


class IdentityService(Protocol):
    """Operations consumed from the backend's identity service."""

    def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> tuple[User, Optional[AuthSession]]:
        ...

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    def sign_out(self, access_token: str, scope: str = "local") -> None:
        ...

    def get_user(self, access_token: str) -> User:
        ...

    def refresh_session(self, refresh_token: str) -> AuthSession:
        ...

    def update_user(
        self,
        access_token: str,
        *,
        password: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> User:
        ...

    def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        ...

    def verify_recovery(self, email: str, token: str) -> AuthSession:
        ...

    def list_factors(self, access_token: str) -> list[MfaFactor]:
        ...

    def enroll_totp(self, access_token: str) -> MfaEnrollment:
        ...

    def challenge_and_verify(
        self, access_token: str, factor_id: str, code: str
    ) -> None:
        ...

    def unenroll(self, access_token: str, factor_id: str) -> None:
        ...


def _hash_password(password: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()


@dataclass
class _StoredUser:
    user: User
    password_hash: str
    salt: str
    confirmed: bool


class InMemoryIdentityService:
    """Test double for the identity service."""

    def __init__(self, auto_confirm: bool = True):
        self.auto_confirm = auto_confirm
        self.users: dict[str, _StoredUser] = {}
        self.access_tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.recovery_tokens: dict[str, str] = {}
        self.factors: dict[str, dict[str, MfaFactor]] = {}
        # Current TOTP code per factor; tests read it instead of a real authenticator.
        self.totp_codes: dict[str, str] = {}

    def reset(self) -> None:
        self.users.clear()
        self.access_tokens.clear()
        self.refresh_tokens.clear()
        self.recovery_tokens.clear()
        self.factors.clear()
        self.totp_codes.clear()

    def _issue_session(self, user: User) -> AuthSession:
        session = AuthSession(
            access_token=secrets.token_urlsafe(24),
            refresh_token=secrets.token_urlsafe(24),
            user=User(user.id, user.email, dict(user.user_metadata)),
        )
        self.access_tokens[session.access_token] = user.id
        self.refresh_tokens[session.refresh_token] = user.id
        return session

    def _stored_by_id(self, user_id: str) -> _StoredUser:
        for stored in self.users.values():
            if stored.user.id == user_id:
                return stored
        raise AuthError("User not found", code="user_not_found")

    def _user_for_token(self, access_token: str) -> _StoredUser:
        user_id = self.access_tokens.get(access_token)
        if not user_id:
            raise AuthError("Invalid JWT", code="bad_jwt")
        return self._stored_by_id(user_id)

    def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> tuple[User, Optional[AuthSession]]:
        email = email.strip().lower()
        if email in self.users:
            raise AuthError("User already registered", code="user_already_exists")
        if len(password) < 6:
            raise AuthError(
                "Password should be at least 6 characters.", code="weak_password"
            )
        salt = secrets.token_hex(8)
        user = User(id=str(uuid.uuid4()), email=email, user_metadata=dict(metadata or {}))
        self.users[email] = _StoredUser(
            user=user,
            password_hash=_hash_password(password, salt),
            salt=salt,
            confirmed=self.auto_confirm,
        )
        session = self._issue_session(user) if self.auto_confirm else None
        return user, session

    def confirm_email(self, email: str) -> None:
        self.users[email.strip().lower()].confirmed = True

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        stored = self.users.get(email.strip().lower())
        if (
            stored is None
            or _hash_password(password, stored.salt) != stored.password_hash
        ):
            raise AuthError("Invalid login credentials", code="invalid_credentials")
        if not stored.confirmed:
            raise AuthError("Email not confirmed", code="email_not_confirmed")
        return self._issue_session(stored.user)

    def sign_out(self, access_token: str, scope: str = "local") -> None:
        user_id = self.access_tokens.get(access_token)
        if not user_id:
            return
        if scope == "local":
            self.access_tokens.pop(access_token, None)
            return
        for token, owner in list(self.access_tokens.items()):
            if owner != user_id:
                continue
            if scope == "others" and token == access_token:
                continue
            del self.access_tokens[token]

    def get_user(self, access_token: str) -> User:
        return self._user_for_token(access_token).user

    def refresh_session(self, refresh_token: str) -> AuthSession:
        user_id = self.refresh_tokens.pop(refresh_token, None)
        if not user_id:
            raise AuthError("Invalid Refresh Token", code="refresh_token_not_found")
        return self._issue_session(self._stored_by_id(user_id).user)

    def update_user(
        self,
        access_token: str,
        *,
        password: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> User:
        stored = self._user_for_token(access_token)
        if password is not None:
            if len(password) < 6:
                raise AuthError(
                    "Password should be at least 6 characters.", code="weak_password"
                )
            stored.password_hash = _hash_password(password, stored.salt)
        if data:
            stored.user.user_metadata.update(data)
        return stored.user

    def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        stored = self.users.get(email.strip().lower())
        if stored is None:
            # Unknown emails succeed silently, like the hosted service.
            return
        self.recovery_tokens[stored.user.email] = secrets.token_hex(3)

    def verify_recovery(self, email: str, token: str) -> AuthSession:
        email = email.strip().lower()
        if not token or self.recovery_tokens.get(email) != token:
            raise AuthError("Token has expired or is invalid", code="otp_expired")
        del self.recovery_tokens[email]
        return self._issue_session(self.users[email].user)

    def list_factors(self, access_token: str) -> list[MfaFactor]:
        stored = self._user_for_token(access_token)
        return list(self.factors.get(stored.user.id, {}).values())

    def enroll_totp(self, access_token: str) -> MfaEnrollment:
        stored = self._user_for_token(access_token)
        factor = MfaFactor(id=str(uuid.uuid4()))
        self.factors.setdefault(stored.user.id, {})[factor.id] = factor
        secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii")
        self.totp_codes[factor.id] = f"{secrets.randbelow(10**6):06d}"
        qr_code = (
            "data:image/svg+xml;utf-8,"
            f"otpauth://totp/lastwishes:{stored.user.email}?secret={secret}"
        )
        return MfaEnrollment(factor_id=factor.id, qr_code=qr_code, secret=secret)

    def challenge_and_verify(
        self, access_token: str, factor_id: str, code: str
    ) -> None:
        stored = self._user_for_token(access_token)
        factor = self.factors.get(stored.user.id, {}).get(factor_id)
        if factor is None:
            raise AuthError("Factor not found", code="mfa_factor_not_found")
        if self.totp_codes.get(factor_id) != code:
            raise AuthError("Invalid TOTP code entered", code="mfa_verification_failed")
        factor.status = "verified"

    def unenroll(self, access_token: str, factor_id: str) -> None:
        stored = self._user_for_token(access_token)
        factors = self.factors.get(stored.user.id, {})
        if factor_id not in factors:
            raise AuthError("Factor not found", code="mfa_factor_not_found")
        del factors[factor_id]
        self.totp_codes.pop(factor_id, None)


class HttpIdentityService:
    """
    Identity service client for the backend's auth REST API.
    """

    def __init__(self, base_url: str, anon_key: str):
        if not base_url or not anon_key:
            raise ValueError("BACKEND_URL and BACKEND_ANON_KEY are required")
        self.auth_url = f"{base_url.rstrip('/')}/auth/v1"
        self.anon_key = anon_key
        self._http = requests.Session()

    def _headers(self, access_token: Optional[str] = None) -> dict:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        try:
            response = self._http.request(
                method,
                f"{self.auth_url}{path}",
                headers=self._headers(access_token),
                json=json,
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Identity service unreachable: {exc}") from exc
        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            raise AuthError(
                f"Identity service returned a non-JSON body (HTTP {response.status_code})",
                code=str(response.status_code),
            ) from exc
        if not response.ok:
            message = (
                payload.get("msg")
                or payload.get("error_description")
                or payload.get("message")
                or f"HTTP {response.status_code}"
            )
            raise AuthError(message, code=payload.get("error_code") or payload.get("error"))
        return payload

    @staticmethod
    def _to_user(payload: dict) -> User:
        return User(
            id=payload["id"],
            email=payload.get("email"),
            user_metadata=payload.get("user_metadata") or {},
        )

    def _to_session(self, payload: dict) -> AuthSession:
        return AuthSession(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            user=self._to_user(payload["user"]),
            expires_at=payload.get("expires_at")
            or time.time() + payload.get("expires_in", SESSION_LIFETIME_SECONDS),
        )

    def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> tuple[User, Optional[AuthSession]]:
        payload = self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        if payload.get("access_token"):
            session = self._to_session(payload)
            return session.user, session
        # Confirmation required: the body is the bare user.
        return self._to_user(payload.get("user") or payload), None

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        return self._to_session(payload)

    def sign_out(self, access_token: str, scope: str = "local") -> None:
        self._request(
            "POST", "/logout", access_token=access_token, params={"scope": scope}
        )

    def get_user(self, access_token: str) -> User:
        return self._to_user(self._request("GET", "/user", access_token=access_token))

    def refresh_session(self, refresh_token: str) -> AuthSession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return self._to_session(payload)

    def update_user(
        self,
        access_token: str,
        *,
        password: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> User:
        body: dict = {}
        if password is not None:
            body["password"] = password
        if data:
            body["data"] = data
        return self._to_user(
            self._request("PUT", "/user", access_token=access_token, json=body)
        )

    def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        self._request(
            "POST",
            "/recover",
            params={"redirect_to": redirect_to},
            json={"email": email},
        )

    def verify_recovery(self, email: str, token: str) -> AuthSession:
        payload = self._request(
            "POST",
            "/verify",
            json={"type": "recovery", "email": email, "token": token},
        )
        return self._to_session(payload)

    def list_factors(self, access_token: str) -> list[MfaFactor]:
        user = self._request("GET", "/user", access_token=access_token)
        return [
            MfaFactor(
                id=factor["id"],
                factor_type=factor.get("factor_type", "totp"),
                status=factor.get("status", "unverified"),
                friendly_name=factor.get("friendly_name"),
            )
            for factor in user.get("factors") or []
            if factor.get("factor_type", "totp") == "totp"
        ]

    def enroll_totp(self, access_token: str) -> MfaEnrollment:
        payload = self._request(
            "POST", "/factors", access_token=access_token, json={"factor_type": "totp"}
        )
        return MfaEnrollment(
            factor_id=payload["id"],
            qr_code=payload["totp"]["qr_code"],
            secret=payload["totp"]["secret"],
        )

    def challenge_and_verify(
        self, access_token: str, factor_id: str, code: str
    ) -> None:
        challenge = self._request(
            "POST", f"/factors/{factor_id}/challenge", access_token=access_token
        )
        self._request(
            "POST",
            f"/factors/{factor_id}/verify",
            access_token=access_token,
            json={"challenge_id": challenge["id"], "code": code},
        )

    def unenroll(self, access_token: str, factor_id: str) -> None:
        self._request("DELETE", f"/factors/{factor_id}", access_token=access_token)


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], None]


@dataclass
class Subscription:
    client: "AuthClient"
    callback: AuthListener

    def unsubscribe(self) -> None:
        self.client._listeners = [
            listener for listener in self.client._listeners if listener is not self.callback
        ]


class AuthClient:
    """
    Per-portal auth client: holds the current session and emits auth events.
    """

    def __init__(self, identity: IdentityService, session: Optional[AuthSession] = None):
        self.identity = identity
        self._session = session
        self._listeners: list[AuthListener] = []

    def on_auth_state_change(self, callback: AuthListener) -> Subscription:
        self._listeners.append(callback)
        return Subscription(client=self, callback=callback)

    def _emit(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                # A failing listener never fails the auth call itself.
                logger.exception("Auth listener failed for %s", event.value)

    def get_session(self) -> Optional[AuthSession]:
        return self._session

    def _require_session(self) -> AuthSession:
        if self._session is None:
            raise AuthError("Auth session missing!", code="session_not_found")
        return self._session

    def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> tuple[User, Optional[AuthSession]]:
        user, session = self.identity.sign_up(email, password, metadata)
        if session is not None:
            self._session = session
            self._emit(AuthEvent.SIGNED_IN, session)
        return user, session

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        session = self.identity.sign_in_with_password(email, password)
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    def sign_out(self, scope: str = "local") -> None:
        session = self._session
        if scope == "others":
            self.identity.sign_out(self._require_session().access_token, scope="others")
            return
        if session is not None:
            try:
                self.identity.sign_out(session.access_token, scope=scope)
            except AuthError as exc:
                # The local session is dropped regardless of the remote result.
                logger.warning("Remote sign-out failed: %s", exc.message)
        self._session = None
        self._emit(AuthEvent.SIGNED_OUT, None)

    def refresh_session(self) -> AuthSession:
        session = self.identity.refresh_session(self._require_session().refresh_token)
        self._session = session
        self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    def ensure_fresh_session(
        self, leeway_seconds: float = REFRESH_LEEWAY_SECONDS
    ) -> Optional[AuthSession]:
        """
        Refresh the session when its access token has expired or is about to.

        A refresh the identity service rejects ends the session locally and
        emits ``SIGNED_OUT``.
        """
        session = self._session
        if session is None or session.expires_at - leeway_seconds > time.time():
            return session
        try:
            return self.refresh_session()
        except AuthError as exc:
            logger.warning("Session refresh failed, signing out locally: %s", exc.message)
            self._session = None
            self._emit(AuthEvent.SIGNED_OUT, None)
            return None

    def update_user(
        self, *, password: Optional[str] = None, data: Optional[dict] = None
    ) -> User:
        session = self._require_session()
        user = self.identity.update_user(session.access_token, password=password, data=data)
        session.user = user
        self._emit(AuthEvent.USER_UPDATED, session)
        return user

    def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        self.identity.reset_password_for_email(email, redirect_to)

    def verify_recovery(self, email: str, token: str) -> AuthSession:
        session = self.identity.verify_recovery(email, token)
        self._session = session
        self._emit(AuthEvent.PASSWORD_RECOVERY, session)
        return session

    def list_factors(self) -> list[MfaFactor]:
        return self.identity.list_factors(self._require_session().access_token)

    def enroll_totp(self) -> MfaEnrollment:
        return self.identity.enroll_totp(self._require_session().access_token)

    def challenge_and_verify(self, factor_id: str, code: str) -> None:
        session = self._require_session()
        self.identity.challenge_and_verify(session.access_token, factor_id, code)
        self._emit(AuthEvent.MFA_CHALLENGE_VERIFIED, session)

    def unenroll(self, factor_id: str) -> None:
        self.identity.unenroll(self._require_session().access_token, factor_id)
