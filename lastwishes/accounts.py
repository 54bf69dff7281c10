"""
Account flows: sign-up, sign-in, password reset and sign-out.

Each flow acts on one portal; the resulting view changes and migration runs
come from the auth events the portal's ``AuthClient`` emits.
"""

from __future__ import annotations

import logging
from typing import Optional

from lastwishes.errors import ActionError, AuthError
from lastwishes.schemas import Message
from lastwishes.state import PortalState, View

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

INVALID_CREDENTIALS = "Invalid login credentials"
INVALID_CREDENTIALS_HINT = (
    "Invalid email or password. If you recently signed up, please check your "
    "email to confirm your account before logging in."
)


def sign_up(
    portal: PortalState, name: str, email: str, password: str
) -> Optional[Message]:
    try:
        _, session = portal.auth.sign_up(email, password, {"name": name})
    except AuthError as exc:
        raise ActionError(exc.message) from exc
    portal.clear_prefill()
    if session is None:
        return Message(
            type="success",
            text="Signup successful! Please check your email to confirm your account.",
        )
    # Signed in straight away; the SIGNED_IN event already moved the view.
    return None


def sign_in(
    portal: PortalState, email: str, password: str, *, remember_me: bool = False
) -> None:
    try:
        portal.auth.sign_in_with_password(email, password)
    except AuthError as exc:
        text = exc.message
        if text == INVALID_CREDENTIALS:
            text = INVALID_CREDENTIALS_HINT
        raise ActionError(text, status_code=401) from exc
    portal.set_prefill(email=email if remember_me else None)


def request_password_reset(portal: PortalState, email: str, redirect_to: str) -> Message:
    if not email:
        return Message(
            type="info",
            text='Please enter your email address above, then click "Forgot Password?" again.',
        )
    try:
        portal.auth.reset_password_for_email(email, redirect_to)
    except AuthError as exc:
        raise ActionError(exc.message) from exc
    return Message(
        type="success",
        text="If an account exists for this email, a password reset link has been sent.",
    )


def verify_recovery(portal: PortalState, email: str, token: str) -> None:
    try:
        portal.auth.verify_recovery(email, token)
    except AuthError as exc:
        raise ActionError(exc.message, status_code=401) from exc


def update_password(portal: PortalState, password: str, confirm_password: str) -> Message:
    """Set a new password from the recovery view, then end the recovery session."""
    if password != confirm_password:
        raise ActionError("Passwords do not match.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ActionError("Password should be at least 6 characters.")
    try:
        portal.auth.update_user(password=password)
    except AuthError as exc:
        raise ActionError(exc.message) from exc
    portal.auth.sign_out()
    portal.navigate(View.LOGIN)
    return Message(
        type="success",
        text="Your password has been updated successfully! Please log in with your new password.",
    )


def sign_out(portal: PortalState) -> None:
    portal.auth.sign_out()
    logger.info("Portal %s signed out", portal.portal_id)
