"""
Account security: password change, TOTP factors, session revocation and
account deletion.
"""

from __future__ import annotations

import logging

from lastwishes.errors import ActionError, AuthError, BackendError
from lastwishes.functions import DELETE_USER_FUNCTION, FunctionClient
from lastwishes.identity import MfaEnrollment, MfaFactor
from lastwishes.state import PortalState, View

logger = logging.getLogger(__name__)


def _session(portal: PortalState):
    session = portal.session
    if session is None:
        raise ActionError("Auth session missing!", status_code=401)
    return session


def _password_is_valid(portal: PortalState, password: str) -> bool:
    """Check a password without touching the portal's own session."""
    session = _session(portal)
    try:
        verified = portal.auth.identity.sign_in_with_password(session.user.email or "", password)
    except AuthError:
        return False
    # Drop the throwaway session created by the check.
    try:
        portal.auth.identity.sign_out(verified.access_token)
    except AuthError as exc:
        logger.warning("Could not revoke verification session: %s", exc.message)
    return True


def change_password(
    portal: PortalState, current_password: str, new_password: str, confirm_password: str
) -> None:
    if new_password != confirm_password:
        raise ActionError("New passwords do not match.")
    if not _password_is_valid(portal, current_password):
        raise ActionError("Error changing password: Current password is incorrect.")
    try:
        portal.auth.update_user(password=new_password)
    except AuthError as exc:
        raise ActionError(f"Error changing password: {exc.message}") from exc
    logger.info("Password changed for user_id=%s", portal.user.id)


def list_factors(portal: PortalState) -> list[MfaFactor]:
    _session(portal)
    try:
        return portal.auth.list_factors()
    except AuthError as exc:
        raise ActionError(f"Could not fetch MFA status: {exc.message}") from exc


def enroll_factor(portal: PortalState) -> MfaEnrollment:
    _session(portal)
    try:
        return portal.auth.enroll_totp()
    except AuthError as exc:
        raise ActionError(f"Failed to start MFA enrollment: {exc.message}") from exc


def verify_factor(portal: PortalState, factor_id: str, code: str) -> None:
    _session(portal)
    try:
        portal.auth.challenge_and_verify(factor_id, code)
    except AuthError as exc:
        raise ActionError(f"Verification failed: {exc.message}") from exc


def unenroll_factor(portal: PortalState, factor_id: str) -> None:
    _session(portal)
    try:
        portal.auth.unenroll(factor_id)
    except AuthError as exc:
        raise ActionError(f"Failed to disable 2FA: {exc.message}") from exc


def sign_out_other_sessions(portal: PortalState) -> None:
    _session(portal)
    try:
        portal.auth.sign_out(scope="others")
    except AuthError as exc:
        raise ActionError(f"Failed to sign out: {exc.message}") from exc


def delete_account(portal: PortalState, password: str, functions: FunctionClient) -> None:
    session = _session(portal)
    if not _password_is_valid(portal, password):
        raise ActionError("Account deletion failed: Password is incorrect.")
    try:
        functions.invoke(DELETE_USER_FUNCTION, access_token=session.access_token)
    except BackendError as exc:
        raise ActionError(f"Account deletion failed: {exc.message}", status_code=502) from exc
    user_id = session.user.id
    portal.auth.sign_out()
    portal.navigate(View.HOME)
    logger.info("Deleted account user_id=%s", user_id)
