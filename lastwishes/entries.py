"""
Owned dashboard entries (wishes, nominees, letters) and support tickets.
"""

from __future__ import annotations

import logging
from typing import Optional

from lastwishes.db import DbClient
from lastwishes.errors import ActionError
from lastwishes.identity import User

logger = logging.getLogger(__name__)

WISHES = "wishes"
NOMINEES = "nominees"
LETTERS = "letters"

DEFAULT_NOMINEE_PERMISSIONS = {
    "viewWishes": True,
    "viewDocuments": False,
    "receiveLetters": True,
}

LETTER_STATUS_DRAFT = "draft"

_LABELS = {WISHES: "Wish", NOMINEES: "Nominee", LETTERS: "Letter"}


def label(kind: str) -> str:
    return _LABELS[kind]


def _normalize(kind: str, values: dict) -> dict:
    values = dict(values)
    if kind == NOMINEES:
        values["permissions"] = {
            **DEFAULT_NOMINEE_PERMISSIONS,
            **(values.get("permissions") or {}),
        }
    elif kind == LETTERS:
        values["delivery_date"] = values.get("delivery_date") or None
        values["status"] = LETTER_STATUS_DRAFT
    return values


def list_entries(user: User, kind: str, db: DbClient) -> list[dict]:
    return db.list_entries(kind, user.id)


def save_entry(
    user: User,
    kind: str,
    values: dict,
    db: DbClient,
    entry_id: Optional[int] = None,
) -> dict:
    """Create an entry, or update ``entry_id`` when it belongs to ``user``."""
    values = _normalize(kind, values)
    if entry_id is None:
        return db.create_entry(kind, user.id, values)
    row = db.update_entry(kind, user.id, entry_id, values)
    if row is None:
        raise ActionError(f"{label(kind)} not found.", status_code=404)
    return row


def delete_entry(user: User, kind: str, entry_id: int, db: DbClient) -> None:
    if not db.delete_entry(kind, user.id, entry_id):
        raise ActionError(f"{label(kind)} not found.", status_code=404)


def create_support_ticket(user: User, message: str, db: DbClient) -> dict:
    if not message.strip():
        raise ActionError("Please enter a message for your ticket.")
    ticket = db.create_support_ticket(
        {
            "user_id": user.id,
            "name": user.display_name,
            "email": user.email,
            "message": message,
            "status": "open",
        }
    )
    logger.info("Support ticket %s opened by user_id=%s", ticket["id"], user.id)
    return ticket
