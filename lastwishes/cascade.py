"""
Public "cascade of wishes": recent patrons rendered as display cards.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from lastwishes.db import DbClient

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_IMAGES = 5
DEED_PREVIEW_LENGTH = 50

BADGES = {
    "1": "👨‍👩‍👧‍👦 Family Guardian",
    "2": "❤️ Kind Heart",
    "3": "🏫 Community Builder",
    "4": "🎉 Event Champion",
    "5": "🕊️ Legacy Keeper",
    "6": "🤝 Collective Giver",
}
DEFAULT_BADGE = "💖 Legacy Maker"

GRADE_WISHES = {
    "1": "Ensure family care and rituals.",
    "2": "Make small social contributions.",
    "3": "Contribute to social infrastructure.",
    "4": "Organize community activities.",
    "5": "Preserve a spiritual legacy.",
    "6": "Support a large collective cause.",
}
DEFAULT_WISH = "Leave a positive impact."
DEFAULT_STORY = "A life dedicated to kindness and community."


def placeholder_photo(patron_id: str) -> str:
    return f"https://i.pravatar.cc/150?u={patron_id}"


def badge_for(service_grade: Optional[str]) -> str:
    if not service_grade:
        return DEFAULT_BADGE
    return BADGES.get(service_grade, DEFAULT_BADGE)


def wishes_for(patron: dict) -> list[str]:
    wishes = [GRADE_WISHES.get(patron.get("service_grade") or "", DEFAULT_WISH)]
    deeds = patron.get("memorable_deeds")
    if deeds:
        wishes.append(deeds[:DEED_PREVIEW_LENGTH] + "...")
    return wishes


def to_card(patron: dict) -> dict:
    memories = patron.get("top_memories_url") or []
    return {
        "id": patron["id"],
        "name": patron.get("full_name") or "",
        "photo": patron.get("avatar_url")
        or (memories[0] if memories else None)
        or placeholder_photo(patron["id"]),
        "wishes": wishes_for(patron),
        "status": "Active",
        "badge": badge_for(patron.get("service_grade")),
        "story": patron.get("memorable_deeds") or DEFAULT_STORY,
        "images": list(memories[:MAX_IMAGES]),
        "occupation": patron.get("occupation"),
        "religion": patron.get("religion"),
        "service_grade": patron.get("service_grade"),
    }


def matches(card: dict, term: str) -> bool:
    term = term.lower()
    return (
        term in card["name"].lower()
        or term in card["id"].lower()
        or any(term in wish.lower() for wish in card["wishes"])
    )


def fetch_cascade(
    db: DbClient,
    *,
    search: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
    cancel: Optional[threading.Event] = None,
) -> list[dict]:
    """
    Cards for up to ``limit`` patrons, optionally filtered by ``search``.

    Raises OperationCancelled when ``cancel`` is set while fetching.
    """
    cards = [to_card(row) for row in db.list_recent_patrons(limit, cancel=cancel)]
    if search:
        cards = [card for card in cards if matches(card, search)]
    return cards
