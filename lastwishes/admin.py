"""
Admin panel: every patron record, newest first. Admin role only.
"""

from __future__ import annotations

from typing import Optional

from lastwishes.db import DbClient
from lastwishes.errors import PermissionDenied
from lastwishes.state import PortalState


def list_patrons(portal: PortalState, db: DbClient, search: Optional[str] = None) -> list[dict]:
    if not portal.is_admin:
        raise PermissionDenied("Admin privileges are required.")
    patrons = db.list_all_patrons()
    if not search:
        return patrons
    term = search.lower()
    return [
        patron
        for patron in patrons
        if term in (patron.get("full_name") or "").lower()
        or term in (patron.get("email") or "").lower()
        or term in (patron.get("id") or "").lower()
    ]
