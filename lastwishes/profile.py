"""
Patron profile: record fields, avatar and memory gallery.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence
from urllib.parse import unquote, urlparse

from lastwishes.db import PATRON_COLUMNS, DbClient
from lastwishes.errors import ActionError, BackendError, NotFoundError
from lastwishes.identity import User
from lastwishes.pledge import UploadedFile, upload_files
from lastwishes.storage import MEMORIES_BUCKET, StorageClient

logger = logging.getLogger(__name__)

AVATAR_FILENAME = "avatar.png"

EDITABLE_COLUMNS = tuple(
    column
    for column in PATRON_COLUMNS
    if column not in ("id", "email", "top_memories_url", "avatar_url", "updated_at")
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_profile(user: User) -> dict:
    profile = {column: None for column in PATRON_COLUMNS}
    profile.update(
        id=user.id,
        email=user.email,
        full_name=user.display_name or "",
        top_memories_url=[],
    )
    return profile


def get_profile(user: User, db: DbClient) -> dict:
    """The patron's record, or a default built from the session when absent."""
    try:
        row = db.get_patron(user.id)
    except NotFoundError:
        row = None
    if not row:
        return default_profile(user)
    profile = default_profile(user)
    profile.update({key: value for key, value in row.items() if value is not None})
    profile["top_memories_url"] = list(row.get("top_memories_url") or [])
    return profile


def _identity_columns(user: User, profile: dict) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": profile.get("full_name") or user.display_name,
        "updated_at": time.time(),
    }


def update_profile(user: User, values: dict, db: DbClient) -> dict:
    updates = {key: values[key] for key in EDITABLE_COLUMNS if key in values}
    db.upsert_patron({"id": user.id, "email": user.email, **updates, "updated_at": time.time()})
    return get_profile(user, db)


def upload_avatar(
    user: User,
    upload: UploadedFile,
    *,
    db: DbClient,
    storage: StorageClient,
    max_bytes: int,
) -> dict:
    if len(upload.data) > max_bytes:
        raise ActionError("File size too large. Please upload an image smaller than 2MB.")
    path = f"{user.id}/{AVATAR_FILENAME}"
    storage.upload(
        MEMORIES_BUCKET, path, upload.data, content_type=upload.content_type, upsert=True
    )
    # Same path on every upload; the query string defeats cached copies.
    avatar_url = f"{storage.public_url(MEMORIES_BUCKET, path)}?t={_now_ms()}"
    profile = get_profile(user, db)
    db.upsert_patron({**_identity_columns(user, profile), "avatar_url": avatar_url})
    return get_profile(user, db)


def remove_avatar(user: User, *, db: DbClient, storage: StorageClient) -> dict:
    profile = get_profile(user, db)
    db.upsert_patron({**_identity_columns(user, profile), "avatar_url": None})
    try:
        storage.remove(MEMORIES_BUCKET, [f"{user.id}/{AVATAR_FILENAME}"])
    except BackendError as exc:
        logger.warning("Avatar cleared but storage removal failed: %s", exc.message)
    return get_profile(user, db)


def upload_memories(
    user: User,
    files: Sequence[UploadedFile],
    *,
    db: DbClient,
    storage: StorageClient,
    max_workers: int = 8,
) -> dict:
    stamp = _now_ms()
    uploads = [(f"{user.id}/{stamp}-{f.safe_name}", f) for f in files]
    new_urls = upload_files(storage, MEMORIES_BUCKET, uploads, max_workers=max_workers)
    profile = get_profile(user, db)
    urls = [*profile["top_memories_url"], *new_urls]
    db.upsert_patron({**_identity_columns(user, profile), "top_memories_url": urls})
    return get_profile(user, db)


def memory_storage_path(user_id: str, url: str) -> Optional[str]:
    """Object path of a memory URL: everything from the user id segment on."""
    segments = [unquote(part) for part in urlparse(url).path.split("/")]
    if user_id not in segments:
        return None
    return "/".join(segments[segments.index(user_id):])


def delete_memory(user: User, url: str, *, db: DbClient, storage: StorageClient) -> dict:
    profile = get_profile(user, db)
    remaining = [existing for existing in profile["top_memories_url"] if existing != url]
    db.upsert_patron({**_identity_columns(user, profile), "top_memories_url": remaining})

    path = memory_storage_path(user.id, url)
    if path is None:
        logger.warning("Memory URL outside the patron's folder, storage left untouched: %s", url)
    else:
        try:
            storage.remove(MEMORIES_BUCKET, [path])
        except BackendError as exc:
            logger.warning("Memory removed from record but storage removal failed: %s", exc.message)
    return get_profile(user, db)
