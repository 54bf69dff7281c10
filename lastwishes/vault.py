"""
Document vault: private files in the ``documents`` bucket plus their metadata rows.
"""

from __future__ import annotations

import logging

from lastwishes.db import DbClient
from lastwishes.errors import ActionError, BackendError
from lastwishes.identity import User
from lastwishes.pledge import UploadedFile
from lastwishes.storage import DOCUMENTS_BUCKET, StorageClient

logger = logging.getLogger(__name__)

MISSING_BUCKET_MESSAGE = (
    'System Error: The "documents" storage bucket is missing. '
    "Please run the SQL setup query provided."
)
_MISSING_BUCKET_MARKERS = ("Bucket not found", "bucket_id not found")


def _is_missing_bucket(exc: BackendError) -> bool:
    return exc.code == "bucket_not_found" or any(
        marker in exc.message for marker in _MISSING_BUCKET_MARKERS
    )


def list_documents(user: User, db: DbClient) -> list[dict]:
    return db.list_documents(user.id)


def upload_document(
    user: User, upload: UploadedFile, *, db: DbClient, storage: StorageClient
) -> dict:
    """Store a file at ``<user_id>/<name>``; re-uploading a name overwrites it."""
    path = f"{user.id}/{upload.safe_name}"
    try:
        storage.upload(
            DOCUMENTS_BUCKET,
            path,
            upload.data,
            content_type=upload.content_type,
            upsert=True,
        )
    except BackendError as exc:
        logger.error("Document upload failed for user_id=%s: %s", user.id, exc.message)
        if _is_missing_bucket(exc):
            raise ActionError(MISSING_BUCKET_MESSAGE, status_code=500) from exc
        raise ActionError(f"Upload failed: {exc.message}", status_code=502) from exc

    return db.upsert_document(
        user.id,
        {
            "file_name": upload.safe_name,
            "storage_path": path,
            "file_size": len(upload.data),
            "mime_type": upload.content_type,
        },
    )


def delete_document(
    user: User, document_id: int, *, db: DbClient, storage: StorageClient
) -> None:
    document = db.get_document(user.id, document_id)
    if document is None or not db.delete_document(user.id, document_id):
        raise ActionError("Document not found.", status_code=404)
    try:
        storage.remove(DOCUMENTS_BUCKET, [document["storage_path"]])
    except BackendError as exc:
        raise ActionError(f"Deletion failed: {exc.message}", status_code=502) from exc


def download_document(
    user: User, document_id: int, *, db: DbClient, storage: StorageClient
) -> tuple[dict, bytes]:
    document = db.get_document(user.id, document_id)
    if document is None:
        raise ActionError("Document not found.", status_code=404)
    try:
        data = storage.download(DOCUMENTS_BUCKET, document["storage_path"])
    except BackendError as exc:
        raise ActionError(f"Download failed: {exc.message}", status_code=502) from exc
    return document, data
