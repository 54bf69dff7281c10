"""
Dashboard routes: profile, wishes, nominees, letters, document vault,
support and security. Every route acts on the signed-in portal's own data.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Response, UploadFile

from lastwishes import entries, profile, security, vault
from lastwishes.config import get_settings
from lastwishes.db import DbClient
from lastwishes.dependencies import (
    get_db_client,
    get_function_client,
    get_signed_in_portal,
    get_storage_client,
)
from lastwishes.errors import ActionError, BackendError
from lastwishes.functions import FunctionClient
from lastwishes.routes import read_uploads
from lastwishes.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    DocumentListResponse,
    DocumentResponse,
    EntryListResponse,
    EntryResponse,
    LetterPayload,
    MemoryDeleteRequest,
    Message,
    MessageResponse,
    MfaEnrollResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    NomineePayload,
    ProfileResponse,
    ProfileUpdate,
    SupportTicketRequest,
    WishPayload,
)
from lastwishes.state import PortalState
from lastwishes.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dashboard")


def _success(text: str) -> Message:
    return Message(type="success", text=text)


# Profile


@router.get("/profile", response_model=ProfileResponse)
def get_profile(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return ProfileResponse(profile=profile.get_profile(portal.user, db))


@router.put("/profile", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdate,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    updated = profile.update_profile(portal.user, payload.model_dump(exclude_unset=True), db)
    return ProfileResponse(profile=updated, message=_success("Profile updated successfully!"))


@router.post("/profile/avatar", response_model=ProfileResponse)
def upload_avatar(
    file: UploadFile = File(...),
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    uploads = read_uploads([file])
    if not uploads:
        raise ActionError("Please choose an image to upload.")
    updated = profile.upload_avatar(
        portal.user,
        uploads[0],
        db=db,
        storage=storage,
        max_bytes=get_settings().avatar_max_bytes,
    )
    return ProfileResponse(profile=updated, message=_success("Profile picture updated!"))


@router.delete("/profile/avatar", response_model=ProfileResponse)
def remove_avatar(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    updated = profile.remove_avatar(portal.user, db=db, storage=storage)
    return ProfileResponse(profile=updated, message=_success("Profile picture removed."))


@router.post("/profile/memories", response_model=ProfileResponse)
def upload_memories(
    files: Optional[List[UploadFile]] = File(None),
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    uploads = read_uploads(files)
    if not uploads:
        raise ActionError("Please choose at least one file to upload.")
    try:
        updated = profile.upload_memories(
            portal.user,
            uploads,
            db=db,
            storage=storage,
            max_workers=get_settings().migration_max_workers,
        )
    except BackendError as exc:
        raise ActionError(f"Upload failed: {exc.message}", status_code=502) from exc
    return ProfileResponse(profile=updated, message=_success("Memories uploaded successfully!"))


@router.post("/profile/memories/delete", response_model=ProfileResponse)
def delete_memory(
    payload: MemoryDeleteRequest,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    try:
        updated = profile.delete_memory(portal.user, payload.url, db=db, storage=storage)
    except BackendError as exc:
        raise ActionError(f"Deletion failed: {exc.message}", status_code=502) from exc
    return ProfileResponse(profile=updated, message=_success("Memory deleted."))


# Wishes, nominees and letters


def _list(portal: PortalState, kind: str, db: DbClient) -> EntryListResponse:
    return EntryListResponse(entries=entries.list_entries(portal.user, kind, db))


def _save(
    portal: PortalState,
    kind: str,
    values: dict,
    db: DbClient,
    entry_id: Optional[int] = None,
) -> EntryResponse:
    row = entries.save_entry(portal.user, kind, values, db, entry_id=entry_id)
    noun = entries.label(kind)
    if entry_id is not None:
        text = f"{noun} updated successfully."
    elif kind == entries.NOMINEES:
        text = f"{noun} added successfully."
    else:
        text = f"{noun} saved successfully."
    return EntryResponse(entry=row, message=_success(text))


def _delete(portal: PortalState, kind: str, entry_id: int, db: DbClient) -> MessageResponse:
    entries.delete_entry(portal.user, kind, entry_id, db)
    return MessageResponse(message=_success(f"{entries.label(kind)} deleted."))


@router.get("/wishes", response_model=EntryListResponse)
def list_wishes(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _list(portal, entries.WISHES, db)


@router.post("/wishes", response_model=EntryResponse)
def create_wish(
    payload: WishPayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.WISHES, payload.model_dump(), db)


@router.put("/wishes/{entry_id}", response_model=EntryResponse)
def update_wish(
    entry_id: int,
    payload: WishPayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.WISHES, payload.model_dump(), db, entry_id=entry_id)


@router.delete("/wishes/{entry_id}", response_model=MessageResponse)
def delete_wish(
    entry_id: int,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _delete(portal, entries.WISHES, entry_id, db)


@router.get("/nominees", response_model=EntryListResponse)
def list_nominees(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _list(portal, entries.NOMINEES, db)


@router.post("/nominees", response_model=EntryResponse)
def create_nominee(
    payload: NomineePayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.NOMINEES, payload.model_dump(), db)


@router.put("/nominees/{entry_id}", response_model=EntryResponse)
def update_nominee(
    entry_id: int,
    payload: NomineePayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.NOMINEES, payload.model_dump(), db, entry_id=entry_id)


@router.delete("/nominees/{entry_id}", response_model=MessageResponse)
def delete_nominee(
    entry_id: int,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _delete(portal, entries.NOMINEES, entry_id, db)


@router.get("/letters", response_model=EntryListResponse)
def list_letters(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _list(portal, entries.LETTERS, db)


@router.post("/letters", response_model=EntryResponse)
def create_letter(
    payload: LetterPayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.LETTERS, payload.model_dump(), db)


@router.put("/letters/{entry_id}", response_model=EntryResponse)
def update_letter(
    entry_id: int,
    payload: LetterPayload,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _save(portal, entries.LETTERS, payload.model_dump(), db, entry_id=entry_id)


@router.delete("/letters/{entry_id}", response_model=MessageResponse)
def delete_letter(
    entry_id: int,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return _delete(portal, entries.LETTERS, entry_id, db)


# Document vault


@router.get("/documents", response_model=DocumentListResponse)
def list_documents(
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    return DocumentListResponse(documents=vault.list_documents(portal.user, db))


@router.post("/documents", response_model=DocumentResponse)
def upload_document(
    file: UploadFile = File(...),
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    uploads = read_uploads([file])
    if not uploads:
        raise ActionError("Please choose a file to upload.")
    document = vault.upload_document(portal.user, uploads[0], db=db, storage=storage)
    return DocumentResponse(document=document, message=_success("Document uploaded successfully."))


@router.delete("/documents/{document_id}", response_model=MessageResponse)
def delete_document(
    document_id: int,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    vault.delete_document(portal.user, document_id, db=db, storage=storage)
    return MessageResponse(message=_success("Document deleted."))


@router.get("/documents/{document_id}/download")
def download_document(
    document_id: int,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    document, data = vault.download_document(portal.user, document_id, db=db, storage=storage)
    filename = quote(document["file_name"])
    return Response(
        content=data,
        media_type=document.get("mime_type") or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{filename}"},
    )


# Support


@router.post("/support", response_model=MessageResponse)
def create_support_ticket(
    payload: SupportTicketRequest,
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    try:
        entries.create_support_ticket(portal.user, payload.message, db)
    except BackendError as exc:
        raise ActionError(f"Submission failed: {exc.message}", status_code=502) from exc
    return MessageResponse(
        message=_success("Your support ticket has been submitted successfully!")
    )


# Security


@router.post("/security/password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    portal: PortalState = Depends(get_signed_in_portal),
):
    security.change_password(
        portal, payload.current_password, payload.new_password, payload.confirm_password
    )
    return MessageResponse(message=_success("Password updated successfully."))


@router.get("/security/mfa", response_model=MfaStatusResponse)
def mfa_status(portal: PortalState = Depends(get_signed_in_portal)):
    factors = security.list_factors(portal)
    return MfaStatusResponse(factors=[factor.as_dict() for factor in factors])


@router.post("/security/mfa/enroll", response_model=MfaEnrollResponse)
def mfa_enroll(portal: PortalState = Depends(get_signed_in_portal)):
    enrollment = security.enroll_factor(portal)
    return MfaEnrollResponse(
        factor_id=enrollment.factor_id, qr_code=enrollment.qr_code, secret=enrollment.secret
    )


@router.post("/security/mfa/verify", response_model=MessageResponse)
def mfa_verify(
    payload: MfaVerifyRequest, portal: PortalState = Depends(get_signed_in_portal)
):
    security.verify_factor(portal, payload.factor_id, payload.code)
    return MessageResponse(message=_success("2FA has been successfully enabled!"))


@router.delete("/security/mfa/{factor_id}", response_model=MessageResponse)
def mfa_unenroll(factor_id: str, portal: PortalState = Depends(get_signed_in_portal)):
    security.unenroll_factor(portal, factor_id)
    return MessageResponse(message=_success("2FA has been disabled."))


@router.post("/security/sign-out-others", response_model=MessageResponse)
def sign_out_others(portal: PortalState = Depends(get_signed_in_portal)):
    security.sign_out_other_sessions(portal)
    return MessageResponse(
        message=_success("Successfully signed out of all other devices.")
    )


@router.post("/security/delete-account", response_model=MessageResponse)
def delete_account(
    payload: DeleteAccountRequest,
    portal: PortalState = Depends(get_signed_in_portal),
    functions: FunctionClient = Depends(get_function_client),
):
    security.delete_account(portal, payload.password, functions)
    return MessageResponse(message=_success("Your account has been deleted."))
