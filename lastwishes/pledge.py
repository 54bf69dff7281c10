"""
Pledge form: payload schema, validation and the submission router.

Anonymous submissions park their files under ``temp/<uuid>/`` and their form
data in ``temp_patrons`` until the visitor signs up; authenticated submissions
write straight to the patron's permanent record.
"""

from __future__ import annotations

import logging
import os
import re
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from typing import Optional, Sequence

from lastwishes.db import DbClient
from lastwishes.errors import NotFoundError, PledgeValidationError
from lastwishes.identity import AuthSession
from lastwishes.storage import MEMORIES_BUCKET, StorageClient

logger = logging.getLogger(__name__)

PAYLOAD_FORMAT_VERSION = 2

# Version 1 payloads used the form's camelCase field names.
_V1_KEYS = {
    "fullName": "full_name",
    "dob": "dob",
    "sex": "sex",
    "religion": "religion",
    "occupation": "occupation",
    "address": "address",
    "contact": "contact",
    "email": "email",
    "relatives": "relatives",
    "serviceGrades": "service_grade",
    "memorableDeeds": "memorable_deeds",
}

CONTACT_PATTERN = re.compile(r"^\d{10,15}$")
EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")


@dataclass
class PledgeForm:
    full_name: str = ""
    dob: str = ""
    sex: str = ""
    religion: str = ""
    occupation: str = ""
    address: str = ""
    contact: str = ""
    email: str = ""
    relatives: str = ""
    service_grade: str = ""
    memorable_deeds: str = ""

    def to_payload(self, memory_urls: Sequence[str]) -> dict:
        return {
            "format_version": PAYLOAD_FORMAT_VERSION,
            **asdict(self),
            "top_memories_url": list(memory_urls),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> tuple["PledgeForm", list[str]]:
        """Read a stored payload of any known version.

        Raises ValueError for an unknown ``format_version``.
        """
        version = payload.get("format_version", 1)
        if version == 1:
            values = {
                new: payload[old] for old, new in _V1_KEYS.items() if old in payload
            }
        elif version == PAYLOAD_FORMAT_VERSION:
            names = {f.name for f in fields(cls)}
            values = {key: payload[key] for key in names if key in payload}
        else:
            raise ValueError(f"Unsupported pledge payload version: {version}")
        values = {key: "" if value is None else str(value) for key, value in values.items()}
        urls = [url for url in payload.get("top_memories_url") or [] if url]
        return cls(**values), urls

    def to_patron_row(
        self, user_id: str, email: Optional[str], memory_urls: Sequence[str]
    ) -> dict:
        return {
            "id": user_id,
            "email": email or self.email,
            "full_name": self.full_name,
            "dob": self.dob,
            "sex": self.sex,
            "religion": self.religion,
            "occupation": self.occupation,
            "address": self.address,
            "contact_number": self.contact,
            "relatives_contact": self.relatives,
            "service_grade": self.service_grade,
            "memorable_deeds": self.memorable_deeds,
            "top_memories_url": list(memory_urls),
            "updated_at": time.time(),
        }

    @classmethod
    def from_patron_row(cls, row: dict) -> "PledgeForm":
        return cls(
            full_name=row.get("full_name") or "",
            dob=row.get("dob") or "",
            sex=row.get("sex") or "",
            religion=row.get("religion") or "",
            occupation=row.get("occupation") or "",
            address=row.get("address") or "",
            contact=row.get("contact_number") or "",
            email=row.get("email") or "",
            relatives=row.get("relatives_contact") or "",
            service_grade=row.get("service_grade") or "",
            memorable_deeds=row.get("memorable_deeds") or "",
        )


@dataclass
class UploadedFile:
    filename: str
    data: bytes
    content_type: Optional[str] = None

    @property
    def safe_name(self) -> str:
        name = os.path.basename(self.filename.replace("\\", "/")).strip()
        return name or "file"


@dataclass
class PledgeOutcome:
    # "pending_signup" for anonymous visitors, "saved" for patrons.
    status: str
    memory_urls: list[str] = field(default_factory=list)
    prefill: dict = field(default_factory=dict)


def validate_pledge(form: PledgeForm) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not form.full_name:
        errors["full_name"] = "Full Name is required."
    if not form.dob:
        errors["dob"] = "Date of Birth is required."
    if not form.contact:
        errors["contact"] = "Contact number is required."
    elif not CONTACT_PATTERN.match(form.contact):
        errors["contact"] = "Contact number is invalid."
    if not form.email:
        errors["email"] = "Email is required."
    elif not EMAIL_PATTERN.search(form.email):
        errors["email"] = "Email format is invalid."
    if not form.service_grade:
        errors["service_grade"] = "Please select a Service Grade."
    return errors


def upload_files(
    storage: StorageClient,
    bucket: str,
    uploads: Sequence[tuple[str, UploadedFile]],
    *,
    max_workers: int = 8,
) -> list[str]:
    """
    Upload ``(path, file)`` pairs in parallel and return their public URLs in
    input order. The first failure is re-raised once every upload settled.
    """
    if not uploads:
        return []

    def _upload(item: tuple[str, UploadedFile]) -> str:
        path, upload = item
        storage.upload(bucket, path, upload.data, content_type=upload.content_type)
        return storage.public_url(bucket, path)

    with ThreadPoolExecutor(max_workers=min(max_workers, len(uploads))) as executor:
        return list(executor.map(_upload, uploads))


def submit_pledge(
    form: PledgeForm,
    files: Sequence[UploadedFile],
    *,
    session: Optional[AuthSession],
    db: DbClient,
    storage: StorageClient,
    max_workers: int = 8,
) -> PledgeOutcome:
    """
    Validate then branch on authentication state.

    Raises PledgeValidationError before any backend call when the form is
    invalid; backend failures propagate as BackendError.
    """
    errors = validate_pledge(form)
    if errors:
        raise PledgeValidationError(errors)

    if session is None:
        temp_id = uuid.uuid4()
        uploads = [(f"temp/{temp_id}/{f.safe_name}", f) for f in files]
        memory_urls = upload_files(storage, MEMORIES_BUCKET, uploads, max_workers=max_workers)
        db.upsert_temp_patron(form.email, form.to_payload(memory_urls))
        logger.info("Stored pre-signup pledge with %d file(s)", len(memory_urls))
        return PledgeOutcome(
            status="pending_signup",
            memory_urls=memory_urls,
            prefill={"email": form.email, "name": form.full_name},
        )

    user = session.user
    stamp = int(time.time() * 1000)
    uploads = [(f"{user.id}/{stamp}-{f.safe_name}", f) for f in files]
    new_urls = upload_files(storage, MEMORIES_BUCKET, uploads, max_workers=max_workers)

    try:
        existing = db.get_patron(user.id)
    except NotFoundError:
        existing = None
    existing_urls = (existing or {}).get("top_memories_url") or []
    memory_urls = [*existing_urls, *new_urls]

    db.upsert_patron(form.to_patron_row(user.id, user.email or form.email, memory_urls))
    logger.info("Saved pledge for user_id=%s", user.id)
    return PledgeOutcome(status="saved", memory_urls=memory_urls)


def pledge_prefill(session: AuthSession, db: DbClient) -> PledgeForm:
    """Form values for a signed-in patron: their record, else session details."""
    user = session.user
    try:
        row = db.get_patron(user.id)
    except NotFoundError:
        row = None
    if row:
        form = PledgeForm.from_patron_row(row)
        form.full_name = form.full_name or user.display_name or ""
        form.email = form.email or user.email or ""
        return form
    return PledgeForm(full_name=user.display_name or "", email=user.email or "")
