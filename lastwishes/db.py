"""
Row store abstraction for Postgres and an in-memory test implementation.

Rows cross this boundary as plain dicts keyed by column name, the same shape
the backend's REST layer returns. Single-row lookups return ``None`` when
nothing matches; every other failure raises ``BackendError``.
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from lastwishes.errors import BackendError, OperationCancelled

PATRON_COLUMNS = (
    "id",
    "email",
    "full_name",
    "dob",
    "sex",
    "religion",
    "occupation",
    "address",
    "contact_number",
    "relatives_contact",
    "service_grade",
    "memorable_deeds",
    "top_memories_url",
    "avatar_url",
    "updated_at",
)

# Owned, user-scoped entries edited from the dashboard.
ENTRY_COLUMNS: Dict[str, tuple[str, ...]] = {
    "wishes": ("title", "description", "type"),
    "nominees": ("nominee_name", "nominee_email", "relationship", "permissions"),
    "letters": ("recipient_name", "title", "content", "delivery_date", "status"),
}

# Entries listed newest first; the rest in insertion order.
NEWEST_FIRST = {"wishes", "letters"}

DOCUMENT_COLUMNS = ("file_name", "storage_path", "file_size", "mime_type")


class DbClient(Protocol):
    """Interface for row store access."""

    # Permanent patron records
    def get_patron(self, user_id: str) -> Optional[dict]:
        ...

    def upsert_patron(self, row: dict) -> dict:
        ...

    def list_recent_patrons(
        self, limit: int, cancel: Optional[threading.Event] = None
    ) -> list[dict]:
        ...

    def list_all_patrons(self) -> list[dict]:
        ...

    # Temporary patron records
    def get_temp_patron_by_email(self, email: str) -> Optional["TempPatronRecord"]:
        ...

    def upsert_temp_patron(self, email: str, form_data: dict) -> "TempPatronRecord":
        ...

    def delete_temp_patron(self, temp_id: str) -> None:
        ...

    # Roles
    def get_user_role(self, user_id: str) -> Optional[str]:
        ...

    def set_user_role(self, user_id: str, role: str) -> None:
        ...

    # Wishes / nominees / letters
    def list_entries(self, kind: str, user_id: str) -> list[dict]:
        ...

    def create_entry(self, kind: str, user_id: str, values: dict) -> dict:
        ...

    def update_entry(
        self, kind: str, user_id: str, entry_id: int, values: dict
    ) -> Optional[dict]:
        ...

    def delete_entry(self, kind: str, user_id: str, entry_id: int) -> bool:
        ...

    # Document vault metadata
    def list_documents(self, user_id: str) -> list[dict]:
        ...

    def get_document(self, user_id: str, document_id: int) -> Optional[dict]:
        ...

    def upsert_document(self, user_id: str, values: dict) -> dict:
        ...

    def delete_document(self, user_id: str, document_id: int) -> bool:
        ...

    # Support
    def create_support_ticket(self, values: dict) -> dict:
        ...


@dataclass
class TempPatronRecord:
    id: str
    email: str
    form_data: dict
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "form_data": self.form_data,
            "created_at": self.created_at,
        }


def _check_kind(kind: str) -> tuple[str, ...]:
    try:
        return ENTRY_COLUMNS[kind]
    except KeyError:
        raise ValueError(f"Unknown entry kind: {kind}") from None


def _pick(values: dict, columns: Iterable[str]) -> dict:
    return {key: values[key] for key in columns if key in values}


def _raise_if_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Fetch aborted")


class InMemoryDbClient:
    """Simple in-memory row store for development and tests."""

    def __init__(self):
        self.patrons: Dict[str, dict] = {}
        self.temp_patrons: Dict[str, TempPatronRecord] = {}
        self.roles: Dict[str, str] = {}
        self.entries: Dict[str, Dict[int, dict]] = {kind: {} for kind in ENTRY_COLUMNS}
        self.documents: Dict[int, dict] = {}
        self.support_tickets: list[dict] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.patrons.clear()
        self.temp_patrons.clear()
        self.roles.clear()
        for table in self.entries.values():
            table.clear()
        self.documents.clear()
        self.support_tickets.clear()

    def get_patron(self, user_id: str) -> Optional[dict]:
        row = self.patrons.get(user_id)
        return copy.deepcopy(row) if row else None

    def upsert_patron(self, row: dict) -> dict:
        if not row.get("id"):
            raise BackendError("Patron id is required", code="23502")
        values = _pick(row, PATRON_COLUMNS)
        with self._lock:
            existing = self.patrons.setdefault(values["id"], {})
            existing.update(copy.deepcopy(values))
            return copy.deepcopy(existing)

    def list_recent_patrons(
        self, limit: int, cancel: Optional[threading.Event] = None
    ) -> list[dict]:
        _raise_if_cancelled(cancel)
        rows = [copy.deepcopy(row) for row in list(self.patrons.values())[:limit]]
        _raise_if_cancelled(cancel)
        return rows

    def list_all_patrons(self) -> list[dict]:
        rows = [copy.deepcopy(row) for row in self.patrons.values()]
        rows.sort(key=lambda r: r.get("updated_at") or 0, reverse=True)
        return rows

    def get_temp_patron_by_email(self, email: str) -> Optional[TempPatronRecord]:
        for record in self.temp_patrons.values():
            if record.email == email:
                return copy.deepcopy(record)
        return None

    def upsert_temp_patron(self, email: str, form_data: dict) -> TempPatronRecord:
        with self._lock:
            for record in self.temp_patrons.values():
                if record.email == email:
                    record.form_data = copy.deepcopy(form_data)
                    return copy.deepcopy(record)
            record = TempPatronRecord(
                id=uuid.uuid4().hex, email=email, form_data=copy.deepcopy(form_data)
            )
            self.temp_patrons[record.id] = record
            return copy.deepcopy(record)

    def delete_temp_patron(self, temp_id: str) -> None:
        self.temp_patrons.pop(temp_id, None)

    def get_user_role(self, user_id: str) -> Optional[str]:
        return self.roles.get(user_id)

    def set_user_role(self, user_id: str, role: str) -> None:
        self.roles[user_id] = role

    def list_entries(self, kind: str, user_id: str) -> list[dict]:
        _check_kind(kind)
        rows = [
            copy.deepcopy(row)
            for row in self.entries[kind].values()
            if row["user_id"] == user_id
        ]
        if kind in NEWEST_FIRST:
            rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return rows

    def create_entry(self, kind: str, user_id: str, values: dict) -> dict:
        columns = _check_kind(kind)
        row = {
            "id": self._next_id(),
            "user_id": user_id,
            "created_at": time.time(),
            **copy.deepcopy(_pick(values, columns)),
        }
        self.entries[kind][row["id"]] = row
        return copy.deepcopy(row)

    def update_entry(
        self, kind: str, user_id: str, entry_id: int, values: dict
    ) -> Optional[dict]:
        columns = _check_kind(kind)
        row = self.entries[kind].get(entry_id)
        if not row or row["user_id"] != user_id:
            return None
        row.update(copy.deepcopy(_pick(values, columns)))
        return copy.deepcopy(row)

    def delete_entry(self, kind: str, user_id: str, entry_id: int) -> bool:
        _check_kind(kind)
        row = self.entries[kind].get(entry_id)
        if not row or row["user_id"] != user_id:
            return False
        del self.entries[kind][entry_id]
        return True

    def list_documents(self, user_id: str) -> list[dict]:
        rows = [
            copy.deepcopy(row)
            for row in self.documents.values()
            if row["user_id"] == user_id
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return rows

    def get_document(self, user_id: str, document_id: int) -> Optional[dict]:
        row = self.documents.get(document_id)
        if not row or row["user_id"] != user_id:
            return None
        return copy.deepcopy(row)

    def upsert_document(self, user_id: str, values: dict) -> dict:
        values = _pick(values, DOCUMENT_COLUMNS)
        for row in self.documents.values():
            if row["user_id"] == user_id and row["file_name"] == values["file_name"]:
                row.update(values)
                return copy.deepcopy(row)
        row = {
            "id": self._next_id(),
            "user_id": user_id,
            "created_at": time.time(),
            **values,
        }
        self.documents[row["id"]] = row
        return copy.deepcopy(row)

    def delete_document(self, user_id: str, document_id: int) -> bool:
        row = self.documents.get(document_id)
        if not row or row["user_id"] != user_id:
            return False
        del self.documents[document_id]
        return True

    def create_support_ticket(self, values: dict) -> dict:
        row = {"id": self._next_id(), "created_at": time.time(), **values}
        self.support_tickets.append(row)
        return copy.deepcopy(row)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """A session whose driver errors surface as BackendError."""
        try:
            with self.Session() as session:
                yield session
        except SQLAlchemyError as exc:
            raise BackendError(str(exc.__cause__ or exc)) from exc

    def get_patron(self, user_id: str) -> Optional[dict]:
        with self._session() as session:
            row = session.get(PatronRow, user_id)
            return _row_dict(row, PATRON_COLUMNS) if row else None

    def upsert_patron(self, row: dict) -> dict:
        if not row.get("id"):
            raise BackendError("Patron id is required", code="23502")
        values = _pick(row, PATRON_COLUMNS)
        with self._session() as session:
            existing = session.get(PatronRow, values["id"])
            if existing is None:
                existing = PatronRow(id=values["id"])
                session.add(existing)
            for key, value in values.items():
                setattr(existing, key, value)
            session.commit()
            session.refresh(existing)
            return _row_dict(existing, PATRON_COLUMNS)

    def list_recent_patrons(
        self, limit: int, cancel: Optional[threading.Event] = None
    ) -> list[dict]:
        _raise_if_cancelled(cancel)
        with self._session() as session:
            rows = session.execute(select(PatronRow).limit(limit)).scalars().all()
            patrons = [_row_dict(row, PATRON_COLUMNS) for row in rows]
        _raise_if_cancelled(cancel)
        return patrons

    def list_all_patrons(self) -> list[dict]:
        with self._session() as session:
            stmt = select(PatronRow).order_by(PatronRow.updated_at.desc())
            return [
                _row_dict(row, PATRON_COLUMNS)
                for row in session.execute(stmt).scalars().all()
            ]

    def get_temp_patron_by_email(self, email: str) -> Optional[TempPatronRecord]:
        with self._session() as session:
            row = session.execute(
                select(TempPatronRow).where(TempPatronRow.email == email)
            ).scalar_one_or_none()
            return _to_temp_record(row) if row else None

    def upsert_temp_patron(self, email: str, form_data: dict) -> TempPatronRecord:
        with self._session() as session:
            row = session.execute(
                select(TempPatronRow).where(TempPatronRow.email == email)
            ).scalar_one_or_none()
            if row is None:
                row = TempPatronRow(
                    id=uuid.uuid4().hex,
                    email=email,
                    form_data=form_data,
                    created_at=time.time(),
                )
                session.add(row)
            else:
                row.form_data = form_data
            session.commit()
            session.refresh(row)
            return _to_temp_record(row)

    def delete_temp_patron(self, temp_id: str) -> None:
        with self._session() as session:
            row = session.get(TempPatronRow, temp_id)
            if row:
                session.delete(row)
                session.commit()

    def get_user_role(self, user_id: str) -> Optional[str]:
        with self._session() as session:
            row = session.get(UserRoleRow, user_id)
            return row.role if row else None

    def set_user_role(self, user_id: str, role: str) -> None:
        with self._session() as session:
            row = session.get(UserRoleRow, user_id)
            if row:
                row.role = role
            else:
                session.add(UserRoleRow(user_id=user_id, role=role))
            session.commit()

    def list_entries(self, kind: str, user_id: str) -> list[dict]:
        columns = _check_kind(kind)
        model = ENTRY_MODELS[kind]
        stmt = select(model).where(model.user_id == user_id)
        if kind in NEWEST_FIRST:
            stmt = stmt.order_by(model.created_at.desc(), model.id.desc())
        else:
            stmt = stmt.order_by(model.id.asc())
        with self._session() as session:
            return [
                _row_dict(row, ("id", "user_id", "created_at") + columns)
                for row in session.execute(stmt).scalars().all()
            ]

    def create_entry(self, kind: str, user_id: str, values: dict) -> dict:
        columns = _check_kind(kind)
        model = ENTRY_MODELS[kind]
        with self._session() as session:
            row = model(user_id=user_id, created_at=time.time(), **_pick(values, columns))
            session.add(row)
            session.commit()
            session.refresh(row)
            return _row_dict(row, ("id", "user_id", "created_at") + columns)

    def update_entry(
        self, kind: str, user_id: str, entry_id: int, values: dict
    ) -> Optional[dict]:
        columns = _check_kind(kind)
        model = ENTRY_MODELS[kind]
        with self._session() as session:
            row = session.get(model, entry_id)
            if not row or row.user_id != user_id:
                return None
            for key, value in _pick(values, columns).items():
                setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return _row_dict(row, ("id", "user_id", "created_at") + columns)

    def delete_entry(self, kind: str, user_id: str, entry_id: int) -> bool:
        _check_kind(kind)
        model = ENTRY_MODELS[kind]
        with self._session() as session:
            row = session.get(model, entry_id)
            if not row or row.user_id != user_id:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_documents(self, user_id: str) -> list[dict]:
        stmt = (
            select(DocumentRow)
            .where(DocumentRow.user_id == user_id)
            .order_by(DocumentRow.created_at.desc(), DocumentRow.id.desc())
        )
        with self._session() as session:
            return [
                _row_dict(row, _DOCUMENT_FIELDS)
                for row in session.execute(stmt).scalars().all()
            ]

    def get_document(self, user_id: str, document_id: int) -> Optional[dict]:
        with self._session() as session:
            row = session.get(DocumentRow, document_id)
            if not row or row.user_id != user_id:
                return None
            return _row_dict(row, _DOCUMENT_FIELDS)

    def upsert_document(self, user_id: str, values: dict) -> dict:
        values = _pick(values, DOCUMENT_COLUMNS)
        with self._session() as session:
            row = session.execute(
                select(DocumentRow).where(
                    DocumentRow.user_id == user_id,
                    DocumentRow.file_name == values["file_name"],
                )
            ).scalar_one_or_none()
            if row is None:
                row = DocumentRow(user_id=user_id, created_at=time.time())
                session.add(row)
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return _row_dict(row, _DOCUMENT_FIELDS)

    def delete_document(self, user_id: str, document_id: int) -> bool:
        with self._session() as session:
            row = session.get(DocumentRow, document_id)
            if not row or row.user_id != user_id:
                return False
            session.delete(row)
            session.commit()
            return True

    def create_support_ticket(self, values: dict) -> dict:
        with self._session() as session:
            row = SupportTicketRow(
                user_id=values.get("user_id"),
                name=values.get("name"),
                email=values.get("email"),
                message=values["message"],
                status=values.get("status", "open"),
                created_at=time.time(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _row_dict(
                row,
                ("id", "user_id", "name", "email", "message", "status", "created_at"),
            )


def _row_dict(row: Any, columns: Iterable[str]) -> dict:
    return {column: getattr(row, column) for column in columns}


def _to_temp_record(row: "TempPatronRow") -> TempPatronRecord:
    return TempPatronRecord(
        id=row.id,
        email=row.email,
        form_data=row.form_data or {},
        created_at=row.created_at,
    )


Base = declarative_base()


class PatronRow(Base):
    __tablename__ = "patrons"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True, index=True)
    full_name = Column(String, nullable=True)
    dob = Column(String, nullable=True)
    sex = Column(String, nullable=True)
    religion = Column(String, nullable=True)
    occupation = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    contact_number = Column(String, nullable=True)
    relatives_contact = Column(String, nullable=True)
    service_grade = Column(String, nullable=True)
    memorable_deeds = Column(Text, nullable=True)
    top_memories_url = Column(JSON, nullable=False, default=list)
    avatar_url = Column(String, nullable=True)
    updated_at = Column(Float, nullable=True, index=True)


class TempPatronRow(Base):
    __tablename__ = "temp_patrons"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    form_data = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)


class UserRoleRow(Base):
    __tablename__ = "user_roles"

    user_id = Column(String, primary_key=True)
    role = Column(String, nullable=False)


class WishRow(Base):
    __tablename__ = "wishes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String, nullable=False, default="text")
    created_at = Column(Float, nullable=False)


class NomineeRow(Base):
    __tablename__ = "nominees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    nominee_name = Column(String, nullable=False)
    nominee_email = Column(String, nullable=False)
    relationship = Column(String, nullable=True)
    permissions = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False)


class LetterRow(Base):
    __tablename__ = "letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    recipient_name = Column(String, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    delivery_date = Column(String, nullable=True)
    status = Column(String, nullable=False, default="draft")
    created_at = Column(Float, nullable=False)


class DocumentRow(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("user_id", "file_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    file_name = Column(String, nullable=False)
    storage_path = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    mime_type = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class SupportTicketRow(Base):
    __tablename__ = "support_tickets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="open")
    created_at = Column(Float, nullable=False)


ENTRY_MODELS = {
    "wishes": WishRow,
    "nominees": NomineeRow,
    "letters": LetterRow,
}

_DOCUMENT_FIELDS = ("id", "user_id", "created_at") + DOCUMENT_COLUMNS
