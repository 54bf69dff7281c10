"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import functools

from fastapi import Depends, Request, Response

from lastwishes.config import get_settings
from lastwishes.db import DbClient, InMemoryDbClient, PostgresDbClient
from lastwishes.errors import ActionError
from lastwishes.functions import FunctionClient, HttpFunctionClient, InMemoryFunctionClient
from lastwishes.identity import AuthClient, HttpIdentityService, IdentityService, InMemoryIdentityService
from lastwishes.migration import migrate_patron_data
from lastwishes.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from lastwishes.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from lastwishes.state import PortalRegistry, PortalState
from lastwishes.storage import InMemoryStorageClient, S3StorageClient, StorageClient

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None
_queue_client: JobQueue | None = None
_identity_service: IdentityService | None = None
_function_client: FunctionClient | None = None
_session_store: SessionStore | None = None
_portal_registry: PortalRegistry | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton row store client so data persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.s3_public_base_url or "",
        )
    return _storage_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for migration retries.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_identity_service() -> IdentityService:
    global _identity_service
    if _identity_service:
        return _identity_service

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.backend_url:
        _identity_service = InMemoryIdentityService()
    else:
        _identity_service = HttpIdentityService(
            settings.backend_url, settings.backend_anon_key or ""
        )
    return _identity_service


def get_function_client() -> FunctionClient:
    global _function_client
    if _function_client:
        return _function_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.backend_url:
        _function_client = InMemoryFunctionClient()
    else:
        _function_client = HttpFunctionClient(
            settings.backend_url, settings.backend_anon_key or ""
        )
    return _function_client


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store:
        return _session_store

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _session_store = RedisSessionStore(
            url=settings.redis_url,
            prefix=settings.redis_session_prefix,
            ttl_seconds=settings.portal_session_ttl_seconds,
        )
    else:
        _session_store = InMemorySessionStore()
    return _session_store


def _build_portal(portal_id: str) -> PortalState:
    settings = get_settings()
    db = get_db_client()
    migrate = functools.partial(
        migrate_patron_data,
        db=db,
        storage=get_storage_client(),
        queue=get_queue_client(),
        max_attempts=settings.migration_max_attempts,
        max_workers=settings.migration_max_workers,
    )
    return PortalState(
        portal_id,
        AuthClient(get_identity_service()),
        db=db,
        markers=get_session_store(),
        migrate=migrate,
    )


def get_portal_registry() -> PortalRegistry:
    global _portal_registry
    if _portal_registry:
        return _portal_registry
    _portal_registry = PortalRegistry(
        _build_portal, idle_ttl_seconds=get_settings().portal_session_ttl_seconds
    )
    return _portal_registry


def get_portal(request: Request, response: Response) -> PortalState:
    """
    The caller's portal, keyed by the portal cookie. A fresh portal (and
    cookie) is issued when the cookie is missing or unknown. An expired auth
    session is refreshed, or signed out when the refresh is rejected.
    """
    settings = get_settings()
    portal_id = request.cookies.get(settings.portal_cookie_name)
    portal = get_portal_registry().get_or_create(portal_id)
    portal.refresh_if_expired()
    if portal.portal_id != portal_id:
        response.set_cookie(
            settings.portal_cookie_name,
            portal.portal_id,
            max_age=settings.portal_session_ttl_seconds,
            httponly=True,
            samesite="lax",
            secure=settings.portal_cookie_secure,
        )
    return portal


def get_signed_in_portal(portal: PortalState = Depends(get_portal)) -> PortalState:
    if portal.session is None:
        raise ActionError("Auth session missing!", status_code=401)
    return portal


def reset_dependencies() -> None:
    """Drop every singleton; the next request rebuilds them from settings."""
    global _db_client, _storage_client, _queue_client, _identity_service
    global _function_client, _session_store, _portal_registry
    if _portal_registry:
        _portal_registry.clear()
    _db_client = None
    _storage_client = None
    _queue_client = None
    _identity_service = None
    _function_client = None
    _session_store = None
    _portal_registry = None
