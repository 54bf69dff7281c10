"""
HTTP routes for the portal API: session/view state, account flows, pledge
submission, the public cascade, payments and the admin panel.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool

from lastwishes import accounts, admin, payments
from lastwishes.cascade import fetch_cascade
from lastwishes.config import get_settings
from lastwishes.db import DbClient
from lastwishes.dependencies import (
    get_db_client,
    get_function_client,
    get_portal,
    get_signed_in_portal,
    get_storage_client,
)
from lastwishes.errors import ActionError, BackendError, OperationCancelled
from lastwishes.functions import FunctionClient
from lastwishes.pledge import PledgeForm, UploadedFile, pledge_prefill, submit_pledge
from lastwishes.schemas import (
    AdminPatronsResponse,
    CascadeResponse,
    CheckoutRequest,
    CheckoutResponse,
    Message,
    MessageResponse,
    NavigateRequest,
    PasswordResetRequest,
    PasswordUpdateRequest,
    PaymentVerifyRequest,
    PlansResponse,
    PledgeFormResponse,
    PledgeResponse,
    RecoveryVerifyRequest,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
)
from lastwishes.state import PortalState, View
from lastwishes.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter()

CASCADE_POLL_SECONDS = 0.1


def _session_response(portal: PortalState, message: Optional[Message] = None) -> SessionResponse:
    return SessionResponse(**portal.snapshot(), message=message)


def read_uploads(files: Optional[List[UploadFile]]) -> list[UploadedFile]:
    return [
        UploadedFile(
            filename=upload.filename or "file",
            data=upload.file.read(),
            content_type=upload.content_type,
        )
        for upload in files or []
        if upload.filename
    ]


@router.get("/healthz")
def healthz():
    return {"status": "ok"}


@router.get("/session", response_model=SessionResponse)
def get_session(portal: PortalState = Depends(get_portal)):
    return _session_response(portal)


@router.post("/view", response_model=SessionResponse)
def navigate(payload: NavigateRequest, portal: PortalState = Depends(get_portal)):
    portal.navigate(View(payload.view))
    return _session_response(portal)


@router.post("/auth/signup", response_model=SessionResponse)
def sign_up(payload: SignUpRequest, portal: PortalState = Depends(get_portal)):
    message = accounts.sign_up(portal, payload.name, payload.email, payload.password)
    return _session_response(portal, message)


@router.post("/auth/login", response_model=SessionResponse)
def sign_in(payload: SignInRequest, portal: PortalState = Depends(get_portal)):
    accounts.sign_in(
        portal, payload.email, payload.password, remember_me=payload.remember_me
    )
    return _session_response(portal)


@router.post("/auth/logout", response_model=SessionResponse)
def sign_out(portal: PortalState = Depends(get_portal)):
    accounts.sign_out(portal)
    return _session_response(portal)


@router.post("/auth/password-reset", response_model=MessageResponse)
def request_password_reset(
    payload: PasswordResetRequest, portal: PortalState = Depends(get_portal)
):
    settings = get_settings()
    message = accounts.request_password_reset(portal, payload.email, settings.site_url)
    return MessageResponse(message=message)


@router.post("/auth/recovery", response_model=SessionResponse)
def verify_recovery(
    payload: RecoveryVerifyRequest, portal: PortalState = Depends(get_portal)
):
    accounts.verify_recovery(portal, payload.email, payload.token)
    return _session_response(portal)


@router.post("/auth/password", response_model=SessionResponse)
def update_password(
    payload: PasswordUpdateRequest, portal: PortalState = Depends(get_signed_in_portal)
):
    message = accounts.update_password(portal, payload.password, payload.confirm_password)
    return _session_response(portal, message)


@router.get("/pledge", response_model=PledgeFormResponse)
def get_pledge_form(
    portal: PortalState = Depends(get_portal),
    db: DbClient = Depends(get_db_client),
):
    session = portal.session
    if session is None:
        return PledgeFormResponse(
            email=portal.prefill.get("email", ""), full_name=portal.prefill.get("name", "")
        )
    return PledgeFormResponse(**asdict(pledge_prefill(session, db)))


@router.post("/pledge", response_model=PledgeResponse)
def post_pledge(
    full_name: str = Form(""),
    dob: str = Form(""),
    sex: str = Form(""),
    religion: str = Form(""),
    occupation: str = Form(""),
    address: str = Form(""),
    contact: str = Form(""),
    email: str = Form(""),
    relatives: str = Form(""),
    service_grade: str = Form(""),
    memorable_deeds: str = Form(""),
    files: Optional[List[UploadFile]] = File(None),
    portal: PortalState = Depends(get_portal),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    form = PledgeForm(
        full_name=full_name.strip(),
        dob=dob.strip(),
        sex=sex,
        religion=religion,
        occupation=occupation,
        address=address,
        contact=contact.strip(),
        email=email.strip(),
        relatives=relatives,
        service_grade=service_grade,
        memorable_deeds=memorable_deeds,
    )
    settings = get_settings()
    try:
        outcome = submit_pledge(
            form,
            read_uploads(files),
            session=portal.session,
            db=db,
            storage=storage,
            max_workers=settings.migration_max_workers,
        )
    except BackendError as exc:
        logger.error("Pledge submission failed: %s", exc.message)
        raise ActionError(f"Submission failed: {exc.message}", status_code=502) from exc

    if outcome.status == "pending_signup":
        portal.set_prefill(**outcome.prefill)
        portal.navigate(View.SIGNUP)
        message = Message(
            type="success",
            text="Your pledge has been saved. Create an account to complete it.",
        )
    else:
        message = Message(type="success", text="Your pledge has been updated.")
    return PledgeResponse(
        status=outcome.status,
        memory_urls=outcome.memory_urls,
        session=_session_response(portal, message),
    )


@router.get("/cascade", response_model=CascadeResponse)
async def get_cascade(
    request: Request,
    search: Optional[str] = Query(None, max_length=200),
    db: DbClient = Depends(get_db_client),
):
    """
    Public cards for recent patrons. The fetch is abandoned if the client
    disconnects before it completes.
    """
    settings = get_settings()
    cancel = threading.Event()

    async def watch_disconnect() -> None:
        while not cancel.is_set():
            if await request.is_disconnected():
                cancel.set()
                return
            await asyncio.sleep(CASCADE_POLL_SECONDS)

    watcher = asyncio.create_task(watch_disconnect())
    try:
        cards = await run_in_threadpool(
            fetch_cascade, db, search=search, limit=settings.cascade_limit, cancel=cancel
        )
    except OperationCancelled:
        logger.info("Cascade fetch cancelled by client disconnect")
        return Response(status_code=499)
    except BackendError as exc:
        logger.error("Cascade fetch error: %s", exc.message)
        raise ActionError(
            "Could not fetch patron data. This could be due to network issues or database permissions.",
            status_code=502,
        ) from exc
    finally:
        cancel.set()
        watcher.cancel()
    return CascadeResponse(cards=cards)


@router.get("/payments/plans", response_model=PlansResponse)
def list_plans():
    return PlansResponse(plans=[plan.as_dict() for plan in payments.PLANS])


@router.post("/payments/checkout", response_model=CheckoutResponse)
def checkout(
    payload: CheckoutRequest,
    portal: PortalState = Depends(get_signed_in_portal),
    functions: FunctionClient = Depends(get_function_client),
):
    settings = get_settings()
    options = payments.build_checkout(
        portal.session,
        payload.plan_id,
        payload.billing_cycle,
        functions=functions,
        key_id=settings.razorpay_key_id,
        currency=settings.payment_currency,
    )
    return CheckoutResponse(options=options)


@router.post("/payments/verify", response_model=MessageResponse)
def verify_payment(
    payload: PaymentVerifyRequest,
    portal: PortalState = Depends(get_signed_in_portal),
    functions: FunctionClient = Depends(get_function_client),
):
    settings = get_settings()
    message = payments.verify_payment(
        portal.session,
        payload.plan_id,
        payload.razorpay_payment_id,
        functions=functions,
        order_id=payload.razorpay_order_id,
        signature=payload.razorpay_signature,
        billing_cycle=payload.billing_cycle,
        currency=settings.payment_currency,
    )
    return MessageResponse(message=message)


@router.get("/admin/patrons", response_model=AdminPatronsResponse)
def admin_patrons(
    search: Optional[str] = Query(None, max_length=200),
    portal: PortalState = Depends(get_signed_in_portal),
    db: DbClient = Depends(get_db_client),
):
    try:
        patrons = admin.list_patrons(portal, db, search)
    except BackendError as exc:
        raise ActionError(
            f"Failed to fetch patrons: {exc.message}. Ensure you have admin privileges.",
            status_code=502,
        ) from exc
    return AdminPatronsResponse(patrons=patrons)
