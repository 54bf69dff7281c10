"""
Pydantic schemas for the portal's HTTP API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class Message(BaseModel):
    type: Literal["success", "error", "warning", "info"]
    text: str


class MessageResponse(BaseModel):
    message: Message


class UserInfo(BaseModel):
    id: str
    email: Optional[str] = None
    user_metadata: dict = Field(default_factory=dict)


class SessionResponse(BaseModel):
    view: str
    user: Optional[UserInfo] = None
    role: Optional[str] = None
    is_admin: bool = False
    prefill: dict = Field(default_factory=dict)
    message: Optional[Message] = None


class NavigateRequest(BaseModel):
    view: Literal["home", "login", "signup", "reset_password", "dashboard"]


class SignUpRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    password: str


class SignInRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str
    remember_me: bool = False


class PasswordResetRequest(BaseModel):
    email: str = ""


class RecoveryVerifyRequest(BaseModel):
    email: str
    token: str


class PasswordUpdateRequest(BaseModel):
    password: str
    confirm_password: str


class PledgeResponse(BaseModel):
    status: Literal["pending_signup", "saved"]
    memory_urls: list[str] = Field(default_factory=list)
    session: SessionResponse


class PledgeFormResponse(BaseModel):
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


class PatronProfile(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    dob: Optional[str] = None
    sex: Optional[str] = None
    religion: Optional[str] = None
    occupation: Optional[str] = None
    address: Optional[str] = None
    contact_number: Optional[str] = None
    relatives_contact: Optional[str] = None
    service_grade: Optional[str] = None
    memorable_deeds: Optional[str] = None
    top_memories_url: list[str] = Field(default_factory=list)
    avatar_url: Optional[str] = None
    updated_at: Optional[float] = None


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    dob: Optional[str] = None
    sex: Optional[str] = None
    religion: Optional[str] = None
    occupation: Optional[str] = None
    address: Optional[str] = None
    contact_number: Optional[str] = None
    relatives_contact: Optional[str] = None
    service_grade: Optional[str] = None
    memorable_deeds: Optional[str] = None


class ProfileResponse(BaseModel):
    profile: PatronProfile
    message: Optional[Message] = None


class MemoryDeleteRequest(BaseModel):
    url: str


class WishPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    type: Literal["text", "voice", "video"] = "text"


class NomineePermissions(BaseModel):
    viewWishes: bool = True
    viewDocuments: bool = False
    receiveLetters: bool = True


class NomineePayload(BaseModel):
    nominee_name: str = Field(..., min_length=1, max_length=200)
    nominee_email: str = Field(..., min_length=1, max_length=320)
    relationship: str = ""
    permissions: NomineePermissions = Field(default_factory=NomineePermissions)


class LetterPayload(BaseModel):
    recipient_name: str = Field(..., min_length=1, max_length=200)
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    delivery_date: Optional[str] = None


class EntryResponse(BaseModel):
    entry: dict
    message: Message


class EntryListResponse(BaseModel):
    entries: list[dict]


class DocumentInfo(BaseModel):
    id: int
    file_name: str
    storage_path: str
    file_size: int = 0
    mime_type: Optional[str] = None
    created_at: Optional[float] = None


class DocumentListResponse(BaseModel):
    documents: list[DocumentInfo]


class DocumentResponse(BaseModel):
    document: DocumentInfo
    message: Message


class SupportTicketRequest(BaseModel):
    message: str = ""


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str


class MfaFactorInfo(BaseModel):
    id: str
    factor_type: str = "totp"
    status: str
    friendly_name: Optional[str] = None


class MfaStatusResponse(BaseModel):
    factors: list[MfaFactorInfo]


class MfaEnrollResponse(BaseModel):
    factor_id: str
    qr_code: str
    secret: str


class MfaVerifyRequest(BaseModel):
    factor_id: str
    code: str = Field(..., min_length=6, max_length=6)


class DeleteAccountRequest(BaseModel):
    password: str


class PlanPrice(BaseModel):
    monthly: int
    yearly: int


class PlanInfo(BaseModel):
    id: str
    name: str
    price: PlanPrice
    features: list[str]


class PlansResponse(BaseModel):
    plans: list[PlanInfo]


class CheckoutRequest(BaseModel):
    plan_id: str
    billing_cycle: Literal["monthly", "yearly"] = "yearly"


class CheckoutResponse(BaseModel):
    options: dict


class PaymentVerifyRequest(BaseModel):
    plan_id: str
    billing_cycle: Literal["monthly", "yearly"] = "yearly"
    razorpay_payment_id: str
    razorpay_order_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


class CascadeCard(BaseModel):
    id: str
    name: str
    photo: str
    badge: str
    wishes: list[str]
    story: str
    images: list[str]
    status: str
    occupation: Optional[str] = None
    religion: Optional[str] = None
    service_grade: Optional[str] = None


class CascadeResponse(BaseModel):
    cards: list[CascadeCard]


class AdminPatronsResponse(BaseModel):
    patrons: list[PatronProfile]
