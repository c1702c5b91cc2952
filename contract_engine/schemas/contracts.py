# contract_engine/schemas/contracts.py
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelPayload(BaseModel):
    """Request bodies accept camelCase (API) or snake_case (internal callers)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ClassSchedulePayload(CamelPayload):
    days_of_week: List[int] = Field(..., min_length=1, max_length=7, description="0=Sunday .. 6=Saturday")
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    timezone: Optional[str] = None


class LocationPayload(CamelPayload):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    address: str = Field(..., max_length=500)


class OnlineInfoPayload(CamelPayload):
    platform: Literal["ZOOM", "GOOGLE_MEET", "MICROSOFT_TEAMS", "OTHER"]
    meeting_link: Optional[str] = Field(default=None, max_length=1000)
    meeting_id: Optional[str] = Field(default=None, max_length=200)


class ContractPoliciesPayload(CamelPayload):
    cancellation_policy: Optional[str] = Field(default=None, max_length=2000)
    refund_policy: Optional[str] = Field(default=None, max_length=2000)
    makeup_policy: Optional[str] = Field(default=None, max_length=2000)
    additional_terms: Optional[str] = Field(default=None, max_length=4000)


class ContractTermsFields(CamelPayload):
    title: str = Field(..., max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    subject: Optional[str] = Field(default=None, max_length=128)

    total_sessions: int
    price_per_session: int
    session_duration: int
    learning_mode: Literal["ONLINE", "OFFLINE"]

    schedule: ClassSchedulePayload
    start_date: date
    location: Optional[LocationPayload] = None
    online_info: Optional[OnlineInfoPayload] = None

    payment_method: Literal["FULL", "INSTALLMENT"] = "FULL"
    installments: Optional[int] = None
    down_payment: Optional[int] = None

    terms: Optional[ContractPoliciesPayload] = None


class ContractCreatePayload(ContractTermsFields):
    contact_request_id: str = Field(..., max_length=64)
    student_id: str = Field(..., max_length=64)
    draft: bool = False


class ContractAmendPayload(CamelPayload):
    """Only the supplied fields change; the rest of the terms are kept."""

    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    subject: Optional[str] = Field(default=None, max_length=128)
    total_sessions: Optional[int] = None
    price_per_session: Optional[int] = None
    session_duration: Optional[int] = None
    learning_mode: Optional[Literal["ONLINE", "OFFLINE"]] = None
    schedule: Optional[ClassSchedulePayload] = None
    start_date: Optional[date] = None
    location: Optional[LocationPayload] = None
    online_info: Optional[OnlineInfoPayload] = None
    payment_method: Optional[Literal["FULL", "INSTALLMENT"]] = None
    installments: Optional[int] = None
    down_payment: Optional[int] = None
    terms: Optional[ContractPoliciesPayload] = None


class ContractRespondPayload(CamelPayload):
    action: Literal["APPROVE", "REJECT", "REQUEST_CHANGES"]
    message: Optional[str] = Field(default=None, max_length=2000)
    requested_changes: Optional[Dict[str, Any]] = None


class ContractCancelPayload(CamelPayload):
    reason: Optional[str] = Field(default=None, max_length=500)


# ─────────────────────────────────────────────
# Responses
# ─────────────────────────────────────────────

class SignatureState(BaseModel):
    signedAtIso: Optional[str] = None
    signed: bool


class ContractResponse(BaseModel):
    contractId: str
    contractCode: str
    contactRequestId: str
    studentId: str
    tutorId: str
    status: str
    statusLabel: str

    title: str
    description: Optional[str] = None
    subject: Optional[str] = None
    totalSessions: int
    pricePerSession: int
    totalAmount: int
    sessionDuration: int
    learningMode: str
    schedule: Dict[str, Any]
    startDate: str
    expectedEndDate: str
    location: Optional[Dict[str, Any]] = None
    onlineInfo: Optional[Dict[str, Any]] = None
    paymentMethod: str
    installments: Optional[int] = None
    downPayment: Optional[int] = None
    terms: Dict[str, Any]

    contractVersion: int
    studentSignature: SignatureState
    tutorSignature: SignatureState
    isSigned: bool
    isLocked: bool
    lockedAtIso: Optional[str] = None
    contractHash: Optional[str] = None

    studentResponse: Optional[Dict[str, Any]] = None
    createdAtIso: str
    expiresAtIso: str
    activatedAtIso: Optional[str] = None
    completedAtIso: Optional[str] = None
    cancelledAtIso: Optional[str] = None
    cancelReason: Optional[str] = None


class ContractListResponse(BaseModel):
    contracts: List[ContractResponse]
    total: int
    page: int
    limit: int


class InstallmentResponse(BaseModel):
    sequence: int
    amount: int
    dueDate: str
    sessionNumbers: List[int]
    status: str
    statusLabel: str
    paidAtIso: Optional[str] = None
    transactionId: Optional[str] = None


class PaymentScheduleResponse(BaseModel):
    contractId: str
    paymentMethod: str
    status: str
    totalAmount: int
    paidAmount: int
    remainingAmount: int
    firstDueDate: str
    lastDueDate: str
    installments: List[InstallmentResponse]


class AuditEntryResponse(BaseModel):
    seq: int
    entryType: str
    actorId: Optional[str] = None
    createdAtIso: str
    prevHash: str
    entryHash: str
    payload: Dict[str, Any]


class SignatureRecordResponse(BaseModel):
    role: str
    signerId: str
    email: str
    contractVersion: int
    signedAtIso: str
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    otpHash: str


class AuditTrailResponse(BaseModel):
    contractId: str
    chainValid: bool
    snapshotValid: Optional[bool] = None
    contractHash: Optional[str] = None
    signatures: List[SignatureRecordResponse]
    entries: List[AuditEntryResponse]
