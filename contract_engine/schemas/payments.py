from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from contract_engine.schemas.contracts import CamelPayload, InstallmentResponse


class InitiatePaymentPayload(CamelPayload):
    contract_id: str
    installment_sequences: List[int] = Field(..., min_length=1, max_length=13)
    return_url: Optional[str] = Field(default=None, max_length=1000)
    locale: Optional[Literal["vn", "en"]] = None


class PaymentIntentResponse(BaseModel):
    orderRef: str
    paymentUrl: str
    amount: int
    installmentSequences: List[int]
    expiresAtIso: str


class PaymentResponse(BaseModel):
    orderRef: str
    contractId: str
    amount: int
    installmentSequences: List[int]
    status: str
    statusLabel: str
    createdAtIso: str
    expiresAtIso: str
    paidAtIso: Optional[str] = None
    transactionId: Optional[str] = None
    bankCode: Optional[str] = None


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    limit: int


class AdminPaymentResponse(PaymentResponse):
    studentId: str
    tutorId: str
    failureReason: Optional[str] = None


class AdminPaymentListResponse(BaseModel):
    payments: List[AdminPaymentResponse]
    total: int
    page: int
    limit: int


class PaymentStatusStat(BaseModel):
    status: str
    statusLabel: str
    count: int
    amount: int


class PaymentStatsResponse(BaseModel):
    byStatus: List[PaymentStatusStat]
    totalCount: int
    revenue: int


class PayableInstallmentsResponse(BaseModel):
    contractId: str
    installments: List[InstallmentResponse]
    totalAmount: int


class SettlementResponse(BaseModel):
    """Payment outcome as shown to users: no gateway internals, only the order reference."""

    success: bool
    orderRef: str
    status: str
    message: str


class SweepResponse(BaseModel):
    paymentsCancelled: int
    contractsExpired: int
    installmentsOverdue: int
