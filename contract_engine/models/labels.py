"""
Human-readable copy for the closed status enums.

The enums in models/enums.py are the single source of truth for domain
state; this module only supplies display text and never decides an outcome.
"""
from __future__ import annotations

from typing import Dict

from contract_engine.models.enums import (
    ContractStatus,
    InstallmentStatus,
    PaymentStatus,
)


CONTRACT_STATUS_LABELS: Dict[str, str] = {
    ContractStatus.DRAFT.value: "Draft",
    ContractStatus.PENDING_STUDENT_APPROVAL.value: "Waiting for the student",
    ContractStatus.PENDING_TUTOR_APPROVAL.value: "Waiting for the tutor",
    ContractStatus.ACTIVE.value: "Active",
    ContractStatus.COMPLETED.value: "Completed",
    ContractStatus.REJECTED.value: "Rejected by the student",
    ContractStatus.CANCELLED.value: "Cancelled",
    ContractStatus.EXPIRED.value: "Expired before signature",
}

INSTALLMENT_STATUS_LABELS: Dict[str, str] = {
    InstallmentStatus.UNPAID.value: "Unpaid",
    InstallmentStatus.PENDING.value: "Payment in progress",
    InstallmentStatus.PAID.value: "Paid",
    InstallmentStatus.OVERDUE.value: "Overdue",
    InstallmentStatus.CANCELLED.value: "Cancelled",
}

PAYMENT_STATUS_LABELS: Dict[str, str] = {
    PaymentStatus.PENDING.value: "Waiting for the payment gateway",
    PaymentStatus.COMPLETED.value: "Payment successful",
    PaymentStatus.FAILED.value: "Payment failed",
    PaymentStatus.CANCELLED.value: "Payment expired",
}

# vnp_TransactionStatus -> message (the authoritative gateway signal)
GATEWAY_TRANSACTION_STATUS_LABELS: Dict[str, str] = {
    "00": "Transaction successful",
    "01": "Transaction not completed",
    "02": "Transaction error",
    "04": "Reversed transaction (debited at the bank, not completed at the gateway)",
    "05": "Gateway is processing this transaction (refund)",
    "06": "Refund request sent to the bank",
    "07": "Transaction suspected of fraud",
    "09": "Refund rejected",
}


def label(table: Dict[str, str], value: str) -> str:
    return table.get(value, "Unknown")
