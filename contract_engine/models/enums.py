#contract_engine/models/enums.py
from __future__ import annotations
from enum import Enum


class UserRole(str, Enum):
    STUDENT = "STUDENT"
    TUTOR = "TUTOR"
    ADMIN = "ADMIN"


class SignerRole(str, Enum):
    STUDENT = "student"
    TUTOR = "tutor"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_STUDENT_APPROVAL = "PENDING_STUDENT_APPROVAL"
    PENDING_TUTOR_APPROVAL = "PENDING_TUTOR_APPROVAL"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    # absorbing
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


PRE_ACTIVE_STATUSES = frozenset(
    {
        ContractStatus.DRAFT.value,
        ContractStatus.PENDING_STUDENT_APPROVAL.value,
        ContractStatus.PENDING_TUTOR_APPROVAL.value,
    }
)

TERMINAL_CONTRACT_STATUSES = frozenset(
    {
        ContractStatus.REJECTED.value,
        ContractStatus.CANCELLED.value,
        ContractStatus.EXPIRED.value,
    }
)


class LearningMode(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class PaymentMethod(str, Enum):
    FULL = "FULL"
    INSTALLMENT = "INSTALLMENT"


class StudentResponseAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    REQUEST_CHANGES = "REQUEST_CHANGES"


class InstallmentStatus(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


PAYABLE_INSTALLMENT_STATUSES = frozenset(
    {InstallmentStatus.UNPAID.value, InstallmentStatus.OVERDUE.value}
)


class ScheduleStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class OTPPurpose(str, Enum):
    CONTRACT_SIGNING = "CONTRACT_SIGNING"


class SessionPaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class ClassPaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"
