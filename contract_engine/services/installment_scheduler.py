#contract_engine/services/installment_scheduler.py
from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from contract_engine.core.errors import InvalidPaymentTermsError
from contract_engine.models.enums import PaymentMethod

MIN_INSTALLMENTS = 2
MAX_INSTALLMENTS = 12


@dataclass(frozen=True)
class PlannedInstallment:
    sequence: int
    amount: int
    due_date: date
    session_numbers: List[int] = field(default_factory=list)


def add_months(d: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the last day of a short month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def split_sessions(total_sessions: int, groups: int) -> List[List[int]]:
    """
    Contiguous 1-based session groups; earlier groups take the extra session
    when total_sessions does not divide evenly.
    """
    base, extra = divmod(total_sessions, groups)
    out: List[List[int]] = []
    start = 1
    for i in range(groups):
        size = base + (1 if i < extra else 0)
        out.append(list(range(start, start + size)))
        start += size
    return out


def validate_payment_terms(
    *,
    payment_method: str,
    total_amount: int,
    total_sessions: int,
    installments: Optional[int],
    down_payment: Optional[int],
) -> None:
    if payment_method == PaymentMethod.FULL.value:
        return
    if payment_method != PaymentMethod.INSTALLMENT.value:
        raise InvalidPaymentTermsError(f"Unknown payment method {payment_method!r}.")

    if installments is None or not (MIN_INSTALLMENTS <= installments <= MAX_INSTALLMENTS):
        raise InvalidPaymentTermsError(
            f"Installment count must be between {MIN_INSTALLMENTS} and {MAX_INSTALLMENTS}."
        )
    if installments > total_sessions:
        raise InvalidPaymentTermsError("Installment count cannot exceed the number of sessions.")

    dp = down_payment or 0
    if dp < 0:
        raise InvalidPaymentTermsError("Down payment cannot be negative.")
    if dp >= total_amount:
        raise InvalidPaymentTermsError("Down payment must be smaller than the contract total.")


class InstallmentScheduler:
    """
    Pure schedule generation. No I/O; persistence is the ContractStore's job.

    Conservation: sum(amount) over the returned list == contract.total_amount.
    """

    def generate(self, contract) -> List[PlannedInstallment]:
        total = int(contract.total_amount)
        sessions = int(contract.total_sessions)
        start: date = contract.start_date

        validate_payment_terms(
            payment_method=contract.payment_method,
            total_amount=total,
            total_sessions=sessions,
            installments=contract.installments,
            down_payment=contract.down_payment,
        )

        if contract.payment_method == PaymentMethod.FULL.value:
            return [
                PlannedInstallment(
                    sequence=1,
                    amount=total,
                    due_date=start,
                    session_numbers=list(range(1, sessions + 1)),
                )
            ]

        n = int(contract.installments)
        down = int(contract.down_payment or 0)

        planned: List[PlannedInstallment] = []
        if down > 0:
            planned.append(PlannedInstallment(sequence=0, amount=down, due_date=start, session_numbers=[]))

        # with a down payment due at start, the first regular installment is due a month later
        month_offset = 1 if down > 0 else 0

        base, remainder = divmod(total - down, n)
        groups = split_sessions(sessions, n)
        for i in range(n):
            amount = base + (remainder if i == n - 1 else 0)
            planned.append(
                PlannedInstallment(
                    sequence=i + 1,
                    amount=amount,
                    due_date=add_months(start, i + month_offset),
                    session_numbers=groups[i],
                )
            )
        return planned
