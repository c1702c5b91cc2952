from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from contract_engine.core.clock import as_utc
from contract_engine.core.errors import (
    InvalidSelectionError,
    InvalidSignatureError,
    PaymentNotFoundError,
    PaymentStateError,
    PermissionDeniedError,
    StateConflictError,
)
from contract_engine.db.session import SessionLocal
from contract_engine.models.contract_ledger import ContractLedgerEntry
from contract_engine.models.enums import (
    ClassPaymentStatus,
    ContractStatus,
    InstallmentStatus,
    PaymentStatus,
    ScheduleStatus,
    SessionPaymentStatus,
)
from contract_engine.models.payment import Payment
from contract_engine.models.payment_schedule import Installment, PaymentSchedule
from contract_engine.services import ledger_service as ledger_events
from contract_engine.services import reconciliation_service as reconciliation_module
from contract_engine.services.class_service import ClassService
from contract_engine.services.ledger_service import LedgerService
from contract_engine.services.reconciliation_service import AMOUNT_MISMATCH, LATE_SUCCESS

STUDENT_ID = "student-1"
TUTOR_ID = "tutor-1"

INSTALLMENT_TERMS = {"payment_method": "INSTALLMENT", "installments": 4, "down_payment": 500_000}


def installments(db, contract_id):
    rows = db.execute(
        select(Installment)
        .where(Installment.contract_id == contract_id)
        .order_by(Installment.sequence)
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {r.sequence: r for r in rows}


def schedule_of(db, contract_id):
    return db.execute(
        select(PaymentSchedule)
        .where(PaymentSchedule.contract_id == contract_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


def pay(db, engine_service, contract, sequences):
    return engine_service.initiate(db, contract_id=contract.id, student_id=STUDENT_ID, sequences=sequences)


def payment(db, engine_service, order_ref):
    row = engine_service.get_payment(db, order_ref)
    db.refresh(row)
    return row


def ledger_types(db, contract_id):
    return db.execute(
        select(ContractLedgerEntry.entry_type).where(ContractLedgerEntry.contract_id == contract_id)
    ).scalars().all()


def in_other_session(fn):
    """Run fn(session) on a second session, the way a concurrent request would."""
    other = SessionLocal()
    try:
        return fn(other)
    finally:
        other.close()


# ─────────────────────────────────────────────
# initiate
# ─────────────────────────────────────────────


def test_initiate_claims_installments_and_builds_signed_redirect(db, active_contract, engine_service, clock):
    c = active_contract()
    intent = pay(db, engine_service, c, [1])

    p = intent.payment
    assert p.status == PaymentStatus.PENDING.value
    assert p.amount == 4_000_000
    assert p.order_ref.startswith("ORD") and len(p.order_ref) == 23
    assert as_utc(p.expires_at) == clock() + timedelta(minutes=5)

    assert "vnp_Amount=400000000" in intent.redirect_url
    assert "vnp_SecureHash=" in intent.redirect_url

    inst = installments(db, c.id)[1]
    assert inst.status == InstallmentStatus.PENDING.value
    assert inst.payment_id == p.id
    assert LedgerService().verify_chain(db, contract_id=c.id)


@pytest.mark.parametrize("sequences", [[], [1, 1], [9]])
def test_initiate_rejects_bad_selection(db, active_contract, engine_service, sequences):
    c = active_contract()
    with pytest.raises(InvalidSelectionError):
        pay(db, engine_service, c, sequences)


def test_installment_in_flight_cannot_be_selected_twice(db, active_contract, engine_service):
    c = active_contract(**INSTALLMENT_TERMS)
    pay(db, engine_service, c, [0, 1])

    with pytest.raises(InvalidSelectionError):
        pay(db, engine_service, c, [1, 2])
    # the rejected attempt claimed nothing
    assert installments(db, c.id)[2].status == InstallmentStatus.UNPAID.value


def test_only_the_student_of_an_active_contract_can_pay(db, make_contract, active_contract, engine_service):
    pending = make_contract(contact_request_id="cr-pending")
    with pytest.raises(StateConflictError):
        pay(db, engine_service, pending, [1])

    c = active_contract()
    with pytest.raises(PermissionDeniedError):
        engine_service.initiate(db, contract_id=c.id, student_id=TUTOR_ID, sequences=[1])


def test_payable_and_pending_queries(db, active_contract, engine_service, clock):
    c = active_contract(**INSTALLMENT_TERMS)
    intent = pay(db, engine_service, c, [0])

    payable = engine_service.payable_installments(db, contract_id=c.id, student_id=STUDENT_ID)
    assert [i.sequence for i in payable.installments] == [1, 2, 3, 4]
    assert payable.total_amount == 3_500_000

    pending = engine_service.pending_payment(db, contract_id=c.id, student_id=STUDENT_ID)
    assert pending.order_ref == intent.payment.order_ref

    clock.advance(minutes=6)
    assert engine_service.pending_payment(db, contract_id=c.id, student_id=STUDENT_ID) is None


# ─────────────────────────────────────────────
# settle
# ─────────────────────────────────────────────


def test_success_marks_everything_paid_once(db, active_contract, engine_service, callback, notifier):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref

    outcome = engine_service.settle(db, callback(ref, 4_000_000))
    assert outcome.success is True
    assert outcome.idempotent is False
    assert outcome.status == PaymentStatus.COMPLETED.value

    p = payment(db, engine_service, ref)
    assert p.status == PaymentStatus.COMPLETED.value
    assert p.gateway_transaction_id == "14220001"
    assert p.gateway_raw_response["vnp_TxnRef"] == ref

    inst = installments(db, c.id)[1]
    assert inst.status == InstallmentStatus.PAID.value
    assert inst.transaction_id == "14220001"

    schedule = schedule_of(db, c.id)
    assert schedule.status == ScheduleStatus.COMPLETED.value
    assert (schedule.paid_amount, schedule.remaining_amount) == (4_000_000, 0)

    klass = ClassService().get_for_contract(db, c.id)
    db.refresh(klass)
    assert klass.payment_status == ClassPaymentStatus.COMPLETED.value
    assert all(s.payment_status == SessionPaymentStatus.PAID.value for s in klass.sessions)

    assert "PAYMENT_SUCCESS" in notifier.events_for(STUDENT_ID)
    assert "PAYMENT_SUCCESS" in notifier.events_for(TUTOR_ID)

    again = engine_service.settle(db, callback(ref, 4_000_000))
    assert again.success is True
    assert again.idempotent is True
    assert schedule_of(db, c.id).paid_amount == 4_000_000
    assert LedgerService().verify_chain(db, contract_id=c.id)


def test_partial_payment_keeps_schedule_active(db, active_contract, engine_service, callback):
    c = active_contract(**INSTALLMENT_TERMS)
    ref = pay(db, engine_service, c, [0, 1]).payment.order_ref
    engine_service.settle(db, callback(ref, 1_375_000))

    schedule = schedule_of(db, c.id)
    assert schedule.status == ScheduleStatus.ACTIVE.value
    assert (schedule.paid_amount, schedule.remaining_amount) == (1_375_000, 2_625_000)

    klass = ClassService().get_for_contract(db, c.id)
    db.refresh(klass)
    assert klass.payment_status == ClassPaymentStatus.PARTIAL.value
    paid = sorted(s.session_number for s in klass.sessions if s.payment_status == SessionPaymentStatus.PAID.value)
    assert paid == [1, 2, 3, 4, 5]


def test_failure_releases_installments(db, active_contract, engine_service, callback, notifier):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref

    outcome = engine_service.settle(db, callback(ref, 4_000_000, status="02"))
    assert outcome.success is False
    assert outcome.reason == "GATEWAY_02"

    assert payment(db, engine_service, ref).status == PaymentStatus.FAILED.value
    inst = installments(db, c.id)[1]
    assert inst.status == InstallmentStatus.UNPAID.value
    assert inst.payment_id is None
    assert "PAYMENT_FAILED" in notifier.events_for(STUDENT_ID)

    # released installments can be paid again
    assert pay(db, engine_service, c, [1]).payment.order_ref != ref


def test_amount_mismatch_fails_the_payment(db, active_contract, engine_service, callback):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref

    outcome = engine_service.settle(db, callback(ref, 3_999_999))
    assert outcome.success is False
    assert outcome.reason == AMOUNT_MISMATCH

    p = payment(db, engine_service, ref)
    assert p.status == PaymentStatus.FAILED.value
    assert p.failure_reason == AMOUNT_MISMATCH
    assert installments(db, c.id)[1].status == InstallmentStatus.UNPAID.value
    assert schedule_of(db, c.id).paid_amount == 0


def test_forged_callback_changes_nothing(db, active_contract, engine_service, callback):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref

    with pytest.raises(InvalidSignatureError):
        engine_service.settle(db, callback(ref, 4_000_000, secret="forged"))

    assert payment(db, engine_service, ref).status == PaymentStatus.PENDING.value
    assert installments(db, c.id)[1].status == InstallmentStatus.PENDING.value


def test_unknown_order_is_not_found(db, engine_service, callback):
    with pytest.raises(PaymentNotFoundError):
        engine_service.settle(db, callback("ORD00000000000000000000", 100))


def test_stale_failure_after_success_keeps_installments_paid(db, active_contract, engine_service, callback):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(ref, 4_000_000))

    outcome = engine_service.settle(db, callback(ref, 4_000_000, status="02"))
    assert outcome.idempotent is True
    assert payment(db, engine_service, ref).status == PaymentStatus.COMPLETED.value
    assert installments(db, c.id)[1].status == InstallmentStatus.PAID.value


def test_success_after_expiry_is_flagged_not_applied(db, active_contract, engine_service, callback, clock):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref

    clock.advance(minutes=6)
    assert engine_service.expire_pending_payments(db) == 1
    assert payment(db, engine_service, ref).status == PaymentStatus.CANCELLED.value
    assert installments(db, c.id)[1].status == InstallmentStatus.UNPAID.value

    outcome = engine_service.settle(db, callback(ref, 4_000_000))
    assert outcome.success is False
    assert outcome.reason == LATE_SUCCESS
    assert payment(db, engine_service, ref).status == PaymentStatus.CANCELLED.value
    assert installments(db, c.id)[1].status == InstallmentStatus.UNPAID.value


# ─────────────────────────────────────────────
# concurrent requests
# ─────────────────────────────────────────────


def test_initiate_that_loses_the_claim_leaves_no_trace(db, active_contract, engine_service, monkeypatch):
    c = active_contract()
    contract_id = c.id
    real_order_ref = reconciliation_module.new_order_ref
    rival = []

    def racing_order_ref():
        if not rival:
            # another checkout claims installment 1 after our read, before our claim
            rival.append(None)
            rival[0] = in_other_session(
                lambda other: engine_service.initiate(
                    other, contract_id=contract_id, student_id=STUDENT_ID, sequences=[1]
                ).payment.id
            )
        return real_order_ref()

    monkeypatch.setattr(reconciliation_module, "new_order_ref", racing_order_ref)

    with pytest.raises(InvalidSelectionError):
        pay(db, engine_service, c, [1])

    assert db.execute(select(func.count(Payment.id))).scalar_one() == 1
    inst = installments(db, contract_id)[1]
    assert inst.status == InstallmentStatus.PENDING.value
    assert inst.payment_id == rival[0]
    assert ledger_types(db, contract_id).count(ledger_events.PAYMENT_INITIATED) == 1


def _race_close_with(monkeypatch, engine_service, payload):
    """The first close attempt is preceded by a concurrent settle of payload."""
    real_close = engine_service._close_payment
    raced = []

    def racing_close(db, payment, **kwargs):
        if not raced:
            raced.append(None)
            raced[0] = in_other_session(lambda other: engine_service.settle(other, payload))
        return real_close(db, payment, **kwargs)

    monkeypatch.setattr(engine_service, "_close_payment", racing_close)
    return raced


def test_duplicate_success_callbacks_apply_once(db, active_contract, engine_service, callback, notifier, monkeypatch):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    raced = _race_close_with(monkeypatch, engine_service, callback(ref, 4_000_000))

    outcome = engine_service.settle(db, callback(ref, 4_000_000))
    assert raced[0].success is True and raced[0].idempotent is False
    assert outcome.success is True
    assert outcome.idempotent is True

    assert payment(db, engine_service, ref).status == PaymentStatus.COMPLETED.value
    assert installments(db, c.id)[1].status == InstallmentStatus.PAID.value
    assert schedule_of(db, c.id).paid_amount == 4_000_000
    assert ledger_types(db, c.id).count(ledger_events.PAYMENT_COMPLETED) == 1
    assert notifier.events_for(STUDENT_ID).count("PAYMENT_SUCCESS") == 1
    assert LedgerService().verify_chain(db, contract_id=c.id)


def test_failure_that_loses_to_a_concurrent_success_changes_nothing(
    db, active_contract, engine_service, callback, monkeypatch
):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    _race_close_with(monkeypatch, engine_service, callback(ref, 4_000_000))

    outcome = engine_service.settle(db, callback(ref, 4_000_000, status="02"))
    assert outcome.success is True
    assert outcome.idempotent is True

    p = payment(db, engine_service, ref)
    assert p.status == PaymentStatus.COMPLETED.value
    assert p.failure_reason is None
    assert installments(db, c.id)[1].status == InstallmentStatus.PAID.value
    assert ledger_events.PAYMENT_FAILED not in ledger_types(db, c.id)


def test_reprocess_converges_a_half_applied_payment(db, active_contract, engine_service, callback):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(ref, 4_000_000))

    # simulate a crash between closing the payment and updating the schedule
    schedule = schedule_of(db, c.id)
    db.execute(
        update(Installment)
        .where(Installment.schedule_id == schedule.id)
        .values(status=InstallmentStatus.PENDING.value)
    )
    db.execute(
        update(PaymentSchedule)
        .where(PaymentSchedule.id == schedule.id)
        .values(status=ScheduleStatus.ACTIVE.value, completed_at=None)
    )
    db.commit()

    outcome = engine_service.reprocess(db, ref)
    assert outcome.success is True
    assert outcome.idempotent is True
    assert installments(db, c.id)[1].status == InstallmentStatus.PAID.value
    assert schedule_of(db, c.id).status == ScheduleStatus.COMPLETED.value


def test_reprocess_needs_a_stored_response(db, active_contract, engine_service):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    with pytest.raises(PaymentStateError):
        engine_service.reprocess(db, ref)


def test_contract_completes_once_fully_paid(db, active_contract, engine_service, callback, lifecycle):
    c = active_contract()
    ref = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(ref, 4_000_000))

    done = lifecycle.complete(db, contract_id=c.id, actor_id=TUTOR_ID)
    assert done.status == ContractStatus.COMPLETED.value


# ─────────────────────────────────────────────
# overdue / history
# ─────────────────────────────────────────────


def test_mark_overdue_respects_grace_period(db, active_contract, engine_service, clock):
    c = active_contract(**INSTALLMENT_TERMS)

    # first due date is 2026-11-02, grace is 3 days
    clock.now = clock.now.replace(month=11, day=5)
    assert engine_service.mark_overdue(db) == 0

    clock.advance(days=1)
    assert engine_service.mark_overdue(db) == 1
    rows = installments(db, c.id)
    assert rows[0].status == InstallmentStatus.OVERDUE.value
    assert rows[1].status == InstallmentStatus.UNPAID.value

    # overdue installments stay payable
    assert pay(db, engine_service, c, [0]).payment.amount == 500_000


def test_payment_history_is_paginated_and_filterable(db, active_contract, engine_service, callback, clock):
    c = active_contract()
    failed = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(failed, 4_000_000, status="02"))
    clock.advance(minutes=1)
    done = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(done, 4_000_000))

    rows, total = engine_service.payment_history(db, student_id=STUDENT_ID)
    assert total == 2
    assert [r.order_ref for r in rows] == [done, failed]

    rows, total = engine_service.payment_history(db, student_id=STUDENT_ID, status=PaymentStatus.FAILED.value)
    assert (total, rows[0].order_ref) == (1, failed)

    rows, total = engine_service.payment_history(db, student_id=STUDENT_ID, page=2, limit=1)
    assert total == 2
    assert [r.order_ref for r in rows] == [failed]

    assert engine_service.payment_history(db, student_id=TUTOR_ID) == ([], 0)


def test_admin_payment_listing_filters(db, active_contract, engine_service, callback, clock):
    c = active_contract()
    failed = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(failed, 4_000_000, status="02"))
    started = clock.advance(hours=1)
    done = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(done, 4_000_000))

    rows, total = engine_service.list_payments(db)
    assert total == 2
    assert [r.order_ref for r in rows] == [done, failed]

    rows, total = engine_service.list_payments(db, contract_id=c.id, status=PaymentStatus.COMPLETED.value)
    assert (total, rows[0].order_ref) == (1, done)

    rows, total = engine_service.list_payments(db, created_from=started)
    assert [r.order_ref for r in rows] == [done]
    rows, total = engine_service.list_payments(db, created_to=started - timedelta(minutes=1))
    assert [r.order_ref for r in rows] == [failed]

    rows, total = engine_service.list_payments(db, search="14220001")
    assert total == 2
    rows, total = engine_service.list_payments(db, search=failed[3:12].lower())
    assert [r.order_ref for r in rows] == [failed]

    assert engine_service.list_payments(db, student_id=TUTOR_ID) == ([], 0)


def test_payment_stats_group_by_status(db, active_contract, engine_service, callback, clock):
    c = active_contract()
    assert engine_service.payment_stats(db).total_count == 0

    failed = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(failed, 4_000_000, status="02"))
    clock.advance(minutes=1)
    done = pay(db, engine_service, c, [1]).payment.order_ref
    engine_service.settle(db, callback(done, 4_000_000))

    stats = engine_service.payment_stats(db)
    assert stats.count_by_status == {PaymentStatus.FAILED.value: 1, PaymentStatus.COMPLETED.value: 1}
    assert stats.amount_by_status[PaymentStatus.FAILED.value] == 4_000_000
    assert stats.revenue == 4_000_000
    assert stats.total_count == 2

    later = engine_service.payment_stats(db, created_from=clock() + timedelta(minutes=1))
    assert later.total_count == 0 and later.revenue == 0
