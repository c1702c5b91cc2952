"""contracts, schedules, payments, signing and audit tables

Revision ID: 0001_contract_engine_core
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_contract_engine_core"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
TS = sa.DateTime(timezone=True)


def upgrade():
    # ─────────── contracts ───────────
    op.create_table(
        "contracts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("contact_request_id", sa.String(64), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("subject", sa.String(128), nullable=True),
        sa.Column("contract_code", sa.String(32), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("price_per_session", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("session_duration", sa.Integer(), nullable=False),
        sa.Column("learning_mode", sa.String(16), nullable=False),
        sa.Column("schedule_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("expected_end_date", sa.Date(), nullable=False),
        sa.Column("location_json", postgresql.JSONB, nullable=True),
        sa.Column("online_info_json", postgresql.JSONB, nullable=True),
        sa.Column("payment_method", sa.String(16), nullable=False, server_default=sa.text("'FULL'")),
        sa.Column("installments", sa.Integer(), nullable=True),
        sa.Column("down_payment", sa.BigInteger(), nullable=True),
        sa.Column("terms_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("student_response_json", postgresql.JSONB, nullable=True),
        sa.Column("student_signed_at", TS, nullable=True),
        sa.Column("tutor_signed_at", TS, nullable=True),
        sa.Column("student_sign_ip", sa.String(64), nullable=True),
        sa.Column("tutor_sign_ip", sa.String(64), nullable=True),
        sa.Column("contract_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_signed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("locked_at", TS, nullable=True),
        sa.Column("contract_hash", sa.String(128), nullable=True),
        sa.Column("snapshot_json", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("activated_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("rejected_at", TS, nullable=True),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        sa.CheckConstraint("total_sessions >= 1 AND total_sessions <= 100", name="ck_contracts_total_sessions"),
        sa.CheckConstraint("total_amount = total_sessions * price_per_session", name="ck_contracts_total_amount"),
    )
    op.create_index("ix_contracts_student_status", "contracts", ["student_id", "status"])
    op.create_index("ix_contracts_tutor_status", "contracts", ["tutor_id", "status"])
    op.create_index("ix_contracts_contact_request", "contracts", ["contact_request_id"])
    op.create_index("ix_contracts_status_expires", "contracts", ["status", "expires_at"])

    # ─────────── signatures / otp ───────────
    op.create_table(
        "contract_signatures",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("contract_id", UUID, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("contract_version", sa.Integer(), nullable=False),
        sa.Column("signer_id", sa.String(64), nullable=False),
        sa.Column("signer_role", sa.String(16), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("otp_hash", sa.String(128), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("consent_text", sa.Text(), nullable=False),
        sa.Column("signed_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_contract_signatures_contract_role", "contract_signatures", ["contract_id", "signer_role"])
    op.create_index("ix_contract_signatures_signer", "contract_signatures", ["signer_id", "signed_at"])

    op.create_table(
        "otp_records",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("contract_id", UUID, nullable=False),
        sa.Column("signer_role", sa.String(16), nullable=False),
        sa.Column("purpose", sa.String(32), nullable=False),
        sa.Column("code_hash", sa.String(255), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", TS, nullable=False),
    )
    op.create_index("ix_otp_binding", "otp_records", ["email", "contract_id", "signer_role", "purpose"])
    op.create_index("ix_otp_rate_window", "otp_records", ["email", "contract_id", "created_at"])

    # ─────────── ledger / idempotency ───────────
    op.create_table(
        "contract_ledger_entries",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("contract_id", UUID, nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("prev_hash", sa.String(128), nullable=False),
        sa.Column("entry_hash", sa.String(128), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("payload_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.UniqueConstraint("contract_id", "seq", name="uq_contract_ledger_seq"),
    )
    op.create_index("ix_contract_ledger_type", "contract_ledger_entries", ["entry_type"])

    op.create_table(
        "idempotency_key_records",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("principal_id", sa.String(128), nullable=False),
        sa.Column("endpoint_key", sa.String(64), nullable=False),
        sa.Column("idem_key", sa.String(128), nullable=False),
        sa.Column("request_hash", sa.String(128), nullable=False),
        sa.Column("response_status", sa.String(16), nullable=False, server_default=sa.text("'200'")),
        sa.Column("response_json", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("principal_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
    )

    # ─────────── schedules / payments ───────────
    op.create_table(
        "payment_schedules",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "contract_id", UUID, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("paid_amount", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("remaining_amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("first_due_date", sa.Date(), nullable=False),
        sa.Column("last_due_date", sa.Date(), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.CheckConstraint("paid_amount >= 0", name="ck_payment_schedules_paid_nonneg"),
    )
    op.create_index("ix_payment_schedules_student", "payment_schedules", ["student_id"])

    op.create_table(
        "installments",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "schedule_id", UUID, sa.ForeignKey("payment_schedules.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("contract_id", UUID, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("session_numbers", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payment_id", UUID, nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("paid_at", TS, nullable=True),
        sa.UniqueConstraint("schedule_id", "sequence", name="uq_installments_schedule_sequence"),
        sa.CheckConstraint("sequence >= 0", name="ck_installments_sequence_nonneg"),
        sa.CheckConstraint("amount >= 0", name="ck_installments_amount_nonneg"),
    )
    op.create_index("ix_installments_contract_status", "installments", ["contract_id", "status"])

    op.create_table(
        "payments",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("order_ref", sa.String(64), nullable=False, unique=True),
        sa.Column("contract_id", UUID, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "schedule_id", UUID, sa.ForeignKey("payment_schedules.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("installment_sequences", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("gateway", sa.String(16), nullable=False, server_default=sa.text("'VNPAY'")),
        sa.Column("gateway_transaction_id", sa.String(64), nullable=True),
        sa.Column("gateway_response_code", sa.String(8), nullable=True),
        sa.Column("gateway_transaction_status", sa.String(8), nullable=True),
        sa.Column("gateway_bank_code", sa.String(32), nullable=True),
        sa.Column("gateway_card_type", sa.String(32), nullable=True),
        sa.Column("gateway_raw_response", postgresql.JSONB, nullable=True),
        sa.Column("failure_reason", sa.String(64), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("paid_at", TS, nullable=True),
        sa.Column("closed_at", TS, nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )
    op.create_index("ix_payments_contract_status", "payments", ["contract_id", "status"])
    op.create_index("ix_payments_student_status", "payments", ["student_id", "status"])
    op.create_index("ix_payments_status_expires", "payments", ["status", "expires_at"])

    # ─────────── classes ───────────
    op.create_table(
        "learning_classes",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "contract_id", UUID, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("price_per_session", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("paid_amount", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.text("now()")),
    )
    op.create_table(
        "class_sessions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column(
            "class_id", UUID, sa.ForeignKey("learning_classes.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("session_number", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("paid_at", TS, nullable=True),
        sa.Column("payment_id", UUID, nullable=True),
        sa.UniqueConstraint("class_id", "session_number", name="uq_class_sessions_number"),
    )


def downgrade():
    op.drop_table("class_sessions")
    op.drop_table("learning_classes")
    op.drop_index("ix_payments_status_expires", table_name="payments")
    op.drop_index("ix_payments_student_status", table_name="payments")
    op.drop_index("ix_payments_contract_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_installments_contract_status", table_name="installments")
    op.drop_table("installments")
    op.drop_index("ix_payment_schedules_student", table_name="payment_schedules")
    op.drop_table("payment_schedules")
    op.drop_table("idempotency_key_records")
    op.drop_index("ix_contract_ledger_type", table_name="contract_ledger_entries")
    op.drop_table("contract_ledger_entries")
    op.drop_index("ix_otp_rate_window", table_name="otp_records")
    op.drop_index("ix_otp_binding", table_name="otp_records")
    op.drop_table("otp_records")
    op.drop_index("ix_contract_signatures_signer", table_name="contract_signatures")
    op.drop_index("ix_contract_signatures_contract_role", table_name="contract_signatures")
    op.drop_table("contract_signatures")
    op.drop_index("ix_contracts_status_expires", table_name="contracts")
    op.drop_index("ix_contracts_contact_request", table_name="contracts")
    op.drop_index("ix_contracts_tutor_status", table_name="contracts")
    op.drop_index("ix_contracts_student_status", table_name="contracts")
    op.drop_table("contracts")
