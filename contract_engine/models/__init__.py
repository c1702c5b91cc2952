# Importing every model registers its table on Base.metadata
# (Alembic autogenerate and create_all in tests rely on it).
from contract_engine.models.contract import Contract
from contract_engine.models.contract_ledger import ContractLedgerEntry
from contract_engine.models.contract_signature import ContractSignature
from contract_engine.models.idempotency_key import IdempotencyKeyRecord
from contract_engine.models.learning_class import ClassSession, LearningClass
from contract_engine.models.otp import OTPRecord
from contract_engine.models.payment import Payment
from contract_engine.models.payment_schedule import Installment, PaymentSchedule

__all__ = [
    "ClassSession",
    "Contract",
    "ContractLedgerEntry",
    "ContractSignature",
    "IdempotencyKeyRecord",
    "Installment",
    "LearningClass",
    "OTPRecord",
    "Payment",
    "PaymentSchedule",
]
