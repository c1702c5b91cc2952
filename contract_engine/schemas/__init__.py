from contract_engine.schemas.contracts import (
    ContractAmendPayload,
    ContractCancelPayload,
    ContractCreatePayload,
    ContractRespondPayload,
    ContractResponse,
    PaymentScheduleResponse,
)
from contract_engine.schemas.payments import InitiatePaymentPayload, PaymentResponse, SettlementResponse
from contract_engine.schemas.signatures import SigningVerifyPayload
