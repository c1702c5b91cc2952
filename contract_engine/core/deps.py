# contract_engine/core/deps.py
"""
Service wiring for the HTTP layer. Every factory is a FastAPI dependency so
tests can swap collaborators through app.dependency_overrides.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import BackgroundTasks, Depends

from contract_engine.core.config import get_settings
from contract_engine.db.session import get_session_factory
from contract_engine.services.class_service import (
    BackgroundClassActivationHook,
    ClassActivationHook,
    SessionClassActivationHook,
)
from contract_engine.services.contract_lifecycle import ContractLifecycleManager
from contract_engine.services.email_service import EmailSender, build_email_sender
from contract_engine.services.notifier import Notifier
from contract_engine.services.payment_gateway import PaymentGatewayAdapter, VNPayGateway
from contract_engine.services.reconciliation_service import ReconciliationEngine
from contract_engine.services.signature_otp_service import SignatureOTPService


@lru_cache(maxsize=1)
def get_email_sender() -> EmailSender:
    return build_email_sender(get_settings())


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return Notifier()


def get_gateway() -> PaymentGatewayAdapter:
    return VNPayGateway(get_settings())


def get_activation_hook(
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
) -> ClassActivationHook:
    return BackgroundClassActivationHook(background_tasks, SessionClassActivationHook(session_factory))


def get_lifecycle(
    notifier: Notifier = Depends(get_notifier),
    activation_hook: ClassActivationHook = Depends(get_activation_hook),
) -> ContractLifecycleManager:
    return ContractLifecycleManager(
        notifier=notifier,
        activation_hook=activation_hook,
        settings=get_settings(),
    )


def get_otp_service(email_sender: EmailSender = Depends(get_email_sender)) -> SignatureOTPService:
    return SignatureOTPService(email_sender=email_sender, settings=get_settings())


def get_reconciliation(
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> ReconciliationEngine:
    return ReconciliationEngine(gateway=gateway, notifier=notifier, settings=get_settings())
