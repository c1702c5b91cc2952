# contract_engine/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Set

from contract_engine.core.errors import PermissionDeniedError
from contract_engine.models.enums import UserRole


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: UserRole
    email: str
    display_name: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# --- Core action constants ---
ACTION_CREATE_CONTRACT = "CREATE_CONTRACT"
ACTION_AMEND_CONTRACT = "AMEND_CONTRACT"
ACTION_RESPOND_CONTRACT = "RESPOND_CONTRACT"
ACTION_SIGN_CONTRACT = "SIGN_CONTRACT"
ACTION_CANCEL_CONTRACT = "CANCEL_CONTRACT"
ACTION_COMPLETE_CONTRACT = "COMPLETE_CONTRACT"
ACTION_PAY = "PAY"
ACTION_VIEW_ANY = "VIEW_ANY"
ACTION_REPROCESS_PAYMENT = "REPROCESS_PAYMENT"
ACTION_RUN_SWEEP = "RUN_SWEEP"


def allowed_actions(role: UserRole) -> Set[str]:
    """
    Pure RBAC: which actions a role may attempt.
    Party checks (is this *your* contract) happen in the services.
    """

    if role == UserRole.TUTOR:
        return {
            ACTION_CREATE_CONTRACT,
            ACTION_AMEND_CONTRACT,
            ACTION_SIGN_CONTRACT,
            ACTION_CANCEL_CONTRACT,
            ACTION_COMPLETE_CONTRACT,
        }

    if role == UserRole.STUDENT:
        return {
            ACTION_RESPOND_CONTRACT,
            ACTION_SIGN_CONTRACT,
            ACTION_CANCEL_CONTRACT,
            ACTION_COMPLETE_CONTRACT,
            ACTION_PAY,
        }

    if role == UserRole.ADMIN:
        return {
            ACTION_CANCEL_CONTRACT,
            ACTION_COMPLETE_CONTRACT,
            ACTION_VIEW_ANY,
            ACTION_REPROCESS_PAYMENT,
            ACTION_RUN_SWEEP,
        }

    return set()


def require_action(principal: Principal, action: str) -> None:
    if action not in allowed_actions(principal.role):
        raise PermissionDeniedError(
            f"Role {principal.role.value} not permitted for action {action}."
        )
