#contract_engine/core/auth_deps.py
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from contract_engine.core.security import decode_token
from contract_engine.models.enums import UserRole
from contract_engine.policies.rbac import Principal

bearer = HTTPBearer(auto_error=True)


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Principal:
    """
    Canonical authentication dependency.

    Guarantees:
    - JWT is valid
    - sub and role are present, role is a valid UserRole
    - email is present for signing parties (codes are sent there)
    """

    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")

    user_id = payload.get("sub")
    role = payload.get("role")
    email = payload.get("email") or ""
    display_name = payload.get("display_name") or "Unknown"

    if not role or not user_id:
        raise HTTPException(status_code=401, detail="Token missing required claims.")

    try:
        role_enum = UserRole(role)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid role in token.")

    principal = Principal(
        user_id=str(user_id),
        role=role_enum,
        email=str(email),
        display_name=str(display_name),
    )

    # Make principal available to downstream middleware / handlers
    request.state.principal = principal

    return principal
