from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from contract_engine.schemas.contracts import CamelPayload


class SigningVerifyPayload(CamelPayload):
    code: str = Field(..., pattern=r"^\d{6}$")
    consent_text: Optional[str] = Field(default=None, max_length=2000)


class OTPIssuedResponse(BaseModel):
    contractId: str
    role: str
    sentTo: str
    expiresAtIso: str


class SigningResultResponse(BaseModel):
    contractId: str
    role: str
    status: str
    isLocked: bool
    contractHash: Optional[str] = None
