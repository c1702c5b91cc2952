from fastapi import APIRouter

from contract_engine.api.v1.health import router as health_router
from contract_engine.api.v1.contracts import router as contracts_router
from contract_engine.api.v1.payments import router as payments_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM / CORE
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])

# ------------------------------------------------------------------
# CONTRACTS / SIGNING / AUDIT
# ------------------------------------------------------------------
v1_router.include_router(contracts_router, tags=["contracts"])

# ------------------------------------------------------------------
# PAYMENTS / GATEWAY
# ------------------------------------------------------------------
v1_router.include_router(payments_router, tags=["payments"])
