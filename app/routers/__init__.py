"""API routers for the reconciliation service."""
from fastapi import APIRouter

from . import accounts, budget, earnings, health, payments, psp, rails


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(budget.router)
    api_router.include_router(earnings.router)
    api_router.include_router(accounts.router)
    api_router.include_router(payments.router)
    api_router.include_router(psp.router)
    api_router.include_router(rails.router)
    return api_router
