from fastapi import APIRouter

from app.api.v1.routers import (
    health,
    loan_adjustments,
    loan_payments,
    payment_processor,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loan_payments.router)
api_router.include_router(loan_adjustments.router)
api_router.include_router(payment_processor.router)

__all__ = ["api_router"]
