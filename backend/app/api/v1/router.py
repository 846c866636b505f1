from fastapi import APIRouter

from app.api.v1.endpoints import (
    budgets,
    compilations,
    health,
    payments,
    requisitions,
    settings,
)

api_router = APIRouter()

# Routes techniques
api_router.include_router(health.router, tags=["health"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])

# Routes métier
api_router.include_router(requisitions.router, prefix="/requisitions", tags=["requisitions"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(budgets.router, prefix="/budgets", tags=["budgets"])
api_router.include_router(compilations.router, prefix="/compilations", tags=["compilations"])
