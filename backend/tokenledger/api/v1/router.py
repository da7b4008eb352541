from fastapi import APIRouter

from tokenledger.api.v1 import billing, health, jobs, plan, promo

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(billing.router)
api_router.include_router(plan.router)
api_router.include_router(promo.router)
api_router.include_router(jobs.router)
api_router.include_router(health.router)
