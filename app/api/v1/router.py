from fastapi import APIRouter

from app.api.v1.batch_jobs import router as batch_jobs_router
from app.api.v1.generate import router as generate_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(generate_router)
api_v1_router.include_router(batch_jobs_router)
