from fastapi import APIRouter

from taxis.api.v1.endpoints import jobs, uploads, watchdog

# Create API router
api_router = APIRouter()

# Include routers
api_router.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
api_router.include_router(watchdog.router, prefix="/watchdog", tags=["Watchdog"])

__all__ = ["api_router"]
