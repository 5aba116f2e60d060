# API Routes
from .job_routes import router as job_router

__all__ = [
    "job_router",
]
