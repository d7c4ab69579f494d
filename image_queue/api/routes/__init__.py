"""
API routes module.
"""

from image_queue.api.routes.health import router as health_router
from image_queue.api.routes.jobs import router as jobs_router
from image_queue.api.routes.worker import router as worker_router

__all__ = ["jobs_router", "health_router", "worker_router"]
