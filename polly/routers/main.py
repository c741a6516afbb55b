from fastapi import APIRouter

from polly.routers.health import health_router
from polly.routers.notifications import notifications_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(health_router, prefix="/health", tags=["Health Checks"])
main_router.include_router(
    notifications_router, prefix="/notifications", tags=["Notifications"]
)
