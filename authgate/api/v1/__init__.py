from fastapi import APIRouter

from authgate.api.v1.routers import (
    audit_events,
    health,
    mfa,
    profile,
    trusted_device,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(mfa.router)
api_router.include_router(trusted_device.router)
api_router.include_router(audit_events.router)
api_router.include_router(profile.router)

__all__ = ["api_router"]
