from fastapi import APIRouter

from broker.interfaces.api.actions import router as actions_router
from broker.interfaces.api.admin import router as admin_router
from broker.interfaces.api.audit_logs import router as audit_logs_router
from broker.interfaces.api.connections import router as connections_router
from broker.interfaces.api.credits import router as credits_router
from broker.interfaces.api.health import router as health_router
from broker.interfaces.api.oauth import router as oauth_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(oauth_router)
api_router.include_router(connections_router)
api_router.include_router(credits_router)
api_router.include_router(actions_router)
api_router.include_router(admin_router)
api_router.include_router(audit_logs_router)
