"""Central router that includes all sub-routers."""

from fastapi import APIRouter

from fieldops.api.interventions import router as interventions_router
from fieldops.api.dispatch import router as dispatch_router
from fieldops.api.payments import router as payments_router
from fieldops.api.technicians import router as technicians_router
from fieldops.api.websocket import router as websocket_router

api_router = APIRouter()
api_router.include_router(interventions_router)
api_router.include_router(dispatch_router)
api_router.include_router(payments_router)
api_router.include_router(technicians_router)
api_router.include_router(websocket_router)
