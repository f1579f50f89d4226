"""API endpoints module."""

from fastapi import APIRouter

from calsync.api.accounts import router as accounts_router
from calsync.api.sync import router as sync_router

api_router = APIRouter(prefix="/api")

api_router.include_router(accounts_router)
api_router.include_router(sync_router)

__all__ = ["api_router"]
