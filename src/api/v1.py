"""Centralized v1 API router: module routers are included here."""

from fastapi import APIRouter

from src.modules.tenancy.router import router as tenancy_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(tenancy_router)
