"""Moderation API routers."""

from fastapi import APIRouter

from . import scan_admin

router = APIRouter()
router.include_router(scan_admin.router)
