"""API router configuration."""

from fastapi import APIRouter

from gesmind_server.api.endpoints import setup

router = APIRouter()
router.include_router(setup.router)
