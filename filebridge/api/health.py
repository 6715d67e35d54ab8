"""
Health check endpoint
"""
from fastapi import APIRouter
from pydantic import BaseModel

from filebridge.config import APP_VERSION

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str


@router.get("/health")
async def health_check():
    return HealthResponse(status="ok", version=APP_VERSION)
