"""
Voice pipeline status endpoints.
"""

from fastapi import APIRouter, Depends

from ..dependencies import Services, get_services
from .responses import api_response

router = APIRouter(prefix="/api/voice", tags=["voice"])


@router.get("/stats")
async def get_voice_stats(services: Services = Depends(get_services)):
    """Response-time statistics for completed voice turns."""
    manager = services.voice_manager
    data = manager.response_times.snapshot()
    data["active_connections"] = manager.get_connection_count()
    return api_response(data, "Voice stats retrieved successfully")
