"""
Usage ledger API endpoints.
"""

from fastapi import APIRouter, Depends

from ..dependencies import Services, get_services
from .responses import api_response

router = APIRouter(prefix="/api/logs", tags=["logs"])


@router.get("/session/{session_id}")
async def get_session_logs(session_id: str, services: Services = Depends(get_services)):
    logs = await services.ledger.get_session_logs(session_id)
    return api_response(logs, "Session logs retrieved successfully")


@router.get("/all")
async def get_all_logs(services: Services = Depends(get_services)):
    return api_response(await services.ledger.get_all_logs(), "All logs retrieved successfully")


@router.get("/stats")
async def get_current_session_stats(services: Services = Depends(get_services)):
    stats = services.ledger.get_current_session_stats()
    return api_response(
        stats.model_dump(mode="json") if stats else None,
        "Current session stats retrieved successfully",
    )


@router.get("/stats/{session_id}")
async def get_session_stats(session_id: str, services: Services = Depends(get_services)):
    stats = services.ledger.get_session_stats(session_id)
    return api_response(
        stats.model_dump(mode="json") if stats else None,
        "Session stats retrieved successfully",
    )
