"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends

from caseai.container import ServiceContainer
from caseai.core.logging import get_logger
from caseai.routes.deps import get_container

logger = get_logger(__name__)
router = APIRouter()


@router.get("")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """
    Basic health check endpoint.

    Reports the configured models so operators can see what the service will call.
    """
    return {
        "status": "ok",
        "message": "API is running",
        "model": container.model_client.model_id,
        "judgeModel": container.judge_client.model_id,
        "rubricVersions": container.rubrics.versions(),
    }
