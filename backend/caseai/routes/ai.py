"""
AI orchestration endpoints.

POST /api/ai/cases/{case_id}/summary
POST /api/ai/cases/{case_id}/summary/refresh
POST /api/ai/cases/{case_id}/steps/{step}/recommendation
GET  /api/ai/cases/{case_id}/summaries
POST /api/ai/cases/{case_id}/final-summary
POST /api/ai/cases/{case_id}/completeness
GET  /api/ai/cases/{case_id}/interactions
GET  /api/ai/cases/{case_id}/audit
POST /api/ai/analyze-application
POST /api/ai/missing-fields
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from caseai.container import ServiceContainer
from caseai.core.errors import NotFoundError
from caseai.core.logging import get_logger, set_case_id
from caseai.models.entities import (
    AIInteraction,
    AISummary,
    ApplicationAnalysis,
    ApplicationData,
    AuditEntry,
    Case,
    CompletenessValidation,
    FinalSummary,
    MissingFieldsAnalysis,
    ProcessStep,
    SummaryType,
)
from caseai.routes.deps import get_container

logger = get_logger(__name__)

router = APIRouter()


async def _load_case(container: ServiceContainer, case_id: str) -> Case:
    set_case_id(case_id)
    case = await container.cases.get_case(case_id)
    if case is None:
        logger.warning("case_not_found", case_id=case_id)
        raise NotFoundError("Case", case_id)
    return case


@router.post("/cases/{case_id}/summary", response_model=AISummary, status_code=201)
async def generate_overall_summary(case_id: str, container: ServiceContainer = Depends(get_container)):
    """Generate a new version of the case's overall summary."""
    case = await _load_case(container, case_id)
    return await container.orchestration.generate_overall_summary(case)


@router.post("/cases/{case_id}/summary/refresh", response_model=AISummary, status_code=201)
async def refresh_summary(
    case_id: str,
    step: Optional[ProcessStep] = Query(None, description="Refresh the recommendation for this step instead"),
    container: ServiceContainer = Depends(get_container),
):
    case = await _load_case(container, case_id)
    return await container.orchestration.refresh_summary(case, step)


@router.post("/cases/{case_id}/steps/{step}/recommendation", response_model=AISummary, status_code=201)
async def generate_step_recommendation(
    case_id: str, step: ProcessStep, container: ServiceContainer = Depends(get_container)
):
    case = await _load_case(container, case_id)
    return await container.orchestration.generate_step_recommendation(case, step)


@router.get("/cases/{case_id}/summaries", response_model=List[AISummary])
async def get_summary_history(
    case_id: str,
    summary_type: Optional[SummaryType] = Query(None, alias="type"),
    step: Optional[ProcessStep] = Query(None),
    container: ServiceContainer = Depends(get_container),
):
    """Summary versions for a case, newest first."""
    await _load_case(container, case_id)
    return await container.orchestration.get_summary_history(case_id, summary_type=summary_type, step=step)


@router.post("/cases/{case_id}/final-summary", response_model=FinalSummary)
async def generate_final_summary(case_id: str, container: ServiceContainer = Depends(get_container)):
    case = await _load_case(container, case_id)
    return await container.orchestration.generate_final_summary(case)


@router.post("/cases/{case_id}/completeness", response_model=CompletenessValidation)
async def validate_completeness(case_id: str, container: ServiceContainer = Depends(get_container)):
    case = await _load_case(container, case_id)
    return await container.orchestration.validate_completeness(case)


@router.get("/cases/{case_id}/interactions", response_model=List[AIInteraction])
async def get_interactions(case_id: str, container: ServiceContainer = Depends(get_container)):
    await _load_case(container, case_id)
    return await container.orchestration.get_interactions(case_id)


@router.get("/cases/{case_id}/audit", response_model=List[AuditEntry])
async def get_audit_trail(case_id: str, container: ServiceContainer = Depends(get_container)):
    await _load_case(container, case_id)
    return await container.orchestration.get_audit_trail(case_id)


@router.post("/analyze-application", response_model=ApplicationAnalysis)
async def analyze_application(application: ApplicationData, container: ServiceContainer = Depends(get_container)):
    """Analyze an application before a case exists for it."""
    return await container.orchestration.analyze_application(application)


@router.post("/missing-fields", response_model=MissingFieldsAnalysis)
async def detect_missing_fields(application: ApplicationData, container: ServiceContainer = Depends(get_container)):
    return await container.orchestration.detect_missing_fields(application)
