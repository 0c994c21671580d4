"""
Case-side domain entities.

Cases and notes are owned by the case repository; AISummary, AuditEntry and
AIInteraction are the artifacts written by the orchestration layer.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from caseai.models.base import CamelModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AIOperation(str, Enum):
    GENERATE_SUMMARY = "generate_summary"
    GENERATE_RECOMMENDATION = "generate_recommendation"
    ANALYZE_APPLICATION = "analyze_application"
    GENERATE_FINAL_SUMMARY = "generate_final_summary"
    VALIDATE_COMPLETENESS = "validate_completeness"
    DETECT_MISSING_FIELDS = "detect_missing_fields"


# Interaction rows written by the judge use this operation tag.
JUDGE_OPERATION = "judge_evaluation"


class ProcessStep(str, Enum):
    RECEIVED = "received"
    IN_REVIEW = "in_review"
    ADDITIONAL_INFO_REQUIRED = "additional_info_required"
    READY_FOR_DECISION = "ready_for_decision"
    CONCLUDED = "concluded"


class CaseStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    WITHDRAWN = "withdrawn"
    ARCHIVED = "archived"


class SummaryType(str, Enum):
    OVERALL = "overall"
    STEP_SPECIFIC = "step-specific"


class CaseDocument(CamelModel):
    id: str = Field(default_factory=new_id)
    filename: str
    path: str = ""
    uploaded_at: datetime = Field(default_factory=utcnow)
    size: int = 0
    mime_type: str = "application/octet-stream"


class ApplicationData(CamelModel):
    applicant_name: str
    applicant_email: str
    application_type: str
    submission_date: datetime = Field(default_factory=utcnow)
    documents: List[CaseDocument] = Field(default_factory=list)
    form_data: Dict[str, Any] = Field(default_factory=dict)


class CaseNote(CamelModel):
    id: str = Field(default_factory=new_id)
    case_id: str
    content: str
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)


class Case(CamelModel):
    id: str = Field(default_factory=new_id)
    application_data: ApplicationData
    status: CaseStatus = CaseStatus.ACTIVE
    current_step: ProcessStep = ProcessStep.RECEIVED
    assigned_to: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    notes: List[CaseNote] = Field(default_factory=list)


class AISummary(CamelModel):
    """One immutable, versioned AI artifact for a (case, type, step) key."""

    id: str = Field(default_factory=new_id)
    case_id: str
    type: SummaryType
    step: Optional[ProcessStep] = None
    content: str
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(..., ge=1)


class AuditEntry(CamelModel):
    id: str = Field(default_factory=new_id)
    case_id: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class AIInteraction(CamelModel):
    """Record of one external model invocation, successful or not."""

    id: str = Field(default_factory=new_id)
    case_id: Optional[str] = None
    operation: str
    prompt: str
    response: str = ""
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    duration: int = 0
    success: bool
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    step_context: Optional[ProcessStep] = None
    prompt_template: Optional[str] = None
    prompt_version: Optional[str] = None


class ApplicationAnalysis(CamelModel):
    summary: str
    key_points: List[str]
    potential_issues: List[str]
    recommended_actions: List[str]
    priority_level: str
    estimated_processing_time: str
    required_documents: List[str]
    analysis_timestamp: datetime = Field(default_factory=utcnow)


class FinalSummary(CamelModel):
    overall_summary: str
    key_decisions: List[str]
    outcomes: List[str]
    process_history: List[str]
    recommended_decision: str
    supporting_rationale: List[str]
    generated_at: datetime = Field(default_factory=utcnow)


class CompletenessValidation(CamelModel):
    is_complete: bool
    missing_steps: List[str]
    missing_documents: List[str]
    recommendations: List[str]
    confidence: float
    validated_at: datetime = Field(default_factory=utcnow)


class MissingField(CamelModel):
    field_name: str
    field_type: str
    importance: str
    suggested_action: str


class MissingFieldsAnalysis(CamelModel):
    missing_fields: List[MissingField]
    completeness_score: float
    priority_actions: List[str]
    estimated_completion_time: str
    analysis_timestamp: datetime = Field(default_factory=utcnow)
