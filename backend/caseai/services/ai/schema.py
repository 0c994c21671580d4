"""
Pydantic models for model outputs, one per orchestration operation.

The prompt library asks for exactly these JSON shapes. Parsing is strict:
output that does not decode into the operation's schema raises
ResponseFormatError and is never coerced into a default.
"""
import json
import re
from typing import Any, Dict, List, Literal, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from caseai.core.errors import ResponseFormatError
from caseai.models.entities import AIOperation

FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class OutputModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class OverallSummaryOutput(OutputModel):
    """
    {
      "content": "detailed summary",
      "recommendations": ["..."],
      "confidence": 0.0-1.0
    }
    """

    content: str = Field(..., min_length=10)
    recommendations: List[str] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)


class StepRecommendationOutput(OutputModel):
    content: str = Field(..., min_length=1)
    recommendations: List[str] = Field(..., min_length=1)
    priority: Literal["low", "medium", "high"]
    confidence: float = Field(..., ge=0.0, le=1.0)


class ApplicationAnalysisOutput(OutputModel):
    summary: str = Field(..., min_length=10)
    key_points: List[str]
    potential_issues: List[str]
    recommended_actions: List[str]
    priority_level: Literal["low", "medium", "high", "urgent"]
    estimated_processing_time: str = Field(..., min_length=1)
    required_documents: List[str]


class FinalSummaryOutput(OutputModel):
    overall_summary: str = Field(..., min_length=20)
    key_decisions: List[str]
    outcomes: List[str]
    process_history: List[str]
    recommended_decision: Literal["approved", "denied", "requires_additional_info"]
    supporting_rationale: List[str] = Field(..., min_length=1)


class CompletenessValidationOutput(OutputModel):
    is_complete: bool
    missing_steps: List[str]
    missing_documents: List[str]
    recommendations: List[str]
    confidence: float = Field(..., ge=0.0, le=1.0)


class MissingFieldOutput(OutputModel):
    field_name: str = Field(..., min_length=1)
    field_type: str = Field(..., min_length=1)
    importance: Literal["required", "recommended", "optional"]
    suggested_action: str = Field(..., min_length=1)


class MissingFieldsOutput(OutputModel):
    missing_fields: List[MissingFieldOutput]
    completeness_score: float = Field(..., ge=0.0, le=100.0)
    priority_actions: List[str]
    estimated_completion_time: str = Field(..., min_length=1)


OUTPUT_SCHEMAS: Dict[AIOperation, Type[OutputModel]] = {
    AIOperation.GENERATE_SUMMARY: OverallSummaryOutput,
    AIOperation.GENERATE_RECOMMENDATION: StepRecommendationOutput,
    AIOperation.ANALYZE_APPLICATION: ApplicationAnalysisOutput,
    AIOperation.GENERATE_FINAL_SUMMARY: FinalSummaryOutput,
    AIOperation.VALIDATE_COMPLETENESS: CompletenessValidationOutput,
    AIOperation.DETECT_MISSING_FIELDS: MissingFieldsOutput,
}


def extract_json_payload(raw: str) -> Any:
    """
    Decode the JSON object in a model response.

    Accepts bare JSON, JSON inside a markdown code fence, or a JSON object
    surrounded by prose.

    Raises:
        ResponseFormatError if no JSON object can be decoded.
    """
    text = (raw or "").strip()
    if not text:
        raise ResponseFormatError("Model response is empty", raw_output=raw or "")

    fenced = FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ResponseFormatError("No JSON object found in model response", raw_output=raw)
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"Model response is not valid JSON: {exc}", raw_output=raw) from exc


def parse_model_output(operation: AIOperation, raw: str) -> OutputModel:
    """
    Validate raw model output against the operation's schema.

    Raises:
        ResponseFormatError if decoding or validation fails.
    """
    payload = extract_json_payload(raw)
    if not isinstance(payload, dict):
        raise ResponseFormatError("Model response JSON is not an object", raw_output=raw)

    schema = OUTPUT_SCHEMAS[operation]
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        errors = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ResponseFormatError(
            f"Invalid {operation.value} payload: {'; '.join(errors)}",
            raw_output=raw,
            errors=errors,
        ) from exc
