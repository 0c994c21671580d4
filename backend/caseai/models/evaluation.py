"""
Evaluation-side domain entities: datasets, examples, judge verdicts.

Request models double as the validation layer for the dataset manager and the
HTTP surface; a pydantic failure here becomes a caseai ValidationError.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, field_validator

from caseai.models.base import CamelModel
from caseai.models.entities import AIOperation, ProcessStep, new_id, utcnow


class DifficultyLevel(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class DatasetSourceType(str, Enum):
    MANUAL = "manual"
    CAPTURED_INTERACTIONS = "captured_interactions"
    SYNTHETIC = "synthetic"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NEEDS_REVIEW = "needs_review"


Score = float


class EvaluationCriteria(CamelModel):
    faithfulness: Score = Field(..., ge=0, le=10)
    completeness: Score = Field(..., ge=0, le=10)
    relevance: Score = Field(..., ge=0, le=10)
    clarity: Score = Field(..., ge=0, le=10)
    task_specific: Optional[Dict[str, Score]] = None

    @field_validator("task_specific")
    @classmethod
    def validate_task_specific(cls, value: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        if value is None:
            return value
        for name, score in value.items():
            if not 0 <= score <= 10:
                raise ValueError(f"task-specific score {name} must be between 0 and 10")
        return value


class EvaluationInput(CamelModel):
    prompt: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    case_data: Optional[Dict[str, Any]] = None
    application_data: Optional[Dict[str, Any]] = None
    step: Optional[ProcessStep] = None


class EvaluationExpectedOutput(CamelModel):
    content: str = Field(..., min_length=1)
    quality: Score = Field(..., ge=0, le=10)
    criteria: EvaluationCriteria

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class ExampleMetadata(CamelModel):
    tags: List[str] = Field(default_factory=list)
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    created_at: datetime = Field(default_factory=utcnow)
    source_interaction_id: Optional[str] = None
    notes: Optional[str] = None


class EvaluationExample(CamelModel):
    id: str = Field(default_factory=new_id)
    dataset_id: str
    input: EvaluationInput
    expected_output: EvaluationExpectedOutput
    metadata: ExampleMetadata = Field(default_factory=ExampleMetadata)


class DatasetMetadata(CamelModel):
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(1, ge=1)
    tags: List[str] = Field(default_factory=list)
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    source_type: DatasetSourceType = DatasetSourceType.MANUAL


class DatasetStatistics(CamelModel):
    total_examples: int = Field(0, ge=0)
    average_quality: float = Field(0.0, ge=0, le=10)
    difficulty_distribution: Dict[str, int] = Field(default_factory=dict)


class EvaluationDataset(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=1000)
    operation: AIOperation
    examples: List[EvaluationExample] = Field(default_factory=list)
    metadata: DatasetMetadata
    statistics: DatasetStatistics = Field(default_factory=DatasetStatistics)


class DatasetMetadataInput(CamelModel):
    created_by: str = Field("system", min_length=1)
    tags: List[str] = Field(default_factory=list)
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    source_type: DatasetSourceType = DatasetSourceType.MANUAL


class CreateDatasetRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    operation: AIOperation
    metadata: DatasetMetadataInput = Field(default_factory=DatasetMetadataInput)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ExampleMetadataInput(CamelModel):
    tags: List[str] = Field(default_factory=list)
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    source_interaction_id: Optional[str] = None
    notes: Optional[str] = None


class AddExampleRequest(CamelModel):
    input: EvaluationInput
    expected_output: EvaluationExpectedOutput
    metadata: ExampleMetadataInput = Field(default_factory=ExampleMetadataInput)


class AIEvaluation(CamelModel):
    """An immutable judge verdict on one produced output."""

    id: str = Field(default_factory=new_id)
    case_id: Optional[str] = None
    subject_type: str
    subject_id: Optional[str] = None
    operation: AIOperation
    judge_model: str
    rubric_name: str
    rubric_version: str
    criteria_scores: Dict[str, float]
    reasoning: Dict[str, str] = Field(default_factory=dict)
    overall_score: float
    verdict: Verdict
    confidence: float = Field(..., ge=0, le=1)
    flags: List[str] = Field(default_factory=list)
    comments: Optional[str] = None
    interaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class EvaluateOutputRequest(CamelModel):
    operation: AIOperation
    produced_output: str = Field(..., min_length=1)
    rubric_version: Optional[str] = None
    reference_context: Optional[Union[str, Dict[str, Any]]] = None
    case_id: Optional[str] = None
    subject_type: str = "output"
    subject_id: Optional[str] = None
    chain_of_thought: bool = False


class ModelDescriptor(CamelModel):
    id: str
    name: str
    provider: str
    description: Optional[str] = None
    cost_per_1k_tokens: Optional[float] = None
    max_tokens: Optional[int] = None
    supported_criteria: List[str] = Field(default_factory=list)
    recommended: bool = False


class ExampleEvaluationFailure(CamelModel):
    example_id: str
    error_type: str
    message: str


class DatasetEvaluationReport(CamelModel):
    dataset_id: str
    operation: AIOperation
    rubric_name: str
    rubric_version: str
    judge_model: str
    total_examples: int
    evaluated: int
    failed: int
    mean_overall_score: Optional[float] = None
    criteria_means: Dict[str, float] = Field(default_factory=dict)
    verdict_counts: Dict[str, int] = Field(default_factory=dict)
    mean_absolute_error: Optional[float] = None
    evaluations: List[AIEvaluation] = Field(default_factory=list)
    failures: List[ExampleEvaluationFailure] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
