"""
Evaluation dataset and judge endpoints.

POST/GET /api/evaluation/datasets
GET      /api/evaluation/datasets/{dataset_id}
POST/GET /api/evaluation/datasets/{dataset_id}/examples
POST     /api/evaluation/datasets/{dataset_id}/evaluate
POST     /api/evaluation/evaluate
POST     /api/evaluation/interactions/{interaction_id}/evaluate
GET      /api/evaluation/models
GET      /api/evaluation/evaluations
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from caseai.container import ServiceContainer
from caseai.core.errors import NotFoundError
from caseai.core.logging import get_logger
from caseai.models.base import CamelModel
from caseai.models.entities import AIOperation
from caseai.models.evaluation import (
    AddExampleRequest,
    AIEvaluation,
    CreateDatasetRequest,
    DatasetEvaluationReport,
    EvaluateOutputRequest,
    EvaluationDataset,
    EvaluationExample,
    ModelDescriptor,
)
from caseai.routes.deps import get_container

logger = get_logger(__name__)

router = APIRouter()


class JudgeRunRequest(CamelModel):
    """Options for judging a stored dataset or interaction."""

    rubric_version: Optional[str] = None
    concurrency: Optional[int] = Field(None, ge=1)
    chain_of_thought: bool = False


@router.post("/datasets", response_model=EvaluationDataset, status_code=201)
async def create_dataset(request: CreateDatasetRequest, container: ServiceContainer = Depends(get_container)):
    return await container.datasets.create_dataset(request)


@router.get("/datasets", response_model=List[EvaluationDataset])
async def list_datasets(
    operation: Optional[AIOperation] = Query(None),
    created_by: Optional[str] = Query(None, alias="createdBy"),
    tags: Optional[List[str]] = Query(None),
    limit: Optional[int] = Query(None, ge=0),
    offset: Optional[int] = Query(None, ge=0),
    container: ServiceContainer = Depends(get_container),
):
    return await container.datasets.list_datasets(
        operation=operation, created_by=created_by, tags=tags, limit=limit, offset=offset
    )


@router.get("/datasets/{dataset_id}", response_model=EvaluationDataset)
async def get_dataset(dataset_id: str, container: ServiceContainer = Depends(get_container)):
    dataset = await container.datasets.get_dataset(dataset_id)
    if dataset is None:
        raise NotFoundError("Dataset", dataset_id)
    return dataset


@router.post("/datasets/{dataset_id}/examples", response_model=EvaluationExample, status_code=201)
async def add_example(
    dataset_id: str, request: AddExampleRequest, container: ServiceContainer = Depends(get_container)
):
    return await container.datasets.add_example_to_dataset(dataset_id, request)


@router.get("/datasets/{dataset_id}/examples", response_model=List[EvaluationExample])
async def get_dataset_examples(dataset_id: str, container: ServiceContainer = Depends(get_container)):
    return await container.datasets.get_dataset_examples(dataset_id)


@router.post("/datasets/{dataset_id}/evaluate", response_model=DatasetEvaluationReport)
async def evaluate_dataset(
    dataset_id: str,
    request: Optional[JudgeRunRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    """Judge every example of a dataset and report agreement with the labeled quality."""
    request = request or JudgeRunRequest()
    return await container.judge.evaluate_dataset(
        dataset_id,
        rubric_version=request.rubric_version,
        concurrency=request.concurrency,
        chain_of_thought=request.chain_of_thought,
    )


@router.post("/evaluate", response_model=AIEvaluation, status_code=201)
async def evaluate_output(request: EvaluateOutputRequest, container: ServiceContainer = Depends(get_container)):
    return await container.judge.evaluate_output(
        request.operation,
        request.produced_output,
        request.rubric_version,
        request.reference_context,
        case_id=request.case_id,
        subject_type=request.subject_type,
        subject_id=request.subject_id,
        chain_of_thought=request.chain_of_thought,
    )


@router.post("/interactions/{interaction_id}/evaluate", response_model=AIEvaluation, status_code=201)
async def evaluate_interaction(
    interaction_id: str,
    request: Optional[JudgeRunRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    request = request or JudgeRunRequest()
    return await container.judge.evaluate_interaction(
        interaction_id, rubric_version=request.rubric_version, chain_of_thought=request.chain_of_thought
    )


@router.get("/models", response_model=List[ModelDescriptor])
async def get_available_evaluation_models(container: ServiceContainer = Depends(get_container)):
    return await container.judge.get_available_evaluation_models()


@router.get("/evaluations", response_model=List[AIEvaluation])
async def list_evaluations(
    case_id: Optional[str] = Query(None, alias="caseId"),
    subject_id: Optional[str] = Query(None, alias="subjectId"),
    container: ServiceContainer = Depends(get_container),
):
    return await container.judge.list_evaluations(case_id=case_id, subject_id=subject_id)
