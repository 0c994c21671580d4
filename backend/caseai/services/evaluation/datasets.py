"""
Evaluation dataset management.

Datasets hold append-only examples for one AI operation. Statistics are
recomputed from the full example set on every insert, inside the same
transaction as the insert, with inserts serialized per dataset.
"""
from collections import Counter
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from caseai.core.errors import NotFoundError, ValidationError
from caseai.core.locks import KeyedLock
from caseai.core.logging import get_logger
from caseai.core.metrics import record_dataset_example_added
from caseai.models.entities import AIOperation, utcnow
from caseai.models.evaluation import (
    AddExampleRequest,
    CreateDatasetRequest,
    DatasetMetadata,
    DatasetStatistics,
    EvaluationDataset,
    EvaluationExample,
    ExampleMetadata,
)
from caseai.storage.store import Store

logger = get_logger(__name__)


def _validate(model: type, payload: Union[BaseModel, Mapping[str, Any]]) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]} for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", errors=errors) from exc


def compute_statistics(examples: Sequence[EvaluationExample]) -> DatasetStatistics:
    """Count, mean expected quality (0 when empty) and difficulty distribution."""
    if not examples:
        return DatasetStatistics(total_examples=0, average_quality=0.0, difficulty_distribution={})

    qualities = np.array([example.expected_output.quality for example in examples], dtype=float)
    distribution = Counter(example.metadata.difficulty.value for example in examples)
    return DatasetStatistics(
        total_examples=len(examples),
        average_quality=float(qualities.mean()),
        difficulty_distribution=dict(distribution),
    )


class EvaluationDatasetManager:
    def __init__(self, store: Store, dataset_locks: Optional[KeyedLock] = None):
        self.store = store
        self.dataset_locks = dataset_locks or KeyedLock()

    async def create_dataset(self, request: Union[CreateDatasetRequest, Mapping[str, Any]]) -> EvaluationDataset:
        """
        Create an empty dataset.

        Raises:
            ValidationError: missing or invalid name / operation / metadata
        """
        request = _validate(CreateDatasetRequest, request)
        now = utcnow()
        dataset = EvaluationDataset(
            name=request.name,
            description=request.description or "",
            operation=request.operation,
            metadata=DatasetMetadata(
                created_by=request.metadata.created_by,
                created_at=now,
                updated_at=now,
                tags=list(request.metadata.tags),
                difficulty=request.metadata.difficulty,
                source_type=request.metadata.source_type,
            ),
            statistics=compute_statistics([]),
        )
        async with self.store.transaction() as tx:
            await tx.add_dataset(dataset)

        logger.info(
            "evaluation_dataset_created",
            dataset_id=dataset.id,
            name=dataset.name,
            operation=dataset.operation.value,
            created_by=dataset.metadata.created_by,
        )
        return dataset

    async def list_datasets(
        self,
        operation: Optional[Union[AIOperation, str]] = None,
        created_by: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[EvaluationDataset]:
        """
        Datasets in insertion order.

        Filters are conjunctive; ``tags`` matches datasets sharing at least one
        tag. ``offset`` and ``limit`` apply after filtering.
        """
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        if offset is not None and offset < 0:
            raise ValidationError("offset must not be negative")
        if operation is not None:
            try:
                operation = AIOperation(operation)
            except ValueError as exc:
                raise ValidationError(f"Unknown operation: {operation}") from exc

        async with self.store.transaction() as tx:
            datasets = await tx.list_datasets(operation.value if operation is not None else None)

        wanted_tags = set(tags or ())
        if created_by is not None:
            datasets = [ds for ds in datasets if ds.metadata.created_by == created_by]
        if wanted_tags:
            datasets = [ds for ds in datasets if wanted_tags.intersection(ds.metadata.tags)]

        start = offset or 0
        end = start + limit if limit is not None else None
        return datasets[start:end]

    async def get_dataset(self, dataset_id: str) -> Optional[EvaluationDataset]:
        """The dataset with its examples (newest first), or None."""
        async with self.store.transaction() as tx:
            return await tx.get_dataset(dataset_id)

    async def get_dataset_examples(self, dataset_id: str) -> List[EvaluationExample]:
        """Examples newest first. Raises NotFoundError for an unknown dataset."""
        async with self.store.transaction() as tx:
            if not await tx.dataset_exists(dataset_id):
                raise NotFoundError("Dataset", dataset_id)
            return await tx.list_examples(dataset_id)

    async def add_example_to_dataset(
        self, dataset_id: str, request: Union[AddExampleRequest, Mapping[str, Any]]
    ) -> EvaluationExample:
        """
        Append an example and recompute the dataset statistics atomically.

        Raises:
            ValidationError: malformed example
            NotFoundError: unknown dataset (nothing is written)
        """
        request = _validate(AddExampleRequest, request)
        example = EvaluationExample(
            dataset_id=dataset_id,
            input=request.input,
            expected_output=request.expected_output,
            metadata=ExampleMetadata(
                tags=list(request.metadata.tags),
                difficulty=request.metadata.difficulty,
                source_interaction_id=request.metadata.source_interaction_id,
                notes=request.metadata.notes,
                created_at=utcnow(),
            ),
        )

        async with self.dataset_locks.acquire(dataset_id):
            async with self.store.transaction() as tx:
                dataset = await tx.get_dataset(dataset_id)
                if dataset is None:
                    raise NotFoundError("Dataset", dataset_id)
                await tx.add_example(example)
                statistics = compute_statistics([example, *dataset.examples])
                await tx.update_dataset_statistics(dataset_id, statistics, utcnow())

        record_dataset_example_added(dataset.operation.value)
        logger.info(
            "evaluation_example_added",
            dataset_id=dataset_id,
            example_id=example.id,
            total_examples=statistics.total_examples,
            average_quality=statistics.average_quality,
        )
        return example
