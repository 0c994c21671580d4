"""
Transactional store for cases, AI artifacts and evaluation data.

Every unit of work runs inside ``Store.transaction()``: the yielded
StoreTransaction stages reads and writes on one AsyncSession, which commits
when the block exits cleanly and rolls back completely otherwise. Database
failures surface as PersistenceError.

SQLite is a single-writer database, so for SQLite URLs the store also
serializes transactions within the process.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseai.core.errors import PersistenceError
from caseai.core.logging import get_logger
from caseai.models.entities import (
    AIInteraction,
    AISummary,
    ApplicationData,
    AuditEntry,
    Case,
    CaseNote,
    ProcessStep,
    SummaryType,
)
from caseai.models.evaluation import (
    AIEvaluation,
    DatasetMetadata,
    DatasetStatistics,
    EvaluationDataset,
    EvaluationExample,
    EvaluationExpectedOutput,
    EvaluationInput,
    ExampleMetadata,
)
from caseai.storage.tables import (
    AIEvaluationRow,
    AIInteractionRow,
    AISummaryRow,
    AuditEntryRow,
    CaseNoteRow,
    CaseRow,
    EvaluationDatasetRow,
    EvaluationExampleRow,
)

logger = get_logger(__name__)


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def step_key(step: Optional[ProcessStep]) -> str:
    return step.value if step is not None else ""


class StoreTransaction:
    """Reads and writes staged on one session. Obtain via Store.transaction()."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    async def get_case(self, case_id: str) -> Optional[Case]:
        row = await self.session.get(CaseRow, case_id)
        if row is None:
            return None
        notes = await self.list_notes(case_id)
        return Case(
            id=row.id,
            application_data=ApplicationData.model_validate(row.application_data),
            status=row.status,
            current_step=row.current_step,
            assigned_to=row.assigned_to,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            notes=notes,
        )

    async def save_case(self, case: Case) -> None:
        row = await self.session.get(CaseRow, case.id)
        if row is None:
            row = CaseRow(id=case.id, created_at=case.created_at)
            self.session.add(row)
        row.application_data = case.application_data.model_dump(mode="json")
        row.status = case.status.value
        row.current_step = case.current_step.value
        row.assigned_to = case.assigned_to
        row.updated_at = case.updated_at

    async def case_exists(self, case_id: str) -> bool:
        return await self.session.get(CaseRow, case_id) is not None

    async def add_note(self, note: CaseNote) -> None:
        self.session.add(
            CaseNoteRow(
                id=note.id,
                case_id=note.case_id,
                content=note.content,
                created_by=note.created_by,
                created_at=note.created_at,
            )
        )

    async def list_notes(self, case_id: str) -> List[CaseNote]:
        result = await self.session.execute(
            select(CaseNoteRow).where(CaseNoteRow.case_id == case_id).order_by(CaseNoteRow.created_at)
        )
        return [
            CaseNote(
                id=row.id,
                case_id=row.case_id,
                content=row.content,
                created_by=row.created_by,
                created_at=_aware(row.created_at),
            )
            for row in result.scalars()
        ]

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def max_summary_version(
        self, case_id: str, summary_type: SummaryType, step: Optional[ProcessStep]
    ) -> int:
        result = await self.session.execute(
            select(func.max(AISummaryRow.version)).where(
                AISummaryRow.case_id == case_id,
                AISummaryRow.summary_type == summary_type.value,
                AISummaryRow.step_key == step_key(step),
            )
        )
        return result.scalar_one_or_none() or 0

    async def add_summary(self, summary: AISummary) -> None:
        self.session.add(
            AISummaryRow(
                id=summary.id,
                case_id=summary.case_id,
                summary_type=summary.type.value,
                step_key=step_key(summary.step),
                content=summary.content,
                recommendations=list(summary.recommendations),
                confidence=summary.confidence,
                generated_at=summary.generated_at,
                version=summary.version,
            )
        )

    async def list_summaries(
        self,
        case_id: str,
        summary_type: Optional[SummaryType] = None,
        step: Optional[ProcessStep] = None,
        limit: Optional[int] = None,
    ) -> List[AISummary]:
        """Summaries for a case, newest first."""
        query = select(AISummaryRow).where(AISummaryRow.case_id == case_id)
        if summary_type is not None:
            query = query.where(AISummaryRow.summary_type == summary_type.value)
        if step is not None:
            query = query.where(AISummaryRow.step_key == step.value)
        query = query.order_by(AISummaryRow.generated_at.desc(), AISummaryRow.version.desc())
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [self._summary_from_row(row) for row in result.scalars()]

    @staticmethod
    def _summary_from_row(row: AISummaryRow) -> AISummary:
        return AISummary(
            id=row.id,
            case_id=row.case_id,
            type=row.summary_type,
            step=row.step_key or None,
            content=row.content,
            recommendations=list(row.recommendations or []),
            confidence=row.confidence,
            generated_at=_aware(row.generated_at),
            version=row.version,
        )

    # ------------------------------------------------------------------
    # Interactions and audit trail
    # ------------------------------------------------------------------

    async def add_interaction(self, interaction: AIInteraction) -> None:
        self.session.add(
            AIInteractionRow(
                id=interaction.id,
                case_id=interaction.case_id,
                operation=interaction.operation,
                prompt=interaction.prompt,
                response=interaction.response,
                model=interaction.model,
                input_tokens=interaction.input_tokens,
                output_tokens=interaction.output_tokens,
                tokens_used=interaction.tokens_used,
                cost=interaction.cost,
                duration=interaction.duration,
                success=interaction.success,
                error=interaction.error,
                timestamp=interaction.timestamp,
                step_context=interaction.step_context.value if interaction.step_context else None,
                prompt_template=interaction.prompt_template,
                prompt_version=interaction.prompt_version,
            )
        )

    async def get_interaction(self, interaction_id: str) -> Optional[AIInteraction]:
        row = await self.session.get(AIInteractionRow, interaction_id)
        return self._interaction_from_row(row) if row is not None else None

    async def list_interactions(self, case_id: Optional[str] = None) -> List[AIInteraction]:
        query = select(AIInteractionRow)
        if case_id is not None:
            query = query.where(AIInteractionRow.case_id == case_id)
        result = await self.session.execute(query.order_by(AIInteractionRow.timestamp))
        return [self._interaction_from_row(row) for row in result.scalars()]

    @staticmethod
    def _interaction_from_row(row: AIInteractionRow) -> AIInteraction:
        return AIInteraction(
            id=row.id,
            case_id=row.case_id,
            operation=row.operation,
            prompt=row.prompt,
            response=row.response,
            model=row.model,
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
            tokens_used=row.tokens_used,
            cost=row.cost,
            duration=row.duration,
            success=row.success,
            error=row.error,
            timestamp=_aware(row.timestamp),
            step_context=row.step_context,
            prompt_template=row.prompt_template,
            prompt_version=row.prompt_version,
        )

    async def add_audit_entry(self, entry: AuditEntry) -> None:
        self.session.add(
            AuditEntryRow(
                id=entry.id,
                case_id=entry.case_id,
                action=entry.action,
                details=entry.details,
                user_id=entry.user_id,
                timestamp=entry.timestamp,
            )
        )

    async def list_audit_entries(self, case_id: str) -> List[AuditEntry]:
        result = await self.session.execute(
            select(AuditEntryRow).where(AuditEntryRow.case_id == case_id).order_by(AuditEntryRow.timestamp)
        )
        return [
            AuditEntry(
                id=row.id,
                case_id=row.case_id,
                action=row.action,
                details=row.details,
                user_id=row.user_id,
                timestamp=_aware(row.timestamp),
            )
            for row in result.scalars()
        ]

    # ------------------------------------------------------------------
    # Evaluation datasets
    # ------------------------------------------------------------------

    async def add_dataset(self, dataset: EvaluationDataset) -> None:
        self.session.add(
            EvaluationDatasetRow(
                id=dataset.id,
                name=dataset.name,
                description=dataset.description,
                operation=dataset.operation.value,
                metadata_json=dataset.metadata.model_dump(mode="json"),
                statistics=dataset.statistics.model_dump(mode="json"),
                created_at=dataset.metadata.created_at,
                updated_at=dataset.metadata.updated_at,
            )
        )

    async def dataset_exists(self, dataset_id: str) -> bool:
        return await self.session.get(EvaluationDatasetRow, dataset_id) is not None

    async def get_dataset(self, dataset_id: str) -> Optional[EvaluationDataset]:
        row = await self.session.get(EvaluationDatasetRow, dataset_id)
        if row is None:
            return None
        return self._dataset_from_row(row, await self.list_examples(dataset_id))

    async def list_datasets(self, operation: Optional[str] = None) -> List[EvaluationDataset]:
        """Datasets in insertion order, each with its examples."""
        query = select(EvaluationDatasetRow)
        if operation is not None:
            query = query.where(EvaluationDatasetRow.operation == operation)
        result = await self.session.execute(
            query.order_by(EvaluationDatasetRow.created_at, EvaluationDatasetRow.id)
        )
        datasets = []
        for row in result.scalars().all():
            datasets.append(self._dataset_from_row(row, await self.list_examples(row.id)))
        return datasets

    async def update_dataset_statistics(
        self, dataset_id: str, statistics: DatasetStatistics, updated_at: datetime
    ) -> None:
        row = await self.session.get(EvaluationDatasetRow, dataset_id)
        if row is None:
            raise PersistenceError(f"Dataset {dataset_id} vanished during update", dataset_id=dataset_id)
        row.statistics = statistics.model_dump(mode="json")
        metadata = dict(row.metadata_json)
        metadata["updated_at"] = updated_at.isoformat()
        row.metadata_json = metadata
        row.updated_at = updated_at

    @staticmethod
    def _dataset_from_row(row: EvaluationDatasetRow, examples: Iterable[EvaluationExample]) -> EvaluationDataset:
        return EvaluationDataset(
            id=row.id,
            name=row.name,
            description=row.description,
            operation=row.operation,
            examples=list(examples),
            metadata=DatasetMetadata.model_validate(row.metadata_json),
            statistics=DatasetStatistics.model_validate(row.statistics),
        )

    async def add_example(self, example: EvaluationExample) -> None:
        result = await self.session.execute(
            select(func.count()).select_from(EvaluationExampleRow).where(
                EvaluationExampleRow.dataset_id == example.dataset_id
            )
        )
        position = result.scalar_one()
        self.session.add(
            EvaluationExampleRow(
                id=example.id,
                dataset_id=example.dataset_id,
                position=position,
                input_json=example.input.model_dump(mode="json"),
                expected_output=example.expected_output.model_dump(mode="json"),
                metadata_json=example.metadata.model_dump(mode="json"),
                created_at=example.metadata.created_at,
            )
        )
        await self.session.flush()

    async def list_examples(self, dataset_id: str) -> List[EvaluationExample]:
        """Examples of one dataset, newest first."""
        result = await self.session.execute(
            select(EvaluationExampleRow)
            .where(EvaluationExampleRow.dataset_id == dataset_id)
            .order_by(EvaluationExampleRow.position.desc())
        )
        return [
            EvaluationExample(
                id=row.id,
                dataset_id=row.dataset_id,
                input=EvaluationInput.model_validate(row.input_json),
                expected_output=EvaluationExpectedOutput.model_validate(row.expected_output),
                metadata=ExampleMetadata.model_validate(row.metadata_json),
            )
            for row in result.scalars()
        ]

    # ------------------------------------------------------------------
    # Judge evaluations
    # ------------------------------------------------------------------

    async def add_evaluation(self, evaluation: AIEvaluation) -> None:
        self.session.add(
            AIEvaluationRow(
                id=evaluation.id,
                case_id=evaluation.case_id,
                subject_type=evaluation.subject_type,
                subject_id=evaluation.subject_id,
                operation=evaluation.operation.value,
                judge_model=evaluation.judge_model,
                rubric_name=evaluation.rubric_name,
                rubric_version=evaluation.rubric_version,
                criteria_scores=dict(evaluation.criteria_scores),
                reasoning=dict(evaluation.reasoning),
                overall_score=evaluation.overall_score,
                verdict=evaluation.verdict.value,
                confidence=evaluation.confidence,
                flags=list(evaluation.flags),
                comments=evaluation.comments,
                interaction_id=evaluation.interaction_id,
                created_at=evaluation.created_at,
            )
        )

    async def list_evaluations(
        self, case_id: Optional[str] = None, subject_id: Optional[str] = None
    ) -> List[AIEvaluation]:
        query = select(AIEvaluationRow)
        if case_id is not None:
            query = query.where(AIEvaluationRow.case_id == case_id)
        if subject_id is not None:
            query = query.where(AIEvaluationRow.subject_id == subject_id)
        result = await self.session.execute(query.order_by(AIEvaluationRow.created_at.desc()))
        return [
            AIEvaluation(
                id=row.id,
                case_id=row.case_id,
                subject_type=row.subject_type,
                subject_id=row.subject_id,
                operation=row.operation,
                judge_model=row.judge_model,
                rubric_name=row.rubric_name,
                rubric_version=row.rubric_version,
                criteria_scores=row.criteria_scores,
                reasoning=row.reasoning,
                overall_score=row.overall_score,
                verdict=row.verdict,
                confidence=row.confidence,
                flags=row.flags,
                comments=row.comments,
                interaction_id=row.interaction_id,
                created_at=_aware(row.created_at),
            )
            for row in result.scalars()
        ]


class Store:
    """Factory for transactional units of work."""

    transaction_class = StoreTransaction

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        serialize_transactions: bool = False,
    ):
        self._session_factory = session_factory
        self._write_lock: Optional[asyncio.Lock] = asyncio.Lock() if serialize_transactions else None

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._write_lock is None:
            yield
            return
        async with self._write_lock:
            yield

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """
        Run one unit of work.

        Commits on clean exit. Any exception rolls everything back; database
        errors are re-raised as PersistenceError, others propagate unchanged.
        """
        async with self._guard():
            session = self._session_factory()
            try:
                yield self.transaction_class(session)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("store_transaction_failed", error=str(exc), error_type=type(exc).__name__)
                raise PersistenceError(f"Storage transaction failed: {exc}") from exc
            except BaseException:
                await session.rollback()
                raise
            finally:
                await session.close()
