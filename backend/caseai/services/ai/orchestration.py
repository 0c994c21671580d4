"""
AI orchestration for case processing.

Responsibilities:
- Turn case data into rendered prompts
- Call the model client and validate the output against the operation schema
- Persist versioned AISummary artifacts together with their AIInteraction and
  AuditEntry in a single transaction

Failure contract:
- Template errors happen before any model call; they propagate unchanged and
  nothing is written
- A failed or unparseable model call writes only a failed AIInteraction and
  raises GenerationFailedError
- The model call runs outside the per-(case, type, step) lock; only version
  assignment and the writes are serialized
"""
from typing import Any, Dict, List, Optional, Tuple

from caseai.core.errors import GenerationFailedError, ModelError, ResponseFormatError
from caseai.core.locks import KeyedLock
from caseai.core.logging import get_logger
from caseai.core.metrics import record_artifact_generated, record_generation_failure
from caseai.models.entities import (
    AIInteraction,
    AIOperation,
    AISummary,
    ApplicationAnalysis,
    ApplicationData,
    AuditEntry,
    Case,
    CaseNote,
    CompletenessValidation,
    FinalSummary,
    MissingField,
    MissingFieldsAnalysis,
    ProcessStep,
    SummaryType,
    utcnow,
)
from caseai.services.ai.llm_client import ModelClient, ModelResponse
from caseai.services.ai.schema import OutputModel, parse_model_output
from caseai.services.ai.templates import PromptTemplateEngine, RenderedPrompt
from caseai.storage.store import Store, StoreTransaction, step_key

logger = get_logger(__name__)

SYSTEM_ACTOR = "ai-system"

TEMPLATE_FOR_OPERATION: Dict[AIOperation, str] = {
    AIOperation.GENERATE_SUMMARY: "overall_summary",
    AIOperation.GENERATE_RECOMMENDATION: "step_recommendation",
    AIOperation.ANALYZE_APPLICATION: "application_analysis",
    AIOperation.GENERATE_FINAL_SUMMARY: "final_summary",
    AIOperation.VALIDATE_COMPLETENESS: "completeness_validation",
    AIOperation.DETECT_MISSING_FIELDS: "missing_fields",
}

RECENT_SUMMARY_LIMIT = 3
RECENT_NOTE_LIMIT = 5


def _format_notes(notes: List[CaseNote]) -> str:
    return "\n".join(f"{note.created_at.isoformat()}: {note.content}" for note in notes)


def _format_summaries(summaries: List[AISummary]) -> str:
    return "\n---\n".join(
        f"{summary.generated_at.isoformat()} ({summary.type.value} v{summary.version}): {summary.content}"
        for summary in summaries
    )


def _application_variables(application: ApplicationData) -> Dict[str, Any]:
    return {
        "application_type": application.application_type,
        "applicant_name": application.applicant_name,
        "applicant_email": application.applicant_email,
        "submission_date": application.submission_date,
        "documents": [f"{doc.filename} ({doc.mime_type})" for doc in application.documents],
        "form_data": application.form_data,
    }


class AIOrchestrationService:
    """
    Generates and persists AI artifacts for cases.

    Not idempotent: every generate/refresh call appends a new summary version.
    """

    def __init__(
        self,
        model_client: ModelClient,
        templates: PromptTemplateEngine,
        store: Store,
        summary_locks: Optional[KeyedLock] = None,
        actor: str = SYSTEM_ACTOR,
    ):
        self.model_client = model_client
        self.templates = templates
        self.store = store
        self.summary_locks = summary_locks or KeyedLock()
        self.actor = actor

    # ------------------------------------------------------------------
    # Versioned summaries
    # ------------------------------------------------------------------

    async def generate_overall_summary(self, case: Case) -> AISummary:
        return await self._generate_summary(case, SummaryType.OVERALL, None)

    async def generate_step_recommendation(self, case: Case, step: ProcessStep) -> AISummary:
        return await self._generate_summary(case, SummaryType.STEP_SPECIFIC, step)

    async def refresh_summary(self, case: Case, step: Optional[ProcessStep] = None) -> AISummary:
        """Append a new version; earlier versions stay untouched."""
        logger.info("ai_summary_refresh_requested", case_id=case.id, step=step.value if step else None)
        if step is None:
            return await self.generate_overall_summary(case)
        return await self.generate_step_recommendation(case, step)

    async def _generate_summary(
        self, case: Case, summary_type: SummaryType, step: Optional[ProcessStep]
    ) -> AISummary:
        operation = (
            AIOperation.GENERATE_SUMMARY if summary_type == SummaryType.OVERALL else AIOperation.GENERATE_RECOMMENDATION
        )

        async with self.store.transaction() as tx:
            notes = case.notes or await tx.list_notes(case.id)
            previous = await tx.list_summaries(case.id, limit=RECENT_SUMMARY_LIMIT)

        variables = self._case_variables(case)
        if step is None:
            variables["case_notes"] = _format_notes(notes)
            variables["previous_summaries"] = _format_summaries(previous)
        else:
            variables["step"] = step
            variables["recent_summaries"] = _format_summaries(previous)
            variables["recent_notes"] = _format_notes(notes[-RECENT_NOTE_LIMIT:])

        prompt = self.templates.render(TEMPLATE_FOR_OPERATION[operation], None, variables)
        output, response = await self._call_model(operation, prompt, case.id, step)
        interaction = self._interaction(operation, prompt, case.id, step, response=response)

        async with self.summary_locks.acquire((case.id, summary_type.value, step_key(step))):
            async with self.store.transaction() as tx:
                version = await tx.max_summary_version(case.id, summary_type, step) + 1
                summary = AISummary(
                    case_id=case.id,
                    type=summary_type,
                    step=step,
                    content=output.content,
                    recommendations=list(output.recommendations),
                    confidence=output.confidence,
                    generated_at=utcnow(),
                    version=version,
                )
                details: Dict[str, Any] = {
                    "summary_id": summary.id,
                    "summary_type": summary_type.value,
                    "step": step.value if step else None,
                    "version": version,
                    "model": response.model,
                    "interaction_id": interaction.id,
                    "confidence": output.confidence,
                    "tokens_used": response.total_tokens,
                    "cost": response.cost,
                }
                if step is not None:
                    details["priority"] = output.priority
                action = "ai_summary_generated" if step is None else "ai_recommendation_generated"

                await tx.add_interaction(interaction)
                await tx.add_summary(summary)
                await tx.add_audit_entry(
                    AuditEntry(case_id=case.id, action=action, details=details, user_id=self.actor)
                )

        record_artifact_generated(operation.value)
        logger.info(
            action,
            case_id=case.id,
            summary_id=summary.id,
            step=step.value if step else None,
            version=version,
            model=response.model,
        )
        return summary

    # ------------------------------------------------------------------
    # Unversioned analyses
    # ------------------------------------------------------------------

    async def analyze_application(self, application_data: ApplicationData) -> ApplicationAnalysis:
        operation = AIOperation.ANALYZE_APPLICATION
        prompt = self.templates.render(
            TEMPLATE_FOR_OPERATION[operation], None, _application_variables(application_data)
        )
        output, response = await self._call_model(operation, prompt, None, None)
        await self._record_success(operation, prompt, None, response)
        return ApplicationAnalysis(**output.model_dump())

    async def detect_missing_fields(self, application_data: ApplicationData) -> MissingFieldsAnalysis:
        operation = AIOperation.DETECT_MISSING_FIELDS
        variables = _application_variables(application_data)
        variables["documents"] = [doc.filename for doc in application_data.documents]
        prompt = self.templates.render(TEMPLATE_FOR_OPERATION[operation], None, variables)
        output, response = await self._call_model(operation, prompt, None, None)
        await self._record_success(operation, prompt, None, response)
        return MissingFieldsAnalysis(
            missing_fields=[MissingField(**field.model_dump()) for field in output.missing_fields],
            completeness_score=output.completeness_score,
            priority_actions=output.priority_actions,
            estimated_completion_time=output.estimated_completion_time,
        )

    async def generate_final_summary(self, case: Case) -> FinalSummary:
        operation = AIOperation.GENERATE_FINAL_SUMMARY
        async with self.store.transaction() as tx:
            notes = case.notes or await tx.list_notes(case.id)
            summaries = await tx.list_summaries(case.id)
            audit_trail = await tx.list_audit_entries(case.id)

        variables = self._case_variables(case)
        variables["process_history"] = "\n".join(
            f"{entry.timestamp.isoformat()}: {entry.action}" for entry in audit_trail
        )
        variables["ai_summaries"] = _format_summaries(summaries)
        variables["case_notes"] = _format_notes(notes)

        prompt = self.templates.render(TEMPLATE_FOR_OPERATION[operation], None, variables)
        output, response = await self._call_model(operation, prompt, case.id, None)
        await self._record_success(
            operation,
            prompt,
            case.id,
            response,
            audit_action="ai_final_summary_generated",
            audit_details={"recommended_decision": output.recommended_decision},
        )
        return FinalSummary(**output.model_dump())

    async def validate_completeness(self, case: Case) -> CompletenessValidation:
        operation = AIOperation.VALIDATE_COMPLETENESS
        async with self.store.transaction() as tx:
            audit_trail = await tx.list_audit_entries(case.id)

        variables = self._case_variables(case)
        variables["documents"] = [doc.filename for doc in case.application_data.documents]
        variables["form_data_fields"] = list(case.application_data.form_data)
        variables["completed_steps"] = [entry.action for entry in audit_trail]

        prompt = self.templates.render(TEMPLATE_FOR_OPERATION[operation], None, variables)
        output, response = await self._call_model(operation, prompt, case.id, case.current_step)
        await self._record_success(
            operation,
            prompt,
            case.id,
            response,
            step=case.current_step,
            audit_action="ai_completeness_validated",
            audit_details={"is_complete": output.is_complete, "confidence": output.confidence},
        )
        return CompletenessValidation(**output.model_dump())

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_summary_history(
        self,
        case_id: str,
        summary_type: Optional[SummaryType] = None,
        step: Optional[ProcessStep] = None,
    ) -> List[AISummary]:
        """All summary versions for a case, newest first."""
        async with self.store.transaction() as tx:
            return await tx.list_summaries(case_id, summary_type=summary_type, step=step)

    async def get_interactions(self, case_id: str) -> List[AIInteraction]:
        async with self.store.transaction() as tx:
            return await tx.list_interactions(case_id)

    async def get_audit_trail(self, case_id: str) -> List[AuditEntry]:
        async with self.store.transaction() as tx:
            return await tx.list_audit_entries(case_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _case_variables(case: Case) -> Dict[str, Any]:
        variables = _application_variables(case.application_data)
        variables.update(
            {
                "case_id": case.id,
                "status": case.status,
                "current_step": case.current_step,
                "documents": [doc.filename for doc in case.application_data.documents],
            }
        )
        return variables

    async def _call_model(
        self,
        operation: AIOperation,
        prompt: RenderedPrompt,
        case_id: Optional[str],
        step: Optional[ProcessStep],
    ) -> Tuple[OutputModel, ModelResponse]:
        try:
            response = await self.model_client.invoke(prompt, operation.value)
        except ModelError as exc:
            logger.warning(
                "ai_generation_failed",
                operation=operation.value,
                case_id=case_id,
                kind=exc.kind.value,
                model=exc.model,
                attempts=len(exc.attempts),
                error=exc.message,
            )
            await self._record_failure(
                operation, prompt, case_id, step, model=exc.model, duration_ms=exc.duration_ms, error=str(exc)
            )
            record_generation_failure(operation.value, exc.kind.value)
            raise GenerationFailedError(operation.value, case_id, exc) from exc

        try:
            output = parse_model_output(operation, response.content)
        except ResponseFormatError as exc:
            logger.warning(
                "ai_response_format_invalid",
                operation=operation.value,
                case_id=case_id,
                model=response.model,
                errors=exc.errors,
            )
            await self._record_failure(
                operation,
                prompt,
                case_id,
                step,
                model=response.model,
                duration_ms=response.response_time_ms,
                error=str(exc),
                response=response,
            )
            record_generation_failure(operation.value, "response_format")
            raise GenerationFailedError(operation.value, case_id, exc) from exc

        return output, response

    def _interaction(
        self,
        operation: AIOperation,
        prompt: RenderedPrompt,
        case_id: Optional[str],
        step: Optional[ProcessStep],
        *,
        response: Optional[ModelResponse] = None,
        success: bool = True,
        model: Optional[str] = None,
        duration_ms: int = 0,
        error: Optional[str] = None,
    ) -> AIInteraction:
        return AIInteraction(
            case_id=case_id,
            operation=operation.value,
            prompt=prompt.text,
            response=response.content if response else "",
            model=response.model if response else (model or self.model_client.model_id),
            input_tokens=response.input_tokens if response else 0,
            output_tokens=response.output_tokens if response else 0,
            tokens_used=response.total_tokens if response else 0,
            cost=response.cost if response else 0.0,
            duration=response.response_time_ms if response else duration_ms,
            success=success,
            error=error,
            step_context=step,
            prompt_template=prompt.template_id,
            prompt_version=prompt.version,
        )

    async def _record_failure(
        self,
        operation: AIOperation,
        prompt: RenderedPrompt,
        case_id: Optional[str],
        step: Optional[ProcessStep],
        *,
        model: str,
        duration_ms: int,
        error: str,
        response: Optional[ModelResponse] = None,
    ) -> None:
        interaction = self._interaction(
            operation,
            prompt,
            case_id,
            step,
            response=response,
            success=False,
            model=model,
            duration_ms=duration_ms,
            error=error,
        )
        async with self.store.transaction() as tx:
            await tx.add_interaction(interaction)

    async def _record_success(
        self,
        operation: AIOperation,
        prompt: RenderedPrompt,
        case_id: Optional[str],
        response: ModelResponse,
        *,
        step: Optional[ProcessStep] = None,
        audit_action: Optional[str] = None,
        audit_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        interaction = self._interaction(operation, prompt, case_id, step, response=response)
        async with self.store.transaction() as tx:
            await tx.add_interaction(interaction)
            if case_id is not None and audit_action is not None:
                await self._audit(tx, case_id, audit_action, interaction, response, audit_details or {})

        record_artifact_generated(operation.value)
        logger.info(
            "ai_operation_completed",
            operation=operation.value,
            case_id=case_id,
            model=response.model,
            interaction_id=interaction.id,
        )

    async def _audit(
        self,
        tx: StoreTransaction,
        case_id: str,
        action: str,
        interaction: AIInteraction,
        response: ModelResponse,
        extra: Dict[str, Any],
    ) -> None:
        details = {
            "model": response.model,
            "interaction_id": interaction.id,
            "tokens_used": response.total_tokens,
            "cost": response.cost,
            **extra,
        }
        await tx.add_audit_entry(AuditEntry(case_id=case_id, action=action, details=details, user_id=self.actor))
