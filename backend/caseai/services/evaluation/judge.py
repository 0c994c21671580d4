"""
LLM-as-a-judge evaluation.

A produced output is scored against a versioned rubric by a second model
call. Decoding of the judge's answer is fail-closed: the scores object must
contain exactly the rubric's criteria as finite numbers inside the scale.
Anything else raises JudgeParseError; no default score is ever substituted.

Scoring:
- overall_score = mean of criterion scores, rounded to 2 decimals
- verdict from the rubric's bands (pass / needs_review / fail)
- confidence = 1 - stddev / half of the scale range, rounded to 2 decimals
- quality flags derived from the mean, individual criteria and the spread
"""
import asyncio
import json
from typing import Annotated, Any, Dict, List, Mapping, Optional, Tuple, Type, Union

import numpy as np
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StrictStr, create_model
from pydantic import ValidationError as PydanticValidationError

from caseai.core.errors import JudgeParseError, ModelError, NotFoundError, ResponseFormatError, ValidationError
from caseai.core.logging import get_logger
from caseai.core.metrics import record_judge_parse_failure, record_judge_verdict
from caseai.models.entities import JUDGE_OPERATION, AIInteraction, AIOperation
from caseai.models.evaluation import (
    AIEvaluation,
    DatasetEvaluationReport,
    EvaluationExample,
    ExampleEvaluationFailure,
    ModelDescriptor,
)
from caseai.services.ai.llm_client import ModelClient, ModelResponse
from caseai.services.ai.schema import extract_json_payload
from caseai.services.ai.templates import PromptTemplateEngine, RenderedPrompt
from caseai.services.evaluation.datasets import EvaluationDatasetManager
from caseai.services.evaluation.rubrics import Rubric, RubricRegistry
from caseai.storage.store import Store

logger = get_logger(__name__)

JUDGE_MODEL_FAMILIES = ("gpt-4", "claude", "grok", "llama")
RECOMMENDED_FAMILIES = ("gpt-4", "claude-3")


def _strict_number(value: Any) -> Any:
    # bool is an int subclass and numeric strings would coerce; both are rejected.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("score must be a JSON number")
    return float(value)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def extract_provider(model_id: str) -> str:
    if "gpt" in model_id:
        return "OpenAI"
    if "claude" in model_id:
        return "Anthropic"
    if "grok" in model_id:
        return "xAI"
    if "llama" in model_id:
        return "Meta"
    return "Unknown"


def build_response_model(rubric: Rubric) -> Type[BaseModel]:
    """Pydantic model accepting exactly this rubric's judge answer."""
    score_type = Annotated[
        float,
        BeforeValidator(_strict_number),
        Field(ge=rubric.scale_min, le=rubric.scale_max, allow_inf_nan=False),
    ]
    scores_model = create_model(
        f"Scores_{rubric.name}_{rubric.version.replace('.', '_')}",
        __config__=ConfigDict(extra="forbid"),
        **{key: (score_type, ...) for key in rubric.criterion_keys},
    )
    return create_model(
        f"JudgeResponse_{rubric.name}_{rubric.version.replace('.', '_')}",
        __config__=ConfigDict(extra="forbid"),
        scores=(scores_model, ...),
        reasoning=(Optional[Dict[str, StrictStr]], None),
        comments=(Optional[StrictStr], None),
    )


def decode_judge_response(raw: str, rubric: Rubric) -> Tuple[Dict[str, float], Dict[str, str], Optional[str]]:
    """
    Strictly decode a judge answer.

    Returns:
        (criteria scores, reasoning per criterion, comments)

    Raises:
        JudgeParseError on any deviation from the rubric's shape.
    """
    try:
        payload = extract_json_payload(raw)
    except ResponseFormatError as exc:
        raise JudgeParseError(exc.message, raw_output=raw) from exc

    if not isinstance(payload, dict):
        raise JudgeParseError("Judge response JSON is not an object", raw_output=raw)

    try:
        parsed = build_response_model(rubric).model_validate(payload)
    except PydanticValidationError as exc:
        errors = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise JudgeParseError(
            f"Judge response does not match rubric {rubric.name} v{rubric.version}: {'; '.join(errors)}",
            raw_output=raw,
            errors=errors,
        ) from exc

    scores = {key: getattr(parsed.scores, key) for key in rubric.criterion_keys}
    return scores, dict(parsed.reasoning or {}), parsed.comments


def score_summary(scores: Mapping[str, float], rubric: Rubric) -> Tuple[float, float, List[str]]:
    """(overall score, confidence, quality flags) for a set of criterion scores."""
    values = np.array([scores[key] for key in rubric.criterion_keys], dtype=float)
    mean = float(values.mean())
    std = float(values.std())

    overall = round(mean, 2)
    confidence = round(max(0.0, 1.0 - std / rubric.half_range), 2) if rubric.half_range > 0 else 1.0

    flags: List[str] = []
    if mean >= 8:
        flags.append("high_quality")
    if mean <= 4:
        flags.append("low_quality")
    if scores.get("faithfulness", 10) <= 3:
        flags.append("potential_hallucination")
    if min(scores.get("completeness", 10), scores.get("coverage", 10)) <= 3:
        flags.append("incomplete_response")
    if scores.get("relevance", 10) <= 3:
        flags.append("off_topic")
    if scores.get("clarity", 10) <= 3:
        flags.append("unclear_response")
    if std >= 2:
        flags.append("inconsistent_quality")
    if std <= 0.5:
        flags.append("consistent_quality")

    return overall, confidence, flags


def _format_reference(reference_context: Union[None, str, Mapping[str, Any]]) -> Optional[str]:
    if reference_context is None:
        return None
    if isinstance(reference_context, str):
        return reference_context
    return json.dumps(dict(reference_context), indent=2, default=str)


class JudgeEvaluator:
    """Scores AI output with a judge model and persists the verdicts."""

    def __init__(
        self,
        model_client: ModelClient,
        templates: PromptTemplateEngine,
        store: Store,
        rubrics: Optional[RubricRegistry] = None,
        datasets: Optional[EvaluationDatasetManager] = None,
        default_rubric_version: str = "1.0",
        dataset_concurrency: int = 4,
    ):
        self.model_client = model_client
        self.templates = templates
        self.store = store
        self.rubrics = rubrics or RubricRegistry()
        self.datasets = datasets
        self.default_rubric_version = default_rubric_version
        self.dataset_concurrency = dataset_concurrency

    def render_prompt(
        self,
        operation: AIOperation,
        produced_output: str,
        rubric: Rubric,
        reference_context: Union[None, str, Mapping[str, Any]] = None,
        chain_of_thought: bool = False,
    ) -> RenderedPrompt:
        criteria_text = "\n".join(
            f"{index}. **{criterion.title}** (`{criterion.key}`, "
            f"{_format_number(rubric.scale_min)}-{_format_number(rubric.scale_max)}): {criterion.description}"
            for index, criterion in enumerate(rubric.criteria, start=1)
        )
        scale = f"<{_format_number(rubric.scale_min)}-{_format_number(rubric.scale_max)}>"
        scores_example = "{" + ", ".join(f'"{key}": {scale}' for key in rubric.criterion_keys) + "}"
        reasoning_example = "{" + ", ".join(f'"{key}": "<reasoning>"' for key in rubric.criterion_keys) + "}"

        return self.templates.render(
            "judge_rubric_cot" if chain_of_thought else "judge_rubric",
            None,
            {
                "operation": operation,
                "produced_output": produced_output,
                "reference_context": _format_reference(reference_context),
                "rubric_name": rubric.name,
                "rubric_version": rubric.version,
                "scale_min": _format_number(rubric.scale_min),
                "scale_max": _format_number(rubric.scale_max),
                "criteria_text": criteria_text,
                "scores_example": scores_example,
                "reasoning_example": reasoning_example,
            },
        )

    async def evaluate_output(
        self,
        operation: Union[AIOperation, str],
        produced_output: str,
        rubric_version: Optional[str] = None,
        reference_context: Union[None, str, Mapping[str, Any]] = None,
        *,
        case_id: Optional[str] = None,
        subject_type: str = "output",
        subject_id: Optional[str] = None,
        chain_of_thought: bool = False,
    ) -> AIEvaluation:
        """
        Judge one produced output.

        Raises:
            ValidationError: unknown operation or rubric version, empty output
            ModelError: judge model call failed (failed interaction logged)
            JudgeParseError: judge answer not in rubric shape (failed
                interaction logged, no evaluation stored)
        """
        try:
            operation = AIOperation(operation)
        except ValueError as exc:
            raise ValidationError(f"Unknown operation: {operation}") from exc
        if not produced_output or not produced_output.strip():
            raise ValidationError("produced_output must not be empty")
        rubric = self.rubrics.get(rubric_version or self.default_rubric_version)

        prompt = self.render_prompt(operation, produced_output, rubric, reference_context, chain_of_thought)

        try:
            response = await self.model_client.invoke(prompt, JUDGE_OPERATION)
        except ModelError as exc:
            logger.warning(
                "judge_model_call_failed",
                operation=operation.value,
                subject_id=subject_id,
                kind=exc.kind.value,
                model=exc.model,
                error=exc.message,
            )
            await self._log_interaction(
                prompt, case_id, model=exc.model, duration_ms=exc.duration_ms, success=False, error=str(exc)
            )
            raise

        try:
            scores, reasoning, comments = decode_judge_response(response.content, rubric)
        except JudgeParseError as exc:
            record_judge_parse_failure(operation.value)
            logger.warning(
                "judge_response_unparseable",
                operation=operation.value,
                subject_id=subject_id,
                model=response.model,
                errors=exc.errors,
            )
            await self._log_interaction(prompt, case_id, response=response, success=False, error=str(exc))
            raise

        overall, confidence, flags = score_summary(scores, rubric)
        verdict = rubric.verdict_for(overall)
        interaction = self._interaction(prompt, case_id, response=response, success=True)
        evaluation = AIEvaluation(
            case_id=case_id,
            subject_type=subject_type,
            subject_id=subject_id,
            operation=operation,
            judge_model=response.model,
            rubric_name=rubric.name,
            rubric_version=rubric.version,
            criteria_scores=scores,
            reasoning=reasoning,
            overall_score=overall,
            verdict=verdict,
            confidence=confidence,
            flags=flags,
            comments=comments,
            interaction_id=interaction.id,
        )

        async with self.store.transaction() as tx:
            await tx.add_interaction(interaction)
            await tx.add_evaluation(evaluation)

        record_judge_verdict(operation.value, verdict.value)
        logger.info(
            "judge_evaluation_completed",
            evaluation_id=evaluation.id,
            operation=operation.value,
            subject_type=subject_type,
            subject_id=subject_id,
            rubric_version=rubric.version,
            overall_score=overall,
            verdict=verdict.value,
            confidence=confidence,
        )
        return evaluation

    async def evaluate_interaction(
        self,
        interaction_id: str,
        rubric_version: Optional[str] = None,
        chain_of_thought: bool = False,
    ) -> AIEvaluation:
        """Judge a stored interaction: its prompt is the reference, its response the output."""
        async with self.store.transaction() as tx:
            interaction = await tx.get_interaction(interaction_id)
        if interaction is None:
            raise NotFoundError("AIInteraction", interaction_id)
        if not interaction.success or not interaction.response:
            raise ValidationError(f"Interaction {interaction_id} has no successful response to evaluate")

        return await self.evaluate_output(
            interaction.operation,
            interaction.response,
            rubric_version,
            interaction.prompt,
            case_id=interaction.case_id,
            subject_type="interaction",
            subject_id=interaction.id,
            chain_of_thought=chain_of_thought,
        )

    async def evaluate_dataset(
        self,
        dataset_id: str,
        rubric_version: Optional[str] = None,
        concurrency: Optional[int] = None,
        chain_of_thought: bool = False,
    ) -> DatasetEvaluationReport:
        """
        Judge every example's expected output and compare with its labeled quality.

        Examples run concurrently, bounded by ``concurrency``. Judge failures
        for single examples are reported in the result; storage failures
        propagate.
        """
        if self.datasets is None:
            raise ValidationError("Dataset evaluation requires a dataset manager")
        concurrency = concurrency or self.dataset_concurrency
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1")
        rubric = self.rubrics.get(rubric_version or self.default_rubric_version)

        dataset = await self.datasets.get_dataset(dataset_id)
        if dataset is None:
            raise NotFoundError("Dataset", dataset_id)

        semaphore = asyncio.Semaphore(concurrency)

        async def run(example: EvaluationExample) -> Union[AIEvaluation, ExampleEvaluationFailure]:
            async with semaphore:
                try:
                    return await self.evaluate_output(
                        dataset.operation,
                        example.expected_output.content,
                        rubric.version,
                        example.input.model_dump(mode="json", exclude_none=True),
                        subject_type="dataset_example",
                        subject_id=example.id,
                        chain_of_thought=chain_of_thought,
                    )
                except (ModelError, JudgeParseError, ValidationError) as exc:
                    return ExampleEvaluationFailure(
                        example_id=example.id, error_type=exc.code, message=exc.message
                    )

        # Every example settles before anything propagates; no task outlives this call.
        results = await asyncio.gather(*(run(example) for example in dataset.examples), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error(
                    "judge_dataset_failed",
                    dataset_id=dataset.id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                raise result
        evaluations = [result for result in results if isinstance(result, AIEvaluation)]
        failures = [result for result in results if isinstance(result, ExampleEvaluationFailure)]

        report = DatasetEvaluationReport(
            dataset_id=dataset.id,
            operation=dataset.operation,
            rubric_name=rubric.name,
            rubric_version=rubric.version,
            judge_model=self.model_client.model_id,
            total_examples=len(dataset.examples),
            evaluated=len(evaluations),
            failed=len(failures),
            evaluations=evaluations,
            failures=failures,
        )

        if evaluations:
            expected = {example.id: example.expected_output.quality for example in dataset.examples}
            overall = np.array([evaluation.overall_score for evaluation in evaluations], dtype=float)
            errors = np.array(
                [abs(evaluation.overall_score - expected[evaluation.subject_id]) for evaluation in evaluations],
                dtype=float,
            )
            verdicts: Dict[str, int] = {}
            for evaluation in evaluations:
                verdicts[evaluation.verdict.value] = verdicts.get(evaluation.verdict.value, 0) + 1

            report.mean_overall_score = round(float(overall.mean()), 2)
            report.mean_absolute_error = round(float(errors.mean()), 2)
            report.criteria_means = {
                key: round(float(np.mean([evaluation.criteria_scores[key] for evaluation in evaluations])), 2)
                for key in rubric.criterion_keys
            }
            report.verdict_counts = verdicts

        logger.info(
            "judge_dataset_evaluated",
            dataset_id=dataset.id,
            rubric_version=rubric.version,
            evaluated=report.evaluated,
            failed=report.failed,
            mean_overall_score=report.mean_overall_score,
            mean_absolute_error=report.mean_absolute_error,
        )
        return report

    async def list_evaluations(
        self, case_id: Optional[str] = None, subject_id: Optional[str] = None
    ) -> List[AIEvaluation]:
        async with self.store.transaction() as tx:
            return await tx.list_evaluations(case_id=case_id, subject_id=subject_id)

    async def get_available_evaluation_models(self) -> List[ModelDescriptor]:
        """
        Judge-capable models from the provider catalog.

        Raises:
            ModelError if the catalog query fails.
        """
        supported = self.rubrics.get(self.default_rubric_version).criterion_keys
        models = await self.model_client.list_models()
        descriptors = []
        for model in models:
            if not any(family in model.id for family in JUDGE_MODEL_FAMILIES):
                continue
            descriptors.append(
                ModelDescriptor(
                    id=model.id,
                    name=model.name,
                    provider=extract_provider(model.id),
                    description=f"{model.name} - Suitable for AI output evaluation",
                    cost_per_1k_tokens=model.prompt_price * 1000 if model.prompt_price is not None else None,
                    max_tokens=model.context_length,
                    supported_criteria=list(supported),
                    recommended=any(family in model.id for family in RECOMMENDED_FAMILIES),
                )
            )
        return descriptors

    def _interaction(
        self,
        prompt: RenderedPrompt,
        case_id: Optional[str],
        *,
        response: Optional[ModelResponse] = None,
        success: bool,
        model: Optional[str] = None,
        duration_ms: int = 0,
        error: Optional[str] = None,
    ) -> AIInteraction:
        return AIInteraction(
            case_id=case_id,
            operation=JUDGE_OPERATION,
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
            prompt_template=prompt.template_id,
            prompt_version=prompt.version,
        )

    async def _log_interaction(self, prompt: RenderedPrompt, case_id: Optional[str], **kwargs: Any) -> None:
        interaction = self._interaction(prompt, case_id, **kwargs)
        async with self.store.transaction() as tx:
            await tx.add_interaction(interaction)
