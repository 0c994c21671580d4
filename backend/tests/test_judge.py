"""
Unit tests for the LLM-as-a-judge evaluator.

Tests verify:
- Judge answers are decoded strictly against the rubric
- Scoring is deterministic (overall score, verdict bands, confidence, flags)
- Failures are logged as interactions and never produce an evaluation
- Dataset runs report agreement with labeled quality
"""
import asyncio
import json

import pytest
from conftest import FakeModelClient, judge_output, model_error

from caseai.core.errors import JudgeParseError, ModelError, NotFoundError, PersistenceError, ValidationError
from caseai.models.entities import AIInteraction, AIOperation
from caseai.models.evaluation import Verdict
from caseai.services.ai.llm_client import ProviderModel
from caseai.services.evaluation.datasets import EvaluationDatasetManager
from caseai.services.evaluation.judge import JudgeEvaluator, decode_judge_response, score_summary
from caseai.services.evaluation.rubrics import CASE_OUTPUT_RUBRIC_V1, CASE_OUTPUT_RUBRIC_V2, RubricRegistry

OUTPUT = "The applicant requests housing assistance; income documents are pending."


def make_judge(store, templates, script, **kwargs):
    client = FakeModelClient(script)
    judge = JudgeEvaluator(
        client,
        templates,
        store,
        datasets=EvaluationDatasetManager(store),
        **kwargs,
    )
    return judge, client


class TestStrictDecode:
    def test_valid_answer(self):
        raw = json.dumps(judge_output(9, 8, 7, 6, reasoning={"faithfulness": "grounded"}, comments="ok"))
        scores, reasoning, comments = decode_judge_response(raw, CASE_OUTPUT_RUBRIC_V1)

        assert scores == {"faithfulness": 9.0, "completeness": 8.0, "relevance": 7.0, "clarity": 6.0}
        assert reasoning == {"faithfulness": "grounded"}
        assert comments == "ok"

    def test_fenced_answer(self):
        raw = "Here is my evaluation:\n```json\n" + json.dumps(judge_output()) + "\n```"
        scores, _, _ = decode_judge_response(raw, CASE_OUTPUT_RUBRIC_V1)
        assert scores["clarity"] == 8.0

    @pytest.mark.parametrize(
        "scores",
        [
            {"faithfulness": 8, "completeness": 8, "relevance": 8},
            {"faithfulness": 8, "completeness": 8, "relevance": 8, "clarity": 8, "style": 8},
            {"faithfulness": "8", "completeness": 8, "relevance": 8, "clarity": 8},
            {"faithfulness": True, "completeness": 8, "relevance": 8, "clarity": 8},
            {"faithfulness": 11, "completeness": 8, "relevance": 8, "clarity": 8},
            {"faithfulness": 0, "completeness": 8, "relevance": 8, "clarity": 8},
            {"faithfulness": None, "completeness": 8, "relevance": 8, "clarity": 8},
        ],
    )
    def test_malformed_scores_rejected(self, scores):
        with pytest.raises(JudgeParseError) as exc_info:
            decode_judge_response(json.dumps({"scores": scores}), CASE_OUTPUT_RUBRIC_V1)
        assert exc_info.value.errors

    def test_nan_rejected(self):
        raw = '{"scores": {"faithfulness": NaN, "completeness": 8, "relevance": 8, "clarity": 8}}'
        with pytest.raises(JudgeParseError):
            decode_judge_response(raw, CASE_OUTPUT_RUBRIC_V1)

    def test_unexpected_top_level_key_rejected(self):
        raw = json.dumps(judge_output(overall=8))
        with pytest.raises(JudgeParseError):
            decode_judge_response(raw, CASE_OUTPUT_RUBRIC_V1)

    def test_not_json(self):
        with pytest.raises(JudgeParseError):
            decode_judge_response("The output looks great, 9/10.", CASE_OUTPUT_RUBRIC_V1)

    def test_array_rejected(self):
        with pytest.raises(JudgeParseError):
            decode_judge_response("[8, 8, 8, 8]", CASE_OUTPUT_RUBRIC_V1)

    def test_rubric_v2_requires_its_own_criteria(self):
        with pytest.raises(JudgeParseError):
            decode_judge_response(json.dumps(judge_output()), CASE_OUTPUT_RUBRIC_V2)


class TestScoring:
    def test_uniform_scores(self):
        overall, confidence, flags = score_summary(
            {"faithfulness": 8, "completeness": 8, "relevance": 8, "clarity": 8}, CASE_OUTPUT_RUBRIC_V1
        )
        assert overall == 8.0
        assert confidence == 1.0
        assert "high_quality" in flags
        assert "consistent_quality" in flags

    def test_spread_scores(self):
        overall, confidence, flags = score_summary(
            {"faithfulness": 9, "completeness": 3, "relevance": 9, "clarity": 9}, CASE_OUTPUT_RUBRIC_V1
        )
        assert overall == 7.5
        assert confidence == 0.42
        assert "incomplete_response" in flags
        assert "inconsistent_quality" in flags
        assert "consistent_quality" not in flags

    def test_low_scores(self):
        _, _, flags = score_summary(
            {"faithfulness": 2, "completeness": 4, "relevance": 3, "clarity": 3}, CASE_OUTPUT_RUBRIC_V1
        )
        assert {"low_quality", "potential_hallucination", "off_topic", "unclear_response"} <= set(flags)

    @pytest.mark.parametrize(
        "score,verdict",
        [(10, Verdict.PASS), (7, Verdict.PASS), (6.99, Verdict.NEEDS_REVIEW), (5, Verdict.NEEDS_REVIEW), (4.99, Verdict.FAIL)],
    )
    def test_verdict_bands(self, score, verdict):
        assert CASE_OUTPUT_RUBRIC_V1.verdict_for(score) == verdict

    def test_registry_thresholds(self):
        rubric = RubricRegistry(pass_threshold=8, review_threshold=6).get("1.0")
        assert rubric.verdict_for(7.5) == Verdict.NEEDS_REVIEW

    def test_registry_unknown_version(self):
        with pytest.raises(ValidationError):
            RubricRegistry().get("9.9")

    def test_registry_rejects_inverted_thresholds(self):
        with pytest.raises(ValidationError):
            RubricRegistry(pass_threshold=5, review_threshold=7)


class TestEvaluateOutput:
    @pytest.mark.asyncio
    async def test_evaluation_persisted(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output(8, 7, 9, 8)])

        evaluation = await judge.evaluate_output(
            "generate_summary", OUTPUT, reference_context={"caseId": "c-1"}, case_id="c-1", subject_id="s-1"
        )

        assert evaluation.overall_score == 8.0
        assert evaluation.verdict == Verdict.PASS
        assert evaluation.rubric_version == "1.0"
        assert evaluation.judge_model == "openai/gpt-4o"
        assert evaluation.operation == AIOperation.GENERATE_SUMMARY

        prompt = client.calls[0]["prompt"]
        assert prompt.template_id == "judge_rubric"
        assert OUTPUT in prompt.user
        assert '"caseId": "c-1"' in prompt.user

        stored = await judge.list_evaluations(case_id="c-1")
        assert [e.id for e in stored] == [evaluation.id]
        async with store.transaction() as tx:
            interaction = await tx.get_interaction(evaluation.interaction_id)
        assert interaction.success is True
        assert interaction.operation == "judge_evaluation"

    @pytest.mark.asyncio
    async def test_identical_answers_score_identically(self, store, templates):
        judge, _ = make_judge(store, templates, [judge_output(9, 6, 8, 7)])

        first = await judge.evaluate_output("generate_summary", OUTPUT)
        second = await judge.evaluate_output("generate_summary", OUTPUT)

        assert first.overall_score == second.overall_score == 7.5
        assert first.confidence == second.confidence
        assert first.flags == second.flags

    @pytest.mark.asyncio
    async def test_chain_of_thought_template(self, store, templates):
        judge, client = make_judge(
            store, templates, [judge_output(reasoning={"faithfulness": "matches the context"})]
        )

        evaluation = await judge.evaluate_output("generate_summary", OUTPUT, chain_of_thought=True)

        assert client.calls[0]["prompt"].template_id == "judge_rubric_cot"
        assert evaluation.reasoning == {"faithfulness": "matches the context"}

    @pytest.mark.asyncio
    async def test_rubric_v2(self, store, templates):
        scores = {"faithfulness": 9, "coverage": 8, "actionability": 7, "clarity": 8, "safety": 10}
        judge, client = make_judge(store, templates, [{"scores": scores}])

        evaluation = await judge.evaluate_output("generate_recommendation", OUTPUT, rubric_version="2.0")

        assert evaluation.rubric_version == "2.0"
        assert set(evaluation.criteria_scores) == set(scores)
        assert evaluation.overall_score == 8.4
        assert "actionability" in client.calls[0]["prompt"].user

    @pytest.mark.asyncio
    async def test_parse_failure_logs_interaction_only(self, store, templates):
        judge, _ = make_judge(store, templates, ['{"scores": {"faithfulness": 8}}'])

        with pytest.raises(JudgeParseError):
            await judge.evaluate_output("generate_summary", OUTPUT, case_id="c-2")

        assert await judge.list_evaluations(case_id="c-2") == []
        async with store.transaction() as tx:
            interactions = await tx.list_interactions("c-2")
        assert len(interactions) == 1
        assert interactions[0].success is False
        assert interactions[0].response == '{"scores": {"faithfulness": 8}}'

    @pytest.mark.asyncio
    async def test_model_failure_logs_interaction_and_propagates(self, store, templates):
        judge, _ = make_judge(store, templates, [model_error()])

        with pytest.raises(ModelError):
            await judge.evaluate_output("generate_summary", OUTPUT, case_id="c-3")

        assert await judge.list_evaluations(case_id="c-3") == []
        async with store.transaction() as tx:
            interactions = await tx.list_interactions("c-3")
        assert [i.success for i in interactions] == [False]

    @pytest.mark.asyncio
    async def test_unknown_rubric_version_makes_no_call(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output()])

        with pytest.raises(ValidationError):
            await judge.evaluate_output("generate_summary", OUTPUT, rubric_version="3.0")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_operation_and_empty_output(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output()])

        with pytest.raises(ValidationError):
            await judge.evaluate_output("write_poetry", OUTPUT)
        with pytest.raises(ValidationError):
            await judge.evaluate_output("generate_summary", "   ")
        assert client.calls == []


class TestEvaluateInteraction:
    @pytest.mark.asyncio
    async def test_evaluates_stored_interaction(self, store, templates):
        interaction = AIInteraction(
            case_id="c-9",
            operation="generate_summary",
            prompt="Summarize case c-9",
            response=OUTPUT,
            model="openai/gpt-4o",
            success=True,
        )
        async with store.transaction() as tx:
            await tx.add_interaction(interaction)
        judge, client = make_judge(store, templates, [judge_output()])

        evaluation = await judge.evaluate_interaction(interaction.id)

        assert evaluation.subject_type == "interaction"
        assert evaluation.subject_id == interaction.id
        assert evaluation.case_id == "c-9"
        assert "Summarize case c-9" in client.calls[0]["prompt"].user

    @pytest.mark.asyncio
    async def test_failed_interaction_rejected(self, store, templates):
        interaction = AIInteraction(operation="generate_summary", prompt="p", model="m", success=False, error="boom")
        async with store.transaction() as tx:
            await tx.add_interaction(interaction)
        judge, _ = make_judge(store, templates, [judge_output()])

        with pytest.raises(ValidationError):
            await judge.evaluate_interaction(interaction.id)

    @pytest.mark.asyncio
    async def test_unknown_interaction(self, store, templates):
        judge, _ = make_judge(store, templates, [judge_output()])
        with pytest.raises(NotFoundError):
            await judge.evaluate_interaction("missing")


class TestEvaluateDataset:
    async def _dataset(self, judge, qualities):
        dataset = await judge.datasets.create_dataset({"name": "calibration", "operation": "generate_summary"})
        for index, quality in enumerate(qualities):
            await judge.datasets.add_example_to_dataset(
                dataset.id,
                {
                    "input": {"prompt": f"Summarize case {index}"},
                    "expectedOutput": {
                        "content": f"Summary number {index}",
                        "quality": quality,
                        "criteria": {"faithfulness": 8, "completeness": 8, "relevance": 8, "clarity": 8},
                    },
                },
            )
        return dataset

    @pytest.mark.asyncio
    async def test_report_against_labeled_quality(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output(8, 8, 8, 8)])
        dataset = await self._dataset(judge, [6, 9])

        report = await judge.evaluate_dataset(dataset.id)

        assert report.total_examples == 2
        assert report.evaluated == 2
        assert report.failed == 0
        assert report.mean_overall_score == 8.0
        assert report.mean_absolute_error == 1.5
        assert report.criteria_means == {"faithfulness": 8.0, "completeness": 8.0, "relevance": 8.0, "clarity": 8.0}
        assert report.verdict_counts == {"pass": 2}
        assert len(client.calls) == 2
        assert {e.subject_type for e in report.evaluations} == {"dataset_example"}

    @pytest.mark.asyncio
    async def test_judge_failures_reported_per_example(self, store, templates):
        judge, _ = make_judge(store, templates, [judge_output(), "not json at all"])
        dataset = await self._dataset(judge, [8, 8])

        report = await judge.evaluate_dataset(dataset.id, concurrency=1)

        assert report.evaluated == 1
        assert report.failed == 1
        assert report.failures[0].error_type == "judge_parse_error"

    @pytest.mark.asyncio
    async def test_unjudgeable_example_reported_per_example(self, store, templates):
        class StaleDatasets(EvaluationDatasetManager):
            # Rows written before blank content was rejected at insert time.
            async def get_dataset(self, dataset_id):
                dataset = await super().get_dataset(dataset_id)
                dataset.examples[0].expected_output.content = "   "
                return dataset

        client = FakeModelClient([judge_output(8, 8, 8, 8)])
        judge = JudgeEvaluator(client, templates, store, datasets=StaleDatasets(store))
        dataset = await self._dataset(judge, [8, 6])

        report = await judge.evaluate_dataset(dataset.id)

        assert report.evaluated == 1
        assert report.failed == 1
        assert report.failures[0].error_type == "validation_error"
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_waits_for_siblings(self, store, templates):
        judge, _ = make_judge(store, templates, [judge_output()])
        dataset = await self._dataset(judge, [8, 8, 8])
        failing_id = dataset.examples[0].id
        judge_one = judge.evaluate_output
        settled = []

        async def evaluate_output(*args, subject_id=None, **kwargs):
            if subject_id == failing_id:
                raise PersistenceError("db down")
            await asyncio.sleep(0)
            evaluation = await judge_one(*args, subject_id=subject_id, **kwargs)
            settled.append(subject_id)
            return evaluation

        judge.evaluate_output = evaluate_output

        with pytest.raises(PersistenceError):
            await judge.evaluate_dataset(dataset.id, concurrency=3)

        assert sorted(settled) == sorted(example.id for example in dataset.examples[1:])

    @pytest.mark.asyncio
    async def test_unknown_dataset(self, store, templates):
        judge, _ = make_judge(store, templates, [judge_output()])
        with pytest.raises(NotFoundError):
            await judge.evaluate_dataset("missing")

    @pytest.mark.asyncio
    async def test_empty_dataset(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output()])
        dataset = await self._dataset(judge, [])

        report = await judge.evaluate_dataset(dataset.id)

        assert report.total_examples == 0
        assert report.mean_overall_score is None
        assert client.calls == []


class TestModelCatalog:
    @pytest.mark.asyncio
    async def test_filters_and_describes_models(self, store, templates):
        judge, client = make_judge(store, templates, [judge_output()])
        client.models = [
            ProviderModel(id="openai/gpt-4o", name="GPT-4o", context_length=128000, prompt_price=0.0000025),
            ProviderModel(id="anthropic/claude-3-haiku", name="Claude 3 Haiku", prompt_price=0.00000025),
            ProviderModel(id="mistralai/mistral-7b", name="Mistral 7B"),
            ProviderModel(id="meta-llama/llama-3.1-70b-instruct", name="Llama 3.1 70B"),
        ]

        models = await judge.get_available_evaluation_models()

        by_id = {model.id: model for model in models}
        assert set(by_id) == {"openai/gpt-4o", "anthropic/claude-3-haiku", "meta-llama/llama-3.1-70b-instruct"}
        assert by_id["openai/gpt-4o"].provider == "OpenAI"
        assert by_id["openai/gpt-4o"].cost_per_1k_tokens == pytest.approx(0.0025)
        assert by_id["openai/gpt-4o"].recommended is True
        assert by_id["anthropic/claude-3-haiku"].recommended is True
        assert by_id["meta-llama/llama-3.1-70b-instruct"].recommended is False
        assert by_id["meta-llama/llama-3.1-70b-instruct"].cost_per_1k_tokens is None
        assert by_id["openai/gpt-4o"].supported_criteria == ["faithfulness", "completeness", "relevance", "clarity"]
