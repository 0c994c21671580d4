"""
Unit tests for evaluation dataset management.
"""
import asyncio

import pytest

from caseai.core.errors import NotFoundError, ValidationError
from caseai.models.entities import AIOperation
from caseai.models.evaluation import DifficultyLevel, EvaluationExample
from caseai.services.evaluation.datasets import EvaluationDatasetManager, compute_statistics


def example_payload(quality=8, difficulty="medium", content="A faithful summary of the case."):
    return {
        "input": {"prompt": "Summarize the case", "caseData": {"caseId": "case-1"}},
        "expectedOutput": {
            "content": content,
            "quality": quality,
            "criteria": {"faithfulness": 8, "completeness": 7, "relevance": 9, "clarity": 8},
        },
        "metadata": {"tags": ["regression"], "difficulty": difficulty},
    }


@pytest.fixture
def manager(store):
    return EvaluationDatasetManager(store)


class TestCreateAndList:
    @pytest.mark.asyncio
    async def test_create_dataset_defaults(self, manager):
        dataset = await manager.create_dataset({"name": "Summaries", "operation": "generate_summary"})

        assert dataset.name == "Summaries"
        assert dataset.description == ""
        assert dataset.operation == AIOperation.GENERATE_SUMMARY
        assert dataset.metadata.created_by == "system"
        assert dataset.metadata.version == 1
        assert dataset.statistics.total_examples == 0
        assert dataset.statistics.average_quality == 0.0
        assert dataset.examples == []

    @pytest.mark.asyncio
    async def test_create_dataset_rejects_blank_name(self, manager):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_dataset({"name": "   ", "operation": "generate_summary"})
        assert exc_info.value.errors

    @pytest.mark.asyncio
    async def test_create_dataset_rejects_unknown_operation(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_dataset({"name": "x", "operation": "write_poetry"})

    @pytest.mark.asyncio
    async def test_list_filters_and_paging(self, manager):
        await manager.create_dataset(
            {"name": "a", "operation": "generate_summary", "metadata": {"createdBy": "alice", "tags": ["gold"]}}
        )
        await manager.create_dataset(
            {"name": "b", "operation": "analyze_application", "metadata": {"createdBy": "bob"}}
        )
        await manager.create_dataset(
            {"name": "c", "operation": "generate_summary", "metadata": {"createdBy": "bob", "tags": ["gold"]}}
        )

        assert [ds.name for ds in await manager.list_datasets()] == ["a", "b", "c"]
        assert [ds.name for ds in await manager.list_datasets(operation="generate_summary")] == ["a", "c"]
        assert [ds.name for ds in await manager.list_datasets(created_by="bob")] == ["b", "c"]
        assert [ds.name for ds in await manager.list_datasets(tags=["gold"])] == ["a", "c"]
        assert [ds.name for ds in await manager.list_datasets(limit=1, offset=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_list_rejects_negative_paging(self, manager):
        with pytest.raises(ValidationError):
            await manager.list_datasets(limit=-1)

    @pytest.mark.asyncio
    async def test_get_unknown_dataset_returns_none(self, manager):
        assert await manager.get_dataset("missing") is None

    @pytest.mark.asyncio
    async def test_examples_of_unknown_dataset(self, manager):
        with pytest.raises(NotFoundError):
            await manager.get_dataset_examples("missing")


class TestExamples:
    @pytest.mark.asyncio
    async def test_statistics_follow_examples(self, manager):
        dataset = await manager.create_dataset({"name": "stats", "operation": "generate_summary"})

        await manager.add_example_to_dataset(dataset.id, example_payload(quality=7, difficulty="easy"))
        await manager.add_example_to_dataset(dataset.id, example_payload(quality=9, difficulty="medium"))

        stored = await manager.get_dataset(dataset.id)
        assert stored.statistics.total_examples == 2
        assert stored.statistics.average_quality == 8.0
        assert stored.statistics.difficulty_distribution == {"easy": 1, "medium": 1}
        assert stored.metadata.updated_at >= stored.metadata.created_at

    @pytest.mark.asyncio
    async def test_examples_newest_first(self, manager):
        dataset = await manager.create_dataset({"name": "order", "operation": "generate_summary"})
        first = await manager.add_example_to_dataset(dataset.id, example_payload(content="first example"))
        second = await manager.add_example_to_dataset(dataset.id, example_payload(content="second example"))

        examples = await manager.get_dataset_examples(dataset.id)
        assert [example.id for example in examples] == [second.id, first.id]
        assert examples[0].dataset_id == dataset.id
        assert examples[0].metadata.tags == ["regression"]

    @pytest.mark.asyncio
    async def test_add_to_unknown_dataset_has_no_side_effects(self, manager):
        with pytest.raises(NotFoundError):
            await manager.add_example_to_dataset("missing", example_payload())

        assert await manager.list_datasets() == []

    @pytest.mark.asyncio
    async def test_quality_out_of_range_rejected(self, manager):
        dataset = await manager.create_dataset({"name": "range", "operation": "generate_summary"})
        with pytest.raises(ValidationError):
            await manager.add_example_to_dataset(dataset.id, example_payload(quality=11))

        stored = await manager.get_dataset(dataset.id)
        assert stored.statistics.total_examples == 0

    @pytest.mark.asyncio
    async def test_blank_content_rejected(self, manager):
        dataset = await manager.create_dataset({"name": "blank", "operation": "generate_summary"})
        with pytest.raises(ValidationError) as exc_info:
            await manager.add_example_to_dataset(dataset.id, example_payload(content="   "))

        assert exc_info.value.errors
        stored = await manager.get_dataset(dataset.id)
        assert stored.examples == []

    @pytest.mark.asyncio
    async def test_concurrent_inserts_keep_statistics_consistent(self, manager):
        dataset = await manager.create_dataset({"name": "busy", "operation": "generate_summary"})

        await asyncio.gather(
            *(manager.add_example_to_dataset(dataset.id, example_payload(quality=q)) for q in [2, 4, 6, 8, 10])
        )

        stored = await manager.get_dataset(dataset.id)
        assert len(stored.examples) == 5
        assert stored.statistics.total_examples == 5
        assert stored.statistics.average_quality == 6.0

    @pytest.mark.asyncio
    async def test_concurrent_inserts_without_store_serialization(self, unserialized_store):
        manager = EvaluationDatasetManager(unserialized_store)
        dataset = await manager.create_dataset({"name": "racy", "operation": "generate_summary"})

        await asyncio.gather(
            *(manager.add_example_to_dataset(dataset.id, example_payload(quality=q)) for q in [2, 4, 6, 8, 10])
        )

        stored = await manager.get_dataset(dataset.id)
        assert len(stored.examples) == 5
        assert stored.statistics.total_examples == 5
        assert stored.statistics.average_quality == 6.0
        assert len(manager.dataset_locks) == 0

    @pytest.mark.asyncio
    async def test_single_example_dataset(self, manager):
        dataset = await manager.create_dataset({"name": "Summary Dataset", "operation": "generate_summary"})
        await manager.add_example_to_dataset(
            dataset.id,
            {
                "input": {"prompt": "Summarize case 17"},
                "expectedOutput": {
                    "content": "Case 17 is awaiting income verification.",
                    "quality": 8,
                    "criteria": {"faithfulness": 9, "completeness": 8, "relevance": 8, "clarity": 7},
                },
            },
        )

        stored = await manager.get_dataset(dataset.id)
        assert len(stored.examples) == 1
        assert stored.statistics.total_examples == 1
        assert stored.statistics.average_quality == 8
        dumped = stored.model_dump(mode="json", by_alias=True)
        assert dumped["statistics"]["totalExamples"] == 1
        assert dumped["statistics"]["averageQuality"] == 8.0

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, manager):
        dataset = await manager.create_dataset(
            {
                "name": "Overall summary regression",
                "description": "Hand-labeled summaries",
                "operation": "generate_summary",
                "metadata": {"createdBy": "qa", "tags": ["summaries"], "difficulty": "hard"},
            }
        )
        await manager.add_example_to_dataset(dataset.id, example_payload(quality=6, difficulty="hard"))
        await manager.add_example_to_dataset(dataset.id, example_payload(quality=9, difficulty="easy"))
        await manager.add_example_to_dataset(dataset.id, example_payload(quality=9, difficulty="easy"))

        listed = await manager.list_datasets(operation=AIOperation.GENERATE_SUMMARY, created_by="qa")
        assert [ds.id for ds in listed] == [dataset.id]
        assert listed[0].statistics.total_examples == 3
        assert listed[0].statistics.average_quality == 8.0
        assert listed[0].statistics.difficulty_distribution == {"hard": 1, "easy": 2}

        examples = await manager.get_dataset_examples(dataset.id)
        assert len(examples) == 3


def test_compute_statistics_empty():
    stats = compute_statistics([])
    assert stats.total_examples == 0
    assert stats.average_quality == 0.0
    assert stats.difficulty_distribution == {}


def test_compute_statistics_keeps_exact_mean():
    examples = [
        EvaluationExample.model_validate({"datasetId": "d", **example_payload(quality=q)}) for q in (7, 8, 8)
    ]
    examples[0].metadata.difficulty = DifficultyLevel.HARD
    stats = compute_statistics(examples)
    assert stats.average_quality == pytest.approx(23 / 3)
    assert stats.average_quality != 7.67
    assert stats.difficulty_distribution == {"hard": 1, "medium": 2}
