"""
Shared fixtures: in-memory SQLite store, scripted model clients and case factories.

No test performs a real HTTP call; provider traffic goes through
httpx.MockTransport or a scripted fake client.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Union

import pytest

from caseai.core.config import ModelClientConfig, Settings
from caseai.core.database import create_engine, create_session_factory, init_models
from caseai.core.errors import ModelError, ModelErrorKind
from caseai.models.entities import ApplicationData, Case, CaseDocument
from caseai.services.ai.llm_client import ModelResponse, ProviderModel
from caseai.services.ai.prompt_library import build_default_engine
from caseai.storage.store import Store, StoreTransaction

MEMORY_DB = "sqlite+aiosqlite:///:memory:"


class FakeModelClient:
    """
    Stand-in for ModelClient that replays scripted outcomes.

    Each script entry is either response content (str or dict, dicts are
    JSON-encoded) or a ModelError to raise. The last entry repeats.
    """

    def __init__(
        self,
        script: List[Union[str, Dict[str, Any], ModelError]],
        model_id: str = "openai/gpt-4o",
        models: Optional[List[ProviderModel]] = None,
    ):
        self.script = list(script)
        self._model_id = model_id
        self.models = models or []
        self.calls: List[Dict[str, Any]] = []

    @property
    def model_id(self) -> str:
        return self._model_id

    async def invoke(self, prompt, operation=None, overrides=None) -> ModelResponse:
        self.calls.append({"prompt": prompt, "operation": operation})
        outcome = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(outcome, ModelError):
            raise outcome
        content = json.dumps(outcome) if isinstance(outcome, dict) else outcome
        return ModelResponse(
            content=content,
            model=self._model_id,
            input_tokens=100,
            output_tokens=50,
            cost=0.00075,
            response_time_ms=12,
        )

    async def list_models(self) -> List[ProviderModel]:
        return self.models


def model_error(kind: ModelErrorKind = ModelErrorKind.ALL_RETRIES_EXHAUSTED) -> ModelError:
    return ModelError(kind, "provider unavailable", model="openai/gpt-4o", duration_ms=40)


def make_case(case_id: str = "case-1", **overrides: Any) -> Case:
    application = ApplicationData(
        applicant_name="Jane Doe",
        applicant_email="jane@example.com",
        application_type="housing_assistance",
        documents=[CaseDocument(filename="id.pdf", mime_type="application/pdf")],
        form_data={"household_size": 3, "monthly_income": 2100},
    )
    return Case(id=case_id, application_data=application, **overrides)


SUMMARY_OUTPUT = {
    "content": "Applicant submitted a complete housing assistance request.",
    "recommendations": ["Verify income documents", "Schedule interview"],
    "confidence": 0.85,
}

RECOMMENDATION_OUTPUT = {
    "content": "Review the uploaded identity document.",
    "recommendations": ["Check document validity"],
    "priority": "high",
    "confidence": 0.7,
}


def judge_output(faithfulness=8, completeness=8, relevance=8, clarity=8, **extra) -> Dict[str, Any]:
    payload = {
        "scores": {
            "faithfulness": faithfulness,
            "completeness": completeness,
            "relevance": relevance,
            "clarity": clarity,
        }
    }
    payload.update(extra)
    return payload


@pytest.fixture
def settings() -> Settings:
    model = ModelClientConfig(
        model_id="openai/gpt-4o",
        api_key="test-key",
        base_url="https://openrouter.test/api/v1",
        timeout_seconds=5.0,
        retry_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
    )
    return Settings(
        database_url=MEMORY_DB,
        log_level="WARNING",
        log_json=False,
        model=model,
        judge_model=model.model_copy(update={"temperature": 0.1}),
    )


@pytest.fixture
async def store():
    engine = create_engine(MEMORY_DB)
    await init_models(engine)
    yield Store(create_session_factory(engine), serialize_transactions=True)
    await engine.dispose()


@pytest.fixture
def templates():
    return build_default_engine()


class SlowReadTransaction(StoreTransaction):
    """Yields to the event loop after each read that a later write in the same unit depends on."""

    async def max_summary_version(self, case_id, summary_type, step):
        version = await super().max_summary_version(case_id, summary_type, step)
        await asyncio.sleep(0.01)
        return version

    async def get_dataset(self, dataset_id):
        dataset = await super().get_dataset(dataset_id)
        await asyncio.sleep(0.01)
        return dataset


class SlowReadStore(Store):
    transaction_class = SlowReadTransaction


@pytest.fixture
async def unserialized_store(tmp_path):
    """File-backed store without in-process transaction serialization."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    await init_models(engine)
    yield SlowReadStore(create_session_factory(engine))
    await engine.dispose()
