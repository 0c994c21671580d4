"""
Explicit service wiring.

build_container() constructs every service from a Settings object. The HTTP
app and the CLI both go through it; nothing in the service layer reaches for
module-level singletons or the environment.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from caseai.core.config import Settings
from caseai.core.database import create_engine, create_session_factory, init_models, is_sqlite_url
from caseai.core.locks import KeyedLock
from caseai.core.logging import get_logger
from caseai.services.ai.llm_client import ModelClient, PricingTable
from caseai.services.ai.orchestration import AIOrchestrationService
from caseai.services.ai.prompt_library import build_default_engine
from caseai.services.ai.templates import PromptTemplateEngine
from caseai.services.evaluation.datasets import EvaluationDatasetManager
from caseai.services.evaluation.judge import JudgeEvaluator
from caseai.services.evaluation.rubrics import RubricRegistry
from caseai.storage.cases import SqlCaseRepository
from caseai.storage.store import Store

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    store: Store
    cases: SqlCaseRepository
    templates: PromptTemplateEngine
    model_client: ModelClient
    judge_client: ModelClient
    orchestration: AIOrchestrationService
    rubrics: RubricRegistry
    datasets: EvaluationDatasetManager
    judge: JudgeEvaluator

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("container_closed")


async def build_container(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    model_client: Optional[ModelClient] = None,
    judge_client: Optional[ModelClient] = None,
) -> ServiceContainer:
    """
    Build all services and make sure the schema exists.

    Args:
        settings: Process configuration
        transport: Optional httpx transport shared by both model clients
        model_client / judge_client: Prebuilt clients, replacing the configured ones
    """
    engine = create_engine(settings.database_url)
    await init_models(engine)
    store = Store(
        create_session_factory(engine),
        serialize_transactions=is_sqlite_url(settings.database_url),
    )

    pricing = PricingTable()
    templates = build_default_engine()
    model_client = model_client or ModelClient(settings.model, pricing=pricing, transport=transport)
    judge_client = judge_client or ModelClient(settings.judge_model, pricing=pricing, transport=transport)

    rubrics = RubricRegistry(
        pass_threshold=settings.judge.pass_threshold,
        review_threshold=settings.judge.review_threshold,
    )
    datasets = EvaluationDatasetManager(store, KeyedLock())
    container = ServiceContainer(
        settings=settings,
        engine=engine,
        store=store,
        cases=SqlCaseRepository(store),
        templates=templates,
        model_client=model_client,
        judge_client=judge_client,
        orchestration=AIOrchestrationService(model_client, templates, store, KeyedLock()),
        rubrics=rubrics,
        datasets=datasets,
        judge=JudgeEvaluator(
            judge_client,
            templates,
            store,
            rubrics=rubrics,
            datasets=datasets,
            default_rubric_version=settings.judge.default_rubric_version,
            dataset_concurrency=settings.judge.dataset_concurrency,
        ),
    )
    logger.info(
        "container_ready",
        model=model_client.model_id,
        judge_model=judge_client.model_id,
        fallback_model=settings.model.fallback_model_id,
        rubric_versions=rubrics.versions(),
    )
    return container
