"""
Async client for an OpenRouter-compatible chat completions API.

Design constraints:
- No provider SDKs: plain httpx against /chat/completions and /models
- One overall deadline per invoke() covering every attempt, backoff sleep
  and the fallback; on expiry the in-flight request is cancelled
- Transient failures (transport errors, 408/429/5xx, malformed bodies) are
  retried with capped exponential backoff and jitter; other 4xx fail fast
- A configured fallback model gets exactly one attempt after the primary
  attempts are exhausted
- The client never writes to storage; every outcome, including failures,
  carries enough detail (attempt traces, model, elapsed time) for the caller
  to log the interaction
"""
import asyncio
import json
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from caseai.core.config import ModelClientConfig
from caseai.core.errors import ModelError, ModelErrorKind, ValidationError
from caseai.core.logging import get_logger
from caseai.core.metrics import (
    record_llm_fallback,
    record_llm_request,
    record_llm_retry,
    record_llm_tokens_and_cost,
)
from caseai.services.ai.templates import RenderedPrompt

logger = get_logger(__name__)

SAMPLING_PARAMETERS = ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty")

# USD per million tokens: (input, output)
DEFAULT_PRICING: Dict[str, Tuple[float, float]] = {
    "x-ai/grok-beta": (5.0, 15.0),
    "openai/gpt-4": (30.0, 60.0),
    "openai/gpt-4o": (2.5, 10.0),
    "openai/gpt-4o-mini": (0.15, 0.6),
    "openai/gpt-3.5-turbo": (0.5, 1.5),
    "anthropic/claude-3-opus": (15.0, 75.0),
    "anthropic/claude-3.5-sonnet": (3.0, 15.0),
    "anthropic/claude-3-haiku": (0.25, 1.25),
    "meta-llama/llama-3.1-70b-instruct": (0.52, 0.75),
}


class PricingTable:
    """Per-model token prices. Unknown models cost nothing."""

    def __init__(self, prices: Optional[Mapping[str, Tuple[float, float]]] = None):
        self._prices: Dict[str, Tuple[float, float]] = dict(DEFAULT_PRICING if prices is None else prices)

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        price = self._prices.get(model)
        if price is None:
            return 0.0
        input_price, output_price = price
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000

    def __contains__(self, model: str) -> bool:
        return model in self._prices


class ModelAttempt(BaseModel):
    """Trace of a single HTTP attempt."""

    model: str
    attempt: int
    fallback: bool = False
    outcome: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0


class ModelResponse(BaseModel):
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    response_time_ms: int = 0
    finish_reason: Optional[str] = None
    used_fallback: bool = False
    attempts: List[ModelAttempt] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderModel(BaseModel):
    """One entry of the provider's model catalog."""

    id: str
    name: str
    description: Optional[str] = None
    context_length: Optional[int] = None
    prompt_price: Optional[float] = None
    completion_price: Optional[float] = None


class _AttemptFailed(Exception):
    def __init__(self, kind: ModelErrorKind, message: str, transient: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.transient = transient
        self.status_code = status_code


def _is_transient_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500


def _kind_for_status(status_code: int) -> ModelErrorKind:
    if status_code == 429:
        return ModelErrorKind.RATE_LIMITED
    if status_code == 408:
        return ModelErrorKind.TIMEOUT
    return ModelErrorKind.PROVIDER_ERROR


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class ModelClient:
    """
    Resilient model invoker.

    Args:
        config: Model id, credentials, sampling defaults and resilience policy
        pricing: Token price table for cost accounting
        transport: Optional httpx transport (tests pass an httpx.MockTransport)
        sleep: Coroutine used for backoff sleeps
        rng: Random source for backoff jitter
    """

    def __init__(
        self,
        config: ModelClientConfig,
        pricing: Optional[PricingTable] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.pricing = pricing or PricingTable()
        self._transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def model_id(self) -> str:
        return self.config.model_id

    def backoff_delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (1-based): min(cap, base * 2^(n-1)) scaled by jitter in [0.5, 1.0]."""
        base = min(self.config.backoff_max_seconds, self.config.backoff_base_seconds * (2 ** (attempt - 1)))
        return base * self._rng.uniform(0.5, 1.0)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.site_url,
            "X-Title": self.config.app_name,
        }

    def _http_client(self) -> httpx.AsyncClient:
        timeout = self.config.attempt_timeout_seconds or self.config.timeout_seconds
        return httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers=self._headers(),
            timeout=timeout,
            transport=self._transport,
        )

    def resolve_parameters(
        self,
        template_parameters: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Config defaults < template parameters < per-call overrides."""
        unknown = sorted(set(overrides or {}) - set(SAMPLING_PARAMETERS))
        if unknown:
            raise ValidationError(f"Unknown sampling parameters: {', '.join(unknown)}")

        params: Dict[str, Any] = {name: getattr(self.config, name) for name in SAMPLING_PARAMETERS}
        for source in (template_parameters or {}, overrides or {}):
            for name, value in source.items():
                if name in SAMPLING_PARAMETERS and value is not None:
                    params[name] = value
        return params

    async def invoke(
        self,
        prompt: RenderedPrompt,
        operation: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> ModelResponse:
        """
        Send a rendered prompt and return the normalized response.

        Raises:
            ModelError: TIMEOUT when the overall deadline expires,
                PROVIDER_ERROR for non-retryable provider responses or a
                missing API key, RATE_LIMITED when the primary model stayed
                rate limited, ALL_RETRIES_EXHAUSTED otherwise
            ValidationError: unknown override keys
        """
        operation = operation or prompt.operation or "unknown"
        model_id = self.config.model_id

        if not self.config.api_key:
            record_llm_request(operation, model_id, ModelErrorKind.PROVIDER_ERROR.value, 0.0)
            logger.error("llm_api_key_missing", operation=operation, model=model_id)
            raise ModelError(ModelErrorKind.PROVIDER_ERROR, "Model provider API key is not configured", model=model_id)

        params = self.resolve_parameters(prompt.parameters, overrides)
        attempts: List[ModelAttempt] = []
        start = time.perf_counter()

        try:
            response = await asyncio.wait_for(
                self._invoke_with_policy(prompt, params, operation, attempts, start),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            duration_ms = _elapsed_ms(start)
            last_model = attempts[-1].model if attempts else model_id
            record_llm_request(operation, last_model, ModelErrorKind.TIMEOUT.value, duration_ms / 1000.0)
            logger.warning(
                "llm_deadline_exceeded",
                operation=operation,
                model=last_model,
                timeout_seconds=self.config.timeout_seconds,
                attempts=len(attempts),
                duration_ms=duration_ms,
            )
            raise ModelError(
                ModelErrorKind.TIMEOUT,
                f"Model call exceeded deadline of {self.config.timeout_seconds}s",
                model=last_model,
                duration_ms=duration_ms,
                attempts=attempts,
            )

        record_llm_request(operation, response.model, "success", response.response_time_ms / 1000.0)
        record_llm_tokens_and_cost(response.model, response.input_tokens, response.output_tokens, response.cost)
        logger.info(
            "llm_request_completed",
            operation=operation,
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=round(response.cost, 6),
            duration_ms=response.response_time_ms,
            attempts=len(response.attempts),
            used_fallback=response.used_fallback,
        )
        return response

    async def _invoke_with_policy(
        self,
        prompt: RenderedPrompt,
        params: Dict[str, Any],
        operation: str,
        attempts: List[ModelAttempt],
        start: float,
    ) -> ModelResponse:
        primary = self.config.model_id
        last_failure: Optional[_AttemptFailed] = None

        for attempt in range(1, self.config.retry_attempts + 1):
            try:
                return await self._attempt(primary, prompt, params, attempt, False, attempts, start)
            except _AttemptFailed as failure:
                last_failure = failure
                logger.warning(
                    "llm_attempt_failed",
                    operation=operation,
                    model=primary,
                    attempt=attempt,
                    max_attempts=self.config.retry_attempts,
                    kind=failure.kind.value,
                    status_code=failure.status_code,
                    error=failure.message,
                )
                if not failure.transient:
                    duration_ms = _elapsed_ms(start)
                    record_llm_request(operation, primary, ModelErrorKind.PROVIDER_ERROR.value, duration_ms / 1000.0)
                    raise ModelError(
                        ModelErrorKind.PROVIDER_ERROR,
                        failure.message,
                        model=primary,
                        duration_ms=duration_ms,
                        attempts=attempts,
                        last_kind=failure.kind,
                        status_code=failure.status_code,
                    )
                if attempt < self.config.retry_attempts:
                    record_llm_retry(primary, failure.kind.value)
                    await self._sleep(self.backoff_delay(attempt))

        fallback = self.config.fallback_model_id
        if fallback:
            record_llm_fallback(fallback)
            logger.warning("llm_fallback", operation=operation, primary_model=primary, fallback_model=fallback)
            try:
                return await self._attempt(fallback, prompt, params, 1, True, attempts, start)
            except _AttemptFailed as failure:
                last_failure = failure
                logger.warning(
                    "llm_fallback_failed",
                    operation=operation,
                    model=fallback,
                    kind=failure.kind.value,
                    status_code=failure.status_code,
                    error=failure.message,
                )

        assert last_failure is not None
        kind = ModelErrorKind.ALL_RETRIES_EXHAUSTED
        if not fallback and last_failure.kind == ModelErrorKind.RATE_LIMITED:
            kind = ModelErrorKind.RATE_LIMITED
        failed_model = attempts[-1].model if attempts else primary
        duration_ms = _elapsed_ms(start)
        record_llm_request(operation, failed_model, kind.value, duration_ms / 1000.0)
        raise ModelError(
            kind,
            f"Model call failed after {len(attempts)} attempts: {last_failure.message}",
            model=failed_model,
            duration_ms=duration_ms,
            attempts=attempts,
            last_kind=last_failure.kind,
            status_code=last_failure.status_code,
        )

    async def _attempt(
        self,
        model: str,
        prompt: RenderedPrompt,
        params: Dict[str, Any],
        attempt: int,
        fallback: bool,
        attempts: List[ModelAttempt],
        start: float,
    ) -> ModelResponse:
        payload: Dict[str, Any] = {"model": model, "messages": prompt.messages(), **params}
        attempt_start = time.perf_counter()
        trace = ModelAttempt(model=model, attempt=attempt, fallback=fallback, outcome="in_flight")
        attempts.append(trace)

        try:
            async with self._http_client() as client:
                response = await client.post("/chat/completions", json=payload)
            trace.status_code = response.status_code
            content, data = self._parse_completion(response)
        except _AttemptFailed as failure:
            trace.outcome = failure.kind.value
            trace.error = failure.message
            raise
        except httpx.TimeoutException as exc:
            trace.outcome = ModelErrorKind.TIMEOUT.value
            trace.error = f"request timed out: {type(exc).__name__}"
            raise _AttemptFailed(ModelErrorKind.TIMEOUT, trace.error, transient=True) from exc
        except httpx.HTTPError as exc:
            trace.outcome = ModelErrorKind.PROVIDER_ERROR.value
            trace.error = f"transport error: {exc}"
            raise _AttemptFailed(ModelErrorKind.PROVIDER_ERROR, trace.error, transient=True) from exc
        except asyncio.CancelledError:
            trace.outcome = "cancelled"
            raise
        finally:
            trace.duration_ms = _elapsed_ms(attempt_start)

        trace.outcome = "success"
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)
        used_model = data.get("model") or model
        choice = data["choices"][0]

        return ModelResponse(
            content=content,
            model=used_model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self.pricing.cost(used_model, input_tokens, output_tokens),
            response_time_ms=_elapsed_ms(start),
            finish_reason=choice.get("finish_reason"),
            used_fallback=fallback,
            attempts=list(attempts),
        )

    @staticmethod
    def _parse_completion(response: httpx.Response) -> Tuple[str, Dict[str, Any]]:
        status = response.status_code
        if status >= 400:
            detail = response.text[:500]
            raise _AttemptFailed(
                _kind_for_status(status),
                f"provider returned HTTP {status}: {detail}",
                transient=_is_transient_status(status),
                status_code=status,
            )

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _AttemptFailed(
                ModelErrorKind.PROVIDER_ERROR, f"provider body is not JSON: {exc}", transient=True, status_code=status
            ) from exc

        if not isinstance(data, dict):
            raise _AttemptFailed(
                ModelErrorKind.PROVIDER_ERROR, "provider body is not a JSON object", transient=True, status_code=status
            )

        # OpenRouter reports some upstream failures as 200 with an error body.
        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            if isinstance(code, int):
                raise _AttemptFailed(
                    _kind_for_status(code),
                    f"provider error {code}: {message}",
                    transient=_is_transient_status(code),
                    status_code=code,
                )
            raise _AttemptFailed(ModelErrorKind.PROVIDER_ERROR, f"provider error: {message}", transient=True)

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise _AttemptFailed(
                ModelErrorKind.PROVIDER_ERROR, "no choices returned by provider", transient=True, status_code=status
            )
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise _AttemptFailed(
                ModelErrorKind.PROVIDER_ERROR, "empty content returned by provider", transient=True, status_code=status
            )
        return content, data

    async def list_models(self) -> List[ProviderModel]:
        """Fetch the provider's model catalog (GET /models), bounded by the same deadline."""
        model_id = self.config.model_id
        if not self.config.api_key:
            raise ModelError(ModelErrorKind.PROVIDER_ERROR, "Model provider API key is not configured", model=model_id)

        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._get_models(), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            raise ModelError(
                ModelErrorKind.TIMEOUT,
                f"Model catalog query exceeded deadline of {self.config.timeout_seconds}s",
                model=model_id,
                duration_ms=_elapsed_ms(start),
            )
        except httpx.TimeoutException as exc:
            raise ModelError(
                ModelErrorKind.TIMEOUT, f"Model catalog query timed out: {exc}", model=model_id, duration_ms=_elapsed_ms(start)
            ) from exc
        except httpx.HTTPError as exc:
            raise ModelError(
                ModelErrorKind.PROVIDER_ERROR,
                f"Failed to fetch available models: {exc}",
                model=model_id,
                duration_ms=_elapsed_ms(start),
            ) from exc

        if response.status_code >= 400:
            raise ModelError(
                ModelErrorKind.RATE_LIMITED if response.status_code == 429 else ModelErrorKind.PROVIDER_ERROR,
                f"Failed to fetch available models: HTTP {response.status_code}",
                model=model_id,
                duration_ms=_elapsed_ms(start),
                status_code=response.status_code,
            )

        try:
            entries = response.json().get("data") or []
        except (json.JSONDecodeError, AttributeError) as exc:
            raise ModelError(
                ModelErrorKind.PROVIDER_ERROR, "Model catalog body is malformed", model=model_id
            ) from exc

        models = [self._provider_model(entry) for entry in entries if isinstance(entry, dict) and entry.get("id")]
        logger.info("llm_models_listed", count=len(models), duration_ms=_elapsed_ms(start))
        return models

    async def _get_models(self) -> httpx.Response:
        async with self._http_client() as client:
            return await client.get("/models")

    @staticmethod
    def _provider_model(entry: Dict[str, Any]) -> ProviderModel:
        pricing = entry.get("pricing") or {}

        def _price(value: Any) -> Optional[float]:
            try:
                return float(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return ProviderModel(
            id=entry["id"],
            name=entry.get("name") or entry["id"],
            description=entry.get("description"),
            context_length=entry.get("context_length"),
            prompt_price=_price(pricing.get("prompt")),
            completion_price=_price(pricing.get("completion")),
        )
