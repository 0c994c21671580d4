"""
Error taxonomy shared by the orchestration, evaluation and storage layers.

Services raise these; the HTTP layer maps them to status codes.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class CaseAIError(Exception):
    """Base class for all errors raised by the service layer."""

    code = "internal_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class ValidationError(CaseAIError):
    """Bad caller input. Never retried."""

    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or []


class NotFoundError(CaseAIError):
    """A referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class TemplateError(CaseAIError):
    code = "template_error"


class TemplateNotFoundError(TemplateError):
    code = "template_not_found"

    def __init__(self, template_id: str, version: Optional[str] = None):
        label = template_id if version is None else f"{template_id}@{version}"
        super().__init__(f"Template not found: {label}", template_id=template_id, version=version)
        self.template_id = template_id
        self.version = version


class MissingVariableError(TemplateError):
    code = "missing_variable"

    def __init__(self, template_id: str, missing: List[str]):
        super().__init__(
            f"Template {template_id} is missing values for: {', '.join(missing)}",
            template_id=template_id,
            missing=missing,
        )
        self.template_id = template_id
        self.missing = missing


class ModelErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    ALL_RETRIES_EXHAUSTED = "all_retries_exhausted"


class ModelError(CaseAIError):
    """
    External model call failed after the client's retry policy ran.

    Carries everything the caller needs to log the interaction: the model that
    was last tried, elapsed time and the per-attempt traces.
    """

    code = "model_error"

    def __init__(
        self,
        kind: ModelErrorKind,
        message: str,
        *,
        model: str,
        duration_ms: int = 0,
        attempts: Optional[list] = None,
        last_kind: Optional[ModelErrorKind] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, kind=kind.value, model=model)
        self.kind = kind
        self.model = model
        self.duration_ms = duration_ms
        self.attempts = attempts or []
        self.last_kind = last_kind
        self.status_code = status_code


class ResponseFormatError(CaseAIError):
    """Model answered, but not in the shape the operation expects."""

    code = "response_format_error"

    def __init__(self, message: str, raw_output: str = "", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.raw_output = raw_output
        self.errors = errors or []


class JudgeParseError(CaseAIError):
    """Judge model answered, but not in the rubric's scoring shape."""

    code = "judge_parse_error"

    def __init__(self, message: str, raw_output: str = "", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.raw_output = raw_output
        self.errors = errors or []


class GenerationFailedError(CaseAIError):
    """An orchestration operation could not produce its artifact."""

    code = "generation_failed"

    def __init__(self, operation: str, case_id: Optional[str], cause: Exception):
        super().__init__(
            f"Failed to run {operation}"
            + (f" for case {case_id}" if case_id else "")
            + f": {cause}",
            operation=operation,
            case_id=case_id,
            cause=type(cause).__name__,
        )
        self.operation = operation
        self.case_id = case_id
        self.cause = cause


class PersistenceError(CaseAIError):
    """A storage transaction failed and was rolled back."""

    code = "persistence_error"
