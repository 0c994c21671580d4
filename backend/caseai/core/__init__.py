"""
Core application modules.
Contains configuration, logging, metrics, persistence plumbing and the error taxonomy.
"""
from .errors import CaseAIError, ModelError, ModelErrorKind, NotFoundError, ValidationError

__all__ = ["CaseAIError", "ModelError", "ModelErrorKind", "NotFoundError", "ValidationError"]
