"""Pydantic models for case entities, AI artifacts and evaluation data."""

from .entities import AIInteraction, AIOperation, AISummary, AuditEntry, Case
from .evaluation import AIEvaluation, EvaluationDataset, EvaluationExample

__all__ = [
    "AIInteraction",
    "AIOperation",
    "AISummary",
    "AuditEntry",
    "Case",
    "AIEvaluation",
    "EvaluationDataset",
    "EvaluationExample",
]
