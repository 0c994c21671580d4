"""Evaluation datasets and the LLM-as-a-judge evaluator."""

from .datasets import EvaluationDatasetManager
from .judge import JudgeEvaluator
from .rubrics import RubricRegistry

__all__ = ["EvaluationDatasetManager", "JudgeEvaluator", "RubricRegistry"]
