"""
Pydantic models for treestream.

Wire shapes only. No imports from services, repos, or routes.
"""

from treestream.models.ensemble import (
    EVALUATOR_VARIANTS,
    DoneEvent,
    EnsembleEvent,
    EnsembleMetadata,
    EnsembleRequest,
    ErrorEvent,
    EvaluatorEvent,
    GeneratorEvent,
    StatusEvent,
    TokenUsage,
    parse_event,
)
from treestream.models.stream import GenerateRequest

__all__ = [
    # Ensemble channel
    "EVALUATOR_VARIANTS",
    "EnsembleEvent",
    "StatusEvent",
    "GeneratorEvent",
    "EvaluatorEvent",
    "DoneEvent",
    "ErrorEvent",
    "parse_event",
    # Ensemble metadata
    "EnsembleMetadata",
    "TokenUsage",
    # Requests
    "EnsembleRequest",
    "GenerateRequest",
]
