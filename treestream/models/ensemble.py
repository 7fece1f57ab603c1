"""Ensemble channel records and run metadata."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

# Merge strategies the evaluator can be asked to use
EVALUATOR_VARIANTS: tuple[str, ...] = (
    "mergeSimple",
    "mergeStructured",
    "mergeWeighted",
    "mergeConsensus",
)


class EnsembleRequest(BaseModel):
    """What the coordinator posts to open an ensemble run."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    prompt: str = Field(min_length=1, max_length=10000)
    evaluator_variant: str = Field(default="mergeSimple", alias="evaluatorVariant")


# ---------------------------------------------------------------------------
# Metadata carried by the done record
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")
    total_tokens: int = Field(default=0, alias="totalTokens")

    @property
    def total(self) -> int:
        return self.total_tokens or (self.prompt_tokens + self.completion_tokens)


class TimingInfo(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    generators_ms: int = Field(default=0, alias="generatorsMs")
    evaluator_ms: int = Field(default=0, alias="evaluatorMs")
    total_ms: int = Field(default=0, alias="totalMs")


class GeneratorInfo(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    model: str = ""
    output_length: int = Field(default=0, alias="outputLength")
    usage: TokenUsage | None = None


class EvaluatorInfo(BaseModel):
    model_config = {"extra": "ignore"}

    model: str = ""
    usage: TokenUsage | None = None


class EnsembleMetadata(BaseModel):
    """Aggregate timing and per-source/evaluator usage for one run."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    evaluator_variant: str = Field(default="mergeSimple", alias="evaluatorVariant")
    timing: TimingInfo = Field(default_factory=TimingInfo)
    generators: dict[str, GeneratorInfo] = Field(default_factory=dict)
    evaluator: EvaluatorInfo | None = None

    def total_tokens(self) -> int:
        total = sum(g.usage.total for g in self.generators.values() if g.usage is not None)
        if self.evaluator is not None and self.evaluator.usage is not None:
            total += self.evaluator.usage.total
        return total


# ---------------------------------------------------------------------------
# Channel records, discriminated on "type"
# ---------------------------------------------------------------------------


class StatusEvent(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["status"]
    message: str = ""


class GeneratorEvent(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["generator"]
    model: str
    status: str = "complete"
    output: str = ""


class EvaluatorEvent(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["evaluator"]
    status: str = "streaming"
    chunk: str | None = None
    accumulated: str | None = None


class DoneEvent(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["done"]
    result: str | None = None
    metadata: EnsembleMetadata | None = None


class ErrorEvent(BaseModel):
    model_config = {"extra": "ignore"}

    type: Literal["error"]
    error: str = "ensemble run failed"
    model: str | None = None


EnsembleEvent = Annotated[
    Union[StatusEvent, GeneratorEvent, EvaluatorEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(EnsembleEvent)


def parse_event(data: Any) -> StatusEvent | GeneratorEvent | EvaluatorEvent | DoneEvent | ErrorEvent:
    """
    Validate one decoded record.

    Raises:
        pydantic.ValidationError: unknown type or missing required fields
    """
    return _EVENT_ADAPTER.validate_python(data)
