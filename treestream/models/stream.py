"""Single-source generation request models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    """
    What a stream session posts to the generation service.

    current_tree lets the generator emit only what changes in follow-up mode.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    prompt: str = Field(min_length=1, max_length=10000)
    current_tree: dict[str, Any] | None = Field(default=None, alias="currentTree")
    context: dict[str, Any] = Field(default_factory=dict)
