"""Replay routes: a stand-in generation service backed by golden scenarios."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from treeengine.kernel.mock_llm import DELAY_PROFILES, MockGenerator
from treestream.config import settings
from treestream.models.ensemble import EVALUATOR_VARIANTS, EnsembleRequest
from treestream.models.stream import GenerateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["replay"])
mock = MockGenerator()

DEFAULT_SCENARIO = "login_form"
FOLLOWUP_SCENARIO = "followup_retitle"

# Scenario each ensemble source "generates", assigned to source tags in order
ENSEMBLE_SCENARIOS = ("login_form", "pricing_page", "card_hello")
MERGED_SCENARIO = "login_form"


def _profile(requested: object) -> str:
    profile = requested if isinstance(requested, str) else settings.MOCK_PROFILE
    if profile not in DELAY_PROFILES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown profile: {profile!r}. Valid profiles: {list(DELAY_PROFILES)}",
        )
    return profile


def _require_scenario(scenario: str) -> None:
    try:
        mock.load(scenario)
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown scenario: {scenario}") from None


@router.get("/scenarios", status_code=200)
async def list_scenarios() -> list[str]:
    """List the golden scenarios the replay service can stream."""
    return mock.list_scenarios()


@router.post("/generate", status_code=200)
async def generate(req: GenerateRequest) -> StreamingResponse:
    """
    Stream a golden scenario as newline-delimited patches.

    The scenario comes from context.scenario. Without one, a request carrying
    a current tree replays the follow-up scenario, otherwise the default one.
    """
    scenario = req.context.get("scenario")
    if not isinstance(scenario, str):
        scenario = FOLLOWUP_SCENARIO if req.current_tree else DEFAULT_SCENARIO
    _require_scenario(scenario)
    profile = _profile(req.context.get("profile"))

    logger.info("replay: generate scenario=%s profile=%s", scenario, profile)

    async def body() -> AsyncIterator[bytes]:
        async for line in mock.stream(scenario, profile):
            yield line.encode("utf-8")

    return StreamingResponse(body(), media_type="application/x-ndjson")


@router.post("/ensemble", status_code=200)
async def ensemble(req: EnsembleRequest) -> StreamingResponse:
    """Stream a synthesized ensemble run as server-sent events."""
    if req.evaluator_variant not in EVALUATOR_VARIANTS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown evaluator variant: {req.evaluator_variant!r}",
        )
    tags = settings.ensemble_source_tags
    sources = {tag: ENSEMBLE_SCENARIOS[i % len(ENSEMBLE_SCENARIOS)] for i, tag in enumerate(tags)}
    profile = _profile(None)

    logger.info("replay: ensemble sources=%s variant=%s", ",".join(sources), req.evaluator_variant)

    async def body() -> AsyncIterator[bytes]:
        async for event in mock.ensemble_events(
            sources, MERGED_SCENARIO, profile, evaluator_variant=req.evaluator_variant
        ):
            yield f"data: {json.dumps(event)}\n\n".encode("utf-8")
        yield b"data: [DONE]\n\n"

    return StreamingResponse(body(), media_type="text/event-stream")
