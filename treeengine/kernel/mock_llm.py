"""
Mock generator for deterministic testing and UX timing simulation.

Streams golden JSONL patch files line-by-line with configurable delays, and
synthesizes the tagged event sequence an ensemble generation service emits.
Used in tests (instant profile) and by the replay service.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

GOLDEN_DIR = Path(__file__).parent / "tests" / "fixtures" / "golden"

DELAY_PROFILES: dict[str, dict[str, int]] = {
    "instant": {"think_ms": 0, "per_line_ms": 0},
    "realistic": {"think_ms": 800, "per_line_ms": 120},
    "slow": {"think_ms": 3000, "per_line_ms": 500},
}

# Model names reported for each ensemble source in the done metadata
DEFAULT_SOURCE_MODELS: dict[str, str] = {
    "A": "claude-haiku-4.5",
    "B": "gemini-2.0-flash",
    "C": "gpt-4o",
}


def _delays(profile: str) -> dict[str, int]:
    delays = DELAY_PROFILES.get(profile)
    if delays is None:
        raise ValueError(f"Unknown delay profile: {profile!r}. Valid profiles: {list(DELAY_PROFILES)}")
    return delays


async def _sleep_ms(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000)


class MockGenerator:
    """Replays golden patch files the way a generation service streams them."""

    def __init__(self, golden_dir: Path = GOLDEN_DIR):
        self.golden_dir = golden_dir

    def load(self, scenario: str) -> str:
        """
        Raw text of a golden file.

        Raises:
            FileNotFoundError: If the golden file does not exist
        """
        path = self.golden_dir / f"{scenario}.jsonl"
        if not path.exists():
            raise FileNotFoundError(f"Golden file not found: {path}")
        return path.read_text(encoding="utf-8")

    async def stream(
        self,
        scenario: str,
        profile: str = "instant",
    ) -> AsyncIterator[str]:
        """
        Stream a golden file line by line, newline-terminated.

        Args:
            scenario: Golden file name without extension (e.g., "login_form")
            profile: Delay profile ("instant", "realistic", "slow")

        Yields:
            Each non-empty line from the golden file, with its trailing newline

        Raises:
            FileNotFoundError: If the golden file does not exist
            ValueError: If the profile is not recognized
        """
        delays = _delays(profile)
        non_empty = [line for line in self.load(scenario).splitlines() if line.strip()]

        await _sleep_ms(delays["think_ms"])

        for i, line in enumerate(non_empty):
            yield line + "\n"
            if i < len(non_empty) - 1:
                await _sleep_ms(delays["per_line_ms"])

    async def stream_chunks(self, scenario: str, chunk_size: int = 17) -> AsyncIterator[bytes]:
        """Stream a golden file as fixed-size byte chunks that ignore line boundaries."""
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        data = self.load(scenario).encode("utf-8")
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]

    async def ensemble_events(
        self,
        sources: dict[str, str],
        merged: str,
        profile: str = "instant",
        *,
        evaluator_variant: str = "mergeSimple",
        chunk_size: int = 64,
        evaluator_model: str = "claude-sonnet-4",
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Synthesize one ensemble run.

        Args:
            sources: source tag → golden scenario that source "generated"
            merged: golden scenario the evaluator streams back as the merge
            profile: Delay profile between events
            chunk_size: Characters per evaluator streaming chunk

        Yields:
            status, one generator event per source, evaluator streaming
            events carrying both chunk and accumulated text, then done.
        """
        delays = _delays(profile)
        started = time.monotonic()
        outputs = {tag: self.load(scenario) for tag, scenario in sources.items()}

        yield {"type": "status", "message": f"Generating with {len(outputs)} models..."}
        await _sleep_ms(delays["think_ms"])

        for tag, output in outputs.items():
            yield {"type": "generator", "model": tag, "status": "complete", "output": output}
            await _sleep_ms(delays["per_line_ms"])

        generators_done = time.monotonic()
        yield {"type": "status", "message": "Merging outputs..."}

        result = self.load(merged)
        accumulated = ""
        for start in range(0, len(result), chunk_size):
            chunk = result[start : start + chunk_size]
            accumulated += chunk
            yield {"type": "evaluator", "status": "streaming", "chunk": chunk, "accumulated": accumulated}
            await _sleep_ms(delays["per_line_ms"])

        finished = time.monotonic()
        yield {
            "type": "done",
            "result": result,
            "metadata": {
                "evaluatorVariant": evaluator_variant,
                "timing": {
                    "generatorsMs": int((generators_done - started) * 1000),
                    "evaluatorMs": int((finished - generators_done) * 1000),
                    "totalMs": int((finished - started) * 1000),
                },
                "generators": {
                    tag: {
                        "model": DEFAULT_SOURCE_MODELS.get(tag, tag),
                        "outputLength": len(output),
                        "usage": None,
                    }
                    for tag, output in outputs.items()
                },
                "evaluator": {"model": evaluator_model, "usage": None},
            },
        }

    def list_scenarios(self) -> list[str]:
        """Return names of all available golden file scenarios."""
        return sorted(p.stem for p in self.golden_dir.glob("*.jsonl"))
