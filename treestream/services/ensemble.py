"""
Ensemble coordinator for multi-source generation.

One request opens one multiplexed event channel. Records are demultiplexed by
source tag into independent pipelines: one per generator (A, B, C, ...) and
one for the evaluator's merged output. Each pipeline owns its own decoder and
tree; none share mutable state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from treeengine.kernel.applier import apply, apply_all
from treeengine.kernel.types import Patch, empty_tree
from treestream.config import settings
from treestream.errors import EnsembleSourceError, NetworkFailure
from treestream.models.ensemble import (
    EVALUATOR_VARIANTS,
    DoneEvent,
    EnsembleMetadata,
    EnsembleRequest,
    ErrorEvent,
    EvaluatorEvent,
    GeneratorEvent,
    StatusEvent,
)
from treestream.repos.tree_repo import TreeRepo
from treestream.services.event_stream import EventStreamDecoder
from treestream.services.line_decoder import PatchLineDecoder, decode_all
from treestream.services.live import LiveValue
from treestream.services.stream_session import TERMINAL_STATUSES, SessionStatus

logger = logging.getLogger(__name__)

MERGED = "merged"

# Characters of each output shown in the progress preview
PREVIEW_CHARS = 100


def format_progress(outputs: dict[str, str], merged: str) -> str:
    """Preview lines for a run in flight: one per finished source, then the merge."""
    lines = [f"[{tag}] {text[:PREVIEW_CHARS]}..." for tag, text in outputs.items() if text]
    if merged:
        lines.append(f"\n[Merged] {merged[:PREVIEW_CHARS]}...")
    return "\n".join(lines)


@dataclass
class EnsembleTiming:
    per_source_ms: dict[str, int] = field(default_factory=dict)
    merge_ms: int = 0
    total_ms: int = 0


@dataclass
class EnsembleRun:
    """Final state of one ensemble run, handed to the caller when it completes."""

    sources: dict[str, dict[str, Any]]
    merged: dict[str, Any]
    status: dict[str, str]
    timing: EnsembleTiming
    metadata: EnsembleMetadata | None = None
    result_text: str = ""


class SourcePipeline:
    """Decoder + tree for one source. Publishes each new snapshot to its LiveValue."""

    def __init__(self, tag: str, live: LiveValue[dict[str, Any]]) -> None:
        self.tag = tag
        self.live = live
        self.tree = empty_tree()
        self.decoder = PatchLineDecoder()
        self.consumed = ""

    def _apply(self, patches: list[Patch]) -> None:
        for patch in patches:
            result = apply(self.tree, patch)
            if result.applied:
                self.tree = result.tree
                self.live.publish(self.tree)

    def feed(self, text: str) -> None:
        self.consumed += text
        self._apply(self.decoder.feed(text))

    def feed_accumulated(self, accumulated: str) -> None:
        """
        Feed only what's new in an accumulated text. If it no longer extends
        what was consumed (the producer rewrote earlier output), rebuild.
        """
        if accumulated.startswith(self.consumed):
            if len(accumulated) > len(self.consumed):
                self.feed(accumulated[len(self.consumed) :])
            return
        logger.warning("ensemble: %s output diverged from what was streamed, rebuilding", self.tag)
        self.rebuild(accumulated)

    def finish(self) -> None:
        final = self.decoder.flush()
        if final is not None:
            self._apply([final])

    def rebuild(self, text: str) -> None:
        """Restart from empty with text as everything consumed so far, published once."""
        self.decoder = PatchLineDecoder()
        self.consumed = text
        self.tree = apply_all(empty_tree(), self.decoder.feed(text))
        self.live.publish(self.tree)

    def load_complete(self, text: str) -> None:
        """Build the tree from a finished block of output, published once."""
        self.decoder = PatchLineDecoder()
        self.consumed = text
        self.tree = apply_all(empty_tree(), decode_all(text))
        self.live.publish(self.tree)


class EnsembleHandle:
    """The caller's view of one ensemble run."""

    def __init__(self, coordinator: EnsembleCoordinator, prompt: str, variant: str, done: asyncio.Future) -> None:
        self.prompt = prompt
        self.evaluator_variant = variant
        self.per_source = coordinator.per_source
        self.merged = coordinator.merged
        self.metadata = coordinator.metadata
        self.status_message = coordinator.status_message
        self.done = done
        self.status = SessionStatus.PENDING
        self.source_status: dict[str, str] = {tag: "pending" for tag in coordinator.sources}
        self.outputs: dict[str, str] = {}
        self.merged_text = ""
        self.evaluator_started = False
        self._default_source = coordinator.sources[0] if coordinator.sources else None
        self._task: asyncio.Task | None = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def display_tree(self, selected: str | None = None) -> dict[str, Any]:
        """
        The tree the primary view shows: the merge once the evaluator has
        started, otherwise the source picked for side-by-side comparison.
        """
        if self.evaluator_started:
            return self.merged.value
        tag = selected or self._default_source
        live = self.per_source.get(tag) if tag is not None else None
        return live.value if live is not None else empty_tree()

    def progress_text(self) -> str:
        return format_progress(self.outputs, self.merged_text)

    def cancel(self) -> None:
        if not self._mark_cancelled():
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("ensemble: run cancelled")

    def _mark_cancelled(self) -> bool:
        if self.finished:
            return False
        self.status = SessionStatus.CANCELLED
        if not self.done.done():
            self.done.cancel()
        return True


class EnsembleCoordinator:
    """
    Runs ensemble generations and owns the N+1 live trees consumers watch.

    The LiveValues outlive individual runs: each new run resets them all to
    empty before its first record, so a superseded run never bleeds through.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str | None = None,
        sources: list[str] | None = None,
        evaluator_variant: str | None = None,
        repo: TreeRepo | None = None,
        timeout: float | None = None,
        on_complete: Callable[[EnsembleRun], None] | None = None,
    ):
        self.client = client
        self.url = url or settings.ENSEMBLE_URL
        self.sources = list(sources) if sources is not None else settings.ensemble_source_tags
        self.evaluator_variant = evaluator_variant or settings.EVALUATOR_VARIANT
        self.repo = repo
        self.timeout = timeout if timeout is not None else settings.TIMEOUT_SECONDS
        self.on_complete = on_complete

        self.per_source: dict[str, LiveValue[dict[str, Any]]] = {
            tag: LiveValue(empty_tree(), name=f"source:{tag}") for tag in self.sources
        }
        self.merged: LiveValue[dict[str, Any]] = LiveValue(empty_tree(), name=MERGED)
        self.metadata: LiveValue[EnsembleMetadata | None] = LiveValue(None, name="metadata")
        self.status_message: LiveValue[str] = LiveValue("", name="status")
        self.current: EnsembleHandle | None = None

    def start_ensemble(
        self,
        prompt: str,
        *,
        evaluator_variant: str | None = None,
        tree_id: str | None = None,
    ) -> EnsembleHandle:
        """
        Start a run. Cancels a still-open previous run and resets every tree.

        Raises:
            ValueError: If the evaluator variant is not recognized
        """
        variant = evaluator_variant or self.evaluator_variant
        if variant not in EVALUATOR_VARIANTS:
            raise ValueError(f"Unknown evaluator variant: {variant!r}. Valid variants: {list(EVALUATOR_VARIANTS)}")

        if self.current is not None:
            self.current.cancel()
        self._reset()

        loop = asyncio.get_running_loop()
        handle = EnsembleHandle(self, prompt, variant, loop.create_future())
        handle._task = asyncio.create_task(self._run(handle, tree_id))
        self.current = handle
        return handle

    def _reset(self) -> None:
        for tag in [t for t in self.per_source if t not in self.sources]:
            del self.per_source[tag]
        for live in self.per_source.values():
            live.publish(empty_tree())
        self.merged.publish(empty_tree())
        self.metadata.publish(None)
        self.status_message.publish("")

    def _source(self, tag: str) -> LiveValue[dict[str, Any]]:
        live = self.per_source.get(tag)
        if live is None:
            logger.info("ensemble: tracking unconfigured source %s", tag)
            live = LiveValue(empty_tree(), name=f"source:{tag}")
            self.per_source[tag] = live
        return live

    async def _run(self, handle: EnsembleHandle, tree_id: str | None) -> None:
        run = _RunState(handle, self)
        body = EnsembleRequest(prompt=handle.prompt, evaluator_variant=handle.evaluator_variant).model_dump(
            by_alias=True
        )
        handle.status = SessionStatus.STREAMING

        try:
            decoder = EventStreamDecoder()
            async with self.client.stream("POST", self.url, json=body, timeout=self.timeout) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        run.dispatch(event)
                    if run.finished:
                        break
            if not run.finished:
                tail = decoder.flush()
                if tail is not None:
                    run.dispatch(tail)

        except httpx.HTTPError as e:
            error = NetworkFailure(f"ensemble stream from {self.url} failed: {e}")
            error.__cause__ = e
            self._fail(handle, error)
            return
        except EnsembleSourceError as e:
            self._fail(handle, e)
            return
        except asyncio.CancelledError:
            handle._mark_cancelled()
            raise

        if not run.finished:
            logger.warning("ensemble: channel closed without a done record, keeping what arrived")

        result = run.complete()

        if tree_id and self.repo is not None:
            try:
                saved = await self.repo.save_tree(result.merged, tree_id)
                if not saved.success:
                    logger.warning("ensemble: save failed for tree_id=%s: %s", tree_id, saved.message)
            except Exception as e:
                logger.warning("ensemble: failed to save tree_id=%s: %s", tree_id, e)

        handle.status = SessionStatus.COMPLETE
        if not handle.done.done():
            handle.done.set_result(result)

        logger.info(
            "ensemble: complete sources=%s merged_nodes=%d total_ms=%d tokens=%d",
            ",".join(f"{tag}:{status}" for tag, status in result.status.items()),
            len(result.merged.get("nodes", {})),
            result.timing.total_ms,
            result.metadata.total_tokens() if result.metadata else 0,
        )

        if self.on_complete is not None:
            self.on_complete(result)

    def _fail(self, handle: EnsembleHandle, error: Exception) -> None:
        handle.status = SessionStatus.ERROR
        self.status_message.publish(str(error))
        if not handle.done.done():
            handle.done.set_exception(error)
        logger.warning("ensemble: run failed: %s", error)


class _RunState:
    """Per-run demultiplexer: routes each record to exactly one pipeline."""

    def __init__(self, handle: EnsembleHandle, coordinator: EnsembleCoordinator) -> None:
        self.handle = handle
        self.coordinator = coordinator
        self.pipelines: dict[str, SourcePipeline] = {}
        self.merge = SourcePipeline(MERGED, coordinator.merged)
        self.started = time.monotonic()
        self.merge_started: float | None = None
        self.per_source_ms: dict[str, int] = {}
        self.metadata: EnsembleMetadata | None = None
        self.result_text = ""
        self.finished = False

    def _elapsed_ms(self, since: float) -> int:
        return int((time.monotonic() - since) * 1000)

    def dispatch(self, event: Any) -> None:
        if self.finished:
            return
        if isinstance(event, StatusEvent):
            self.coordinator.status_message.publish(event.message)
        elif isinstance(event, GeneratorEvent):
            self._on_generator(event)
        elif isinstance(event, EvaluatorEvent):
            self._on_evaluator(event)
        elif isinstance(event, DoneEvent):
            self._on_done(event)
        elif isinstance(event, ErrorEvent):
            raise EnsembleSourceError(event.error, source=event.model)

    def _on_generator(self, event: GeneratorEvent) -> None:
        tag = event.model
        if event.status != "complete":
            logger.warning("ensemble: source %s reported status %s", tag, event.status)
            self.handle.source_status[tag] = event.status
            return

        pipeline = SourcePipeline(tag, self.coordinator._source(tag))
        pipeline.load_complete(event.output)
        self.pipelines[tag] = pipeline

        self.handle.outputs[tag] = event.output
        self.handle.source_status[tag] = "complete"
        self.per_source_ms[tag] = self._elapsed_ms(self.started)

        completed = sum(1 for status in self.handle.source_status.values() if status == "complete")
        self.coordinator.status_message.publish(f"Models completed: {completed}/{len(self.handle.source_status)}")

    def _on_evaluator(self, event: EvaluatorEvent) -> None:
        if event.status != "streaming":
            logger.debug("ensemble: evaluator status %s", event.status)
        if self.merge_started is None:
            self.merge_started = time.monotonic()
        self.handle.evaluator_started = True

        if event.accumulated is not None:
            self.merge.feed_accumulated(event.accumulated)
        elif event.chunk:
            self.merge.feed(event.chunk)
        self.handle.merged_text = self.merge.consumed

    def _on_done(self, event: DoneEvent) -> None:
        if event.result:
            self.handle.evaluator_started = True
            self.merge.feed_accumulated(event.result)
        self.merge.finish()
        self.result_text = self.merge.consumed
        self.handle.merged_text = self.result_text

        if event.metadata is not None:
            self.metadata = event.metadata
            self.coordinator.metadata.publish(event.metadata)
        self.finished = True

    def complete(self) -> EnsembleRun:
        if not self.finished:
            self.merge.finish()
            self.result_text = self.merge.consumed

        sources = {tag: live.value for tag, live in self.coordinator.per_source.items()}
        timing = EnsembleTiming(
            per_source_ms=dict(self.per_source_ms),
            merge_ms=self._elapsed_ms(self.merge_started) if self.merge_started is not None else 0,
            total_ms=self._elapsed_ms(self.started),
        )
        return EnsembleRun(
            sources=sources,
            merged=self.merge.tree,
            status=dict(self.handle.source_status),
            timing=timing,
            metadata=self.metadata,
            result_text=self.result_text,
        )
