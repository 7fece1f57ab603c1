"""
Stream session: one generation request, one live tree.

Opens the request, feeds every chunk through a PatchLineDecoder, applies each
patch and publishes the new snapshot right away, so observers watch the tree
grow. Owns cancellation for its request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from treeengine.kernel.applier import apply
from treeengine.kernel.types import Patch, empty_tree
from treestream.config import settings
from treestream.errors import NetworkFailure, StreamError
from treestream.models.stream import GenerateRequest
from treestream.repos.tree_repo import TreeRepo
from treestream.services.line_decoder import PatchLineDecoder
from treestream.services.live import LiveValue

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.CANCELLED}


@dataclass
class StreamSource:
    """
    Everything one session needs to know about its request.

    Passed in explicitly at start; the session never looks up "the current
    page" on its own.

    seed: tree to start from (follow-up mode). Unchanged nodes stay visible
          while the changes stream in.
    tree_id: persistence key. Seeds from the repo when no seed is given, and
             the final tree is saved under it on completion.
    """

    prompt: str
    url: str | None = None
    seed: dict[str, Any] | None = None
    tree_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


def _copy_seed(seed: dict[str, Any]) -> dict[str, Any]:
    return {"root": seed.get("root"), "nodes": dict(seed.get("nodes") or {})}


class SessionHandle:
    """The caller's view of a running session."""

    def __init__(self, source: StreamSource, live: LiveValue[dict[str, Any]], done: asyncio.Future) -> None:
        self.source = source
        self.live = live
        self.done = done
        self.status = SessionStatus.PENDING
        self.patches_applied = 0
        self.patches_dropped = 0
        self._task: asyncio.Task | None = None

    @property
    def tree(self) -> dict[str, Any]:
        """Last published snapshot."""
        return self.live.value

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def cancel(self) -> None:
        """
        Abort the request. `done` ends up cancelled: no value, no error, no
        callbacks. The last published tree stays as live.value.
        No-op once the session has finished.
        """
        if not self._mark_cancelled():
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("stream_session: cancelled after %d patches", self.patches_applied)

    def _mark_cancelled(self) -> bool:
        if self.finished:
            return False
        self.status = SessionStatus.CANCELLED
        if not self.done.done():
            self.done.cancel()
        return True


class StreamSession:
    """
    Runs generation requests against one endpoint, one at a time.

    Starting a new request cancels a still-open previous one first, so a
    displayed tree never has two writers.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str | None = None,
        repo: TreeRepo | None = None,
        timeout: float | None = None,
        on_complete: Callable[[dict[str, Any]], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        """
        Initialize stream session.

        Args:
            client: Shared async HTTP client
            url: Generation endpoint (default: settings.GENERATE_URL)
            repo: Optional persistence collaborator for seeding and checkpointing
            timeout: Per-read timeout in seconds (default: settings.TIMEOUT_SECONDS)
            on_complete: Called with the final tree after a natural finish
            on_error: Called with the NetworkFailure when the transport fails
        """
        self.client = client
        self.url = url or settings.GENERATE_URL
        self.repo = repo
        self.timeout = timeout if timeout is not None else settings.TIMEOUT_SECONDS
        self.on_complete = on_complete
        self.on_error = on_error
        self.current: SessionHandle | None = None

    def start(self, source: StreamSource) -> SessionHandle:
        """Begin streaming. Must be called from a running event loop."""
        if self.current is not None:
            self.current.cancel()

        initial = _copy_seed(source.seed) if source.seed is not None else empty_tree()
        loop = asyncio.get_running_loop()
        handle = SessionHandle(source, LiveValue(initial, name="tree"), loop.create_future())
        handle._task = asyncio.create_task(self._run(handle))
        self.current = handle
        return handle

    async def _seed(self, source: StreamSource) -> dict[str, Any]:
        if source.seed is not None:
            return _copy_seed(source.seed)
        if source.tree_id and self.repo is not None:
            try:
                stored = await self.repo.load_tree(source.tree_id)
            except Exception as e:
                logger.warning("stream_session: failed to load tree_id=%s, starting empty: %s", source.tree_id, e)
                return empty_tree()
            if stored is not None:
                logger.info("stream_session: seeded %d nodes from tree_id=%s", len(stored.get("nodes", {})), source.tree_id)
                return _copy_seed(stored)
        return empty_tree()

    def _apply(self, handle: SessionHandle, tree: dict[str, Any], patch: Patch) -> dict[str, Any]:
        result = apply(tree, patch)
        if not result.applied:
            handle.patches_dropped += 1
            logger.debug("stream_session: dropped %s %s: %s", patch.op, patch.path, result.reason)
            return tree
        handle.patches_applied += 1
        handle.live.publish(result.tree)
        return result.tree

    async def _run(self, handle: SessionHandle) -> None:
        source = handle.source
        url = source.url or self.url
        t_start = time.monotonic()

        try:
            tree = await self._seed(source)
            handle.live.publish(tree)
            handle.status = SessionStatus.STREAMING

            body = GenerateRequest(
                prompt=source.prompt,
                current_tree=tree if tree.get("nodes") else None,
                context=source.context,
            ).model_dump(by_alias=True, exclude_none=True)

            decoder = PatchLineDecoder()
            async with self.client.stream("POST", url, json=body, timeout=self.timeout) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    for patch in decoder.feed(chunk):
                        tree = self._apply(handle, tree, patch)

            final = decoder.flush()
            if final is not None:
                tree = self._apply(handle, tree, final)

        except httpx.HTTPError as e:
            self._fail(handle, NetworkFailure(f"stream from {url} failed: {e}"), e)
            return
        except asyncio.CancelledError:
            handle._mark_cancelled()
            raise
        except Exception as e:
            self._fail(handle, StreamError(f"stream from {url} failed: {e}"), e)
            return

        if source.tree_id and self.repo is not None:
            try:
                saved = await self.repo.save_tree(tree, source.tree_id)
                if not saved.success:
                    logger.warning("stream_session: save failed for tree_id=%s: %s", source.tree_id, saved.message)
            except Exception as e:
                logger.warning("stream_session: failed to save tree_id=%s: %s", source.tree_id, e)

        handle.status = SessionStatus.COMPLETE
        if not handle.done.done():
            handle.done.set_result(tree)

        logger.info(
            "stream_session: complete url=%s patches=%d dropped=%d skipped_lines=%d nodes=%d ttc_ms=%d",
            url,
            handle.patches_applied,
            handle.patches_dropped,
            decoder.lines_skipped,
            len(tree.get("nodes", {})),
            int((time.monotonic() - t_start) * 1000),
        )

        if self.on_complete is not None:
            self.on_complete(tree)

    def _fail(self, handle: SessionHandle, error: StreamError, exc: Exception) -> None:
        error.__cause__ = exc
        handle.status = SessionStatus.ERROR
        if not handle.done.done():
            handle.done.set_exception(error)
        logger.warning("stream_session: %s (kept %d applied patches)", error, handle.patches_applied)
        if self.on_error is not None:
            self.on_error(error)
