"""
Tests for the ensemble coordinator: demultiplexing, per-source isolation,
merge streaming and run lifecycle.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from treeengine.kernel.applier import apply_all
from treeengine.kernel.mock_llm import MockGenerator
from treeengine.kernel.types import empty_tree
from treestream.errors import EnsembleSourceError, NetworkFailure
from treestream.models.ensemble import EnsembleMetadata
from treestream.repos import MemoryTreeRepo
from treestream.services.ensemble import EnsembleCoordinator, EnsembleRun, format_progress
from treestream.services.line_decoder import decode_all
from treestream.services.stream_session import SessionStatus

ENSEMBLE_URL = "http://test/api/ensemble"

SCENARIO_A_OUTPUT = (
    '{"op":"set","path":"/root","value":"card1"}\n'
    '{"op":"set","path":"/nodes/card1","value":{"key":"card1","type":"Card","props":{"title":"Hi"}}}\n'
)
CARD_TREE = {"root": "card1", "nodes": {"card1": {"key": "card1", "type": "Card", "props": {"title": "Hi"}}}}


def sse(record: dict) -> str:
    return f"data: {json.dumps(record)}\n\n"


def generator(tag: str, output: str) -> str:
    return sse({"type": "generator", "model": tag, "status": "complete", "output": output})


def golden_tree(scenario: str):
    return apply_all(empty_tree(), decode_all(MockGenerator().load(scenario)))


def coordinator(client, **kwargs) -> EnsembleCoordinator:
    return EnsembleCoordinator(client, url=ENSEMBLE_URL, sources=["A", "B", "C"], **kwargs)


async def wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


# ============================================================================
# Per-source isolation
# ============================================================================


class TestIsolation:
    @pytest.mark.asyncio
    async def test_one_generator_event_touches_one_tree(self, scripted_client):
        gate = asyncio.Event()
        async with scripted_client([generator("A", SCENARIO_A_OUTPUT), gate]) as client:
            coord = coordinator(client)
            handle = coord.start_ensemble("a card")
            await wait_for(lambda: handle.source_status["A"] == "complete")

            assert coord.per_source["A"].value == CARD_TREE
            assert coord.per_source["B"].value == {"root": None, "nodes": {}}
            assert coord.per_source["C"].value == {"root": None, "nodes": {}}
            assert coord.merged.value == {"root": None, "nodes": {}}
            handle.cancel()
            with pytest.raises(asyncio.CancelledError):
                await handle._task

    @pytest.mark.asyncio
    async def test_same_keys_in_different_sources_do_not_collide(self, scripted_client):
        retitled = SCENARIO_A_OUTPUT.replace('"Hi"', '"Hello"')
        script = [generator("A", SCENARIO_A_OUTPUT), generator("B", retitled), sse({"type": "done"})]
        async with scripted_client(script) as client:
            coord = coordinator(client)
            run = await coord.start_ensemble("a card").done

        assert run.sources["A"]["nodes"]["card1"]["props"]["title"] == "Hi"
        assert run.sources["B"]["nodes"]["card1"]["props"]["title"] == "Hello"
        assert run.sources["C"] == empty_tree()
        assert run.status == {"A": "complete", "B": "complete", "C": "pending"}

    @pytest.mark.asyncio
    async def test_generator_output_published_once(self, scripted_client):
        published = []
        async with scripted_client([generator("A", MockGenerator().load("login_form")), sse({"type": "done"})]) as client:
            coord = coordinator(client)
            coord.per_source["A"].subscribe(published.append)
            await coord.start_ensemble("login").done

        # reset to empty, then the finished tree
        assert len(published) == 2
        assert published[-1] == golden_tree("login_form")

    @pytest.mark.asyncio
    async def test_unconfigured_source_gets_its_own_tree(self, scripted_client):
        async with scripted_client([generator("D", SCENARIO_A_OUTPUT), sse({"type": "done"})]) as client:
            coord = coordinator(client)
            run = await coord.start_ensemble("x").done

        assert run.sources["D"] == CARD_TREE
        assert run.sources["A"] == empty_tree()

    @pytest.mark.asyncio
    async def test_unconfigured_source_dropped_on_next_run(self, scripted_client):
        async with scripted_client([generator("D", SCENARIO_A_OUTPUT), sse({"type": "done"})]) as client:
            coord = EnsembleCoordinator(client, url=ENSEMBLE_URL, sources=["A"])
            first = await coord.start_ensemble("x").done
            assert first.status == {"A": "pending", "D": "complete"}

            handle = coord.start_ensemble("y")
            assert handle.source_status == {"A": "pending"}
            assert list(coord.per_source) == ["A"]
            second = await handle.done

        assert second.status == {"A": "pending", "D": "complete"}
        assert second.sources["D"] == CARD_TREE
        assert coord.status_message.value == "Models completed: 1/2"


# ============================================================================
# Merge stream
# ============================================================================


class TestMerge:
    @pytest.mark.asyncio
    async def test_chunks_stream_into_merged(self, scripted_client):
        text = MockGenerator().load("login_form")
        chunks = [text[i : i + 40] for i in range(0, len(text), 40)]
        script = [sse({"type": "evaluator", "status": "streaming", "chunk": c}) for c in chunks]
        script.append(sse({"type": "done"}))

        snapshots = []
        async with scripted_client(script) as client:
            coord = coordinator(client)
            coord.merged.subscribe(snapshots.append)
            run = await coord.start_ensemble("login").done

        assert run.merged == golden_tree("login_form")
        assert coord.merged.value == run.merged
        # reset + one snapshot per node/root patch
        assert len(snapshots) == 1 + 7
        assert run.result_text == text

    @pytest.mark.asyncio
    async def test_accumulated_feeds_only_new_suffix(self, scripted_client):
        script = []
        accumulated = ""
        for line in SCENARIO_A_OUTPUT.splitlines(keepends=True):
            accumulated += line
            script.append(sse({"type": "evaluator", "status": "streaming", "chunk": line, "accumulated": accumulated}))
        script.append(sse({"type": "done", "result": accumulated}))

        snapshots = []
        async with scripted_client(script) as client:
            coord = coordinator(client)
            coord.merged.subscribe(snapshots.append)
            run = await coord.start_ensemble("card").done

        assert run.merged == CARD_TREE
        assert len(snapshots) == 1 + 2

    @pytest.mark.asyncio
    async def test_diverged_accumulated_rebuilds(self, scripted_client):
        first = '{"op":"set","path":"/root","value":"old"}\n'
        script = [
            sse({"type": "evaluator", "accumulated": first}),
            sse({"type": "evaluator", "accumulated": SCENARIO_A_OUTPUT}),
            sse({"type": "done"}),
        ]
        async with scripted_client(script) as client:
            run = await coordinator(client).start_ensemble("card").done

        assert run.merged == CARD_TREE

    @pytest.mark.asyncio
    async def test_done_result_completes_merge(self, scripted_client):
        partial = SCENARIO_A_OUTPUT.splitlines(keepends=True)[0]
        script = [
            sse({"type": "evaluator", "chunk": partial}),
            sse({"type": "done", "result": SCENARIO_A_OUTPUT.rstrip("\n")}),
        ]
        async with scripted_client(script) as client:
            run = await coordinator(client).start_ensemble("card").done

        assert run.merged == CARD_TREE

    @pytest.mark.asyncio
    async def test_merge_does_not_touch_sources(self, scripted_client):
        script = [
            generator("A", SCENARIO_A_OUTPUT),
            sse({"type": "evaluator", "chunk": MockGenerator().load("pricing_page")}),
            sse({"type": "done"}),
        ]
        async with scripted_client(script) as client:
            run = await coordinator(client).start_ensemble("x").done

        assert run.sources["A"] == CARD_TREE
        assert run.merged == golden_tree("pricing_page")


# ============================================================================
# Display selection and progress
# ============================================================================


class TestDisplay:
    @pytest.mark.asyncio
    async def test_display_switches_to_merged_once_evaluator_starts(self, scripted_client):
        gate = asyncio.Event()
        script = [
            generator("A", SCENARIO_A_OUTPUT),
            generator("B", MockGenerator().load("pricing_page")),
            gate,
            sse({"type": "evaluator", "chunk": MockGenerator().load("login_form")}),
            sse({"type": "done"}),
        ]
        async with scripted_client(script) as client:
            coord = coordinator(client)
            handle = coord.start_ensemble("x")
            await wait_for(lambda: handle.source_status["B"] == "complete")

            assert handle.display_tree() == CARD_TREE
            assert handle.display_tree("B") == golden_tree("pricing_page")
            assert handle.display_tree("C") == empty_tree()

            gate.set()
            await handle.done

        assert handle.display_tree() == golden_tree("login_form")
        assert handle.display_tree("B") == golden_tree("login_form")

    @pytest.mark.asyncio
    async def test_status_messages(self, scripted_client):
        messages = []
        script = [
            sse({"type": "status", "message": "Generating with 3 models..."}),
            generator("A", SCENARIO_A_OUTPUT),
            sse({"type": "done"}),
        ]
        async with scripted_client(script) as client:
            coord = coordinator(client)
            coord.status_message.subscribe(messages.append)
            await coord.start_ensemble("x").done

        assert messages == ["", "Generating with 3 models...", "Models completed: 1/3"]

    def test_format_progress(self):
        text = format_progress({"A": "a" * 150, "B": "", "C": "c"}, "m")
        assert text == f"[A] {'a' * 100}...\n[C] c...\n\n[Merged] m..."

    def test_format_progress_empty(self):
        assert format_progress({}, "") == ""

    @pytest.mark.asyncio
    async def test_handle_progress_text(self, scripted_client):
        script = [generator("A", SCENARIO_A_OUTPUT), sse({"type": "evaluator", "chunk": "x"}), sse({"type": "done"})]
        async with scripted_client(script) as client:
            handle = coordinator(client).start_ensemble("x")
            await handle.done

        assert handle.progress_text().startswith("[A] ")
        assert handle.progress_text().endswith("[Merged] x...")


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_request_body(self, scripted_client, requests_seen):
        async with scripted_client([sse({"type": "done"})]) as client:
            await coordinator(client).start_ensemble("pricing", evaluator_variant="mergeStructured").done

        assert json.loads(requests_seen[0].content) == {"prompt": "pricing", "evaluatorVariant": "mergeStructured"}
        assert str(requests_seen[0].url) == ENSEMBLE_URL

    @pytest.mark.asyncio
    async def test_unknown_variant_rejected(self, scripted_client):
        async with scripted_client([]) as client:
            with pytest.raises(ValueError):
                coordinator(client).start_ensemble("x", evaluator_variant="mergeRandom")

    @pytest.mark.asyncio
    async def test_done_resolves_with_metadata(self, scripted_client):
        metadata = {
            "evaluatorVariant": "mergeSimple",
            "timing": {"generatorsMs": 10, "evaluatorMs": 5, "totalMs": 15},
            "generators": {"A": {"model": "m-a", "outputLength": 3, "usage": {"totalTokens": 7}}},
            "evaluator": {"model": "m-e", "usage": {"totalTokens": 3}},
        }
        async with scripted_client([generator("A", SCENARIO_A_OUTPUT), sse({"type": "done", "metadata": metadata})]) as client:
            coord = coordinator(client)
            handle = coord.start_ensemble("x")
            run = await handle.done

        assert isinstance(run, EnsembleRun)
        assert isinstance(run.metadata, EnsembleMetadata)
        assert run.metadata.total_tokens() == 10
        assert coord.metadata.value == run.metadata
        assert handle.status == SessionStatus.COMPLETE
        assert run.timing.total_ms >= 0
        assert set(run.timing.per_source_ms) == {"A"}

    @pytest.mark.asyncio
    async def test_records_after_done_ignored(self, scripted_client):
        script = [sse({"type": "done"}), generator("A", SCENARIO_A_OUTPUT)]
        async with scripted_client(script) as client:
            run = await coordinator(client).start_ensemble("x").done
        assert run.sources["A"] == empty_tree()

    @pytest.mark.asyncio
    async def test_eof_without_done_keeps_what_arrived(self, scripted_client, caplog):
        async with scripted_client([generator("A", SCENARIO_A_OUTPUT)]) as client:
            run = await coordinator(client).start_ensemble("x").done

        assert run.sources["A"] == CARD_TREE
        assert run.metadata is None
        assert "without a done record" in caplog.text

    @pytest.mark.asyncio
    async def test_bad_records_skipped(self, scripted_client):
        script = ["data: {broken\n\n", sse({"type": "mystery"}), generator("A", SCENARIO_A_OUTPUT), sse({"type": "done"})]
        async with scripted_client(script) as client:
            run = await coordinator(client).start_ensemble("x").done
        assert run.sources["A"] == CARD_TREE

    @pytest.mark.asyncio
    async def test_merged_saved_to_repo(self, scripted_client):
        repo = MemoryTreeRepo()
        script = [sse({"type": "evaluator", "chunk": SCENARIO_A_OUTPUT}), sse({"type": "done"})]
        async with scripted_client(script) as client:
            await coordinator(client, repo=repo).start_ensemble("x", tree_id="page-1").done
        assert await repo.load_tree("page-1") == CARD_TREE

    @pytest.mark.asyncio
    async def test_new_run_cancels_and_resets(self, scripted_client):
        gate = asyncio.Event()
        async with scripted_client([generator("A", SCENARIO_A_OUTPUT), gate, sse({"type": "done"})]) as client:
            coord = coordinator(client)
            first = coord.start_ensemble("first")
            await wait_for(lambda: first.source_status["A"] == "complete")

            second = coord.start_ensemble("second")
            assert first.done.cancelled()
            assert first.status == SessionStatus.CANCELLED
            assert coord.per_source["A"].value == empty_tree()

            gate.set()
            run = await second.done

        assert coord.current is second
        assert run.sources["A"] == CARD_TREE

    @pytest.mark.asyncio
    async def test_cancel(self, scripted_client):
        gate = asyncio.Event()
        async with scripted_client([generator("A", SCENARIO_A_OUTPUT), gate, sse({"type": "done"})]) as client:
            handle = coordinator(client).start_ensemble("x")
            await wait_for(lambda: handle.source_status["A"] == "complete")
            handle.cancel()
            with pytest.raises(asyncio.CancelledError):
                await handle._task

        assert handle.done.cancelled()
        assert handle.per_source["A"].value == CARD_TREE


# ============================================================================
# Failures
# ============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_event_fails_run(self, scripted_client):
        script = [generator("A", SCENARIO_A_OUTPUT), sse({"type": "error", "error": "rate limited", "model": "B"})]
        async with scripted_client(script) as client:
            handle = coordinator(client).start_ensemble("x")
            with pytest.raises(EnsembleSourceError) as exc_info:
                await handle.done

        assert exc_info.value.source == "B"
        assert "rate limited" in str(exc_info.value)
        assert handle.status == SessionStatus.ERROR
        assert handle.per_source["A"].value == CARD_TREE

    @pytest.mark.asyncio
    async def test_transport_failure(self, failing_client):
        async with failing_client as client:
            handle = coordinator(client).start_ensemble("x")
            with pytest.raises(NetworkFailure) as exc_info:
                await handle.done
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_error_status(self, scripted_client):
        async with scripted_client([], status_code=503) as client:
            handle = coordinator(client).start_ensemble("x")
            with pytest.raises(NetworkFailure):
                await handle.done
