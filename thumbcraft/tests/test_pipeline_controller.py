"""
Tests for the pipeline state controller.

A fake generation client stands in for the service so every transition,
guard and failure path can be driven deterministically.
"""

import asyncio
import base64
import logging
import threading

import pytest

from thumbcraft.core.errors import (
    IllegalStateTransitionError,
    NoImageProducedError,
    PipelineBusyError,
    RefineRenderError,
    SafetyBlockedError,
    SketchRenderError,
    StrategyGenerationError,
    StructuredOutputError,
)
from thumbcraft.models import (
    AspectRatio,
    ContentContext,
    EncodedImage,
    ErrorCategory,
    FontStyle,
    GenerationStyle,
    ImagePart,
    PipelineStage,
    TextPart,
    ThumbnailMetadata,
)
from thumbcraft.pipeline import controller as controller_module
from thumbcraft.pipeline.controller import PipelineController


def make_image(label: str) -> EncodedImage:
    return EncodedImage(data=base64.b64encode(label.encode()).decode("utf-8"), media_type="image/png")


def sample_metadata() -> ThumbnailMetadata:
    return ThumbnailMetadata(
        visual_description="Staring at a wall calendar, exhausted but proud",
        clickbait_text="100 DAYS",
        props=["calendar", "dumbbell"],
        background_context="Gritty garage gym, harsh overhead light",
        visual_hooks=["crossed-out calendar", "sweat drops", "before/after split"],
    )


class FakeGenerationClient:
    """Records every call; results are queued per call type."""

    def __init__(self, metadata=None, images=None):
        self.metadata = metadata if metadata is not None else sample_metadata()
        self.image_results = list(images or [])
        self.structured_calls = []
        self.image_calls = []
        self.last_usage = None
        self.gate = None

    async def generate_structured(self, prompt, schema):
        self.structured_calls.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.metadata, Exception):
            raise self.metadata
        return schema.model_validate(self.metadata.model_dump())

    async def generate_image(self, parts, aspect_ratio):
        self.image_calls.append((list(parts), aspect_ratio))
        if self.gate is not None:
            await self.gate.wait()
        if self.image_results:
            result = self.image_results.pop(0)
        else:
            result = make_image(f"image-{len(self.image_calls)}")
        if isinstance(result, Exception):
            raise result
        return result

    def prompt_of(self, call_index: int) -> str:
        parts, _ = self.image_calls[call_index]
        return parts[-1].text


def new_controller(client=None, **kwargs) -> PipelineController:
    kwargs.setdefault("identity_image", make_image("identity"))
    return PipelineController(client or FakeGenerationClient(), **kwargs)


async def started(client=None, **kwargs) -> PipelineController:
    controller = new_controller(client, **kwargs)
    outcome = await controller.start_pipeline(title="I Tried 100 Days", style=GenerationStyle.CINEMATIC)
    assert outcome.stage == PipelineStage.SKETCH_READY
    return controller


def snapshot(controller: PipelineController) -> dict:
    state = controller.ctx.to_dict()
    state.pop("llm_usage")
    return state


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_start_pipeline_reaches_sketch_ready(self):
        client = FakeGenerationClient()
        controller = new_controller(client)

        outcome = await controller.start_pipeline(title="I Tried 100 Days", style=GenerationStyle.CINEMATIC)

        assert outcome.ok
        assert outcome.stage == PipelineStage.SKETCH_READY
        assert len(outcome.metadata.visual_hooks) == 3
        assert outcome.metadata.clickbait_text
        assert outcome.sketch is not None
        assert outcome.image is None
        controller.ctx.check_invariants()

    @pytest.mark.asyncio
    async def test_raw_transitions(self):
        client = FakeGenerationClient()
        controller = new_controller(client, aspect_ratio=AspectRatio.SQUARE)

        await controller.run_ideation(ContentContext(title="I Tried 100 Days"), GenerationStyle.CINEMATIC)
        assert controller.stage == PipelineStage.SKETCH_DRAFTING

        sketch = await controller.run_sketch()
        assert controller.stage == PipelineStage.SKETCH_READY
        assert controller.sketch == sketch

        final = await controller.run_refine(font=FontStyle.BANGERS)
        assert controller.stage == PipelineStage.FINALIZED
        assert controller.final_image == final

        corrected = await controller.run_critique()
        assert controller.stage == PipelineStage.FINALIZED
        assert corrected != final
        assert all(ar == AspectRatio.SQUARE for _, ar in client.image_calls)

    @pytest.mark.asyncio
    async def test_image_part_order(self):
        client = FakeGenerationClient()
        controller = await started(client, brand_assets=[make_image("logo")])
        await controller.finalize(with_critique=True)

        sketch_parts, refine_parts, critique_parts = (parts for parts, _ in client.image_calls)
        assert [p.image for p in sketch_parts[:-1]] == [controller.ctx.identity_image]
        assert [p.image for p in refine_parts[:-1]] == [
            controller.ctx.sketch, controller.ctx.identity_image, make_image("logo")
        ]
        assert critique_parts[1].image == controller.ctx.identity_image
        for parts in (sketch_parts, refine_parts, critique_parts):
            assert isinstance(parts[-1], TextPart)
            assert all(isinstance(p, ImagePart) for p in parts[:-1])

    @pytest.mark.asyncio
    async def test_progress_events_once_per_stage(self):
        events = []
        controller = new_controller()
        controller.subscribe(events.append)

        await controller.start_pipeline(title="I Tried 100 Days")
        await controller.finalize(with_critique=True)

        assert [e.stage for e in events] == ["strategy", "sketch", "refine", "critique"]
        assert events[0].message == "Strategizing visual impact..."

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_the_pipeline(self):
        controller = new_controller()

        def broken(event):
            raise RuntimeError("ui went away")

        async def collector(event):
            collected.append(event.stage)

        collected = []
        controller.subscribe(broken)
        controller.subscribe(collector)
        outcome = await controller.start_pipeline(title="x")
        assert outcome.ok
        assert collected == ["strategy", "sketch"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        events = []
        controller = new_controller()
        unsubscribe = controller.subscribe(events.append)
        unsubscribe()
        await controller.start_pipeline(title="x")
        assert events == []


class TestContentPath:

    @pytest.mark.asyncio
    async def test_article_wins_over_title(self):
        client = FakeGenerationClient()
        controller = new_controller(client)
        await controller.start_pipeline(title="My Title", subtitle="Sub", article="The whole article body.")
        prompt = client.structured_calls[0]
        assert "The whole article body." in prompt
        assert "My Title" not in prompt

    @pytest.mark.asyncio
    async def test_title_only(self):
        client = FakeGenerationClient()
        controller = new_controller(client)
        await controller.start_pipeline(title="My Title", subtitle="Sub")
        prompt = client.structured_calls[0]
        assert 'Title: "My Title", Subtitle: "Sub"' in prompt
        assert "Content:" not in prompt

    @pytest.mark.asyncio
    async def test_missing_content_is_rejected_without_state_change(self):
        controller = new_controller()
        with pytest.raises(ValueError):
            await controller.start_pipeline(subtitle="no title")
        assert controller.stage == PipelineStage.IDLE


class TestIllegalTransitions:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["run_sketch", "run_refine", "run_critique", "finalize", "critique",
                                           "regenerate_sketch"])
    async def test_async_operations_rejected_in_idle(self, operation):
        controller = new_controller()
        before = snapshot(controller)
        with pytest.raises(IllegalStateTransitionError):
            await getattr(controller, operation)()
        assert snapshot(controller) == before
        assert not controller.busy

    def test_metadata_edits_rejected_in_idle(self):
        controller = new_controller()
        before = snapshot(controller)
        with pytest.raises(IllegalStateTransitionError):
            controller.edit_metadata_field("clickbait_text", "x")
        with pytest.raises(IllegalStateTransitionError):
            controller.add_metadata_item("props", "x")
        with pytest.raises(IllegalStateTransitionError):
            controller.remove_metadata_item("props", 0)
        assert snapshot(controller) == before

    @pytest.mark.asyncio
    async def test_start_pipeline_twice(self):
        controller = await started()
        with pytest.raises(IllegalStateTransitionError):
            await controller.start_pipeline(title="again")

    @pytest.mark.asyncio
    async def test_sketch_not_allowed_after_finalize(self):
        controller = await started()
        await controller.finalize()
        with pytest.raises(IllegalStateTransitionError):
            await controller.run_sketch()
        with pytest.raises(IllegalStateTransitionError):
            controller.edit_metadata_field("clickbait_text", "late edit")


class TestBusyGuard:

    @pytest.mark.asyncio
    async def test_second_call_while_in_flight(self):
        client = FakeGenerationClient()
        client.gate = asyncio.Event()
        controller = new_controller(client)

        task = asyncio.create_task(controller.run_ideation(ContentContext(title="I Tried 100 Days")))
        await asyncio.sleep(0)
        assert controller.busy
        assert controller.stage == PipelineStage.STRATEGIZING

        with pytest.raises(PipelineBusyError):
            await controller.run_ideation(ContentContext(title="other"))
        with pytest.raises(PipelineBusyError):
            await controller.run_sketch()
        with pytest.raises(PipelineBusyError):
            controller.reset()
        assert len(client.structured_calls) == 1

        client.gate.set()
        metadata = await task

        assert controller.stage == PipelineStage.SKETCH_DRAFTING
        assert controller.metadata == metadata
        assert not controller.busy

    @pytest.mark.asyncio
    async def test_busy_during_start_pipeline_sketch(self):
        client = FakeGenerationClient()
        controller = new_controller(client)
        await controller.run_ideation(ContentContext(title="x"))

        client.gate = asyncio.Event()
        task = asyncio.create_task(controller.regenerate_sketch())
        await asyncio.sleep(0)
        with pytest.raises(PipelineBusyError):
            await controller.finalize()
        client.gate.set()
        outcome = await task
        assert outcome.stage == PipelineStage.SKETCH_READY


class TestReset:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("advance", ["idle", "sketch_ready", "finalized", "failed"])
    async def test_reset_from_any_state(self, advance):
        brand = [make_image("logo-a"), make_image("logo-b")]
        client = FakeGenerationClient()
        controller = new_controller(client, brand_assets=brand)
        identity = controller.ctx.identity_image

        if advance != "idle":
            await controller.start_pipeline(title="x")
        if advance == "finalized":
            await controller.finalize()
        if advance == "failed":
            client.image_results = [SafetyBlockedError("blocked", finish_reason="SAFETY")]
            await controller.finalize()
            assert controller.stage == PipelineStage.FAILED

        outcome = controller.reset()

        assert outcome.stage == PipelineStage.IDLE
        assert controller.metadata is None
        assert controller.sketch is None
        assert controller.final_image is None
        assert controller.ctx.last_error is None
        assert controller.ctx.identity_image is identity
        assert controller.ctx.brand_assets == brand

    @pytest.mark.asyncio
    async def test_can_start_again_after_reset(self):
        controller = await started()
        controller.reset()
        outcome = await controller.start_pipeline(title="second run")
        assert outcome.stage == PipelineStage.SKETCH_READY


class TestMetadataEditing:

    @pytest.mark.asyncio
    async def test_edit_then_regenerate_uses_edited_value(self):
        client = FakeGenerationClient()
        controller = await started(client)

        controller.edit_metadata_field("visual_description", "Arms crossed, smirking")
        controller.add_metadata_item("visual_hooks", "giant hourglass")
        controller.remove_metadata_item("visual_hooks", 0)
        outcome = await controller.regenerate_sketch()

        prompt = client.prompt_of(-1)
        assert "Arms crossed, smirking" in prompt
        assert "Staring at a wall calendar" not in prompt
        assert "giant hourglass" in prompt
        assert "crossed-out calendar" not in prompt
        assert outcome.metadata.visual_description == "Arms crossed, smirking"
        assert len(client.structured_calls) == 1

    @pytest.mark.asyncio
    async def test_edit_keeps_stale_sketch(self):
        controller = await started()
        sketch = controller.sketch
        controller.edit_metadata_field("clickbait_text", "DAY 100")
        assert controller.sketch == sketch
        assert controller.stage == PipelineStage.SKETCH_READY

    @pytest.mark.asyncio
    async def test_regenerate_with_edited_metadata_object(self):
        client = FakeGenerationClient()
        controller = await started(client)
        edited = controller.metadata.model_copy(update={"background_context": "Snowy mountain peak"})

        await controller.regenerate_sketch(edited_metadata=edited)

        assert "Snowy mountain peak" in client.prompt_of(-1)
        assert controller.metadata.background_context == "Snowy mountain peak"

    @pytest.mark.asyncio
    async def test_force_new_strategy(self):
        client = FakeGenerationClient()
        controller = await started(client)
        await controller.regenerate_sketch(force_new_strategy=True)
        assert len(client.structured_calls) == 2
        assert len(client.image_calls) == 2

    @pytest.mark.asyncio
    async def test_outcome_metadata_is_a_copy(self):
        controller = await started()
        outcome = controller.outcome()
        controller.edit_metadata_field("clickbait_text", "CHANGED")
        assert outcome.metadata.clickbait_text == "100 DAYS"

    @pytest.mark.asyncio
    async def test_returned_metadata_cannot_bypass_the_stage_check(self):
        controller = await started()
        returned = controller.edit_metadata_field("clickbait_text", "DAY 100")
        listed = controller.add_metadata_item("props", "stopwatch")
        await controller.finalize()

        returned.clickbait_text = "SNEAKY"
        listed.props.append("smuggled")
        controller.metadata.visual_hooks.clear()

        assert controller.stage == PipelineStage.FINALIZED
        assert controller.ctx.metadata.clickbait_text == "DAY 100"
        assert "smuggled" not in controller.ctx.metadata.props
        assert len(controller.ctx.metadata.visual_hooks) == 3


class TestFailures:

    @pytest.mark.asyncio
    async def test_ideation_failure(self):
        client = FakeGenerationClient(metadata=StructuredOutputError("missing fields"))
        controller = new_controller(client)

        outcome = await controller.start_pipeline(title="x")

        assert outcome.stage == PipelineStage.FAILED
        assert outcome.error_category == ErrorCategory.STRUCTURED_OUTPUT_MALFORMED
        assert outcome.error_message == "Could not generate a thumbnail strategy. Please try again."
        assert controller.ctx.failed_stage == "strategy"
        assert controller.metadata is None
        assert client.image_calls == []

    @pytest.mark.asyncio
    async def test_raw_ideation_raises_stage_error(self):
        client = FakeGenerationClient(metadata=StructuredOutputError("missing fields"))
        controller = new_controller(client)
        with pytest.raises(StrategyGenerationError) as exc_info:
            await controller.run_ideation(ContentContext(title="x"))
        assert exc_info.value.category == ErrorCategory.STRUCTURED_OUTPUT_MALFORMED
        assert isinstance(exc_info.value.cause, StructuredOutputError)

        client.metadata = sample_metadata()
        await controller.run_ideation(ContentContext(title="x"))
        assert controller.stage == PipelineStage.SKETCH_DRAFTING
        assert controller.ctx.last_error is None

    @pytest.mark.asyncio
    async def test_safety_block_on_refine_preserves_sketch_ready_artifacts(self):
        client = FakeGenerationClient()
        controller = await started(client)
        metadata, sketch = controller.metadata, controller.sketch
        client.image_results = [SafetyBlockedError("blocked", finish_reason="IMAGE_SAFETY")]

        with pytest.raises(RefineRenderError) as exc_info:
            await controller.run_refine()

        assert exc_info.value.category == ErrorCategory.SAFETY_BLOCKED
        assert controller.stage == PipelineStage.FAILED
        assert controller.ctx.effective_stage == PipelineStage.SKETCH_READY
        assert controller.metadata == metadata
        assert controller.sketch == sketch
        assert controller.final_image is None

        outcome = await controller.finalize()
        assert outcome.stage == PipelineStage.FINALIZED
        assert outcome.error_category is None

    @pytest.mark.asyncio
    async def test_sketch_regeneration_failure_keeps_previous_sketch(self):
        client = FakeGenerationClient()
        controller = await started(client)
        sketch = controller.sketch
        client.image_results = [RuntimeError("503 UNAVAILABLE")]

        outcome = await controller.regenerate_sketch()

        assert outcome.stage == PipelineStage.FAILED
        assert outcome.error_category == ErrorCategory.AMBIGUOUS_UPSTREAM_FAILURE
        assert outcome.sketch == sketch
        controller.edit_metadata_field("clickbait_text", "RETRY")
        assert (await controller.regenerate_sketch()).stage == PipelineStage.SKETCH_READY

    @pytest.mark.asyncio
    async def test_first_sketch_failure_allows_retry(self):
        client = FakeGenerationClient(images=[NoImageProducedError("no image", finish_reason="STOP")])
        controller = new_controller(client)
        await controller.run_ideation(ContentContext(title="x"))

        with pytest.raises(SketchRenderError):
            await controller.run_sketch()
        assert controller.ctx.effective_stage == PipelineStage.SKETCH_DRAFTING
        with pytest.raises(IllegalStateTransitionError):
            controller.edit_metadata_field("clickbait_text", "x")

        await controller.run_sketch()
        assert controller.stage == PipelineStage.SKETCH_READY

    @pytest.mark.asyncio
    async def test_critique_failure_keeps_pre_critique_image(self, caplog):
        client = FakeGenerationClient()
        controller = await started(client)
        await controller.finalize()
        before = controller.final_image
        client.image_results = [NoImageProducedError("no image", finish_reason="STOP")]

        with caplog.at_level(logging.WARNING, logger="thumbcraft.pipeline.controller"):
            outcome = await controller.critique()

        assert outcome.ok
        assert outcome.stage == PipelineStage.FINALIZED
        assert outcome.image == before
        assert outcome.error_category is None
        assert any("keeping the pre-critique image" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_finalize_with_failing_critique(self):
        client = FakeGenerationClient()
        controller = await started(client)
        refined = make_image("refined")
        client.image_results = [refined, RuntimeError("boom")]

        outcome = await controller.finalize(with_critique=True)

        assert outcome.stage == PipelineStage.FINALIZED
        assert outcome.image == refined


class TestInputs:

    @pytest.mark.asyncio
    async def test_brand_assets_capped_at_two(self):
        client = FakeGenerationClient()
        assets = [make_image("a"), make_image("b"), make_image("c")]
        controller = await started(client, brand_assets=assets)

        assert controller.ctx.brand_assets == assets[:2]
        await controller.finalize()
        refine_parts, _ = client.image_calls[-1]
        images = [p.image for p in refine_parts if isinstance(p, ImagePart)]
        assert images[2:] == assets[:2]

    @pytest.mark.asyncio
    async def test_rejected_upload_does_not_advance(self):
        client = FakeGenerationClient()
        controller = PipelineController(client)

        outcome = await controller.start_pipeline(identity_image=b"not an image", title="x")

        assert outcome.stage == PipelineStage.IDLE
        assert outcome.error_category == ErrorCategory.ENCODING_FAILED
        assert client.structured_calls == []
        assert not controller.busy

    @pytest.mark.asyncio
    async def test_raw_upload_is_encoded_off_the_event_loop(self, monkeypatch):
        release = threading.Event()
        encode_threads = []

        def slow_encode(data, media_type=None):
            encode_threads.append(threading.current_thread())
            release.wait(timeout=5)
            return make_image("uploaded-face")

        monkeypatch.setattr(controller_module, "encode_image_bytes", slow_encode)
        client = FakeGenerationClient()
        controller = PipelineController(client)

        task = asyncio.create_task(controller.start_pipeline(identity_image=b"raw upload", title="x"))
        await asyncio.sleep(0)
        assert controller.busy
        with pytest.raises(PipelineBusyError):
            await controller.start_pipeline(identity_image=make_image("other"), title="y")

        release.set()
        outcome = await task

        assert outcome.stage == PipelineStage.SKETCH_READY
        assert controller.ctx.identity_image == make_image("uploaded-face")
        assert encode_threads[0] is not threading.main_thread()
        assert len(client.structured_calls) == 1

    @pytest.mark.asyncio
    async def test_identity_required(self):
        controller = PipelineController(FakeGenerationClient())
        with pytest.raises(ValueError, match="identity image"):
            await controller.start_pipeline(title="x")
        assert controller.stage == PipelineStage.IDLE

    @pytest.mark.asyncio
    async def test_start_pipeline_overrides_inputs(self):
        client = FakeGenerationClient()
        controller = new_controller(client)
        new_identity = make_image("other-face")

        await controller.start_pipeline(identity_image=new_identity, title="x", aspect_ratio=AspectRatio.PORTRAIT)

        assert controller.ctx.identity_image == new_identity
        assert client.image_calls[0][1] == AspectRatio.PORTRAIT

    def test_configure_only_when_idle(self):
        controller = new_controller()
        controller.configure(aspect_ratio=AspectRatio.STANDARD)
        assert controller.ctx.aspect_ratio == AspectRatio.STANDARD
