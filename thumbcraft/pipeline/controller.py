"""
Pipeline State Controller

Owns one PipelineContext and drives it through the stage state machine:

    Idle -> Strategizing -> SketchDrafting -> SketchReady -> Refining
         -> Finalized -> (Critiquing -> Finalized)

Failed is reachable from every in-flight stage. The context remembers the
stage the pipeline was in before the failed attempt (`recovery_stage`) and
legality of the next operation is judged against it, so a failed refine can
be retried and a failed sketch regeneration still allows edits.

Only one generation call may be in flight per controller. The busy flag is
checked and set synchronously before the first await, so a concurrent
second call fails fast with PipelineBusyError while the first call's result
is still applied when it resolves.
"""

import asyncio
import logging
from typing import Any, Callable, Collection, Optional, Sequence, Type, Union

from ..core.encoding import encode_image_bytes
from ..core.errors import (
    CritiqueRenderError,
    EncodingError,
    IllegalStateTransitionError,
    PipelineBusyError,
    RefineRenderError,
    SketchRenderError,
    StageError,
    StrategyGenerationError,
)
from ..core.failure_classifier import classify_failure, user_message_for
from ..core.generation_client import GenerationClient
from ..models import (
    AspectRatio,
    ColorPalette,
    ContentContext,
    EncodedImage,
    ErrorCategory,
    FontStyle,
    GenerationStyle,
    PipelineOutcome,
    PipelineStage,
    ThumbnailMetadata,
)
from ..stages import critique as critique_stage
from ..stages import refine as refine_stage
from ..stages import sketch as sketch_stage
from ..stages import strategy as strategy_stage
from .context import PipelineContext
from .progress import ProgressCallback, ProgressStream

logger = logging.getLogger(__name__)

ImageInput = Union[EncodedImage, bytes]

_SKETCH_STAGES = (PipelineStage.SKETCH_DRAFTING, PipelineStage.SKETCH_READY)


class PipelineController:
    """Stateful driver for one thumbnail. Not shared across users."""

    def __init__(
        self,
        client: GenerationClient,
        identity_image: Optional[EncodedImage] = None,
        brand_assets: Sequence[EncodedImage] = (),
        aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE,
    ):
        self.client = client
        self.ctx = PipelineContext(identity_image=identity_image, aspect_ratio=aspect_ratio)
        self.ctx.set_brand_assets(list(brand_assets))
        self.progress = ProgressStream()
        self._busy: Optional[str] = None

    # --- Read-only views ---

    @property
    def stage(self) -> PipelineStage:
        return self.ctx.stage

    @property
    def busy(self) -> bool:
        return self._busy is not None

    @property
    def identity_image(self) -> Optional[EncodedImage]:
        return self.ctx.identity_image

    @property
    def metadata(self) -> Optional[ThumbnailMetadata]:
        """Snapshot of the held metadata; edits go through the metadata operations."""
        return self.ctx.metadata.model_copy(deep=True) if self.ctx.metadata else None

    @property
    def sketch(self) -> Optional[EncodedImage]:
        return self.ctx.sketch

    @property
    def final_image(self) -> Optional[EncodedImage]:
        return self.ctx.final_image

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Receive a ProgressEvent at the start of every stage."""
        return self.progress.subscribe(callback)

    def outcome(self) -> PipelineOutcome:
        """Snapshot of the current state for the caller."""
        ctx = self.ctx
        return PipelineOutcome(
            stage=ctx.stage,
            metadata=ctx.metadata.model_copy(deep=True) if ctx.metadata else None,
            sketch=ctx.sketch,
            image=ctx.final_image,
            error_category=ctx.last_error,
            error_message=user_message_for(ctx.last_error) if ctx.last_error else None,
        )

    # --- Guards ---

    def _check(self, operation: str, allowed: Collection[PipelineStage]) -> None:
        if self._busy is not None:
            raise PipelineBusyError(operation, self._busy)
        if self.ctx.effective_stage not in allowed:
            raise IllegalStateTransitionError(operation, self.ctx.stage)

    def _begin(self, operation: str, allowed: Collection[PipelineStage]) -> None:
        self._check(operation, allowed)
        self._busy = operation

    def _end(self) -> None:
        self._busy = None

    def _require_identity(self, operation: str) -> None:
        if self.ctx.identity_image is None:
            raise ValueError(f"Operation '{operation}' requires an identity image")

    def _fail(
        self,
        stage_name: str,
        error_cls: Type[StageError],
        error: Exception,
        recovery_stage: PipelineStage,
    ) -> StageError:
        category = classify_failure(error)
        self.ctx.mark_failed(stage_name, category, str(error), recovery_stage)
        self.ctx.log(f"Stage {stage_name} failed ({category.value}): {error}")
        logger.error(f"Stage {stage_name} failed with {type(error).__name__}: {error}")
        return error_cls(f"{stage_name} stage failed: {error}", category=category, cause=error)

    # --- Transitions (lock already held) ---

    async def _do_ideation(self) -> ThumbnailMetadata:
        recovery = self.ctx.effective_stage
        self.ctx.clear_error()
        self.ctx.stage = PipelineStage.STRATEGIZING
        try:
            await self.progress.emit(strategy_stage.STAGE_NAME)
            metadata = await strategy_stage.run(self.ctx, self.client)
        except asyncio.CancelledError:
            self.ctx.stage = recovery
            raise
        except Exception as e:
            raise self._fail(strategy_stage.STAGE_NAME, StrategyGenerationError, e, recovery) from e

        self.ctx.metadata = metadata
        self.ctx.stage = PipelineStage.SKETCH_DRAFTING
        return metadata

    async def _do_sketch(self) -> EncodedImage:
        recovery = self.ctx.effective_stage
        self.ctx.clear_error()
        self.ctx.stage = PipelineStage.SKETCH_DRAFTING
        try:
            await self.progress.emit(sketch_stage.STAGE_NAME)
            sketch = await sketch_stage.run(self.ctx, self.client)
        except asyncio.CancelledError:
            self.ctx.stage = recovery
            raise
        except Exception as e:
            raise self._fail(sketch_stage.STAGE_NAME, SketchRenderError, e, recovery) from e

        self.ctx.sketch = sketch
        self.ctx.stage = PipelineStage.SKETCH_READY
        return sketch

    async def _do_refine(self, palette: Optional[ColorPalette], font: FontStyle) -> EncodedImage:
        recovery = self.ctx.effective_stage
        self.ctx.clear_error()
        self.ctx.stage = PipelineStage.REFINING
        try:
            await self.progress.emit(refine_stage.STAGE_NAME)
            final_image = await refine_stage.run(self.ctx, self.client, palette=palette, font=font)
        except asyncio.CancelledError:
            self.ctx.stage = recovery
            raise
        except Exception as e:
            raise self._fail(refine_stage.STAGE_NAME, RefineRenderError, e, recovery) from e

        self.ctx.final_image = final_image
        self.ctx.stage = PipelineStage.FINALIZED
        return final_image

    async def _do_critique(self) -> EncodedImage:
        self.ctx.stage = PipelineStage.CRITIQUING
        try:
            await self.progress.emit(critique_stage.STAGE_NAME)
            self.ctx.final_image = await critique_stage.run(self.ctx, self.client)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            wrapped = CritiqueRenderError(str(e), category=classify_failure(e), cause=e)
            logger.warning(
                f"Critique pass failed ({wrapped.category.value}); keeping the pre-critique image: {e}"
            )
            self.ctx.log(f"Critique skipped: {e}")
        finally:
            self.ctx.stage = PipelineStage.FINALIZED
        return self.ctx.final_image

    # --- Raw transitions ---

    async def run_ideation(
        self,
        content: ContentContext,
        style: GenerationStyle = GenerationStyle.PROFESSIONAL,
    ) -> ThumbnailMetadata:
        """Idle -> Strategizing -> SketchDrafting. Raises StrategyGenerationError on failure."""
        self._begin("run_ideation", (PipelineStage.IDLE,))
        try:
            self.ctx.content = content
            self.ctx.generation_style = style
            return await self._do_ideation()
        finally:
            self._end()

    async def run_sketch(self) -> EncodedImage:
        """SketchDrafting/SketchReady -> SketchReady. Raises SketchRenderError on failure."""
        self._check("run_sketch", _SKETCH_STAGES)
        self._require_identity("run_sketch")
        self._begin("run_sketch", _SKETCH_STAGES)
        try:
            return await self._do_sketch()
        finally:
            self._end()

    async def run_refine(
        self,
        palette: Optional[ColorPalette] = None,
        font: FontStyle = FontStyle.IMPACT,
    ) -> EncodedImage:
        """SketchReady -> Refining -> Finalized. Raises RefineRenderError on failure."""
        self._check("run_refine", (PipelineStage.SKETCH_READY,))
        self._require_identity("run_refine")
        self._begin("run_refine", (PipelineStage.SKETCH_READY,))
        try:
            return await self._do_refine(palette, font)
        finally:
            self._end()

    async def run_critique(self) -> EncodedImage:
        """Finalized -> Critiquing -> Finalized. Never fails; returns the current final image."""
        self._begin("run_critique", (PipelineStage.FINALIZED,))
        try:
            return await self._do_critique()
        finally:
            self._end()

    # --- Metadata editing (SketchReady only) ---

    def edit_metadata_field(self, field_name: str, value: Any) -> ThumbnailMetadata:
        self._check("edit_metadata_field", (PipelineStage.SKETCH_READY,))
        self.ctx.metadata.set_field(field_name, value)
        self.ctx.log(f"Metadata field '{field_name}' edited; sketch is now stale")
        return self.ctx.metadata.model_copy(deep=True)

    def add_metadata_item(self, field_name: str, value: str) -> ThumbnailMetadata:
        self._check("add_metadata_item", (PipelineStage.SKETCH_READY,))
        self.ctx.metadata.add_item(field_name, value)
        self.ctx.log(f"Added item to metadata list '{field_name}'")
        return self.ctx.metadata.model_copy(deep=True)

    def remove_metadata_item(self, field_name: str, index: int) -> ThumbnailMetadata:
        self._check("remove_metadata_item", (PipelineStage.SKETCH_READY,))
        self.ctx.metadata.remove_item(field_name, index)
        self.ctx.log(f"Removed item {index} from metadata list '{field_name}'")
        return self.ctx.metadata.model_copy(deep=True)

    # --- Inputs ---

    def configure(
        self,
        identity_image: Optional[EncodedImage] = None,
        brand_assets: Optional[Sequence[EncodedImage]] = None,
        aspect_ratio: Optional[AspectRatio] = None,
    ) -> None:
        """Replace the run inputs. Only allowed before a run starts."""
        self._check("configure", (PipelineStage.IDLE,))
        if identity_image is not None:
            self.ctx.identity_image = identity_image
        if brand_assets is not None:
            self.ctx.set_brand_assets(list(brand_assets))
        if aspect_ratio is not None:
            self.ctx.aspect_ratio = aspect_ratio

    def reset(self) -> PipelineOutcome:
        """Back to Idle from any state. Identity image and brand assets are kept."""
        if self._busy is not None:
            raise PipelineBusyError("reset", self._busy)
        self.ctx.reset()
        self.progress.clear()
        return self.outcome()

    # --- Caller-facing operations ---

    def _encoding_failure(self, error: EncodingError) -> PipelineOutcome:
        logger.warning(f"Rejected upload: {error}")
        outcome = self.outcome()
        outcome.error_category = ErrorCategory.ENCODING_FAILED
        outcome.error_message = user_message_for(ErrorCategory.ENCODING_FAILED)
        return outcome

    async def start_pipeline(
        self,
        identity_image: Optional[ImageInput] = None,
        title: str = "",
        subtitle: str = "",
        article: str = "",
        style: GenerationStyle = GenerationStyle.PROFESSIONAL,
        aspect_ratio: Optional[AspectRatio] = None,
        brand_assets: Optional[Sequence[ImageInput]] = None,
        content: Optional[ContentContext] = None,
    ) -> PipelineOutcome:
        """
        Ideation followed by the first sketch.

        Image inputs may be EncodedImage or raw upload bytes; bytes are run
        through the encoding adapter first and a rejected upload leaves the
        pipeline untouched with category EncodingFailed.
        """
        self._check("start_pipeline", (PipelineStage.IDLE,))
        if content is None:
            content = ContentContext(title=title, subtitle=subtitle, article=article)
        if identity_image is None and self.ctx.identity_image is None:
            raise ValueError("start_pipeline requires an identity image")

        self._begin("start_pipeline", (PipelineStage.IDLE,))
        try:
            try:
                identity = await self._encode(identity_image) if identity_image is not None else self.ctx.identity_image
                assets = [await self._encode(a) for a in brand_assets] if brand_assets is not None else None
            except EncodingError as e:
                return self._encoding_failure(e)

            self.ctx.identity_image = identity
            if assets is not None:
                self.ctx.set_brand_assets(assets)
            if aspect_ratio is not None:
                self.ctx.aspect_ratio = aspect_ratio
            self.ctx.content = content
            self.ctx.generation_style = style
            self.ctx.log(f"Pipeline started ({self.ctx.aspect_ratio.value}, {style.value})")

            await self._do_ideation()
            await self._do_sketch()
        except StageError:
            # Already recorded on the context; reported through the outcome.
            pass
        finally:
            self._end()
        return self.outcome()

    async def regenerate_sketch(
        self,
        edited_metadata: Optional[ThumbnailMetadata] = None,
        force_new_strategy: bool = False,
    ) -> PipelineOutcome:
        """
        Re-render the sketch from the held (possibly edited) metadata.

        Args:
            edited_metadata: Replaces the held metadata before sketching.
            force_new_strategy: Re-run ideation with the held content first.
        """
        self._check("regenerate_sketch", _SKETCH_STAGES)
        self._require_identity("regenerate_sketch")
        if force_new_strategy and self.ctx.content is None:
            raise ValueError("force_new_strategy requires a content context from an earlier run")

        self._begin("regenerate_sketch", _SKETCH_STAGES)
        try:
            if edited_metadata is not None:
                self.ctx.metadata = edited_metadata.model_copy(deep=True)
                self.ctx.log("Using caller-edited metadata for the sketch")
            if force_new_strategy:
                await self._do_ideation()
            await self._do_sketch()
        except StageError:
            # Already recorded on the context; reported through the outcome.
            pass
        finally:
            self._end()
        return self.outcome()

    async def finalize(
        self,
        palette: Optional[ColorPalette] = None,
        font: FontStyle = FontStyle.IMPACT,
        with_critique: bool = False,
    ) -> PipelineOutcome:
        """Refine the approved sketch into the final thumbnail, optionally followed by a critique pass."""
        self._check("finalize", (PipelineStage.SKETCH_READY,))
        self._require_identity("finalize")
        self._begin("finalize", (PipelineStage.SKETCH_READY,))
        try:
            await self._do_refine(palette, font)
            if with_critique:
                await self._do_critique()
        except StageError:
            # Already recorded on the context; reported through the outcome.
            pass
        finally:
            self._end()
        return self.outcome()

    async def critique(self) -> PipelineOutcome:
        """Self-correction pass. Always resolves; a failed pass keeps the previous image."""
        await self.run_critique()
        return self.outcome()

    @staticmethod
    async def _encode(image: ImageInput) -> EncodedImage:
        if isinstance(image, EncodedImage):
            return image
        return await asyncio.to_thread(encode_image_bytes, image)
