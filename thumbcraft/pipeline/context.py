"""
Pipeline context for maintaining state across stages.

One mutable record per pipeline instance, owned by the PipelineController.
Stages read their inputs from it and write their artifacts back only on
success, so a failed attempt never destroys earlier progress.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.constants import MAX_BRAND_ASSETS
from ..models import (
    AspectRatio,
    ContentContext,
    EncodedImage,
    ErrorCategory,
    GenerationStyle,
    PipelineStage,
    ThumbnailMetadata,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """
    Holds the current stage marker, the user's inputs and every artifact
    produced so far.

    Invariants:
    - SKETCH_READY implies metadata and sketch are set.
    - FINALIZED implies metadata, sketch and final_image are set.
    """

    run_id: str = field(default_factory=lambda: datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f"))
    stage: PipelineStage = PipelineStage.IDLE

    # User inputs (survive reset)
    identity_image: Optional[EncodedImage] = None
    brand_assets: List[EncodedImage] = field(default_factory=list)

    # Per-run inputs
    content: Optional[ContentContext] = None
    generation_style: GenerationStyle = GenerationStyle.PROFESSIONAL
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE

    # Artifacts
    metadata: Optional[ThumbnailMetadata] = None
    sketch: Optional[EncodedImage] = None
    final_image: Optional[EncodedImage] = None

    # Failure bookkeeping
    last_error: Optional[ErrorCategory] = None
    last_error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    recovery_stage: Optional[PipelineStage] = None

    # Usage tracking
    llm_usage: Dict[str, Any] = field(default_factory=dict)

    logs: List[str] = field(default_factory=list)

    def log(self, message: str, level: int = logging.INFO) -> None:
        """Add a timestamped log line and forward it to the module logger."""
        timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.run_id}] {message}")

    def set_brand_assets(self, assets: Optional[List[EncodedImage]]) -> None:
        assets = list(assets or [])
        if len(assets) > MAX_BRAND_ASSETS:
            self.log(f"Ignoring {len(assets) - MAX_BRAND_ASSETS} brand asset(s) beyond the limit of {MAX_BRAND_ASSETS}", logging.WARNING)
        self.brand_assets = assets[:MAX_BRAND_ASSETS]

    @property
    def effective_stage(self) -> PipelineStage:
        """The stage that decides which operations are legal (the pre-failure stage when FAILED)."""
        if self.stage == PipelineStage.FAILED:
            return self.recovery_stage or PipelineStage.IDLE
        return self.stage

    def mark_failed(self, failed_stage: str, category: ErrorCategory, message: str, recovery_stage: PipelineStage) -> None:
        self.stage = PipelineStage.FAILED
        self.failed_stage = failed_stage
        self.last_error = category
        self.last_error_message = message
        self.recovery_stage = recovery_stage

    def clear_error(self) -> None:
        self.last_error = None
        self.last_error_message = None
        self.failed_stage = None
        self.recovery_stage = None

    def reset(self) -> None:
        """Back to IDLE; identity image and brand assets are kept."""
        self.stage = PipelineStage.IDLE
        self.content = None
        self.metadata = None
        self.sketch = None
        self.final_image = None
        self.llm_usage = {}
        self.clear_error()
        self.log("Pipeline reset")

    def check_invariants(self) -> None:
        effective = self.effective_stage
        if effective == PipelineStage.SKETCH_READY:
            assert self.metadata is not None and self.sketch is not None, "SketchReady requires metadata and sketch"
        if effective == PipelineStage.FINALIZED:
            assert (
                self.metadata is not None and self.sketch is not None and self.final_image is not None
            ), "Finalized requires metadata, sketch and final image"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable snapshot (images omitted) for logging and debugging."""
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "recovery_stage": self.recovery_stage.value if self.recovery_stage else None,
            "has_identity_image": self.identity_image is not None,
            "brand_asset_count": len(self.brand_assets),
            "content": self.content.model_dump() if self.content else None,
            "generation_style": self.generation_style.value,
            "aspect_ratio": self.aspect_ratio.value,
            "metadata": self.metadata.model_dump() if self.metadata else None,
            "has_sketch": self.sketch is not None,
            "has_final_image": self.final_image is not None,
            "last_error": self.last_error.value if self.last_error else None,
            "failed_stage": self.failed_stage,
            "llm_usage": self.llm_usage,
        }
