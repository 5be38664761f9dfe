"""
Pipeline Executor - runs the controller's stages in a configured order.

The single-pass, two-stage and three-stage call patterns are not separate
pipelines; they are stage lists (configs/stage_order.yml) replayed against
one PipelineController.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import yaml

from ..core.constants import DEFAULT_PIPELINE_MODE, FALLBACK_STAGE_ORDER
from ..core.errors import StageError
from ..models import (
    AspectRatio,
    ColorPalette,
    ContentContext,
    EncodedImage,
    FontStyle,
    GenerationStyle,
    PipelineOutcome,
)
from .controller import PipelineController
from .progress import ProgressCallback

logger = logging.getLogger(__name__)

KNOWN_STAGES = ("strategy", "sketch", "refine", "critique")


def load_stage_order(mode: str, config_path: Optional[Path] = None) -> List[str]:
    """Stage list for `mode` from the YAML config, falling back to the built-in order."""
    path = config_path or Path(__file__).parent.parent / "configs" / "stage_order.yml"
    stages = None
    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        stages = config.get(mode)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not load stage config from {path}: {e}")

    if stages is None:
        if mode not in FALLBACK_STAGE_ORDER:
            raise ValueError(f"Unknown pipeline mode '{mode}'. Available: {', '.join(FALLBACK_STAGE_ORDER)}")
        logger.info(f"Using built-in stage order for mode '{mode}'")
        stages = FALLBACK_STAGE_ORDER[mode]

    unknown = [s for s in stages if s not in KNOWN_STAGES]
    if unknown:
        raise ValueError(f"Unknown stage(s) in '{mode}' config: {', '.join(unknown)}")
    if not stages or stages[0] != "strategy":
        raise ValueError(f"Mode '{mode}' must start with the strategy stage")
    return list(stages)


class PipelineExecutor:
    """Executes pipeline stages in configurable order."""

    def __init__(self, mode: str = DEFAULT_PIPELINE_MODE, stages_config_path: Optional[str] = None):
        self.mode = mode
        self.config_path = Path(stages_config_path) if stages_config_path else None
        self.stages = load_stage_order(mode, self.config_path)
        logger.info(f"🔧 Pipeline executor initialized for {mode} mode with stages: {self.stages}")

    async def run(
        self,
        controller: PipelineController,
        content: ContentContext,
        style: GenerationStyle = GenerationStyle.PROFESSIONAL,
        identity_image: Optional[EncodedImage] = None,
        brand_assets: Optional[Sequence[EncodedImage]] = None,
        aspect_ratio: Optional[AspectRatio] = None,
        palette: Optional[ColorPalette] = None,
        font: FontStyle = FontStyle.IMPACT,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> PipelineOutcome:
        """
        Run every configured stage in order, stopping at the first failure.

        The controller must be Idle and hold an identity image (passed here or
        configured earlier); without one nothing is sent. Critique failures are absorbed by the
        controller and never stop the run.
        """
        controller.configure(identity_image=identity_image, brand_assets=brand_assets, aspect_ratio=aspect_ratio)
        if controller.identity_image is None:
            raise ValueError(f"{self.mode} pipeline requires an identity image")
        unsubscribe: Optional[Callable[[], None]] = None
        if progress_callback is not None:
            unsubscribe = controller.subscribe(progress_callback)

        steps: Dict[str, Callable] = {
            "strategy": lambda: controller.run_ideation(content, style),
            "sketch": controller.run_sketch,
            "refine": lambda: controller.run_refine(palette=palette, font=font),
            "critique": controller.run_critique,
        }

        logger.info(f"Starting {self.mode} pipeline execution with {len(self.stages)} stages")
        overall_start_time = time.time()
        try:
            for stage_order, stage_name in enumerate(self.stages, 1):
                stage_start_time = time.time()
                logger.info(f"--- Stage {stage_order}: {stage_name} ---")
                try:
                    await steps[stage_name]()
                except StageError as e:
                    stage_duration = time.time() - stage_start_time
                    logger.error(f"Stage {stage_name} failed after {stage_duration:.2f}s: {e}")
                    break
                logger.info(f"Stage {stage_name} completed in {time.time() - stage_start_time:.2f}s")
        finally:
            if unsubscribe is not None:
                unsubscribe()

        overall_duration = time.time() - overall_start_time
        logger.info(f"{self.mode} pipeline execution finished in {overall_duration:.2f}s (stage: {controller.stage.value})")
        return controller.outcome()
