"""
Stage 2: Compositional Sketch

Renders a black-and-white layout blueprint conditioned on the metadata. The
identity subject's head is drawn realistically; every other element is an
outline sketch. Re-run with edited metadata to regenerate the layout.
"""

from ..core.aspect_ratio_utils import aspect_ratio_directive
from ..core.generation_client import GenerationClient
from ..models import AspectRatio, EncodedImage, ImagePart, TextPart, ThumbnailMetadata
from ..pipeline.context import PipelineContext

STAGE_NAME = "sketch"


def build_sketch_prompt(metadata: ThumbnailMetadata, aspect_ratio: AspectRatio) -> str:
    hooks = ", ".join(metadata.visual_hooks)
    return f"""Please create a compositional layout for a thumbnail.

The individual from the reference photo (IMAGE 1) should be the central figure in this pose: {metadata.visual_description}.

Layout Details:
- Use the actual face from IMAGE 1: capture the head and facial features of that person realistically in the layout.
- Render the rest of the scene as a clean, simple black-and-white ink sketch.
- Include clear outlines for: {hooks}.
- Set the scene in: {metadata.background_context}.

The goal is a clear blueprint showing where every element is placed.

{aspect_ratio_directive(aspect_ratio)}"""


async def run(ctx: PipelineContext, client: GenerationClient) -> EncodedImage:
    """Render the sketch for the metadata currently held in ctx."""
    if ctx.metadata is None:
        raise ValueError("No metadata available for the sketch stage")
    if ctx.identity_image is None:
        raise ValueError("No identity image available for the sketch stage")

    ctx.log(f"Starting sketch stage ({ctx.aspect_ratio.value})")
    parts = [
        ImagePart(image=ctx.identity_image),
        TextPart(text=build_sketch_prompt(ctx.metadata, ctx.aspect_ratio)),
    ]
    sketch = await client.generate_image(parts, ctx.aspect_ratio)

    if client.last_usage:
        ctx.llm_usage[STAGE_NAME] = client.last_usage
    ctx.log(f"Sketch rendered ({sketch.media_type})")
    return sketch
