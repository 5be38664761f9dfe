"""
Stage 4: Critique & Self-Correction (optional)

Compares the finished thumbnail with the identity reference and asks for a
corrected, more photorealistic version. Failures here are never fatal; the
controller keeps the pre-critique image.
"""

from ..core.aspect_ratio_utils import aspect_ratio_directive
from ..core.generation_client import GenerationClient
from ..models import AspectRatio, EncodedImage, GenerationStyle, ImagePart, TextPart, ThumbnailMetadata
from ..pipeline.context import PipelineContext

STAGE_NAME = "critique"


def build_critique_prompt(metadata: ThumbnailMetadata, style: GenerationStyle, aspect_ratio: AspectRatio) -> str:
    return f"""Perform a CRITICAL REFLECTION and SELF-CORRECTION on the masterpiece (IMAGE 1).

Compare IMAGE 1 (The Masterpiece) to IMAGE 2 (The Original Identity Reference).

Critique Tasks:
1. IDENTITY FIDELITY: Does the subject in IMAGE 1 look exactly like the person in IMAGE 2? Correct any deviations in facial structure, features, or likeness.
2. COLOURIZATION CHECK: If IMAGE 2 was black and white, ensure the face in the final result is realistically colorized and perfectly skin-toned to match a high-end photograph.
3. REALISM: Ensure the subject and environment are realistic and indistinguishable from professional photography. Remove any "AI-looking" artifacts or smoothing.
4. TEXTURE: Add micro-details to the skin, hair, and clothing.

Final Instruction:
Generate the PERFECTED final version of the thumbnail. Maintain the exact composition of IMAGE 1, keep the overlay text "{metadata.clickbait_text}" exactly as written and keep the {style.value} style, but fix the face to be a faithful replica of the person in IMAGE 2.

{aspect_ratio_directive(aspect_ratio)}"""


async def run(ctx: PipelineContext, client: GenerationClient) -> EncodedImage:
    """Return a corrected copy of ctx.final_image. Raises on any failure; the caller decides the fallback."""
    if ctx.final_image is None or ctx.metadata is None:
        raise ValueError("Critique stage requires a final image and metadata")
    if ctx.identity_image is None:
        raise ValueError("No identity image available for the critique stage")

    ctx.log("Starting critique stage")
    parts = [
        ImagePart(image=ctx.final_image),
        ImagePart(image=ctx.identity_image),
        TextPart(text=build_critique_prompt(ctx.metadata, ctx.generation_style, ctx.aspect_ratio)),
    ]
    corrected = await client.generate_image(parts, ctx.aspect_ratio)

    if client.last_usage:
        ctx.llm_usage[STAGE_NAME] = client.last_usage
    ctx.log("Critique pass produced a corrected image")
    return corrected
