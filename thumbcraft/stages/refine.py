"""
Stage 3: Final Refinement

Turns the approved sketch into the finished thumbnail. Inputs, in order:
the sketch (layout), the identity reference, up to two brand assets, and the
prompt. The prompt enforces strict identity fidelity (including realistic
colorization of monochrome references), realizes the scene from the sketch
and metadata, overlays the impact text in the chosen font and applies the
chosen style and palette.
"""

from typing import List, Optional, Union

from ..core.aspect_ratio_utils import aspect_ratio_directive
from ..core.constants import AUTO_PALETTE_INSTRUCTION
from ..core.generation_client import GenerationClient
from ..models import (
    AspectRatio,
    ColorPalette,
    EncodedImage,
    FontStyle,
    GenerationStyle,
    ImagePart,
    TextPart,
    ThumbnailMetadata,
)
from ..pipeline.context import PipelineContext

STAGE_NAME = "refine"


def palette_instruction(palette: Optional[ColorPalette]) -> str:
    if palette is None:
        return AUTO_PALETTE_INSTRUCTION
    return f"Use a color scheme inspired by {palette.name} ({', '.join(palette.colors)})."


def build_refine_prompt(
    metadata: ThumbnailMetadata,
    style: GenerationStyle,
    palette: Optional[ColorPalette],
    font: FontStyle,
    aspect_ratio: AspectRatio,
    brand_asset_count: int = 0,
) -> str:
    hyper_clause = ""
    if style == GenerationStyle.HYPER_REALISTIC:
        hyper_clause = (
            "\nHYPER-REALISM MODE: Both the human and the environment MUST be indistinguishable "
            "from reality, using master-level photographic clarity.\n"
        )
    if style == GenerationStyle.COMIC_BOOK:
        realism_line = "- RENDERING: Draw the person in the comic-book style while keeping the exact likeness from IMAGE 2."
    else:
        realism_line = "- REALISM: The person must look like a 100% real human, not an illustration."

    brand_clause = ""
    if brand_asset_count:
        last = 2 + brand_asset_count
        images = "IMAGE 3" if brand_asset_count == 1 else f"IMAGES 3-{last}"
        brand_clause = f"5. Brand Assets: Integrate the logo/prop from {images} naturally into the scene.\n"

    return f"""Produce a high-end professional thumbnail following the layout in IMAGE 1.

CRITICAL IDENTITY REQUIREMENT:
The subject MUST be the exact individual from IMAGE 2.
- 100% LIKENESS: Transfer every unique facial feature, nose shape, eyes, and bone structure from IMAGE 2.
- COLORIZATION: If IMAGE 2 is black and white, you MUST realistically colorize the face to match a natural human skin tone integrated with the scene's lighting.
{realism_line}
{hyper_clause}
Specs:
1. Composition: Follow IMAGE 1 precisely.
2. Scene: Detailed {metadata.background_context} with {", ".join(metadata.visual_hooks)}.
3. Text: Overlay "{metadata.clickbait_text}" in bold {font.value}.
4. Style: {style.prompt_fragment} {palette_instruction(palette)}
{brand_clause}
Integrate the person from IMAGE 2 into this world with flawless photographic blending.

{aspect_ratio_directive(aspect_ratio)}"""


async def run(
    ctx: PipelineContext,
    client: GenerationClient,
    palette: Optional[ColorPalette] = None,
    font: FontStyle = FontStyle.IMPACT,
) -> EncodedImage:
    """Render the final thumbnail from the sketch held in ctx."""
    if ctx.sketch is None or ctx.metadata is None:
        raise ValueError("Refine stage requires a sketch and metadata")
    if ctx.identity_image is None:
        raise ValueError("No identity image available for the refine stage")

    ctx.log(
        f"Starting refine stage (style: {ctx.generation_style.value}, font: {font.value}, "
        f"palette: {palette.name if palette else 'Auto'}, brand assets: {len(ctx.brand_assets)})"
    )
    parts: List[Union[ImagePart, TextPart]] = [
        ImagePart(image=ctx.sketch),
        ImagePart(image=ctx.identity_image),
        *[ImagePart(image=asset) for asset in ctx.brand_assets],
        TextPart(text=build_refine_prompt(
            ctx.metadata, ctx.generation_style, palette, font, ctx.aspect_ratio, len(ctx.brand_assets)
        )),
    ]
    final_image = await client.generate_image(parts, ctx.aspect_ratio)

    if client.last_usage:
        ctx.llm_usage[STAGE_NAME] = client.last_usage
    ctx.log("Final thumbnail rendered")
    return final_image
