"""
Stage 1: Visual Strategy (Ideation)

Derives a ThumbnailMetadata content plan from the user's title/subtitle or
article text using a structured-output call. The user text is passed
verbatim so the service can mirror its language in the overlay text.
"""

from ..core.generation_client import GenerationClient
from ..models import ContentContext, GenerationStyle, ThumbnailMetadata
from ..pipeline.context import PipelineContext

STAGE_NAME = "strategy"


def build_strategy_prompt(content: ContentContext, style: GenerationStyle) -> str:
    """Prompt asking for hooks, pose, impact text, props and background as JSON."""
    return f"""You are a professional visual content strategist.

Context: {content.to_prompt_block()}
Style: {style.value}.

Task: Create a visual design strategy for a high-engagement thumbnail.
1. 'visual_hooks': 3 specific elements to make the image remarkable.
2. 'visual_description': The subject's pose and expression.
3. 'clickbait_text': Impactful headline text (2-3 words), written in the same language as the context above.
4. 'props': 2-3 supporting objects.
5. 'background_context': Description of the setting and lighting.

Respond ONLY with JSON:
{{
  "visual_hooks": ["...", "...", "..."],
  "visual_description": "...",
  "clickbait_text": "...",
  "props": ["..."],
  "background_context": "..."
}}"""


async def run(ctx: PipelineContext, client: GenerationClient) -> ThumbnailMetadata:
    """Generate the content plan. Does not modify ctx artifacts; the controller stores the result."""
    if ctx.content is None:
        raise ValueError("No content context set for the strategy stage")

    path = "article" if ctx.content.uses_article else "title"
    ctx.log(f"Starting strategy stage (context: {path}, style: {ctx.generation_style.value})")

    prompt = build_strategy_prompt(ctx.content, ctx.generation_style)
    metadata = await client.generate_structured(prompt, ThumbnailMetadata)

    if client.last_usage:
        ctx.llm_usage[STAGE_NAME] = client.last_usage
    ctx.log(f"Strategy ready: '{metadata.clickbait_text}' with {len(metadata.visual_hooks)} visual hooks")
    return metadata
