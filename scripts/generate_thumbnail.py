#!/usr/bin/env python3
"""
Generate a thumbnail from the command line.

Runs one of the executor modes (single_pass, two_stage, three_stage) against
the live Gemini API and writes the sketch and final image next to each other.

Usage
-----
$ GEMINI_API_KEY=... python scripts/generate_thumbnail.py --image face.jpg --title "I Tried 100 Days"
$ python scripts/generate_thumbnail.py --image face.png --article-file post.md --mode two_stage --aspect 9:16
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from thumbcraft.core.aspect_ratio_utils import resolve_aspect_ratio
from thumbcraft.core.client_config import ClientConfig
from thumbcraft.core.constants import DEFAULT_PIPELINE_MODE, FALLBACK_STAGE_ORDER
from thumbcraft.core.encoding import encode_image_file
from thumbcraft.core.errors import EncodingError
from thumbcraft.core.generation_client import GenerationClient
from thumbcraft.core.logging_config import configure_logging
from thumbcraft.models import ColorPalette, ContentContext, FontStyle, GenerationStyle
from thumbcraft.pipeline.controller import PipelineController
from thumbcraft.pipeline.executor import PipelineExecutor

logger = logging.getLogger("generate_thumbnail")

EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg", "image/webp": ".webp"}


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Generate a thumbnail with the staged Gemini pipeline")
    parser.add_argument("--image", required=True, help="Identity reference photo (PNG/JPEG/WEBP)")
    parser.add_argument("--title", default="", help="Video or post title")
    parser.add_argument("--subtitle", default="", help="Optional subtitle")
    parser.add_argument("--article-file", help="Article text file; takes precedence over --title")
    parser.add_argument("--brand", action="append", default=[], help="Brand asset image (up to 2)")
    parser.add_argument("--style", default=GenerationStyle.PROFESSIONAL.value,
                        choices=[s.value for s in GenerationStyle])
    parser.add_argument("--font", default=FontStyle.IMPACT.value, choices=[f.value for f in FontStyle])
    parser.add_argument("--palette", help="Palette preset name; omit for automatic colors")
    parser.add_argument("--aspect", default="16:9", help="16:9, 9:16, 4:3 or 1:1")
    parser.add_argument("--mode", default=DEFAULT_PIPELINE_MODE, choices=sorted(FALLBACK_STAGE_ORDER))
    parser.add_argument("--output-dir", default="output", help="Where to write the images")
    parser.add_argument("--env", default=".env", help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    return parser.parse_args(argv)


async def run(args) -> int:
    config = ClientConfig.from_env(args.env)
    client = GenerationClient.from_config(config)

    try:
        identity = await encode_image_file(args.image)
        brand_assets = [await encode_image_file(path) for path in args.brand]
    except EncodingError as e:
        logger.error(f"❌ {e}")
        return 2

    article = Path(args.article_file).read_text(encoding="utf-8") if args.article_file else ""
    content = ContentContext(title=args.title, subtitle=args.subtitle, article=article)
    palette = ColorPalette.preset(args.palette) if args.palette else None

    controller = PipelineController(client)
    executor = PipelineExecutor(args.mode)
    outcome = await executor.run(
        controller,
        content,
        style=GenerationStyle(args.style),
        identity_image=identity,
        brand_assets=brand_assets,
        aspect_ratio=resolve_aspect_ratio(args.aspect),
        palette=palette,
        font=FontStyle(args.font),
        progress_callback=lambda event: print(f"⏳ {event.message}"),
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for name, image in (("sketch", outcome.sketch), ("final", outcome.image)):
        if image is not None:
            path = output_dir / f"{controller.ctx.run_id}_{name}{EXTENSIONS.get(image.media_type, '.png')}"
            path.write_bytes(image.to_bytes())
            print(f"✅ Saved {name}: {path}")

    if outcome.metadata:
        print(f"📝 Impact text: {outcome.metadata.clickbait_text}")
    if not outcome.ok:
        print(f"❌ {outcome.error_message} ({outcome.error_category.value})")
        return 1
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
