"""
Constants for the Thumbnail Generation Pipeline.
===============================================

🎯 CENTRALIZED CONFIGURATION - Single Source of Truth
-----------------------------------------------------
This file is the ONLY place to define:
- Model identifiers for the strategy and image stages
- Accepted upload media types and size limits
- Style prompt and palette tables (option enums live in thumbcraft.models)
- Progress labels shown while a stage is running

⚠️  DO NOT duplicate these constants in other files!
   Other modules should import from here to maintain consistency.

Design Pattern:
- ClientConfig reads model overrides from the environment and falls back to these values
- Stage modules import prompt tables directly
"""

from typing import Dict, List

# --- Model Definitions ---
STRATEGY_MODEL_ID = "gemini-3-flash-preview"

IMAGE_GENERATION_MODEL_ID = "gemini-2.5-flash-image"

# --- Upload Constraints ---
ACCEPTED_MEDIA_TYPES = ("image/png", "image/jpeg", "image/webp")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10MB, same limit the upload widget advertises

# Pillow format name -> transport media type
PIL_FORMAT_MEDIA_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",  # multi-picture JPEGs from phone cameras
    "WEBP": "image/webp",
}

MAX_BRAND_ASSETS = 2

# --- Prompt Size Limits ---
MAX_ARTICLE_CHARS = 4000

# --- Generation Styles ---
STYLE_PROMPT_MAP: Dict[str, str] = {
    "Professional": "premium commercial photograph, sharp focus, professional lighting, vibrant color balance.",
    "Casual": "realistic vlog-style photography, natural sunlight, authentic details.",
    "Cinematic": "epic cinematic film still, moody rim lighting, deep contrast.",
    "3D Render": "high-detail 3D digital render, realistic materials, octane render style.",
    "Comic Book": "vibrant digital illustration, dynamic linework, high-contrast colors.",
    "Retro": "vintage film photograph, warm film grain, nostalgic lighting.",
    "Hyper-Realistic": (
        "ultra-realistic 8k masterwork photograph, hyper-realistic skin textures, pore-level detail, "
        "masterfully lit cinematic environment with perfect depth of field."
    ),
}

# --- Color Palettes ---
COLOR_PALETTE_PRESETS: Dict[str, List[str]] = {
    "Vibrant": ["#FF3E3E", "#FFC107", "#00D1FF", "#FFFFFF"],
    "Neon": ["#39FF14", "#FF40E3", "#00FFFF", "#FDFD96"],
    "Pastel": ["#A0E7E5", "#F8C8DC", "#B4F8C8", "#FFAEBC"],
    "Monochrome": ["#1C1C1C", "#585858", "#D8D8D8", "#FFFFFF"],
    "Earthy": ["#A87B00", "#568203", "#4E2A04", "#C2B280"],
    "Sunset": ["#F65B49", "#F9A825", "#FFD54F", "#4A148C"],
}
AUTO_PALETTE_INSTRUCTION = "Use vibrant, high-contrast, attention-grabbing colors."

# --- Finish Reasons (Gemini candidate.finish_reason names) ---
NORMAL_FINISH_REASONS = {"STOP"}
# Image model finished but declined to draw; reported the same as a plain STOP
NO_IMAGE_FINISH_REASONS = NORMAL_FINISH_REASONS | {"NO_IMAGE"}
SAFETY_FINISH_REASONS = {
    "SAFETY",
    "IMAGE_SAFETY",
    "PROHIBITED_CONTENT",
    "IMAGE_PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
}

# --- Progress Labels ---
STAGE_PROGRESS_MESSAGES = {
    "strategy": "Strategizing visual impact...",
    "sketch": "Drafting compositional guide...",
    "refine": "Rendering masterpiece draft...",
    "critique": "Critiquing likeness and polishing realism...",
}

# --- Pipeline Modes ---
DEFAULT_PIPELINE_MODE = "three_stage"
FALLBACK_STAGE_ORDER = {
    "single_pass": ["strategy", "sketch", "refine"],
    "two_stage": ["strategy", "sketch"],
    "three_stage": ["strategy", "sketch", "refine", "critique"],
}
