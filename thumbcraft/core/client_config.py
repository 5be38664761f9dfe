"""
Client Configuration Module

Handles API key loading, model configuration and creation of the Gemini
client. The resulting ClientConfig is an explicit value: callers pass it
(or the client built from it) into each pipeline, so several pipelines can
run side by side with different credentials and tests can inject fakes.
"""

import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from google import genai

from .constants import IMAGE_GENERATION_MODEL_ID, STRATEGY_MODEL_ID

logger = logging.getLogger(__name__)

# Environment variable -> model config key
ENV_MODEL_OVERRIDES = {
    "STRATEGY_MODEL_ID": "STRATEGY_MODEL_ID",
    "IMAGE_GENERATION_MODEL_ID": "IMAGE_GENERATION_MODEL_ID",
}


class ClientConfig:
    """API key plus model identifiers for one pipeline instance."""

    def __init__(
        self,
        api_key: Optional[str],
        strategy_model_id: str = STRATEGY_MODEL_ID,
        image_model_id: str = IMAGE_GENERATION_MODEL_ID,
    ):
        self.api_key = api_key
        self.model_config: Dict[str, str] = {
            "STRATEGY_MODEL_ID": strategy_model_id,
            "IMAGE_GENERATION_MODEL_ID": image_model_id,
        }

    @property
    def strategy_model_id(self) -> str:
        return self.model_config["STRATEGY_MODEL_ID"]

    @property
    def image_model_id(self) -> str:
        return self.model_config["IMAGE_GENERATION_MODEL_ID"]

    @classmethod
    def from_env(cls, env_path: Optional[str] = ".env") -> "ClientConfig":
        """Load the API key and model overrides from a .env file and the environment."""
        if env_path and os.path.exists(env_path):
            load_dotenv(dotenv_path=env_path)
            logger.info(f"✅ Loaded .env file from: {env_path}")
        elif env_path:
            logger.info(f"⚠️ .env file not found at {env_path}; using process environment only")

        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        logger.info(f"  GEMINI_API_KEY: {'✅ Available' if api_key else '❌ Missing'}")

        config = cls(api_key=api_key)
        config._apply_model_overrides()
        return config

    def _apply_model_overrides(self) -> None:
        overrides = 0
        for env_var, config_key in ENV_MODEL_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                original_value = self.model_config[config_key]
                self.model_config[config_key] = env_value
                overrides += 1
                logger.info(f"🔧 Model config override: {config_key} = {env_value} (was: {original_value})")
        if not overrides:
            logger.debug("Using default model configuration from constants.py (no environment overrides found)")

    def create_genai_client(self) -> Any:
        """Build a google-genai client bound to this config's API key."""
        if not self.api_key:
            raise ValueError("No Gemini API key configured. Set GEMINI_API_KEY or pass api_key explicitly.")
        return genai.Client(api_key=self.api_key)

    def summary(self) -> Dict[str, str]:
        """Configuration status without exposing the key."""
        return {
            "api_key": "✅ Configured" if self.api_key else "❌ Not configured",
            **self.model_config,
        }
