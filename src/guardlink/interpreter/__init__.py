"""Text command interpreters."""

import logging

from guardlink.config import Settings
from guardlink.interpreter.base import CommandInterpreter, Interpretation

logger = logging.getLogger(__name__)

__all__ = ["CommandInterpreter", "Interpretation", "create_interpreter"]


def create_interpreter(cfg: Settings) -> CommandInterpreter | None:
    """Factory: instantiate the configured interpreter backend."""
    mode = cfg.interpreter_mode
    if mode == "openai":
        from guardlink.interpreter.llm import OpenAIInterpreter

        if not cfg.openai_api_key:
            logger.warning("OpenAI interpreter selected but no API key configured")
            return None
        return OpenAIInterpreter(
            api_key=cfg.openai_api_key,
            model=cfg.openai_model,
            base_url=cfg.openai_base_url,
        )
    if mode == "keyword":
        from guardlink.interpreter.keyword import KeywordInterpreter

        return KeywordInterpreter()
    return None
