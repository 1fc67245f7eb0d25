"""
Prompt Management Module

Loads LLM prompts from text files next to this module so prompt wording can
change without touching code. NOTIFYQ_SYSTEM_PROMPT selects an alternate
system prompt file for experiments.
"""

from __future__ import annotations

import os
from pathlib import Path

PROMPTS_DIR = Path(__file__).parent

SYSTEM_PROMPT_NAME = os.getenv("NOTIFYQ_SYSTEM_PROMPT", "notification_system")
USER_PROMPT_NAME = "notification_user"


class PromptLoader:
    """Load and cache prompt templates from files"""

    def __init__(self):
        self._cache: dict[str, str] = {}

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt template from file.

        Raises:
            FileNotFoundError: If notifyq/llm/prompts/<prompt_name>.txt is missing
        """
        if prompt_name not in self._cache:
            prompt_path = PROMPTS_DIR / f"{prompt_name}.txt"
            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt file not found: {prompt_path}")
            self._cache[prompt_name] = prompt_path.read_text(encoding="utf-8")

        return self._cache[prompt_name]

    def get_system_prompt(self) -> str:
        """Decision policy; used verbatim as the model's system instruction."""
        return self.load_prompt(SYSTEM_PROMPT_NAME)

    def get_user_prompt(self, **kwargs: object) -> str:
        """
        Per-decision prompt with variables injected.

        Args:
            user_context: Formatted user context block
            enabled: Whether AI notifications are enabled
            quiet_hours: Quiet hours description
            priority_keywords: Comma-separated keywords
            max_analyses_per_hour: Hourly analysis ceiling
            learned_preferences: Learned profile block (may be empty)
            current_time: ISO timestamp
            conversation_messages: Formatted unread messages
        """
        return self.load_prompt(USER_PROMPT_NAME).format(**kwargs)


_loader = PromptLoader()


def get_prompt_loader() -> PromptLoader:
    return _loader
