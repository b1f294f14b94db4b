"""System prompt catalog exports."""

from .loader import PromptLibrary, PromptLoadError, load_prompts
from .models import DEFAULT_PROMPT, PromptTemplate

__all__ = [
    "DEFAULT_PROMPT",
    "PromptLibrary",
    "PromptLoadError",
    "PromptTemplate",
    "load_prompts",
]
