"""Prompt assembly for Vibes DIY component generation."""

from prompts.catalog import DEFAULT_DEPENDENCIES, DocsLoader, LlmCatalogEntry, default_loader
from prompts.style_prompts import DEFAULT_STYLE_PROMPT, STYLE_PROMPTS, StylePrompt
from prompts.system_prompt import (
    RESPONSE_FORMAT,
    HistoryMessage,
    LlmSelectionDecisions,
    PromptOptions,
    SystemPromptResult,
    default_coding_model,
    detect_modules_in_history,
    generate_component_with_dependencies,
    generate_import_statements,
    is_permitted_model_id,
    make_base_system_prompt,
    normalize_model_id,
    resolve_effective_model,
    select_llms_and_options,
)

__all__ = [
    "DEFAULT_DEPENDENCIES",
    "DocsLoader",
    "LlmCatalogEntry",
    "default_loader",
    "DEFAULT_STYLE_PROMPT",
    "STYLE_PROMPTS",
    "StylePrompt",
    "RESPONSE_FORMAT",
    "HistoryMessage",
    "LlmSelectionDecisions",
    "PromptOptions",
    "SystemPromptResult",
    "default_coding_model",
    "detect_modules_in_history",
    "generate_component_with_dependencies",
    "generate_import_statements",
    "is_permitted_model_id",
    "make_base_system_prompt",
    "normalize_model_id",
    "resolve_effective_model",
    "select_llms_and_options",
]
