"""System prompt assembly and library selection for component generation."""

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field

from callai import CallAIOptions, Message, call_ai
from prompts.catalog import DEFAULT_DEPENDENCIES, DocsLoader, LlmCatalogEntry, default_loader
from prompts.style_prompts import DEFAULT_STYLE_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_CODING_MODEL = "anthropic/claude-sonnet-4"
SELECTION_TIMEOUT = 4.0
SELECTION_PROXY_KEY = "sk-vibes-proxy-managed"

SELECTION_SYSTEM_PROMPT = (
    "You select which library modules from a catalog should be included AND whether to "
    "include instructional UI text and a demo-data button. First analyze if the user prompt "
    "describes specific look & feel requirements. For instructional text and demo data: "
    "include them only when asked for. Read the JSON payload and return JSON with "
    'properties: "selected" (array of catalog "name" strings), "instructionalText" '
    '(boolean), and "demoData" (boolean). Only choose modules from the catalog. Include any '
    "libraries already used in history. Respond with JSON only."
)

SELECTION_SCHEMA = {
    "name": "module_and_options_selection",
    "properties": {
        "selected": {"type": "array", "items": {"type": "string"}},
        "instructionalText": {"type": "boolean"},
        "demoData": {"type": "boolean"},
    },
}

_LOCAL_ENDPOINT = re.compile(r"localhost|127\.0\.0\.1", re.IGNORECASE)

CallAIFn = Callable[[list[Message], CallAIOptions], Awaitable[str]]


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class PromptOptions(BaseModel):
    """Per-session inputs to prompt assembly."""

    user_prompt: str = ""
    history: list[HistoryMessage] = Field(default_factory=list)
    style_prompt: str | None = None
    dependencies: list[str] | None = None
    dependencies_user_override: bool = False
    instructional_text_override: bool | None = None
    demo_data_override: bool | None = None
    app_mode: Literal["test", "production"] = "production"
    call_ai_endpoint: str = ""
    auth_token: str = ""


class LlmSelectionDecisions(BaseModel):
    selected: list[str] = Field(default_factory=list)
    instructional_text: bool = True
    demo_data: bool = True


class SystemPromptResult(BaseModel):
    system_prompt: str
    dependencies: list[str]
    instructional_text: bool
    demo_data: bool
    model: str


class ComponentMetadata(BaseModel):
    dependencies: list[str]
    ai_selected_dependencies: list[str]
    instructional_text: bool
    demo_data: bool
    model: str
    timestamp: float


class ComponentGenerationResult(BaseModel):
    system_prompt: str
    metadata: ComponentMetadata


# Response format requirements
RESPONSE_FORMAT = {
    "structure": [
        "Brief explanation",
        "Component code with proper Fireproof integration",
        "Real-time updates",
        "Data persistence",
    ],
}


def default_coding_model() -> str:
    return DEFAULT_CODING_MODEL


def normalize_model_id(model_id: Any) -> str | None:
    """Return the trimmed model id, or None if it is not a non-empty string."""
    if not isinstance(model_id, str):
        return None
    trimmed = model_id.strip()
    return trimmed or None


def is_permitted_model_id(model_id: Any) -> bool:
    return normalize_model_id(model_id) is not None


def resolve_effective_model(settings: Any = None, vibe: Any = None) -> str:
    """Pick the session model, then the global setting, then the default."""
    session_choice = normalize_model_id(getattr(vibe, "selected_model", None))
    if session_choice:
        return session_choice
    global_choice = normalize_model_id(getattr(settings, "model", None))
    if global_choice:
        return global_choice
    return default_coding_model()


@lru_cache(maxsize=32)
def _compile_import_patterns(
    entries: tuple[tuple[str, str, str], ...],
) -> list[tuple[str, re.Pattern, re.Pattern, re.Pattern]]:
    patterns = []
    for name, module, import_name in entries:
        mod = re.escape(module)
        ident = re.escape(import_name)
        named = re.compile(rf"import\s*\{{[^}}]*\b{ident}\b[^}}]*\}}\s*from\s*['\"]{mod}['\"]")
        default = re.compile(rf"import\s+{ident}\s+from\s*['\"]{mod}['\"]")
        namespace = re.compile(rf"import\s*\*\s*as\s+{ident}\s+from\s*['\"]{mod}['\"]")
        patterns.append((name, named, default, namespace))
    return patterns


def import_patterns(catalog: list[LlmCatalogEntry]):
    """Return (name, named, default, namespace) regexes for importable entries."""
    entries = tuple(
        (entry.name, entry.import_module, entry.import_name)
        for entry in catalog
        if entry.import_module and entry.import_name
    )
    return _compile_import_patterns(entries)


async def detect_modules_in_history(
    history: list[HistoryMessage], loader: DocsLoader | None = None
) -> set[str]:
    """Return catalog names whose imports already appear in the history."""
    loader = loader or default_loader
    patterns = import_patterns(await loader.get_llm_catalog())
    detected: set[str] = set()
    for message in history or []:
        content = message.content if isinstance(message, HistoryMessage) else ""
        if not content:
            continue
        for name, named, default, namespace in patterns:
            if named.search(content) or default.search(content) or namespace.search(content):
                detected.add(name)
    return detected


async def select_llms_and_options(
    model: str,
    user_prompt: str,
    history: list[HistoryMessage],
    options: PromptOptions,
    *,
    loader: DocsLoader | None = None,
    call_ai_fn: CallAIFn | None = None,
) -> LlmSelectionDecisions:
    """
    Ask the model which catalog libraries and UI options the app needs.

    In test mode against a non-local endpoint no request is made and every
    catalog entry is selected. Any failure, including the SELECTION_TIMEOUT,
    yields an empty selection with both options enabled.

    Args:
        model: Model used for the selection call.
        user_prompt: The user's request.
        history: Prior conversation messages.
        options: Session prompt options (endpoint, mode, auth token).
        loader: Catalog loader. Defaults to the packaged catalog.
        call_ai_fn: Replacement for call_ai, used in tests.

    Returns:
        The selection decisions.
    """
    loader = loader or default_loader
    catalog = await loader.get_llm_catalog()

    if options.app_mode == "test" and not _LOCAL_ENDPOINT.search(options.call_ai_endpoint):
        return LlmSelectionDecisions(selected=[entry.name for entry in catalog])

    payload = {
        "catalog": [{"name": e.name, "description": e.description} for e in catalog],
        "userPrompt": user_prompt or "",
        "history": [m.model_dump() for m in history or []],
    }
    messages = [
        Message(role="system", content=SELECTION_SYSTEM_PROMPT),
        Message(role="user", content=json.dumps(payload)),
    ]
    call_options = CallAIOptions(
        chat_url=options.call_ai_endpoint or None,
        api_key=SELECTION_PROXY_KEY,
        model=model,
        schema=SELECTION_SCHEMA,
        max_tokens=2000,
        headers={
            "HTTP-Referer": "https://vibes.diy",
            "X-Title": "Vibes DIY",
            "X-VIBES-Token": options.auth_token,
        },
    )

    call = call_ai_fn or call_ai
    try:
        raw = await asyncio.wait_for(call(messages, call_options), timeout=SELECTION_TIMEOUT)
        parsed = json.loads(raw) or {}
        if not isinstance(parsed, dict):
            parsed = {}
    except Exception as e:
        logger.warning(f"Module/options selection call failed: {e!r}")
        return LlmSelectionDecisions()

    selected = parsed.get("selected")
    instructional = parsed.get("instructionalText")
    demo = parsed.get("demoData")
    return LlmSelectionDecisions(
        selected=[v for v in selected if isinstance(v, str)] if isinstance(selected, list) else [],
        instructional_text=instructional if isinstance(instructional, bool) else True,
        demo_data=demo if isinstance(demo, bool) else True,
    )


def generate_import_statements(llms: list[LlmCatalogEntry]) -> str:
    """Render one import line per distinct module/name pair, sorted by module."""
    seen: set[str] = set()
    lines = []
    for entry in sorted(llms, key=lambda e: e.import_module.lower()):
        if not (entry.import_module and entry.import_name):
            continue
        key = f"{entry.import_module}:{entry.import_name}"
        if key in seen:
            continue
        seen.add(key)

        if entry.import_type == "namespace":
            lines.append(f'\nimport * as {entry.import_name} from "{entry.import_module}"')
        elif entry.import_type == "default":
            lines.append(f'\nimport {entry.import_name} from "{entry.import_module}"')
        else:
            lines.append(f'\nimport {{ {entry.import_name} }} from "{entry.import_module}"')
    return "".join(lines)


def _render_prompt(
    style_prompt: str,
    instructional_line: str,
    demo_data_lines: str,
    docs: str,
    user_prompt: str,
    imports: str,
) -> str:
    user_section = f"{user_prompt}\n\n" if user_prompt else ""
    return f"""
You are an AI assistant tasked with creating React components. You should create components that:
- Use modern React practices and follow the rules of hooks
- Don't use any TypeScript, just use JavaScript
- Use Tailwind CSS for mobile-first accessible styling
- Don't use words from the style prompt in your copy: {style_prompt}
- For dynamic components, like autocomplete, don't use external libraries, implement your own
- Avoid using external libraries unless they are essential for the component to function
- Always import the libraries you need at the top of the file
- Use Fireproof for data persistence
- Use `callAI` to fetch AI (set `stream: true` to enable streaming), use Structured JSON Outputs like this: `callAI(prompt, {{ schema: {{ properties: {{ todos: {{ type: 'array', items: {{ type: 'string' }} }} }} }} }})` and save final responses as individual Fireproof documents.
- For file uploads use drag and drop and store using the `doc._files` API
- Don't try to generate png or base64 data, use placeholder image APIs instead, like https://picsum.photos/400 where 400 is the square size
- Consider and potentially reuse/extend code from previous responses if relevant
- Always output the full component code, keep the explanation short and concise
- Never also output a small snippet to change, just the full component code
- Keep your component file as short as possible for fast updates
- Keep the database name stable as you edit the code
- The system can send you crash reports, fix them by simplifying the affected code
- If you get missing block errors, change the database name to a new name
- List data items on the main page of your app so users don't have to hunt for them
- If you save data, make sure it is browseable in the app, eg lists should be clickable for more details
{instructional_line}{demo_data_lines}

{docs}

## ImgGen Component

You should use this component in all cases where you need to generate or edit images. It is a React component that provides a UI for image generation and editing. Make sure to pass the database prop to the component. If you generate images, use a live query to list them (with type 'image') in the UI. The best usage is to save a document with a string field called `prompt` (which is sent to the generator) and an optional `doc._files.original` image and pass the `doc._id` to the component via the  `_id` prop. It will handle the rest.

{user_section}IMPORTANT: You are working in one JavaScript file, use tailwind classes for styling. Remember to use brackets like bg-[#242424] for custom colors.

Provide a title and brief explanation followed by the component code. The component should demonstrate proper Fireproof integration with real-time updates and proper data persistence. Follow it with a short description of the app's purpose and instructions how to use it (with occasional bold or italic for emphasis). Then suggest some additional features that could be added to the app.

Begin the component with the import statements. Use react and the following libraries:

```js
import React, {{ ... }} from "react"{imports}

// other imports only when requested
```

"""


async def make_base_system_prompt(
    model: str,
    options: PromptOptions,
    on_ai_decisions: Callable[[list[str]], None] | None = None,
    *,
    loader: DocsLoader | None = None,
    call_ai_fn: CallAIFn | None = None,
) -> SystemPromptResult:
    """
    Build the system prompt for generating a component.

    With a user dependency override, the given dependencies (filtered to the
    catalog) are used as-is. Otherwise the model's selection is merged with
    libraries detected in the history, falling back to DEFAULT_DEPENDENCIES
    when both are empty, and the final list is reported to on_ai_decisions.
    Per-session instructional text and demo data overrides win over the
    model's choices.

    Args:
        model: Model used for library selection.
        options: Session prompt options.
        on_ai_decisions: Called with the selected names on the selection path.
        loader: Catalog loader. Defaults to the packaged catalog.
        call_ai_fn: Replacement for call_ai, used in tests.

    Returns:
        SystemPromptResult with the prompt text and the decisions behind it.
    """
    loader = loader or default_loader
    user_prompt = options.user_prompt or ""
    history = options.history or []

    catalog = await loader.get_llm_catalog()
    catalog_names = {entry.name for entry in catalog}

    include_instructional = True
    include_demo_data = True

    if options.dependencies_user_override and options.dependencies is not None:
        selected_names = [name for name in options.dependencies if name in catalog_names]
    else:
        decisions = await select_llms_and_options(
            model, user_prompt, history, options, loader=loader, call_ai_fn=call_ai_fn
        )
        include_instructional = decisions.instructional_text
        include_demo_data = decisions.demo_data

        detected = await detect_modules_in_history(history, loader)
        merged = dict.fromkeys([*decisions.selected, *sorted(detected)])
        selected_names = [name for name in merged if name in catalog_names]
        if not selected_names:
            selected_names = list(DEFAULT_DEPENDENCIES)

        if on_ai_decisions:
            on_ai_decisions(selected_names)

    if options.instructional_text_override is not None:
        include_instructional = options.instructional_text_override
    if options.demo_data_override is not None:
        include_demo_data = options.demo_data_override

    chosen = [entry for entry in catalog if entry.name in selected_names]

    docs = ""
    for entry in chosen:
        text = await loader.get_texts(entry.name)
        if not text:
            logger.warning(f"Failed to load raw LLM text for: {entry.name}")
            continue
        docs += f"\n<{entry.label}-docs>\n{text}\n</{entry.label}-docs>\n"

    instructional_line = (
        "- In the UI, include a vivid description of the app's purpose and detailed "
        "instructions how to use it, in italic text.\n"
        if include_instructional
        else ""
    )
    demo_data_lines = (
        "- If your app has a function that uses callAI with a schema to save data, include a "
        "Demo Data button that calls that function with an example prompt. Don't write an "
        "extra function, use real app code so the data illustrates what it looks like to use "
        "the app.\n- Never have have an instance of callAI that is only used to generate demo "
        "data, always use the same calls that are triggered by user actions in the app.\n"
        if include_demo_data
        else ""
    )

    system_prompt = _render_prompt(
        style_prompt=options.style_prompt or DEFAULT_STYLE_PROMPT,
        instructional_line=instructional_line,
        demo_data_lines=demo_data_lines,
        docs=docs,
        user_prompt=user_prompt,
        imports=generate_import_statements(chosen),
    )

    return SystemPromptResult(
        system_prompt=system_prompt,
        dependencies=selected_names,
        instructional_text=include_instructional,
        demo_data=include_demo_data,
        model=model,
    )


async def generate_component_with_dependencies(
    user_prompt: str,
    options: PromptOptions,
    *,
    model: str | None = None,
    loader: DocsLoader | None = None,
    call_ai_fn: CallAIFn | None = None,
) -> ComponentGenerationResult:
    """
    Run library selection, then build the system prompt, returning both.

    The metadata records the dependencies used, which of them the model
    selected, the option flags and the model.
    """
    model = model or default_coding_model()
    ai_selected: list[str] = []

    def capture(selected: list[str]) -> None:
        ai_selected.extend(selected)

    options = options.model_copy(update={"user_prompt": user_prompt})
    result = await make_base_system_prompt(
        model, options, capture, loader=loader, call_ai_fn=call_ai_fn
    )

    return ComponentGenerationResult(
        system_prompt=result.system_prompt,
        metadata=ComponentMetadata(
            dependencies=result.dependencies,
            ai_selected_dependencies=ai_selected or result.dependencies,
            instructional_text=result.instructional_text,
            demo_data=result.demo_data,
            model=result.model,
            timestamp=time.time(),
        ),
    )
