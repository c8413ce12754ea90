"""Short title generation for chat sessions."""

import logging

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from chat.models import Segment

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
TITLE_CODE_LINES = 15

TITLE_SYSTEM_PROMPT = (
    "You are a helpful assistant that generates short, descriptive titles. Create a concise "
    "title (3-5 words) that captures the essence of the content. Return only the title, no "
    "other text or markup. Don't say \"Fireproof\" or \"app\"."
)


def build_title_content(segments: list[Segment]) -> str:
    """Combine the first markdown segment with the head of the first code segment."""
    first_markdown = next((s for s in segments if s.type == "markdown"), None)
    first_code = next((s for s in segments if s.type == "code"), None)

    content = ""
    if first_markdown:
        content += first_markdown.content + "\n\n"
    if first_code:
        head = "\n".join(first_code.content.split("\n")[:TITLE_CODE_LINES])
        content += f"```\n{head}\n```"
    return content


def create_title_llm(model: str, api_key: str) -> BaseChatModel:
    """Create an OpenRouter chat model for title generation."""
    return ChatOpenAI(
        model=model,
        openai_api_key=api_key,
        openai_api_base=OPENROUTER_API_BASE,
        temperature=0.3,
        max_tokens=50,
        default_headers={"HTTP-Referer": "https://vibes.diy", "X-Title": "Vibes DIY"},
    )


async def generate_title(
    segments: list[Segment],
    model: str,
    api_key: str | None = None,
    *,
    llm: BaseChatModel | None = None,
) -> str:
    """
    Generate a 3-5 word title for a generated app.

    Args:
        segments: Parsed segments of the AI response.
        model: Model used for the title.
        api_key: OpenRouter key, required unless llm is given.
        llm: Chat model to use instead of creating one.

    Returns:
        The title, or DEFAULT_TITLE if generation fails or returns nothing.
    """
    content = build_title_content(segments)
    messages = [
        SystemMessage(content=TITLE_SYSTEM_PROMPT),
        HumanMessage(
            content=(
                "Generate a short, descriptive title (3-5 words) for this app, use the React "
                f"JSX <h1> tag's value if you can find it:\n\n{content}"
            )
        ),
    ]

    try:
        if llm is None:
            if not api_key:
                logger.warning("No API key for title generation")
                return DEFAULT_TITLE
            llm = create_title_llm(model, api_key)
        response = await llm.ainvoke(messages)
    except Exception as e:
        logger.warning(f"Failed to generate title: {e}")
        return DEFAULT_TITLE

    title = response.content.strip() if isinstance(response.content, str) else ""
    return title or DEFAULT_TITLE
