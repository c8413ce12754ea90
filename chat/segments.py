"""Split AI responses into markdown and code segments."""

import re

from chat.models import Segment

# Leading dependency declarations, tried in order
_DEPENDENCY_FORMATS = [
    # {"dependencies": {}}
    re.compile(r'^(\{"dependencies":\s*\{\}\})'),
    # {"react": "^18.2.0", "react-dom": "^18.2.0"}}
    re.compile(r'^(\{(?:"[^"]+"\s*:\s*"[^"]+"(?:,\s*)?)+\}\})'),
    # {"dependencies": {"react-modal": "^3.16.1", ...}}
    re.compile(r'^(\{"dependencies":\s*\{(?:"[^"]+"\s*:\s*"[^"]+"(?:,\s*)?)+\}\})'),
    # {"dependencies": { ... }} spread over several lines
    re.compile(r'^(\{"dependencies":\s*\{[\s\S]*?^\}\})', re.MULTILINE),
]

_FENCE_OPEN = r"(?:^|\n)[ \t]*```(?:js|jsx|javascript|)[ \t]*\n"

_COMPLETE_BLOCK = re.compile(
    r"([\s\S]*?)" + _FENCE_OPEN + r"([\s\S]*?)(?:^|\n)[ \t]*```[ \t]*(?:\n|\Z)([\s\S]*)"
)
_INCOMPLETE_BLOCK = re.compile(r"([\s\S]*?)" + _FENCE_OPEN + r"([\s\S]*?)\Z")

_DEPENDENCY_PAIR = re.compile(r'"([^"]+)"\s*:\s*"([^"]+)"')


def parse_content(text: str) -> tuple[list[Segment], str | None]:
    """
    Parse a response into segments and an optional dependency declaration.

    A leading dependency JSON object is removed first. The first fenced
    JavaScript block splits the rest into markdown before, code and markdown
    after. An opening fence with no closing fence, as seen mid-stream, yields
    the code so far. Without any fence the whole text is one markdown segment.
    Empty segments are dropped.

    Args:
        text: The raw response text.

    Returns:
        Tuple of (segments, dependencies_string).
    """
    segments: list[Segment] = []
    dependencies_string = None

    for pattern in _DEPENDENCY_FORMATS:
        match = pattern.search(text)
        if match:
            dependencies_string = match.group(1)
            text = text[text.index(dependencies_string) + len(dependencies_string) :].strip()
            break

    complete = _COMPLETE_BLOCK.search(text)
    if complete:
        before, code, after = (part.strip() for part in complete.groups())
        if before:
            segments.append(Segment(type="markdown", content=before))
        if code:
            segments.append(Segment(type="code", content=code))
        if after:
            segments.append(Segment(type="markdown", content=after))
        return segments, dependencies_string

    incomplete = _INCOMPLETE_BLOCK.search(text)
    if incomplete:
        before, code = (part.strip() for part in incomplete.groups())
        if before:
            segments.append(Segment(type="markdown", content=before))
        if code:
            segments.append(Segment(type="code", content=code))
        return segments, dependencies_string

    segments.append(Segment(type="markdown", content=text))
    return segments, dependencies_string


def parse_dependencies(dependencies_string: str | None) -> dict[str, str]:
    """Extract package-to-version pairs from a dependency declaration."""
    if not dependencies_string:
        return {}
    dependencies = {}
    for key, value in _DEPENDENCY_PAIR.findall(dependencies_string):
        key, value = key.strip(), value.strip()
        if key and value:
            dependencies[key] = value
    return dependencies


def extract_code(text: str) -> str:
    """Return the first code segment of a response, or an empty string."""
    segments, _ = parse_content(text)
    return next((s.content for s in segments if s.type == "code"), "")
