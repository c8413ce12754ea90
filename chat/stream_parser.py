"""Incremental parser for streamed AI responses."""

import logging
import re
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EVENTS = ("text", "code", "code_update", "dependencies", "match")

_DEPENDENCY_PAIR = re.compile(r'"([^"]+)"\s*:\s*"([^"]+)"')


class StreamParser:
    """
    Parse a response chunk by chunk, emitting events as structure appears.

    Events:
        text(chunk, display_text): prose outside code fences.
        code(code, language): a completed fenced code block.
        code_update(code): the code block so far, after every code character.
        dependencies(deps): the leading dependency declaration, once.
        match(text, match): optional regex matches over the buffered stream.

    The parser starts in dependency mode when expect_dependencies is set and
    leaves it at the first ``}}``.
    """

    def __init__(self, pattern: str | re.Pattern | None = None, expect_dependencies: bool = True):
        """
        Initialize the parser.

        Args:
            pattern: Optional regex matched against the buffered stream.
            expect_dependencies: Whether the stream opens with a dependency object.
        """
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.expect_dependencies = expect_dependencies
        self._handlers: dict[str, list[Callable[..., Any]]] = {event: [] for event in EVENTS}
        self.reset()

    def reset(self) -> None:
        """Clear all parse state."""
        self.buffer = ""
        self.in_code_block = False
        self.code_block_content = ""
        self.language_id = ""
        self.dependencies: dict[str, str] = {}
        self.display_text = ""
        self._backtick_count = 0
        self._reading_language = False
        self._language_buffer = ""
        self._in_dependency_mode = self.expect_dependencies
        self._dependency_content = ""

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(callback)

    def remove_all_listeners(self) -> None:
        for event in self._handlers:
            self._handlers[event] = []

    def _emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            handler(*args)

    def write(self, chunk: str) -> None:
        """Feed the next chunk of the stream."""
        logger.debug(f"- {chunk!r}")
        self._process_chat_chunk(chunk)

        if self.pattern is not None:
            self.buffer += chunk
            self._process_pattern_buffer()

    def end(self) -> None:
        """Flush pending state at the end of the stream."""
        if self._in_dependency_mode and self.dependencies:
            self._emit("dependencies", self.dependencies)
            self._in_dependency_mode = False

        if self.in_code_block and self.code_block_content:
            self._emit("code", self.code_block_content, self.language_id)
            self.in_code_block = False

        if self.buffer:
            self._emit("text", self.buffer, self.display_text + self.buffer)
            self.buffer = ""

    def _process_pattern_buffer(self) -> None:
        while True:
            match = self.pattern.search(self.buffer)
            if match is None:
                break
            before = self.buffer[: match.start()]
            if before:
                self._emit("text", before, self.display_text + before)
                self.display_text += before
            self._emit("match", match.group(0), match)
            self.buffer = self.buffer[match.end() :]
            if match.end() == match.start():
                break

    def _process_chat_chunk(self, chunk: str) -> None:
        if not self._in_dependency_mode:
            self._process_display_text(chunk)
            return

        self._dependency_content += chunk
        if "}}" not in self._dependency_content:
            return

        end = self._dependency_content.index("}}") + 2
        declaration = self._dependency_content[:end]
        remainder = self._dependency_content[end:]

        for key, value in _DEPENDENCY_PAIR.findall(declaration):
            key, value = key.strip(), value.strip()
            if key and value:
                self.dependencies[key] = value

        logger.debug(f"Dependencies detected: {self.dependencies}")
        self._emit("dependencies", self.dependencies)

        self._in_dependency_mode = False
        self._dependency_content = ""

        if remainder.strip():
            self._process_display_text(remainder)

    def _process_display_text(self, text: str) -> None:
        current = ""
        i = 0
        while i < len(text):
            char = text[i]

            if self._reading_language:
                # Fence language runs to the end of the line, which may come in a later chunk
                if char == "\n":
                    self.language_id = self._language_buffer.strip()
                    self._reading_language = False
                else:
                    self._language_buffer += char
            elif char == "`":
                self._backtick_count += 1
                if self._backtick_count == 3:
                    self._backtick_count = 0
                    if not self.in_code_block:
                        self.in_code_block = True
                        self.language_id = ""
                        self._reading_language = True
                        self._language_buffer = ""
                    else:
                        logger.debug(f"Ending code block ({len(self.code_block_content)} chars)")
                        self.in_code_block = False
                        self._emit("code", self.code_block_content, self.language_id)
            elif self._backtick_count > 0:
                pending = "`" * self._backtick_count + char
                if self.in_code_block:
                    self.code_block_content += pending
                else:
                    current += pending
                self._backtick_count = 0
            elif self.in_code_block:
                self.code_block_content += char
                self._emit("code_update", self.code_block_content)
            else:
                current += char
            i += 1

        if current:
            self.display_text += current
            self._emit("text", current, self.display_text)

