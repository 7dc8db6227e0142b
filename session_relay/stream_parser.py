"""Line protocol parsing for remote CLI output.

The remote CLI speaks newline-delimited JSON (``--output-format stream-json``)
once it is up, but wrapper scripts and the shell print plain text before
that. Each line is classified into a ParsedChunk; tool invocations, tool
results and control-plane events produce nothing.
"""

import codecs
import json
import logging
import re
from typing import Callable, Optional, Union

from .models import (
    AskUserChunk,
    HookResponseChunk,
    ParsedChunk,
    PassthroughChunk,
    ResultChunk,
    TextChunk,
)
from .sanitizer import filter_tui_noise, split_incomplete_escape, strip_ansi

logger = logging.getLogger(__name__)

ASK_USER_TOOL = "AskUserQuestion"
DEFAULT_QUESTION = "Choose an option:"
DEFAULT_OPTIONS = ["Yes", "No"]

# "1. Yes 2. No" or "1) Option A 2) Option B"
NUMBERED_OPTION_RE = re.compile(r'\d+[.)]\s*([^\d\n]+)')
# "(yes/no)" or "(a/b/c)"
PAREN_SLASH_RE = re.compile(r'\(([^)]+/[^)]+)\)')


def parse_ask_user_options(question: str) -> list[str]:
    """Derive answer options from the wording of a question."""
    numbered = [m.strip() for m in NUMBERED_OPTION_RE.findall(question)]
    numbered = [m for m in numbered if m]
    if len(numbered) >= 2:
        return numbered

    paren = PAREN_SLASH_RE.search(question)
    if paren:
        options = [part.strip() for part in paren.group(1).split("/")]
        options = [o for o in options if o]
        if options:
            return options

    return list(DEFAULT_OPTIONS)


def wrap_stream_json_input(text: str) -> str:
    """Encode operator input as a stream-json user message line."""
    return json.dumps({"type": "user", "message": {"role": "user", "content": text}}) + "\n"


def _option_label(option) -> Optional[str]:
    if isinstance(option, str):
        return option.strip() or None
    if isinstance(option, dict) and isinstance(option.get("label"), str):
        return option["label"].strip() or None
    return None


def _ask_user_chunk(block: dict) -> AskUserChunk:
    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
    tool_ref = block.get("id")

    questions = tool_input.get("questions")
    if isinstance(questions, list) and questions and isinstance(questions[0], dict):
        first = questions[0]
        question = first.get("question") or DEFAULT_QUESTION
        labels = [label for label in map(_option_label, first.get("options") or []) if label]
    else:
        question = tool_input.get("question") or DEFAULT_QUESTION
        labels = []

    if not labels:
        labels = parse_ask_user_options(question)
    return AskUserChunk(tool_ref=tool_ref, question=question, options=tuple(labels))


def _parse_assistant(event: dict) -> list[ParsedChunk]:
    message = event.get("message") if isinstance(event.get("message"), dict) else {}
    content = message.get("content")
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []

    texts = []
    questions = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text.strip():
                texts.append(text.strip())
        elif block_type == "tool_use" and block.get("name") == ASK_USER_TOOL:
            questions.append(_ask_user_chunk(block))
        # Other tool_use blocks are operational noise

    chunks: list[ParsedChunk] = []
    if texts:
        chunks.append(TextChunk("\n".join(texts)))
    chunks.extend(questions)
    return chunks


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_result(event: dict) -> list[ParsedChunk]:
    cost = event.get("total_cost_usd")
    duration_ms = event.get("duration_ms")
    return [ResultChunk(
        subtype=event.get("subtype") or "done",
        session_ref=event.get("session_id"),
        cost_label=f"${cost:.4f}" if _is_number(cost) else None,
        duration_label=f"{int(duration_ms / 1000 + 0.5)}s" if _is_number(duration_ms) else None,
    )]


def _parse_hook_response(event: dict) -> list[ParsedChunk]:
    payload = event.get("stdout") or event.get("output") or ""
    if not isinstance(payload, str) or not payload.strip():
        return []
    return [HookResponseChunk(payload.strip())]


def _no_chunk(event: dict) -> list[ParsedChunk]:
    return []


# Known event types. Anything else falls through to no chunk.
EVENT_PARSERS: dict[str, Callable[[dict], list[ParsedChunk]]] = {
    "assistant": _parse_assistant,
    "user": _no_chunk,               # tool results
    "result": _parse_result,
    "hook_response": _parse_hook_response,
    "system": _no_chunk,
    "init": _no_chunk,
    "hook_started": _no_chunk,
    "rate_limit_event": _no_chunk,
}


def parse_stream_json_line(line: str) -> list[ParsedChunk]:
    """
    Classify one line of remote output.

    Returns zero or more chunks. Never raises on malformed input: broken
    JSON that starts with "{" is dropped, other non-JSON text passes through.
    """
    trimmed = line.strip()
    if not trimmed:
        return []

    try:
        event = json.loads(trimmed)
    except ValueError:
        if trimmed.startswith("{"):
            logger.debug(f"Dropping unparsable structured line ({len(trimmed)} chars)")
            return []
        return [PassthroughChunk(trimmed)]

    if not isinstance(event, dict):
        return []

    parser = EVENT_PARSERS.get(event.get("type"), _no_chunk)
    return parser(event)


class StreamDecoder:
    """
    Reassembles lines from arbitrarily split output and parses each one.

    One instance per open stream. Bytes are decoded incrementally, so a
    fragment boundary inside a multi-byte UTF-8 character is safe.
    """

    def __init__(
        self,
        sink: Callable[[ParsedChunk], None],
        parser: Callable[[str], list[ParsedChunk]] = parse_stream_json_line,
    ):
        self._sink = sink
        self._parser = parser
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Partial line waiting for its newline."""
        return self._buffer

    def feed(self, fragment: Union[str, bytes]) -> int:
        """Append a fragment and emit chunks for every completed line. Returns chunks emitted."""
        if isinstance(fragment, bytes):
            fragment = self._decoder.decode(fragment)
        self._buffer += fragment
        if "\n" not in self._buffer:
            return 0

        *lines, self._buffer = self._buffer.split("\n")
        return sum(self._emit(line) for line in lines)

    def flush(self) -> int:
        """Parse whatever is left as a final line (stream closed)."""
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        return self._emit(line)

    def _emit(self, line: str) -> int:
        chunks = self._parser(line)
        for chunk in chunks:
            self._sink(chunk)
        return len(chunks)


class OutputChannel:
    """
    Full cleanup pipeline for one output stream of one session.

    escape stripping -> line reassembly + parsing -> TUI-noise filtering of
    passthrough lines. Structured chunks are never noise-filtered.
    """

    def __init__(self, name: str = "stdout"):
        self.name = name
        self._carry = ""
        self._pending: list[ParsedChunk] = []
        self._decoder = StreamDecoder(self._pending.append)
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, fragment: Union[str, bytes]) -> list[ParsedChunk]:
        """Process one raw fragment and return the meaningful chunks it completed."""
        if isinstance(fragment, bytes):
            fragment = self._bytes.decode(fragment)
        text, self._carry = split_incomplete_escape(self._carry + fragment)
        self._decoder.feed(strip_ansi(text))
        return self._drain()

    def flush(self) -> list[ParsedChunk]:
        """Process any buffered partial line (stream closed)."""
        tail = self._carry + self._bytes.decode(b"", final=True)
        self._carry = ""
        if tail:
            self._decoder.feed(strip_ansi(tail))
        self._decoder.flush()
        return self._drain()

    def _drain(self) -> list[ParsedChunk]:
        chunks = list(self._pending)
        self._pending.clear()
        result = []
        for chunk in chunks:
            if isinstance(chunk, PassthroughChunk):
                cleaned = filter_tui_noise(chunk.content)
                if not cleaned:
                    continue
                chunk = PassthroughChunk(cleaned)
            result.append(chunk)
        return result
