"""Heuristic classification of agent output.

Agents answer in free text.  Before a step can advance, the engine has to
decide whether the agent finished, asked a question that gets a canned reply,
or stopped at a menu.  Everything here is pattern matching over the tail of
the ANSI-stripped output; the orchestrator only sees :func:`classify`.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

__all__ = [
    "DEFAULT_WINDOW",
    "StreamTextExtractor",
    "Verdict",
    "classify",
    "fix_is_first_option",
    "is_bmad_menu",
    "is_commit_question",
    "is_completion",
    "is_issue_prompt",
    "is_what_next",
    "strip_ansi",
]


DEFAULT_WINDOW = 3000
_OPTIONS_TAIL = 1500

_ANSI_ESCAPE = re.compile(
    r"""
    \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)   # OSC ... BEL / ST
    | \x1b\[[0-?]*[ -/]*[@-~]            # CSI sequences
    | \x1b[@-Z\\-_]                      # two-character escapes
    """,
    re.VERBOSE,
)

_COMMIT_QUESTION = re.compile(
    r"""
    \b(?:should|shall|can|may)\s+I\s+(?:go\s+ahead\s+and\s+|now\s+)?commit\b
    | \b(?:do\s+you\s+)?want\s+me\s+to\s+commit\b
    | \bwould\s+you\s+like\s+(?:me\s+)?to\s+commit\b
    | \bready\s+to\s+commit\s*\?
    """,
    re.IGNORECASE | re.VERBOSE,
)

_MENU_ITEM = re.compile(r"^\s*(?:[-*]\s*)?(?:\*\*)?\[[A-Z]{2}\](?:\*\*)?\s+\S", re.MULTILINE)

_NUMBERED_OPTION = re.compile(
    r"^\s*(?:[-*]\s*)?(?:\*\*)?(?:\[\d{1,2}\]|\(\d{1,2}\)|\d{1,2}[.):])(?:\*\*)?\s+(?P<label>\S.*)$",
    re.MULTILINE,
)
_LETTERED_OPTION = re.compile(
    r"^\s*(?:[-*]\s*)?(?:\*\*)?(?:\[[A-Da-d]\]|\([A-Da-d]\)|[A-Da-d][.)])(?:\*\*)?\s+(?P<label>\S.*)$",
    re.MULTILINE,
)
_INLINE_OPTIONS = re.compile(r"\[\d\][^\n]*\[\d\]")

_PROBLEM_VOCABULARY = re.compile(
    r"""
    \b(?:fix(?:es|ed|ing)?|errors?|fail(?:s|ed|ing|ures?)?|conflicts?|
    issues?|problems?|bugs?|broken|blockers?|blocked|
    build\s+(?:error|failure)|tests?\s+fail(?:ed|ing|ures?)?|
    cannot|can't|unable\s+to)\b
    """,
    re.IGNORECASE | re.VERBOSE,
)
_PROCEED_QUESTION = re.compile(
    r"""
    \bhow\s+(?:should\s+I|would\s+you\s+like\s+(?:me\s+)?to|do\s+you\s+want\s+(?:me\s+)?to)\s+proceed\b
    | \bwhat\s+should\s+I\s+do\b
    | \bwhich\s+option\b
    | \b(?:please\s+)?(?:choose|select|pick)\s+(?:an?\s+|one\s+)?(?:option|number)\b
    """,
    re.IGNORECASE | re.VERBOSE,
)

_WHAT_NEXT = re.compile(
    r"""
    \bwhat'?s\s+next\b
    | \bwhat\s+would\s+you\s+like\s+(?:me\s+)?to\s+do\s+next\b
    | \bwould\s+you\s+like\s+me\s+to\b
    | \b(?:shall|should)\s+I\s+(?:continue|proceed|move\s+on)\b
    | \bdo\s+you\s+want\s+me\s+to\b
    | \blet\s+me\s+know\s+(?:if|what|how)\b
    """,
    re.IGNORECASE | re.VERBOSE,
)

_COMPLETION_MARKER = re.compile(
    r"""
    \b(?:done|finished|complete(?:d)?|
    ready\s+for\s+(?:commit|review|merge)|
    no\s+(?:further\s+)?issues(?:\s+found)?|
    all\s+tests\s+pass(?:ed|ing)?|
    successfully)\b[\s!.*`)\]]*$
    """,
    re.IGNORECASE | re.VERBOSE,
)
_DECORATION = re.compile(r"^[\s#>*_`\-]+|[\s*_`]+$")


class Verdict(str, Enum):
    COMMIT_QUESTION = "commit-question"
    BMAD_MENU = "bmad-menu"
    ISSUE_PROMPT = "issue-prompt"
    WHAT_NEXT = "what-next"
    COMPLETION = "completion"
    UNKNOWN = "unknown"


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and carriage returns."""

    return _ANSI_ESCAPE.sub("", text or "").replace("\r", "")


def _window(text: str, size: int) -> str:
    return text[-size:] if size and len(text) > size else text


def _option_lines(text: str) -> List[str]:
    tail = _window(text, _OPTIONS_TAIL)
    numbered = [match.group("label") for match in _NUMBERED_OPTION.finditer(tail)]
    if len(numbered) >= 2:
        return numbered
    lettered = [match.group("label") for match in _LETTERED_OPTION.finditer(tail)]
    if len(lettered) >= 2:
        return lettered
    return []


def is_commit_question(text: str) -> bool:
    return bool(_COMMIT_QUESTION.search(text))


def is_bmad_menu(text: str) -> bool:
    """Two or more ``[XX] Label`` entries, the BMAD interactive menu format."""

    return len(_MENU_ITEM.findall(text)) >= 2


def _has_option_list(text: str) -> bool:
    return bool(_option_lines(text)) or bool(_INLINE_OPTIONS.search(_window(text, _OPTIONS_TAIL)))


def _awaits_choice(text: str) -> bool:
    # A summary that merely lists fixes ends on a statement, not on the options
    # or a question.
    line = _last_line(text)
    if not line:
        return False
    if line.endswith(("?", ":")):
        return True
    if _NUMBERED_OPTION.match(line) or _LETTERED_OPTION.match(line) or _INLINE_OPTIONS.search(line):
        return True
    return bool(_PROCEED_QUESTION.search(_window(text, _OPTIONS_TAIL)))


def is_issue_prompt(text: str) -> bool:
    """Numbered/lettered options together with a problem or a proceed question."""

    if is_bmad_menu(text):
        return False
    if not _has_option_list(text) or not _awaits_choice(text):
        return False
    return bool(_PROBLEM_VOCABULARY.search(text) or _PROCEED_QUESTION.search(text))


def is_what_next(text: str) -> bool:
    return bool(_WHAT_NEXT.search(_window(text, _OPTIONS_TAIL)))


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        cleaned = _DECORATION.sub("", line).strip()
        if cleaned:
            return cleaned
    return ""


def is_completion(text: str) -> bool:
    """The final line ends on a completion marker and is not a question."""

    line = _last_line(text)
    if not line or line.endswith(("?", ":")):
        return False
    sentences = re.split(r"(?<=[.!?])\s+", line)
    return bool(_COMPLETION_MARKER.search(sentences[-1]))


def fix_is_first_option(text: str) -> bool:
    options = _option_lines(text)
    if options:
        return bool(re.search(r"\bfix", options[0], re.IGNORECASE))
    inline = re.search(r"\[1\]\s*([^\[\n]*)", _window(text, _OPTIONS_TAIL))
    return bool(inline and re.search(r"\bfix", inline.group(1), re.IGNORECASE))


def classify(text: str, window: int = DEFAULT_WINDOW) -> Verdict:
    """Classify the tail of the agent output.

    Checks run in priority order: commit question, BMAD menu, issue prompt,
    what-next, completion.  Anything else is :attr:`Verdict.UNKNOWN`.
    """

    tail = _window(strip_ansi(text), window)
    if not tail.strip():
        return Verdict.UNKNOWN
    if is_commit_question(tail):
        return Verdict.COMMIT_QUESTION
    if is_bmad_menu(tail):
        return Verdict.BMAD_MENU
    if is_issue_prompt(tail):
        return Verdict.ISSUE_PROMPT
    if is_what_next(tail):
        return Verdict.WHAT_NEXT
    if is_completion(tail):
        return Verdict.COMPLETION
    return Verdict.UNKNOWN


class StreamTextExtractor:
    """Pull the textual content out of the agent's stream-json output.

    Output arrives in arbitrary chunks.  Complete lines are parsed as JSON
    frames when possible; text deltas and assistant text blocks are kept,
    structural frames (system, tool use, tool results, usage) are dropped,
    and lines that are not JSON are kept as raw text.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, str] = {}
        self._parts: List[str] = []
        self._saw_delta = False
        self._saw_text = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def reset(self) -> None:
        self._pending.clear()
        self._parts.clear()
        self._saw_delta = False
        self._saw_text = False

    def feed(self, chunk: str, stream: str = "stdout") -> str:
        buffered = self._pending.get(stream, "") + (chunk or "")
        lines = buffered.split("\n")
        self._pending[stream] = lines.pop()
        return self._consume(lines)

    def flush(self) -> str:
        lines = [pending for pending in self._pending.values() if pending]
        self._pending.clear()
        return self._consume(lines)

    def _consume(self, lines: List[str]) -> str:
        extracted = []
        for line in lines:
            piece = self._extract_line(line)
            if piece:
                extracted.append(piece)
        text = "".join(extracted)
        if text:
            self._parts.append(text)
        return text

    def _extract_line(self, line: str) -> str:
        stripped = line.strip()
        if not stripped:
            return ""
        if stripped.startswith("{"):
            try:
                frame = json.loads(stripped)
            except ValueError:
                frame = None
            if isinstance(frame, Mapping):
                return self._extract_frame(frame)
        self._saw_text = True
        return line.rstrip("\r") + "\n"

    def _extract_frame(self, frame: Mapping[str, Any]) -> str:
        frame_type = frame.get("type")
        if frame_type == "stream_event" and isinstance(frame.get("event"), Mapping):
            return self._extract_frame(frame["event"])

        if frame_type == "content_block_delta":
            delta = frame.get("delta")
            text = delta.get("text") if isinstance(delta, Mapping) else None
            if isinstance(text, str) and text:
                self._saw_delta = True
                self._saw_text = True
                return text
            return ""

        if frame_type == "assistant" and not self._saw_delta:
            message = frame.get("message")
            content = message.get("content") if isinstance(message, Mapping) else None
            blocks: List[str] = []
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, Mapping) and block.get("type") == "text":
                        value = block.get("text")
                        if isinstance(value, str) and value:
                            blocks.append(value)
            if blocks:
                self._saw_text = True
                return "\n".join(blocks) + "\n"
            return ""

        if frame_type == "result" and not self._saw_text:
            result: Optional[Any] = frame.get("result")
            if isinstance(result, str) and result:
                self._saw_text = True
                return result + "\n"
        return ""
