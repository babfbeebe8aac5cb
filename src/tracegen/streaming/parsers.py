"""Parsers for tag-delimited and JSON-field model output, complete or partial."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

THINK_OPEN = re.compile(r"<think>", re.IGNORECASE)
THINK_CLOSE = re.compile(r"</think>", re.IGNORECASE)
THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)
THINK_PARTIAL = re.compile(r"<think>([\s\S]*)$", re.IGNORECASE)
EMPTY_THINK = re.compile(r"<think>\s*</think>\s*", re.IGNORECASE)

_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)

_FIELD_PATTERNS: dict[str, list[tuple[re.Pattern[str], str]]] = {
    name: [
        (re.compile(rf'"{name}"\s*:\s*"'), '"'),
        (re.compile(rf"'{name}'\s*:\s*'"), "'"),
        (re.compile(rf'\b{name}\s*:\s*"'), '"'),
    ]
    for name in ("query", "reasoning", "answer")
}

_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "'": "'", "\\": "\\", "/": "/"}


@dataclass(slots=True)
class ThinkTagParse:
    reasoning: str
    answer: str
    has_think_tags: bool


@dataclass(slots=True)
class ExtractedFields:
    """Best-effort view of ``reasoning``/``answer`` inside a possibly partial JSON string."""

    reasoning: str | None = None
    answer: str | None = None
    has_reasoning_start: bool = False
    has_reasoning_end: bool = False
    has_answer_start: bool = False
    has_answer_end: bool = False


def parse_think_tags(text: str) -> ThinkTagParse:
    """
    Split a complete ``<think>...</think>`` response into reasoning and answer.

    Reasoning is the first think block's content. The answer is the text with
    that block removed. Both are stripped. Without tags the whole text is the
    answer.
    """
    match = THINK_BLOCK.search(text)
    if not match:
        return ThinkTagParse(reasoning="", answer=text.strip(), has_think_tags=False)
    return ThinkTagParse(
        reasoning=match.group(1).strip(),
        answer=THINK_BLOCK.sub("", text, count=1).strip(),
        has_think_tags=True,
    )


def partial_reasoning(text: str) -> str | None:
    """Return text after an unclosed ``<think>`` marker, or None if there is none."""
    match = THINK_PARTIAL.search(text)
    return match.group(1) if match else None


def strip_empty_think(text: str) -> str:
    return EMPTY_THINK.sub("", text).strip()


def strip_code_fence(text: str) -> str:
    content = text.strip()
    if content.startswith("```json"):
        content = re.sub(r"^```json\s*", "", content)
        content = re.sub(r"```$", "", content)
    elif content.startswith("```"):
        content = re.sub(r"^```\s*", "", content)
        content = re.sub(r"```$", "", content)
    return content


def _find_string_end(content: str, start: int, quote: str) -> int:
    """
    Index of the closing *quote* of a string value starting at *start*, or -1.

    A quote only counts as closing when the next non-space character is
    ``,`` ``}`` or ``]``. A quote at the very end of the buffer is not yet
    confirmed.
    """
    escaped = False
    i = start
    while i < len(content):
        char = content[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == quote:
            after = content[i + 1 :].lstrip()
            if not after:
                return -1
            if after[0] in ",}]":
                return i
        i += 1
    return -1


def unescape_json_string(value: str) -> str:
    """Undo the common JSON escapes. A trailing lone backslash is dropped."""
    out: list[str] = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append(_ESCAPES.get(nxt, "\\" + nxt))
            i += 2
            continue
        if char != "\\":
            out.append(char)
        i += 1
    return "".join(out)


def _extract_field(content: str, name: str) -> tuple[str | None, bool, bool]:
    for pattern, quote in _FIELD_PATTERNS[name]:
        match = pattern.search(content)
        if not match:
            continue
        start = match.end()
        end = _find_string_end(content, start, quote)
        if end != -1:
            return unescape_json_string(content[start:end]), True, True
        return unescape_json_string(content[start:]), True, False
    return None, False, False


def extract_json_fields(raw: str) -> ExtractedFields:
    """Extract ``reasoning`` and ``answer`` from complete or still-streaming JSON."""
    content = strip_code_fence(raw)
    reasoning, r_start, r_end = _extract_field(content, "reasoning")
    answer, a_start, a_end = _extract_field(content, "answer")
    return ExtractedFields(
        reasoning=reasoning,
        answer=answer,
        has_reasoning_start=r_start,
        has_reasoning_end=r_end,
        has_answer_start=a_start,
        has_answer_end=a_end,
    )


def has_json_structure(text: str) -> bool:
    trimmed = text.strip()
    return trimmed.startswith(("{", "```json", "```{"))


def parse_json_output(text: str) -> dict[str, str]:
    """
    Parse a final JSON-mode response into ``query``/``reasoning``/``answer``.

    Tries strict JSON first (inside a markdown fence if present), then falls
    back to the streaming field extractor. Non-string values are re-serialised.

    Raises:
        ValueError: If neither strategy finds any field.
    """
    candidate = text.strip()
    fenced = _FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    else:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start != -1 and end > start:
            candidate = candidate[start : end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        out: dict[str, str] = {}
        for key in ("query", "reasoning", "answer"):
            value = data.get(key)
            if value is None:
                continue
            out[key] = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        if "reasoning" not in out and isinstance(data.get("reasoning_content"), str):
            out["reasoning"] = data["reasoning_content"]
        if out:
            return out

    fields = extract_json_fields(text)
    out = {}
    if fields.reasoning is not None:
        out["reasoning"] = fields.reasoning
    if fields.answer is not None:
        out["answer"] = fields.answer
    query, _, _ = _extract_field(strip_code_fence(text), "query")
    if query is not None:
        out["query"] = query
    if not out:
        raise ValueError("response contains no query, reasoning or answer field")
    return out


def parse_native_output(text: str, reasoning_content: str | None = None) -> dict[str, str]:
    """Parse a final native-mode response. A provider reasoning channel wins over tags."""
    parsed = parse_think_tags(text)
    reasoning = parsed.reasoning
    if reasoning_content and reasoning_content.strip():
        reasoning = reasoning_content.strip()
    return {"reasoning": reasoning, "answer": parsed.answer}
