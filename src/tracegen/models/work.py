"""Work item, row payload and generation result models."""

from __future__ import annotations

import json
import re
import time
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from tracegen.models.message import ChatMessage, ChatRole, TokenUsage

_CHAT_COLUMNS = ("messages", "conversation", "conversations")
_QUERY_COLUMNS = ("query", "question", "prompt", "instruction", "problem", "input")
_ANSWER_COLUMNS = ("answer", "response", "output", "completion", "solution")
_REASONING_COLUMNS = ("reasoning_content", "reasoning", "thinking", "rationale")
_TEXT_COLUMNS = (*_QUERY_COLUMNS, "text", "content")
_SHAREGPT_ROLES = {"human": "user", "gpt": "assistant", "model": "assistant"}
_THINK_BLOCK = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)


# ── Row payloads ───────────────────────────────────────────────────────────────


class RecordRow(BaseModel):
    """A flat dataset record (column name → value)."""

    kind: Literal["record"] = "record"
    fields: dict[str, Any] = Field(default_factory=dict)

    def first_text(self, columns: tuple[str, ...] | list[str]) -> str | None:
        for column in columns:
            value = self.fields.get(column)
            if value is None:
                continue
            if isinstance(value, str):
                if value.strip():
                    return value
            else:
                return json.dumps(value, ensure_ascii=False)
        return None

    def originals(self) -> tuple[str | None, str | None, str | None]:
        """
        Return ``(question, answer, reasoning)`` already present on the record.

        An answer carrying a ``<think>`` block is split so the block becomes the
        original reasoning when no explicit reasoning column exists.
        """
        question = self.first_text(_QUERY_COLUMNS)
        answer = self.first_text(_ANSWER_COLUMNS)
        reasoning = self.first_text(_REASONING_COLUMNS)
        if answer:
            match = _THINK_BLOCK.search(answer)
            if match:
                if not reasoning:
                    reasoning = match.group(1).strip() or None
                answer = _THINK_BLOCK.sub("", answer).strip()
        return question, answer, reasoning


class ChatRow(BaseModel):
    """A multi-turn conversation row."""

    kind: Literal["chat"] = "chat"
    messages: list[ChatMessage]

    @property
    def assistant_count(self) -> int:
        return sum(1 for m in self.messages if m.role == ChatRole.ASSISTANT)

    def first_user_message(self) -> str | None:
        return next((m.content for m in self.messages if m.role == ChatRole.USER), None)


RowPayload = Annotated[RecordRow | ChatRow, Field(discriminator="kind")]


def _coerce_chat_message(raw: Any) -> ChatMessage | None:
    if isinstance(raw, str):
        return ChatMessage(role=ChatRole.USER, content=raw) if raw.strip() else None
    if not isinstance(raw, dict):
        return None
    content = raw.get("content", raw.get("value", ""))
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False)
    if not content.strip():
        return None
    role_str = raw.get("role") or _SHAREGPT_ROLES.get(raw.get("from", ""), raw.get("from"))
    try:
        role = ChatRole(role_str)
    except ValueError:
        role = ChatRole.ASSISTANT if role_str == "model" else ChatRole.USER
    reasoning = raw.get("reasoning_content") or raw.get("reasoning")
    if role == ChatRole.ASSISTANT:
        match = _THINK_BLOCK.search(content)
        if match:
            reasoning = reasoning or match.group(1).strip() or None
            content = _THINK_BLOCK.sub("", content).strip()
    return ChatMessage(role=role, content=content, reasoning=reasoning or None)


def row_from_raw(raw: dict[str, Any]) -> RecordRow | ChatRow:
    """
    Resolve a raw source row into a tagged payload.

    A ``messages``/``conversation``/``conversations`` column whose first entry
    is a mapping with a ``role`` or ``from`` key makes a :class:`ChatRow`.
    Everything else is a :class:`RecordRow`.
    """
    for column in _CHAT_COLUMNS:
        value = raw.get(column)
        if (
            isinstance(value, list)
            and value
            and isinstance(value[0], dict)
            and ("role" in value[0] or "from" in value[0])
        ):
            messages = [m for m in (_coerce_chat_message(v) for v in value) if m is not None]
            if messages:
                return ChatRow(messages=messages)
    return RecordRow(fields=dict(raw))


# ── Work items ─────────────────────────────────────────────────────────────────


class WorkItem(BaseModel):
    """One unit of work pulled by a scheduler worker."""

    content: str
    row: RowPayload | None = None

    @classmethod
    def from_row(cls, raw: dict[str, Any], input_columns: list[str] | None = None) -> WorkItem:
        """Build a work item from a raw dataset row."""
        row = row_from_raw(raw)
        if isinstance(row, ChatRow):
            content = row.first_user_message() or row.messages[0].content
            return cls(content=content, row=row)

        if input_columns:
            parts = [row.first_text([c]) for c in input_columns]
            content = "\n\n".join(p for p in parts if p)
        else:
            content = row.first_text(_TEXT_COLUMNS) or ""
        if not content:
            content = json.dumps(raw, ensure_ascii=False, default=str)
        return cls(content=content, row=row)

    @property
    def is_multi_turn(self) -> bool:
        return isinstance(self.row, ChatRow)


# ── Results ────────────────────────────────────────────────────────────────────


class GenerationStatus(StrEnum):
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class ErrorKind(StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    VALIDATION = "validation"
    SUMMARIZATION = "summarization"


_FAILURE_ANSWERS = {
    GenerationStatus.ERROR: "Failed",
    GenerationStatus.TIMEOUT: "Timed out",
    GenerationStatus.ABORTED: "Halted",
}


class GenerationResult(BaseModel):
    """
    Terminal record for one item.

    ``id`` is stable across retries so sinks can update in place.
    """

    id: str
    status: GenerationStatus
    query: str = ""
    reasoning: str = ""
    answer: str = ""
    duration_ms: int = 0
    token_count: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    seed: str = ""
    row: RowPayload | None = None
    source: str | None = None
    model: str | None = None
    original_answer: str | None = None
    original_reasoning: str | None = None
    usage: TokenUsage | None = None
    is_multi_turn: bool = False
    messages: list[ChatMessage] | None = None
    prompt_set: str | None = None
    retryable: bool = Field(
        default=True,
        description="False when there is no seed to regenerate from, e.g. a failed dataset fetch.",
    )
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_failure(self) -> bool:
        """True for error and timeout. Aborted items are not failures."""
        return self.status in (GenerationStatus.ERROR, GenerationStatus.TIMEOUT)

    def to_work_item(self) -> WorkItem:
        """Rebuild the work item this result was generated from."""
        return WorkItem(content=self.seed, row=self.row)

    @classmethod
    def failure(
        cls,
        item_id: str,
        item: WorkItem | None,
        *,
        status: GenerationStatus,
        error: str,
        error_kind: ErrorKind,
        duration_ms: int = 0,
        source: str | None = None,
    ) -> GenerationResult:
        """Build a terminal error/timeout/aborted record. Without an *item* it cannot be retried."""
        return cls(
            id=item_id,
            status=status,
            query=item.content if item is not None else "",
            answer=_FAILURE_ANSWERS[status],
            duration_ms=duration_ms,
            error=error,
            error_kind=error_kind,
            seed=item.content if item is not None else "",
            row=item.row if item is not None else None,
            source=source,
            is_multi_turn=item.is_multi_turn if item is not None else False,
            retryable=item is not None,
        )


class Progress(BaseModel):
    """Scheduler progress counters."""

    current: int = 0
    total: int = 0
    active_workers: int = 0
