"""Per-item generation pipeline: prompt assembly, streamed model call, parsing.

Two modes:

- **Single prompt**: the seed is wrapped by the prompt set's user template and
  one call yields query/reasoning/answer.
- **Conversation rewrite**: for a :class:`~tracegen.models.work.ChatRow`, each
  assistant turn gets a new reasoning trace. Turns without an existing trace
  are imputed from the preceding user query and the visible reply. Prior turns
  are passed as history after compaction.

The generator raises on failure. Terminal status classification (timeout,
abort, error) belongs to :class:`~tracegen.engine.retry.ItemRunner`.
"""

from __future__ import annotations

import time

import structlog

from tracegen.cancellation import CancellationToken
from tracegen.compaction.context import ContextCompactor
from tracegen.errors import ValidationError
from tracegen.llm.model_call import ModelCall
from tracegen.models.config import GenerationConfig, OutputMode
from tracegen.models.message import ChatMessage, ChatRole, ModelResponse, TokenUsage
from tracegen.models.work import (
    ChatRow,
    GenerationResult,
    GenerationStatus,
    RecordRow,
    WorkItem,
)
from tracegen.prompts import PromptLibrary, PromptSet
from tracegen.streaming.extractor import FieldSelection, StreamingExtractor, StreamingTracker
from tracegen.streaming.parsers import parse_json_output, parse_native_output

REWRITE_WRAPPER = "[INPUT LOGIC START]\n{body}\n[INPUT LOGIC END]"
REASONING_JOINER = "\n---\n"


def build_rewrite_input(user_query: str | None, original_reasoning: str, visible_reply: str) -> str:
    """Rewrite input for one assistant turn. An empty trace switches to imputation."""
    user_context = f"[USER QUERY]:\n{user_query}\n\n" if user_query else ""
    if not original_reasoning:
        return (
            "[TASK]: REVERSE ENGINEERING REASONING\n"
            "[INSTRUCTION]: Analyze the [USER QUERY] and the [ASSISTANT RESPONSE]. Generate a "
            "detailed reasoning trace that logically connects the query to the response.\n"
            f"{user_context}[ASSISTANT RESPONSE]:\n{visible_reply}"
        )
    return f"{user_context}[RAW REASONING TRACE]:\n{original_reasoning}"


def _estimate_tokens(*texts: str) -> int:
    return round(sum(len(t) for t in texts) / 4)


class ItemGenerator:
    """
    Produces one :class:`GenerationResult` per :class:`WorkItem`.

    Example::

        generator = ItemGenerator(LiteLLMModelCall("gpt-4o-mini"), GenerationConfig())
        result = await generator.generate(item, item_id="gen_1", cancel=CancellationToken())
    """

    def __init__(
        self,
        model_call: ModelCall,
        config: GenerationConfig,
        *,
        prompts: PromptLibrary | None = None,
        compactor: ContextCompactor | None = None,
        tracker: StreamingTracker | None = None,
        source: str | None = None,
    ) -> None:
        self._model_call = model_call
        self._config = config
        self._prompts = prompts or PromptLibrary()
        self._compactor = compactor
        self._tracker = tracker or StreamingTracker()
        self._source = source
        self._fields = FieldSelection.from_selected(config.selected_fields)
        self._logger = structlog.get_logger("tracegen.generator")

    @property
    def tracker(self) -> StreamingTracker:
        return self._tracker

    @property
    def prompts(self) -> PromptLibrary:
        return self._prompts

    async def generate(
        self,
        item: WorkItem,
        *,
        item_id: str,
        cancel: CancellationToken,
        prompt_set: PromptSet | None = None,
    ) -> GenerationResult:
        """
        Generate a result for *item*.

        Raises:
            AbortedError: If *cancel* fires between turns or inside the model call.
            ValidationError: If the final output cannot be parsed.
            Exception: Whatever the model-call collaborator raises.
        """
        cancel.raise_if_cancelled()
        prompt_set = prompt_set or self._prompts.get("default")
        if isinstance(item.row, ChatRow):
            return await self._generate_conversation(item, item.row, item_id, cancel, prompt_set)
        return await self._generate_single(item, item_id, cancel, prompt_set)

    # ── Single prompt ──────────────────────────────────────────────────────────

    async def _generate_single(
        self,
        item: WorkItem,
        item_id: str,
        cancel: CancellationToken,
        prompt_set: PromptSet,
    ) -> GenerationResult:
        started = time.monotonic()
        mode = self._config.output_mode
        question, original_answer, original_reasoning = (
            item.row.originals() if isinstance(item.row, RecordRow) else (None, None, None)
        )
        user_prompt = prompt_set.render_user(item.content)
        system_prompt = prompt_set.system_for(mode)

        with self._tracker.track(
            item_id, total_messages=1, user_message=user_prompt, single_prompt=True
        ) as state:
            extractor = StreamingExtractor(state, mode, self._fields, self._tracker)
            response = await self._model_call(
                system_prompt, user_prompt, on_chunk=extractor.on_chunk, cancel=cancel
            )
            extractor.finish()

        try:
            parsed = self._parse(response)
        except ValueError as exc:
            raise ValidationError(f"Unparseable model output: {exc}") from exc

        reasoning = parsed.get("reasoning", "")
        answer = parsed.get("answer", "")
        if not self._fields.reasoning:
            reasoning = original_reasoning or ""
        if not self._fields.answer:
            answer = original_answer or ""
        if not reasoning and not answer:
            raise ValidationError("Model returned neither reasoning nor answer")

        usage = response.usage or extractor.usage
        return GenerationResult(
            id=item_id,
            status=GenerationStatus.DONE,
            query=question or parsed.get("query") or item.content,
            reasoning=reasoning,
            answer=answer,
            duration_ms=int((time.monotonic() - started) * 1000),
            token_count=(usage.total_tokens if usage and usage.total_tokens else None)
            or _estimate_tokens(answer, reasoning),
            seed=item.content,
            row=item.row,
            source=self._source,
            model=self._config.model,
            original_answer=original_answer,
            original_reasoning=original_reasoning,
            usage=usage,
            prompt_set=prompt_set.name,
        )

    # ── Conversation rewrite ───────────────────────────────────────────────────

    async def _generate_conversation(
        self,
        item: WorkItem,
        row: ChatRow,
        item_id: str,
        cancel: CancellationToken,
        prompt_set: PromptSet,
    ) -> GenerationResult:
        started = time.monotonic()
        mode = self._config.output_mode
        system_prompt = prompt_set.system_for(mode, rewrite=True)
        max_traces = self._config.max_traces
        total = min(max_traces, row.assistant_count) if max_traces else row.assistant_count
        log = self._logger.bind(item_id=item_id)

        rewritten: list[ChatMessage] = []
        usage_total: TokenUsage | None = None
        rewrites = 0

        with self._tracker.track(
            item_id, total_messages=total, user_message=row.first_user_message()
        ) as state:
            extractor = StreamingExtractor(state, mode, self._fields, self._tracker)
            for i, message in enumerate(row.messages):
                cancel.raise_if_cancelled()
                if message.role != ChatRole.ASSISTANT or rewrites >= total:
                    rewritten.append(message.model_copy())
                    continue

                prev_user = next(
                    (m for m in reversed(row.messages[:i]) if m.role == ChatRole.USER), None
                )
                original_reasoning = (message.reasoning or "").strip()
                visible = message.content.strip()
                body = build_rewrite_input(
                    prev_user.content if prev_user else None, original_reasoning, visible
                )
                history = await self._history(rewritten)

                state.current_user_message = prev_user.content if prev_user else None
                response = await self._model_call(
                    system_prompt,
                    REWRITE_WRAPPER.format(body=body),
                    on_chunk=extractor.on_chunk,
                    cancel=cancel,
                    messages=history,
                )
                if response.usage is not None:
                    usage_total = response.usage if usage_total is None else usage_total + response.usage

                new_reasoning = original_reasoning
                if self._fields.reasoning:
                    try:
                        new_reasoning = self._parse(response).get("reasoning") or original_reasoning
                    except ValueError as exc:
                        log.warning("turn_rewrite_unparseable", turn=i, error=str(exc))

                rewritten.append(
                    ChatMessage(
                        role=ChatRole.ASSISTANT,
                        content=f"<think>{new_reasoning}</think>\n\n{visible}",
                        reasoning=new_reasoning,
                    )
                )
                rewrites += 1

                state.current_reasoning = new_reasoning
                state.current_answer = visible
                next_user = next(
                    (m.content for m in row.messages[i + 1 :] if m.role == ChatRole.USER), None
                )
                extractor.complete_turn(
                    prev_user, ChatMessage(role=ChatRole.ASSISTANT, content=visible), next_user
                )
                log.debug("turn_rewritten", turn=i, done=rewrites, total=total)
            extractor.finish()

        if max_traces:
            rewritten = _cut_after_assistant(rewritten, max_traces)

        reasoning = REASONING_JOINER.join(
            m.reasoning for m in rewritten if m.role == ChatRole.ASSISTANT and m.reasoning
        )
        query = next((m.content for m in rewritten if m.role == ChatRole.USER), "Conversation")
        answer = rewritten[-1].content if rewritten else ""
        return GenerationResult(
            id=item_id,
            status=GenerationStatus.DONE,
            query=query,
            reasoning=reasoning,
            answer=answer,
            duration_ms=int((time.monotonic() - started) * 1000),
            token_count=(usage_total.total_tokens if usage_total else 0)
            or _estimate_tokens(*(m.content for m in rewritten)),
            seed=item.content,
            row=row,
            source=self._source,
            model=self._config.model,
            usage=usage_total,
            is_multi_turn=True,
            messages=rewritten,
            prompt_set=prompt_set.name,
        )

    async def _history(self, rewritten: list[ChatMessage]) -> list[ChatMessage]:
        """Prior turns for the next call, minus the trailing user turn, compacted to fit."""
        history = rewritten[:-1] if rewritten and rewritten[-1].role == ChatRole.USER else rewritten
        history = [
            m.model_copy(update={"content": m.content if m.role != ChatRole.ASSISTANT else _visible(m)})
            for m in history
        ]
        if self._compactor is None or not history:
            return history
        result = await self._compactor.compact(history)
        return result.messages

    def _parse(self, response: ModelResponse) -> dict[str, str]:
        if self._config.output_mode == OutputMode.NATIVE:
            return parse_native_output(response.text, response.reasoning_content)
        parsed = parse_json_output(response.text)
        if "reasoning" not in parsed and response.reasoning_content:
            parsed["reasoning"] = response.reasoning_content.strip()
        return parsed


def _visible(message: ChatMessage) -> str:
    content = message.content
    if message.reasoning and content.startswith("<think>"):
        end = content.find("</think>")
        if end != -1:
            return content[end + len("</think>") :].strip()
    return content


def _cut_after_assistant(messages: list[ChatMessage], max_traces: int) -> list[ChatMessage]:
    count = 0
    for i, msg in enumerate(messages):
        if msg.role == ChatRole.ASSISTANT:
            count += 1
            if count >= max_traces:
                return messages[: i + 1]
    return messages
