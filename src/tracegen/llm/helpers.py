"""litellm-backed summarizer and task classifier factories."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from tracegen.llm.model_call import mock_enabled
from tracegen.routing.classifier import (
    Classification,
    Classifier,
    classifier_prompt,
    classify_heuristic,
    parse_classifier_response,
)

SUMMARY_MAX_TOKENS = 1024
CLASSIFIER_MAX_TOKENS = 60


async def _complete(model: str, prompt: str, *, max_tokens: int, temperature: float) -> str:
    import litellm

    response = await litellm.acompletion(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        max_tokens=max_tokens,
        temperature=temperature,
    )
    return response.choices[0].message.content or ""


def make_summarizer(model: str) -> Callable[[str], Awaitable[str]]:
    """Return an async ``prompt -> summary`` function for the summarize compaction strategy."""

    async def _summarize(prompt: str) -> str:
        if mock_enabled():
            body = prompt.split("Conversation to summarize:")[-1].split("Summary:")[0]
            lines = [ln.strip() for ln in body.splitlines() if ln.strip()]
            return "\n".join(f"- {ln[:120]}" for ln in lines[:6]) or "- (empty conversation)"
        return await _complete(model, prompt, max_tokens=SUMMARY_MAX_TOKENS, temperature=0.2)

    return _summarize


def make_llm_classifier(model: str) -> Classifier:
    """Return an async classifier that asks *model* for a task type."""

    async def _classify(query: str) -> Classification:
        if mock_enabled():
            return classify_heuristic(query)
        response = await _complete(
            model, classifier_prompt(query), max_tokens=CLASSIFIER_MAX_TOKENS, temperature=0.0
        )
        return parse_classifier_response(response)

    return _classify
