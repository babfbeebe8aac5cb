"""Prompt sets and Jinja2 rendering of per-item user prompts."""

from __future__ import annotations

from jinja2 import Environment, StrictUndefined, Template, TemplateSyntaxError, meta
from pydantic import BaseModel, Field, PrivateAttr, model_validator

from tracegen.models.config import OutputMode

SEED_TEMPLATE = "[SEED TEXT START]\n{{ item }}\n[SEED TEXT END]"
JSON_INSTRUCTION = (
    "CRITICAL: You must output ONLY valid JSON with 'query', 'reasoning', and 'answer' fields."
)

_BASE_SYSTEM = (
    "You turn seed text into a training example: a self-contained query, a careful "
    "step-by-step reasoning trace that works the problem, and a final answer."
)

BUILTIN_PROMPT_SETS: dict[str, str] = {
    "default": _BASE_SYSTEM,
    "synth-prose": (
        _BASE_SYSTEM + " Structure the reasoning into short labelled sections and show "
        "every intermediate step or derivation."
    ),
    "synth-expanded": (
        _BASE_SYSTEM + " Let the reasoning flow as natural prose that explores alternatives "
        "before settling on the answer."
    ),
    "synth-compact": (
        _BASE_SYSTEM + " Keep the reasoning dense and factual. Omit filler and restatements."
    ),
}


def require_item_variable(template_str: str) -> None:
    """
    Raise ValueError if the Jinja2 template does not reference the ``item`` variable.

    Uses Jinja2 AST parsing so ``{{ item['key'] }}`` and ``{{ item | upper }}``
    are accepted. Invalid template syntax is also reported as ``ValueError``.
    """
    env = Environment()
    try:
        ast = env.parse(template_str)
    except TemplateSyntaxError as exc:
        raise ValueError(f"Invalid Jinja2 template syntax: {exc}") from exc
    if "item" not in meta.find_undeclared_variables(ast):
        raise ValueError("user_template must reference {{ item }}")


class PromptSet(BaseModel):
    """A named system prompt plus the template that wraps each seed."""

    name: str = "default"
    system_prompt: str = BUILTIN_PROMPT_SETS["default"]
    user_template: str = Field(
        default=SEED_TEMPLATE,
        description="Jinja2 template for the user turn. Must reference ``{{ item }}``.",
    )
    rewrite_prompt: str | None = Field(
        default=None,
        description="System prompt for multi-turn reasoning rewrites. None = system_prompt.",
    )

    _template: Template | None = PrivateAttr(default=None)

    @model_validator(mode="after")
    def validate_template(self) -> PromptSet:
        require_item_variable(self.user_template)
        return self

    def render_user(self, item: object) -> str:
        if self._template is None:
            self._template = Environment(undefined=StrictUndefined).from_string(self.user_template)
        return self._template.render(item=item)

    def system_for(self, mode: OutputMode, *, rewrite: bool = False) -> str:
        """System prompt for *mode*. JSON mode gets the output contract appended if missing."""
        prompt = (self.rewrite_prompt or self.system_prompt) if rewrite else self.system_prompt
        if mode == OutputMode.JSON and "json" not in prompt.lower():
            prompt = f"{prompt}\n\n{JSON_INSTRUCTION}"
        return prompt


class PromptLibrary:
    """Lookup of prompt sets by name, seeded with the built-in sets."""

    def __init__(self, prompt_sets: list[PromptSet] | None = None) -> None:
        self._sets: dict[str, PromptSet] = {
            name: PromptSet(name=name, system_prompt=text)
            for name, text in BUILTIN_PROMPT_SETS.items()
        }
        for prompt_set in prompt_sets or []:
            self.register(prompt_set)

    def register(self, prompt_set: PromptSet) -> None:
        self._sets[prompt_set.name] = prompt_set

    def get(self, name: str, fallback: str = "default") -> PromptSet:
        return self._sets.get(name) or self._sets[fallback]

    def __contains__(self, name: object) -> bool:
        return name in self._sets

    @property
    def names(self) -> list[str]:
        return sorted(self._sets)
