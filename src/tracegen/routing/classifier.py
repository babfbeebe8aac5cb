"""Task-type classification: keyword heuristic and LLM response parsing."""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable
from enum import StrEnum

from pydantic import BaseModel, Field


class TaskType(StrEnum):
    MATH = "math"
    CODING = "coding"
    CREATIVE = "creative"
    FACTUAL = "factual"
    TECHNICAL = "technical"
    REASONING = "reasoning"
    CONVERSATION = "conversation"
    MEDICAL = "medical"
    UNKNOWN = "unknown"


class Classification(BaseModel):
    """One classifier vote."""

    task_type: TaskType
    confidence: float = Field(ge=0.0, le=1.0)


Classifier = Callable[[str], Awaitable[Classification]]

DEFAULT_TASK_PROMPT_MAPPING: dict[TaskType, str] = {
    TaskType.MATH: "synth-prose",
    TaskType.CODING: "synth-prose",
    TaskType.CREATIVE: "synth-expanded",
    TaskType.FACTUAL: "synth-compact",
    TaskType.TECHNICAL: "synth-prose",
    TaskType.REASONING: "synth-prose",
    TaskType.CONVERSATION: "synth-expanded",
    TaskType.MEDICAL: "synth-prose",
    TaskType.UNKNOWN: "default",
}

KEYWORD_SCORE = 0.5
PATTERN_SCORE = 1.0
FULL_CONFIDENCE_SCORE = 3.0
MIN_HEURISTIC_CONFIDENCE = 0.2
CLASSIFIER_QUERY_CHARS = 500

_KEYWORDS: dict[TaskType, tuple[str, ...]] = {
    TaskType.MATH: (
        "calculate", "solve", "equation", "formula", "derivative", "integral",
        "algebra", "geometry", "probability", "statistics", "proof", "theorem",
        "sum", "product", "factor", "simplify", "evaluate", "graph",
    ),
    TaskType.CODING: (
        "code", "function", "class", "variable", "debug", "error", "bug",
        "implement", "algorithm", "api", "database", "sql", "javascript",
        "python", "typescript", "react", "node", "git", "compile", "runtime",
        "refactor", "optimize", "performance", "memory", "async", "promise",
    ),
    TaskType.CREATIVE: (
        "write", "story", "poem", "creative", "imagine", "fiction",
        "character", "narrative", "plot", "describe", "compose",
        "lyric", "script", "dialogue", "metaphor", "artistic",
    ),
    TaskType.FACTUAL: (
        "what is", "who is", "when did", "where is", "define", "explain",
        "history", "fact", "date", "capital", "population", "founder",
        "invented", "discovered", "born", "died", "located",
    ),
    TaskType.TECHNICAL: (
        "how does", "explain how", "architecture", "system", "protocol",
        "mechanism", "process", "workflow", "infrastructure", "design",
        "specification", "requirement", "documentation", "configure",
    ),
    TaskType.REASONING: (
        "why", "reason", "because", "therefore", "logic", "argument",
        "conclude", "infer", "deduce", "analyze", "compare", "evaluate",
        "pros and cons", "trade-off", "implication", "consequence",
    ),
    TaskType.CONVERSATION: (
        "hello", "hi", "hey", "thanks", "please", "help me",
        "can you", "could you", "would you", "chat", "talk",
    ),
    TaskType.MEDICAL: (
        # clinical specialities
        "cardiology", "neurology", "oncology", "pediatrics", "psychiatry",
        "dermatology", "radiology", "pathology", "surgery", "anesthesiology",
        "endocrinology", "gastroenterology", "nephrology", "pulmonology",
        "rheumatology", "immunology", "hematology", "ophthalmology",
        "orthopedics", "urology", "gynecology", "obstetrics", "geriatrics",
        # clinical terms
        "diagnosis", "treatment", "symptoms", "prognosis", "patient",
        "clinical", "therapy", "medication", "prescription", "dosage",
        "disease", "disorder", "syndrome", "condition",
        "anatomy", "physiology", "pharmacology", "etiology", "epidemiology",
        # life sciences
        "biology", "cell", "organism", "tissue", "organ", "molecular",
        "metabolism", "mitosis", "meiosis", "photosynthesis", "evolution",
        "ecology", "microbiology", "virology", "bacteriology",
        "chemistry", "molecule", "compound", "reaction", "catalyst",
        "organic", "inorganic", "biochemistry", "polymer", "enzyme",
        "protein", "lipid", "carbohydrate", "nucleotide", "amino acid",
        "genetics", "gene", "dna", "rna", "chromosome", "mutation",
        "genome", "allele", "hereditary", "inheritance", "genotype",
        "phenotype", "crispr", "sequencing", "epigenetics", "transcription",
        "neuroscience", "neuron", "synapse", "neurotransmitter", "cortex",
        "hippocampus", "amygdala", "cerebellum", "axon", "dendrite",
    ),
}

_PATTERNS: dict[TaskType, tuple[re.Pattern[str], ...]] = {
    TaskType.MATH: (
        re.compile(r"\d+\s*[+\-*/^]\s*\d+"),
        re.compile(r"\b\d+x\b|\bx\^?\d*\b", re.IGNORECASE),
        re.compile(r"\b(sin|cos|tan|log|ln|sqrt)\b", re.IGNORECASE),
        re.compile(r"what is \d+", re.IGNORECASE),
        re.compile(r"how many", re.IGNORECASE),
    ),
    TaskType.CODING: (
        re.compile(r"```[\s\S]*```"),
        re.compile(r"\b(def|function|const|let|var|class|import|export)\b", re.IGNORECASE),
        re.compile(r"\.(js|ts|py|java|cpp|rs|go)\b", re.IGNORECASE),
        re.compile(r"\b(npm|pip|cargo|maven)\b", re.IGNORECASE),
    ),
    TaskType.CREATIVE: (
        re.compile(r"write (me )?(a |an )", re.IGNORECASE),
        re.compile(r"create (a |an )?story", re.IGNORECASE),
        re.compile(r"in the style of", re.IGNORECASE),
        re.compile(r"once upon a time", re.IGNORECASE),
    ),
    TaskType.FACTUAL: (
        re.compile(r"^(what|who|when|where|which)\b", re.IGNORECASE),
        re.compile(r"\bis (the|a|an)\b.*\?$", re.IGNORECASE),
        re.compile(r"tell me about", re.IGNORECASE),
    ),
    TaskType.TECHNICAL: (
        re.compile(r"how does .* work", re.IGNORECASE),
        re.compile(r"explain (the )?(concept|mechanism|process)", re.IGNORECASE),
        re.compile(r"what('s| is) the difference between", re.IGNORECASE),
    ),
    TaskType.REASONING: (
        re.compile(r"^why\b", re.IGNORECASE),
        re.compile(r"should (i|we|they)", re.IGNORECASE),
        re.compile(r"what would happen if", re.IGNORECASE),
        re.compile(r"is it (better|worse|good|bad) to", re.IGNORECASE),
    ),
    TaskType.CONVERSATION: (
        re.compile(r"^(hi|hello|hey)\b", re.IGNORECASE),
        re.compile(r"^thanks?\b", re.IGNORECASE),
        re.compile(r"how are you", re.IGNORECASE),
    ),
    TaskType.MEDICAL: (
        re.compile(r"\b(diagnosis|diagnose|diagnosed)\b", re.IGNORECASE),
        re.compile(r"\b(symptom|symptoms)\b.*\b(of|for|include)\b", re.IGNORECASE),
        re.compile(r"\b(treat|treatment|treating)\b.*\b(for|of)\b", re.IGNORECASE),
        re.compile(r"\b(patient|patients)\b.*\b(with|has|have)\b", re.IGNORECASE),
        re.compile(r"\b(mg|mcg|ml|iu)\b.*\b(dose|dosage|daily|twice)\b", re.IGNORECASE),
        re.compile(r"\b(gene|genetic|dna|rna)\b.*\b(mutation|expression|sequence)\b", re.IGNORECASE),
        re.compile(r"\b(cell|cellular)\b.*\b(function|structure|division)\b", re.IGNORECASE),
        re.compile(r"\b(chemical|molecular)\b.*\b(reaction|structure|bond)\b", re.IGNORECASE),
        re.compile(r"what causes", re.IGNORECASE),
        re.compile(r"how to treat", re.IGNORECASE),
        re.compile(r"side effects of", re.IGNORECASE),
        re.compile(r"mechanism of action", re.IGNORECASE),
    ),
}

_KEYWORD_REGEX: dict[TaskType, tuple[re.Pattern[str], ...]] = {
    task: tuple(re.compile(rf"\b{re.escape(k)}\b", re.IGNORECASE) for k in keywords)
    for task, keywords in _KEYWORDS.items()
}


def classify_heuristic(query: str) -> Classification:
    """
    Score *query* against every task type's keywords and patterns.

    Each word-boundary keyword hit adds 0.5, each pattern hit adds 1.0.
    Confidence is ``min(best / 3, 1)``; below 0.2 the result is
    ``unknown`` at 0.1.
    """
    scores: dict[TaskType, float] = dict.fromkeys(TaskType, 0.0)
    for task, keyword_regexes in _KEYWORD_REGEX.items():
        scores[task] += KEYWORD_SCORE * sum(1 for rx in keyword_regexes if rx.search(query))
        scores[task] += PATTERN_SCORE * sum(1 for rx in _PATTERNS[task] if rx.search(query))

    best, best_score = TaskType.UNKNOWN, 0.0
    for task, score in scores.items():
        if score > best_score:
            best, best_score = task, score

    confidence = min(best_score / FULL_CONFIDENCE_SCORE, 1.0)
    if confidence < MIN_HEURISTIC_CONFIDENCE:
        return Classification(task_type=TaskType.UNKNOWN, confidence=0.1)
    return Classification(task_type=best, confidence=confidence)


async def heuristic_classifier(query: str) -> Classification:
    """Async adapter so the heuristic can be used wherever a :data:`Classifier` is."""
    return classify_heuristic(query)


def classifier_prompt(query: str) -> str:
    """Build the LLM classification prompt for *query* (truncated and escaped)."""
    escaped = query[:CLASSIFIER_QUERY_CHARS].replace("`", "'").replace("\\", "\\\\")
    return (
        "Classify this query into a task type and provide your confidence level.\n\n"
        "Categories:\n"
        "- math: calculations, equations, proofs, statistics, numbers\n"
        "- coding: programming, debugging, algorithms, code, software\n"
        "- creative: stories, poems, creative writing, fiction, artistic\n"
        "- factual: facts, definitions, dates, events, simple lookups\n"
        "- technical: how systems work, explanations, mechanisms\n"
        "- reasoning: why questions, analysis, comparisons, pros/cons\n"
        "- conversation: greetings, thanks, small talk\n"
        "- medical: clinical diagnoses, treatments, biology, chemistry, genetics, pharmacology\n"
        "- unknown: unclear or ambiguous\n\n"
        "Examples:\n"
        '"What is 2+2?" -> {"type":"math","confidence":0.95}\n'
        '"Write a Python function" -> {"type":"coding","confidence":0.9}\n'
        '"Write me a poem about cats" -> {"type":"creative","confidence":0.85}\n'
        '"Who invented the telephone?" -> {"type":"factual","confidence":0.9}\n'
        '"How does TCP/IP work?" -> {"type":"technical","confidence":0.85}\n'
        '"Should I use React or Vue?" -> {"type":"reasoning","confidence":0.8}\n'
        '"Hello!" -> {"type":"conversation","confidence":0.95}\n'
        '"What are the symptoms of diabetes?" -> {"type":"medical","confidence":0.9}\n\n'
        f"Query:\n```\n{escaped}\n```\n\n"
        "Output JSON only (no markdown):"
    )


def parse_classifier_response(response: str) -> Classification:
    """
    Parse an LLM classification reply.

    Accepts the first flat JSON object (``type`` + optional ``confidence``,
    clamped to [0, 1], default 0.8). Falls back to a bare task-type mention
    at 0.7, then ``unknown`` at 0.5.
    """
    cleaned = response.strip()
    match = re.search(r"\{[^{}]*\}", cleaned)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            raw_type = data.get("type")
            try:
                task = TaskType(raw_type.lower()) if isinstance(raw_type, str) else TaskType.UNKNOWN
            except ValueError:
                task = TaskType.UNKNOWN
            raw_conf = data.get("confidence")
            if isinstance(raw_conf, int | float) and not isinstance(raw_conf, bool):
                confidence = min(1.0, max(0.0, float(raw_conf)))
            else:
                confidence = 0.8
            return Classification(task_type=task, confidence=confidence)

    lower = cleaned.lower()
    for task in TaskType:
        if task.value in lower:
            return Classification(task_type=task, confidence=0.7)
    return Classification(task_type=TaskType.UNKNOWN, confidence=0.5)


def recommended_prompt_set(
    task: TaskType,
    fallback: str = "default",
    custom_mapping: dict[str, str] | None = None,
) -> str:
    """Return the prompt set for *task*. Custom mappings override the defaults."""
    if task == TaskType.UNKNOWN:
        return fallback
    if custom_mapping and custom_mapping.get(task.value):
        return custom_mapping[task.value]
    return DEFAULT_TASK_PROMPT_MAPPING.get(task, fallback)
