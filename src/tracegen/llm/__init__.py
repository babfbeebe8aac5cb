"""Model-call collaborators backed by litellm."""

from tracegen.llm.helpers import make_llm_classifier, make_summarizer
from tracegen.llm.model_call import (
    ChunkCallback,
    LiteLLMModelCall,
    ModelCall,
    build_messages,
    mock_completion,
)

__all__ = [
    "ChunkCallback",
    "LiteLLMModelCall",
    "ModelCall",
    "build_messages",
    "make_llm_classifier",
    "make_summarizer",
    "mock_completion",
]
