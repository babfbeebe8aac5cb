"""Streaming output extraction."""

from tracegen.streaming.extractor import FieldSelection, StreamingExtractor, StreamingTracker
from tracegen.streaming.parsers import (
    ExtractedFields,
    extract_json_fields,
    parse_json_output,
    parse_native_output,
    parse_think_tags,
)

__all__ = [
    "ExtractedFields",
    "FieldSelection",
    "StreamingExtractor",
    "StreamingTracker",
    "extract_json_fields",
    "parse_json_output",
    "parse_native_output",
    "parse_think_tags",
]
