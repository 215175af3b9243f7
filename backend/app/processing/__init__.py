"""
Processing package — OCR strategies, the quality-gated TextExtractor and
field type normalization.
"""

from app.processing.extractor import (
    TextExtractionResult,
    TextExtractor,
    build_text_extractor,
    passes_quality_gate,
)
from app.processing.normalization import normalize_field_type, normalize_fields

__all__ = [
    "TextExtractionResult",
    "TextExtractor",
    "build_text_extractor",
    "normalize_field_type",
    "normalize_fields",
    "passes_quality_gate",
]
