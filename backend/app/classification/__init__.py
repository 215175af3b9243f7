"""
Classification package — Classifier contract, LLM adapter, validating
decoder and the two-tier type-name matcher.
"""

from app.classification.classifier import Classifier, LLMClassifier
from app.classification.decoding import decode_model_output
from app.classification.matching import ExactMatch, FuzzyMatch, NoMatch, match_type_name

__all__ = [
    "Classifier",
    "ExactMatch",
    "FuzzyMatch",
    "LLMClassifier",
    "NoMatch",
    "decode_model_output",
    "match_type_name",
]
