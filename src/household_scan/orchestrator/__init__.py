"""High-level orchestration helpers for the scan resolution pipeline."""

from .extraction import GeminiClient, GeminiConfig, IngredientExtractor, retry_delay_seconds
from .overlay import IngredientStore, OverlayLookup
from .rules import HAZARD_RULES, score_product
from .swaps import suggest_swaps
from .scan import ScanService, create_scan_result
from .chat import answer_question

__all__ = [
    "GeminiClient",
    "GeminiConfig",
    "IngredientExtractor",
    "retry_delay_seconds",
    "IngredientStore",
    "OverlayLookup",
    "HAZARD_RULES",
    "score_product",
    "suggest_swaps",
    "ScanService",
    "create_scan_result",
    "answer_question",
]
