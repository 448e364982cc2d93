"""Context Shaper - fit LLM chat requests into a model's context window."""

__version__ = "0.1.0"

from context_shaper.config import Config
from context_shaper.shaper import BudgetParameters, ShapeResult, shape, shape_request
from context_shaper.tokens import (
    estimate_tokens_for_message,
    estimate_tokens_for_tools,
    estimate_tokens_from_text,
)

__all__ = [
    "BudgetParameters",
    "Config",
    "ShapeResult",
    "estimate_tokens_for_message",
    "estimate_tokens_for_tools",
    "estimate_tokens_from_text",
    "shape",
    "shape_request",
    "__version__",
]
