"""
Credit prices and operation classification.

One credit is roughly one US cent of provider cost.
"""

from typing import Callable, List, Optional, Tuple

DEFAULT_CREDIT_COST = 1

PRICE_TABLE = {
    # Gemini 2.5
    "gemini-2.5-flash": 1,
    "gemini-2.5-flash-lite": 1,
    "gemini-2.5-pro": 3,
    # Gemini 2.0
    "gemini-2.0-flash": 1,
    "gemini-2.0-flash-lite": 1,
    "gemini-2.0-flash-exp": 1,
    # Gemini 3 preview
    "gemini-3-pro-preview": 3,
    "gemini-3-pro-image-preview": 4,
    # Legacy
    "gemini-1.5-flash": 1,
    "gemini-1.5-pro": 2,
    # Native image generation
    "gemini-2.5-flash-image": 4,
    "gemini-2.0-flash-image": 4,
    # Imagen
    "imagen-3.0-generate-001": 4,
    "imagen-3.0-fast-generate-001": 2,
    "imagen-4.0-generate-001": 4,
    "imagen-4.0-ultra-generate-001": 6,
    "imagen-4.0-fast-generate-001": 2,
}


def credits_for(model: Optional[str]) -> int:
    """Credit cost of one call to ``model``. Unknown models cost the default."""
    return PRICE_TABLE.get(model or "", DEFAULT_CREDIT_COST)


def _is_image(model: str) -> bool:
    return "imagen" in model or "image" in model


# Evaluated top to bottom; the first matching predicate names the operation.
OPERATION_RULES: List[Tuple[Callable[[str], bool], str]] = [
    (lambda m: _is_image(m) and "fast" in m, "image_generation_fast"),
    (lambda m: _is_image(m) and "ultra" in m, "image_generation_ultra"),
    (_is_image, "image_generation"),
    (lambda m: "pro" in m, "ai_assistant_complex"),
]

DEFAULT_OPERATION = "ai_assistant_request"


def classify_operation(model: Optional[str], rules: Optional[List[Tuple[Callable[[str], bool], str]]] = None) -> str:
    name = (model or "").lower()
    for predicate, label in rules if rules is not None else OPERATION_RULES:
        if predicate(name):
            return label
    return DEFAULT_OPERATION
