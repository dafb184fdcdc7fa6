"""
Input validation and clamping for gateway requests.

Every free-text field is trimmed and length-capped. Requests that fail a
format check or name a model outside the allow-list are rejected before
anything touches counters or the ledger.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.errors import ValidationError
from .models import GenerateRequest, ImageRequest

PROJECT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,100}$")
USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")
REFERENCE_IMAGE_PATTERN = re.compile(r"^data:(image/(png|jpeg|jpg|gif|webp));base64,(.+)$", re.DOTALL)

DEFAULT_TEXT_MODEL = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"

ALLOWED_MODELS = frozenset({
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.5-pro",
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash-exp",
    "gemini-3-pro-preview",
    "gemini-3-pro-image-preview",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
    "gemini-2.0-flash-exp-image-generation",
    "gemini-2.0-flash-preview-image-generation",
    "gemini-2.5-flash-image",
    "gemini-2.0-flash-image",
    "imagen-3.0-generate-001",
    "imagen-3.0-fast-generate-001",
    "imagen-4.0-generate-001",
    "imagen-4.0-ultra-generate-001",
    "imagen-4.0-fast-generate-001",
})

ALLOWED_IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
MAX_INLINE_IMAGES = 10
MAX_INLINE_IMAGE_CHARS = 20 * 1024 * 1024
MAX_REFERENCE_IMAGES = 14
MAX_REFERENCE_IMAGE_CHARS = 10 * 1024 * 1024

MAX_OUTPUT_TOKENS = 32000
DEFAULT_MAX_OUTPUT_TOKENS = 8192

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

VISUAL_CONTROLS = ("lighting", "cameraAngle", "colorGrading", "themeColors", "depthOfField")


def sanitize_string(value: Any, max_length: int = 10000) -> str:
    """Trim and cap a free-text value. Non-strings become ''."""
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_length]


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def clamp_generation_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Force generation parameters into ranges the provider accepts."""
    config = config or {}
    max_output_tokens = _number(config.get("maxOutputTokens"), DEFAULT_MAX_OUTPUT_TOKENS)
    if max_output_tokens < 1:
        max_output_tokens = DEFAULT_MAX_OUTPUT_TOKENS
    return {
        "temperature": clamp(_number(config.get("temperature"), 0.7), 0, 2),
        "topK": int(clamp(_number(config.get("topK"), 40), 1, 100)),
        "topP": clamp(_number(config.get("topP"), 0.95), 0, 1),
        "maxOutputTokens": int(min(max_output_tokens, MAX_OUTPUT_TOKENS)),
    }


def clamp_timeout(value: Any, default: float, maximum: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return clamp(float(value), 1.0, maximum)


def filter_inline_images(images: Optional[List[Any]]) -> List[Dict[str, str]]:
    """Keep well-formed images, dropping the rest silently."""
    accepted = []
    for image in (images or [])[:MAX_INLINE_IMAGES]:
        if not isinstance(image, dict):
            continue
        mime_type = image.get("mimeType", image.get("mime_type"))
        data = image.get("data")
        if not isinstance(mime_type, str) or not isinstance(data, str):
            continue
        if mime_type not in ALLOWED_IMAGE_MIME_TYPES:
            continue
        if 0 < len(data) < MAX_INLINE_IMAGE_CHARS:
            accepted.append({"mimeType": mime_type, "data": data})
    return accepted


def parse_reference_images(urls: Optional[List[Any]]) -> List[Dict[str, str]]:
    """Turn ``data:image/...;base64,`` URLs into inline image parts."""
    parts = []
    for url in (urls or [])[:MAX_REFERENCE_IMAGES]:
        if not isinstance(url, str):
            continue
        match = REFERENCE_IMAGE_PATTERN.match(url)
        if not match:
            continue
        data = match.group(3)
        if len(data) > MAX_REFERENCE_IMAGE_CHARS:
            continue
        parts.append({"mimeType": match.group(1), "data": data})
    return parts


def check_model(model: str):
    if model not in ALLOWED_MODELS:
        raise ValidationError(
            ValidationError.NOT_ALLOW_LISTED,
            "Invalid model specified",
            {"model": model},
        )


@dataclass
class ValidatedGenerate:
    project_id: str
    prompt: str
    user_id: Optional[str]
    model: str
    generation_config: Dict[str, Any]
    images: List[Dict[str, str]] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass
class ValidatedImage:
    user_id: str
    prompt: str
    model: str
    aspect_ratio: str
    style: str
    resolution: str
    thinking_level: str
    person_generation: str
    temperature: float
    negative_prompt: str
    visual_controls: Dict[str, str]
    reference_images: List[Dict[str, str]] = field(default_factory=list)
    timeout: Optional[float] = None

    @property
    def is_imagen(self) -> bool:
        return "imagen" in self.model


def validate_generate_request(request: GenerateRequest) -> ValidatedGenerate:
    project_id = sanitize_string(request.project_id, 100)
    prompt = sanitize_string(request.prompt, 50000)
    user_id = sanitize_string(request.user_id, 128)
    model = sanitize_string(request.model, 50) or DEFAULT_TEXT_MODEL

    missing = [name for name, value in (("projectId", project_id), ("prompt", prompt)) if not value]
    if missing:
        raise ValidationError(
            ValidationError.MISSING_FIELD,
            "Missing required fields",
            {"required": ["projectId", "prompt"], "missing": missing},
        )

    if not PROJECT_ID_PATTERN.match(project_id):
        raise ValidationError(ValidationError.MALFORMED_FIELD, "Invalid projectId format", {"field": "projectId"})
    if user_id and not USER_ID_PATTERN.match(user_id):
        raise ValidationError(ValidationError.MALFORMED_FIELD, "Invalid userId format", {"field": "userId"})
    check_model(model)

    return ValidatedGenerate(
        project_id=project_id,
        prompt=prompt,
        user_id=user_id or None,
        model=model,
        generation_config=clamp_generation_config(request.config),
        images=filter_inline_images(request.images),
        timeout=request.timeout,
    )


def validate_image_request(request: ImageRequest) -> ValidatedImage:
    user_id = sanitize_string(request.user_id, 128)
    prompt = sanitize_string(request.prompt, 10000)
    model = sanitize_string(request.model, 50) or DEFAULT_IMAGE_MODEL

    missing = [name for name, value in (("userId", user_id), ("prompt", prompt)) if not value]
    if missing:
        raise ValidationError(
            ValidationError.MISSING_FIELD,
            "Missing required fields",
            {"required": ["userId", "prompt"], "missing": missing},
        )
    if not USER_ID_PATTERN.match(user_id):
        raise ValidationError(ValidationError.MALFORMED_FIELD, "Invalid userId format", {"field": "userId"})
    check_model(model)

    config = request.config or {}
    visual_controls = {}
    for name in VISUAL_CONTROLS:
        value = sanitize_string(config.get(name), 100)
        if value:
            visual_controls[name] = value

    return ValidatedImage(
        user_id=user_id,
        prompt=prompt,
        model=model,
        aspect_ratio=sanitize_string(request.aspect_ratio, 10) or "1:1",
        style=sanitize_string(request.style, 50),
        resolution=sanitize_string(request.resolution, 10) or "1K",
        thinking_level=sanitize_string(request.thinking_level, 20) or "high",
        person_generation=sanitize_string(request.person_generation, 20) or "allow_adult",
        temperature=clamp(_number(request.temperature, 1.0), 0, 2),
        negative_prompt=sanitize_string(request.negative_prompt, 2000),
        visual_controls=visual_controls,
        reference_images=parse_reference_images(request.reference_images),
        timeout=request.timeout,
    )


def build_image_prompt(image: ValidatedImage) -> str:
    """Fold style, aspect ratio and visual controls into the prompt text."""
    prompt = image.prompt
    if image.style and image.style != "None":
        prompt = f"{prompt}, {image.style} style"
    if image.aspect_ratio and image.aspect_ratio != "1:1":
        prompt = f"{prompt}, aspect ratio {image.aspect_ratio}"
    for name in VISUAL_CONTROLS:
        if name in image.visual_controls:
            prompt = f"{prompt}, {image.visual_controls[name]}"
    prompt = f"{prompt}, high quality, professional, detailed"
    if image.negative_prompt:
        prompt = f"{prompt}. Avoid: {image.negative_prompt}"
    return prompt
