"""Text prompt enrichment from structured generation hints."""

from __future__ import annotations

from typing import List, Optional

from .models import GenerationOptions

QUALITY_DESCRIPTIONS = {
    "low": "simple design",
    "medium": "balanced detail",
    "high": "highly detailed, professional quality",
}

TEXTURE_HINT = "with realistic textures and surface details"


def _format_measure(value: float) -> str:
    return f"{value:g}cm"


def prompt_hints(options: Optional[GenerationOptions]) -> List[str]:
    if options is None:
        return []

    hints: List[str] = []
    dimensions = []
    if options.width:
        dimensions.append(f"width {_format_measure(options.width)}")
    if options.height:
        dimensions.append(f"height {_format_measure(options.height)}")
    if options.depth:
        dimensions.append(f"depth {_format_measure(options.depth)}")
    if dimensions:
        hints.append(f"dimensions: {', '.join(dimensions)}")

    if options.material:
        hints.append(f"material: {options.material}")
    if options.color:
        hints.append(f"color: {options.color}")
    if options.style:
        hints.append(f"style: {options.style}")

    quality = QUALITY_DESCRIPTIONS.get((options.quality or "").lower())
    if quality:
        hints.append(quality)

    if options.texture:
        hints.append(TEXTURE_HINT)
    return hints


def enhance_prompt(prompt: str, options: Optional[GenerationOptions] = None) -> str:
    """
    Append hints as a trailing clause.

    Returns the prompt untouched when no hint applies.
    """
    hints = prompt_hints(options)
    if not hints:
        return prompt
    return f"{prompt}. {', '.join(hints)}."
