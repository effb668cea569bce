"""Prompt composition. Pure functions only: no I/O, no provider calls."""

from typing import List, Optional

from . import config
from .errors import InvalidRequest
from .models import (
    ASPECT_RATIO_FORMATS,
    QUALITY_TIER_VARIANTS,
    AspectRatio,
    BrandAttributes,
    ComposedPrompt,
    QualityTier,
    TemplateDescriptor,
)

DESIGNER_PREAMBLE = (
    "You are an award-winning, highly skilled graphic design expert. You create stunning, modern and "
    "engaging visual designs with a professional polish: excellent typography, harmonious color schemes "
    "and clear visual hierarchy. Every design is on-brand, sophisticated and built to drive engagement."
)

DESIGN_RULES = (
    "Design requirements:\n"
    "- Build the design as HTML with CSS (Tailwind utility classes are available).\n"
    "- Keep ALL text horizontal. Never rotate, skew or transform text.\n"
    "- Do not include interactive controls (forms, inputs, buttons that do nothing, links).\n"
    "- All content must be visible without scrolling and fit the canvas exactly.\n"
    "- Apply max-width constraints and padding so text never touches or overflows the edges."
)

QUALITY_INSTRUCTIONS = {
    QualityTier.BASIC: "",
    QualityTier.PREMIUM: "Create a high quality professional design with attention to detail.",
    QualityTier.ELITE: "Create a premium quality design with sophisticated styling and perfect proportions.",
    QualityTier.ULTIMATE: (
        "Create an ultra-high quality design with immaculate attention to detail, "
        "sophisticated styling and perfect balance."
    ),
}

STYLE_VARIATIONS = [
    "bold, high-contrast",
    "minimal, elegant",
    "creative, artistic",
    "professional, corporate",
]


def resolve_variant_count(quality_tier: QualityTier, requested_count: Optional[int] = None,
                          max_designs: Optional[int] = None) -> int:
    limit = max(1, int(max_designs if max_designs is not None else config.MAX_DESIGNS))
    count = QUALITY_TIER_VARIANTS[quality_tier] if requested_count is None else int(requested_count)
    return max(1, min(limit, count))


def _template_block(template: TemplateDescriptor) -> str:
    lines = [
        f"SELECTED TEMPLATE: {template.name} ({template.category})",
        f"Template description: {template.description}" if template.description else "",
        f"Key features: {', '.join(template.tags)}" if template.tags else "",
        "IMPORTANT: Use glass morphism effects with transparency and blur in your design."
        if template.glass_morphism else "",
        "IMPORTANT: Include subtle neon glowing elements where appropriate in your design."
        if template.neon_effects else "",
        "Design this as an advertisement or visual content, NOT as a website.",
    ]
    return "\n".join(line for line in lines if line)


def _aspect_ratio_block(aspect_ratio: AspectRatio) -> str:
    width, height, description = ASPECT_RATIO_FORMATS[aspect_ratio]
    return (
        f"EXTREMELY IMPORTANT: This design is for the {description}.\n"
        "Your design MUST precisely fit this exact aspect ratio without any overflow or extra space.\n"
        "Wrap the whole design in a single parent container with these fixed dimensions:\n"
        f'<div class="flyer-container" style="width: {width}px; height: {height}px; overflow: hidden;">'
        "...</div>"
    )


def _brand_block(brand: BrandAttributes) -> List[str]:
    parts: List[str] = []
    colors = brand.colors()
    if colors:
        joined = ", ".join(f"{role} color {value}" for role, value in colors.items())
        parts.append(f"Use these brand colors: {joined}.")
    fonts = []
    if brand.heading_font:
        fonts.append(f"heading font '{brand.heading_font}'")
    if brand.body_font:
        fonts.append(f"body font '{brand.body_font}'")
    if fonts:
        parts.append(f"Use these brand fonts: {', '.join(fonts)}.")
    if brand.voice:
        parts.append(f"Brand voice: {brand.voice.strip()}.")
    return parts


def compose(
    brief: str,
    brand: Optional[BrandAttributes] = None,
    template: Optional[TemplateDescriptor] = None,
    quality_tier: QualityTier = QualityTier.BASIC,
    *,
    aspect_ratio: Optional[AspectRatio] = None,
    requested_count: Optional[int] = None,
    max_designs: Optional[int] = None,
) -> ComposedPrompt:
    """Merge the brief, brand, template and tier into the final instruction text.

    Raises InvalidRequest when there is neither a brief nor a template.
    """
    brief = (brief or "").strip()
    if not brief and template is None:
        raise InvalidRequest("Prompt is required")
    if not brief:
        brief = template.description.strip() or f"A {template.category} design in the style of '{template.name}'"

    sections: List[str] = [DESIGNER_PREAMBLE]
    if template is not None:
        sections.append(_template_block(template))
    sections.append(f'Create an EXCEPTIONAL, PROFESSIONAL-GRADE GRAPHIC DESIGN for the following brief:\n"{brief}"')
    if aspect_ratio is not None:
        sections.append(_aspect_ratio_block(aspect_ratio))
    sections.append(DESIGN_RULES)

    directives: List[str] = []
    quality = QUALITY_INSTRUCTIONS[quality_tier]
    if quality:
        directives.append(quality)
    if brand is not None:
        directives.extend(_brand_block(brand))
    if directives:
        sections.append(" ".join(directives))

    return ComposedPrompt(
        text="\n\n".join(sections),
        variant_count=resolve_variant_count(quality_tier, requested_count, max_designs),
    )


def style_for_slot(index: int) -> str:
    return STYLE_VARIATIONS[index % len(STYLE_VARIATIONS)]


def variant_prompt(base: str, style: str) -> str:
    return f"{base}\n\nRender this variation with a {style} style."


def background_prompt(brief: str, brand: Optional[BrandAttributes] = None) -> str:
    """Prompt for the optional AI background image. Text is added later by the layout."""
    text = (
        f"A high quality background image for a flyer about: {brief.strip()}. "
        "Leave generous clean space for headline text. "
        "No text, no lettering, no logos, no watermarks."
    )
    if brand is not None and brand.colors():
        text += f" Color palette: {', '.join(brand.colors().values())}."
    return text
