import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .errors import FailureKind
from .images import normalize_hex_color


class AspectRatio(str, Enum):
    # Square formats
    SQUARE = "square"
    ORIGINAL = "original"
    PROFILE = "profile"
    POST = "post"
    SQUARE_AD = "square_ad"
    # Landscape formats
    FB_COVER = "fb_cover"
    TWITTER_HEADER = "twitter_header"
    YT_THUMBNAIL = "yt_thumbnail"
    LINKEDIN_BANNER = "linkedin_banner"
    INSTREAM = "instream"
    # Portrait formats
    STORIES = "stories"
    PINTEREST = "pinterest"
    # Display ad formats
    LEADERBOARD = "leaderboard"
    SKYSCRAPER = "skyscraper"


# (width, height, description used in the generation prompt)
ASPECT_RATIO_FORMATS: Dict[AspectRatio, Tuple[int, int, str]] = {
    AspectRatio.SQUARE: (1080, 1080, "SQUARE (1:1) format (1080×1080 pixels)"),
    AspectRatio.ORIGINAL: (1080, 1080, "SQUARE (1:1) format (1080×1080 pixels)"),
    AspectRatio.PROFILE: (1080, 1080, "SQUARE (1:1) format for Instagram Profile (1080×1080 pixels)"),
    AspectRatio.POST: (1200, 1200, "SQUARE (1:1) format for Social Media Posts (1200×1200 pixels)"),
    AspectRatio.SQUARE_AD: (250, 250, "SQUARE (1:1) format for a small Square Ad (250×250 pixels)"),
    AspectRatio.FB_COVER: (820, 312, "WIDE RECTANGULAR format for Facebook Cover (820×312 pixels)"),
    AspectRatio.TWITTER_HEADER: (1500, 500, "WIDE RECTANGULAR format for Twitter Header (1500×500 pixels)"),
    AspectRatio.YT_THUMBNAIL: (1280, 720, "LANDSCAPE format for YouTube Thumbnail (1280×720 pixels, 16:9 ratio)"),
    AspectRatio.LINKEDIN_BANNER: (1584, 396, "VERY WIDE format for LinkedIn Banner (1584×396 pixels, 4:1 ratio)"),
    AspectRatio.INSTREAM: (1920, 1080, "LANDSCAPE format for Video Ads (1920×1080 pixels, 16:9 ratio)"),
    AspectRatio.STORIES: (1080, 1920, "VERTICAL format for Instagram Stories (1080×1920 pixels, 9:16 ratio)"),
    AspectRatio.PINTEREST: (1000, 1500, "VERTICAL format for Pinterest Pins (1000×1500 pixels, 2:3 ratio)"),
    AspectRatio.LEADERBOARD: (728, 90, "VERY WIDE format for a Leaderboard Ad (728×90 pixels)"),
    AspectRatio.SKYSCRAPER: (160, 600, "TALL NARROW format for a Skyscraper Ad (160×600 pixels)"),
}


class Viewport(BaseModel):
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    scale_factor: float = Field(2.0, gt=0)

    model_config = {"frozen": True}

    @classmethod
    def for_aspect_ratio(cls, aspect_ratio: AspectRatio, scale_factor: float = 2.0) -> "Viewport":
        width, height, _ = ASPECT_RATIO_FORMATS[aspect_ratio]
        return cls(width=width, height=height, scale_factor=scale_factor)

    @property
    def pixel_size(self) -> Tuple[int, int]:
        return round(self.width * self.scale_factor), round(self.height * self.scale_factor)


class QualityTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    ELITE = "elite"
    ULTIMATE = "ultimate"


QUALITY_TIER_VARIANTS: Dict[QualityTier, int] = {
    QualityTier.BASIC: 1,
    QualityTier.PREMIUM: 4,
    QualityTier.ELITE: 8,
    QualityTier.ULTIMATE: 16,
}


class BrandAttributes(BaseModel):
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    accent_color: Optional[str] = None
    heading_font: Optional[str] = None
    body_font: Optional[str] = None
    voice: Optional[str] = None

    @field_validator("primary_color", "secondary_color", "accent_color")
    @classmethod
    def _hex(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        normalized = normalize_hex_color(v)
        if normalized is None:
            raise ValueError(f"Invalid hex color: {v!r}")
        return normalized

    def colors(self) -> Dict[str, str]:
        return {
            k: v for k, v in (
                ("primary", self.primary_color),
                ("secondary", self.secondary_color),
                ("accent", self.accent_color),
            ) if v
        }


class TemplateDescriptor(BaseModel):
    id: Optional[str] = None
    name: str
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    description: str = ""
    glass_morphism: bool = False
    neon_effects: bool = False


class ComposedPrompt(BaseModel):
    text: str
    variant_count: int


class GenerationRequest(BaseModel):
    brief: str = ""
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    requested_count: Optional[int] = None
    quality_tier: QualityTier = QualityTier.BASIC
    background_image: Optional[bytes] = None
    background_url: Optional[str] = None
    logo: Optional[bytes] = None
    brand: Optional[BrandAttributes] = None
    template: Optional[TemplateDescriptor] = None
    carousel_images: List[bytes] = Field(default_factory=list)
    generate_ai_background: bool = False


class GeneratedMarkup(BaseModel):
    html: str
    css: str = ""
    strategy: str = ""


class VariantState(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    RENDERING = "rendering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS = {
    VariantState.PENDING: {VariantState.GENERATING, VariantState.FAILED},
    VariantState.GENERATING: {VariantState.RENDERING, VariantState.FAILED},
    VariantState.RENDERING: {VariantState.SUCCEEDED, VariantState.FAILED},
    VariantState.SUCCEEDED: set(),
    VariantState.FAILED: set(),
}


class DesignVariant(BaseModel):
    """One slot of a batch. Moves Pending → Generating → Rendering → Succeeded,
    or to Failed from any non-terminal state. Terminal states never change."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    index: int
    style: str
    state: VariantState = VariantState.PENDING
    image: Optional[bytes] = None
    markup: Optional[GeneratedMarkup] = None
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (VariantState.SUCCEEDED, VariantState.FAILED)

    def _advance(self, state: VariantState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Variant {self.id}: illegal transition {self.state.value} -> {state.value}")
        self.state = state

    def start_generating(self) -> None:
        self._advance(VariantState.GENERATING)

    def start_rendering(self, markup: GeneratedMarkup) -> None:
        self._advance(VariantState.RENDERING)
        self.markup = markup

    def succeed(self, image: bytes) -> None:
        self._advance(VariantState.SUCCEEDED)
        self.image = image

    def fail(self, kind: FailureKind, error: str = "") -> None:
        self._advance(VariantState.FAILED)
        self.failure_kind = kind
        self.error = error


class GenerationBatch(BaseModel):
    requested: int
    variants: List[DesignVariant] = Field(default_factory=list)
    background_used: bool = False
    elapsed_s: float = 0.0

    @property
    def succeeded(self) -> List[DesignVariant]:
        return [v for v in self.variants if v.state == VariantState.SUCCEEDED]

    @property
    def failed(self) -> List[DesignVariant]:
        return [v for v in self.variants if v.state == VariantState.FAILED]

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def preview(self) -> Optional[DesignVariant]:
        """First successful variant, shown immediately to the user."""
        ok = self.succeeded
        return ok[0] if ok else None


class TransactionType(str, Enum):
    INITIAL = "initial"
    ADD = "add"
    SUBTRACT = "subtract"


class CreditTransaction(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    amount: int  # signed: grants positive, debits negative
    type: TransactionType
    description: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}
