"""Optional AI background image generation, billed separately from the batch."""

import asyncio
import logging
from typing import Optional, Sequence
from urllib.parse import urlsplit

import httpx
from openai import AsyncOpenAI

from . import config
from .content import classify_provider_error
from .errors import PipelineError, ProviderError
from .images import decode_data_url, inspect_image
from .models import AspectRatio, Viewport

logger = logging.getLogger(__name__)

# Size hints accepted from clients, mapped onto sizes the image model supports
SIZE_HINTS = {
    "square_hd": "1024x1024",
    "square": "1024x1024",
    "portrait_4_3": "1024x1536",
    "portrait_16_9": "1024x1536",
    "landscape_4_3": "1536x1024",
    "landscape_16_9": "1536x1024",
}
DEFAULT_SIZE_HINT = "landscape_4_3"


def size_hint_for(aspect_ratio: AspectRatio) -> str:
    vp = Viewport.for_aspect_ratio(aspect_ratio)
    if vp.width == vp.height:
        return "square_hd"
    if vp.width > vp.height:
        return "landscape_16_9" if vp.width / vp.height >= 1.6 else "landscape_4_3"
    return "portrait_16_9" if vp.height / vp.width >= 1.6 else "portrait_4_3"


def is_allowed_background_url(url: str, hosts: Optional[Sequence[str]] = None) -> bool:
    """data: URLs, or https URLs on one of the configured image hosts. Nothing else is fetched."""
    if url.startswith("data:"):
        return True
    allowed = config.BACKGROUND_URL_HOSTS if hosts is None else hosts
    parts = urlsplit(url)
    return parts.scheme == "https" and (parts.hostname or "").lower() in {h.lower() for h in allowed}


class BackgroundImageService:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ):
        if client is None and config.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        self._client = client
        self.model = model or config.BACKGROUND_IMAGE_MODEL
        self.timeout_s = timeout_s or config.BACKGROUND_TIMEOUT_S

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def generate(self, prompt: str, size_hint: Optional[str] = None) -> str:
        """Generate one image and return its URL (a data: URL when the model answers in base64)."""
        if self._client is None:
            raise ProviderError("OpenAI client not configured")
        size = SIZE_HINTS.get(size_hint or DEFAULT_SIZE_HINT, SIZE_HINTS[DEFAULT_SIZE_HINT])
        logger.info(f"background: generating with model={self.model} size={size}")
        try:
            resp = await asyncio.wait_for(
                self._client.images.generate(model=self.model, prompt=prompt, size=size, n=1),
                timeout=self.timeout_s,
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        if not resp.data:
            raise ProviderError("Image generation returned no images")
        first = resp.data[0]
        b64 = getattr(first, "b64_json", None)
        if b64:
            return f"data:image/png;base64,{b64}"
        url = getattr(first, "url", None)
        if url:
            return url
        raise ProviderError("Image generation returned neither b64_json nor url")

    async def fetch(self, url: str) -> bytes:
        """Resolve a generated image URL to bytes so the renderer can inline it."""
        raw = decode_data_url(url)
        if raw is None:
            try:
                async with httpx.AsyncClient(timeout=self.timeout_s) as h:
                    r = await h.get(url)
                    r.raise_for_status()
                    raw = r.content
            except httpx.HTTPError as e:
                raise ProviderError(f"Background download failed: {e}") from e
        if inspect_image(raw) is None:
            raise ProviderError("Background image is not a decodable image")
        return raw

    async def generate_bytes(self, prompt: str, size_hint: Optional[str] = None) -> bytes:
        url = await self.generate(prompt, size_hint)
        try:
            return await self.fetch(url)
        except PipelineError:
            raise
        except Exception as e:
            raise ProviderError(str(e)) from e
