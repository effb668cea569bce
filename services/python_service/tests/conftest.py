"""Shared fakes: no network, no Chromium."""

import asyncio
import io
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from flyer_pipeline.content import ContentGenerator
from flyer_pipeline.models import GeneratedMarkup, Viewport


def png_bytes(width: int = 64, height: int = 64, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


GOOD_RESPONSE = json.dumps({
    "htmlContent": '<div class="flyer-container"><h1>Fresh Coffee</h1></div>',
    "cssStyles": "h1 { color: #222; }",
})


class FakeProvider:
    """Stands in for LLMProvider. ``failures`` maps a substring of the prompt to an exception."""

    def __init__(self, text: str = GOOD_RESPONSE, failures: Optional[Dict[str, Exception]] = None,
                 delay: float = 0.0):
        self.text = text
        self.failures = failures or {}
        self.delay = delay
        self.calls: List[List[Dict[str, Any]]] = []
        self.active = 0
        self.max_active = 0
        self.configured = True

    async def complete(self, system: str, content: List[Dict[str, Any]]) -> str:
        self.calls.append(content)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            prompt = content[0]["text"]
            for needle, exc in self.failures.items():
                if needle in prompt:
                    raise exc
            return self.text
        finally:
            self.active -= 1


class FakeRenderer:
    """Produces a solid PNG of the viewport's pixel size."""

    def __init__(self, delay: float = 0.0, fail_with: Optional[Callable[[int], Optional[Exception]]] = None):
        self.delay = delay
        self.fail_with = fail_with
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def render(self, markup: GeneratedMarkup, viewport: Viewport,
                     background: Optional[bytes] = None, logo: Optional[bytes] = None) -> bytes:
        n = len(self.calls)
        self.calls.append({"markup": markup, "viewport": viewport, "background": background, "logo": logo})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                exc = self.fail_with(n)
                if exc is not None:
                    raise exc
            w, h = viewport.pixel_size
            return png_bytes(w, h)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


class FakeBackgrounds:
    def __init__(self, image: Optional[bytes] = None, error: Optional[Exception] = None):
        self.image = image if image is not None else png_bytes(32, 32, (10, 120, 200))
        self.error = error
        self.generated = 0
        self.fetched: List[str] = []
        self.configured = True

    async def generate(self, prompt: str, size_hint: Optional[str] = None) -> str:
        if self.error is not None:
            raise self.error
        self.generated += 1
        return "https://images.example.test/bg.png"

    async def fetch(self, url: str) -> bytes:
        self.fetched.append(url)
        return self.image

    async def generate_bytes(self, prompt: str, size_hint: Optional[str] = None) -> bytes:
        return await self.fetch(await self.generate(prompt, size_hint))


# Playwright stand-ins for BrowserPool / Renderer tests

class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.content = None

    async def set_content(self, html: str, wait_until: str = "load", timeout: float = 0):
        if self.context.browser.crash_on_content:
            raise PlaywrightError("Target page, context or browser has been closed")
        self.content = html

    async def wait_for_function(self, expression: str, timeout: float = 0):
        if self.context.browser.assets_hang:
            raise PlaywrightTimeoutError("Timeout exceeded")
        return True

    async def evaluate(self, expression: str):
        return True

    async def wait_for_timeout(self, ms: float):
        await asyncio.sleep(0)

    async def screenshot(self, type: str = "png", full_page: bool = True, animations: str = "disabled") -> bytes:
        if self.context.browser.screenshot_delay:
            await asyncio.sleep(self.context.browser.screenshot_delay)
        vp = self.context.viewport
        scale = self.context.device_scale_factor
        w = round(vp["width"] * scale)
        h = round(vp["height"] * scale) + self.context.browser.extra_height
        return png_bytes(w, h, (240, 240, 240))


class FakeContext:
    def __init__(self, browser: "FakeBrowser", viewport: Dict[str, int], device_scale_factor: float):
        self.browser = browser
        self.viewport = viewport
        self.device_scale_factor = device_scale_factor
        self.closed = False
        self.pages: List[FakePage] = []

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True
        if self in self.browser.contexts:
            self.browser.contexts.remove(self)


class FakeBrowser:
    def __init__(self, number: int):
        self.number = number
        self.connected = True
        self.closed = False
        self.contexts: List[FakeContext] = []
        self.opened_contexts: List[FakeContext] = []
        self.crash_on_content = False
        self.assets_hang = False
        self.screenshot_delay = 0.0
        self.extra_height = 0

    def is_connected(self) -> bool:
        return self.connected and not self.closed

    async def new_context(self, viewport: Dict[str, int], device_scale_factor: float) -> FakeContext:
        ctx = FakeContext(self, viewport, device_scale_factor)
        self.contexts.append(ctx)
        self.opened_contexts.append(ctx)
        return ctx

    async def close(self):
        self.closed = True


class FakeLauncher:
    def __init__(self, fail: bool = False, configure: Optional[Callable[[FakeBrowser], None]] = None):
        self.fail = fail
        self.configure = configure
        self.browsers: List[FakeBrowser] = []

    async def __call__(self) -> FakeBrowser:
        if self.fail:
            raise RuntimeError("Executable doesn't exist at /ms-playwright/chromium")
        browser = FakeBrowser(len(self.browsers) + 1)
        if self.configure is not None:
            self.configure(browser)
        self.browsers.append(browser)
        return browser


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def generator(provider) -> ContentGenerator:
    return ContentGenerator(provider)
