"""Headless-browser rendering of generated markup into PNG bytes.

Browsers come from a fixed-size ``BrowserPool`` and are only ever used through
``BrowserPool.checkout()``, which returns (or evicts) the browser on every exit
path, cancellation included.
"""

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from jinja2 import Template
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from . import config
from .errors import AssetMissing, BrowserLaunchFailure, RenderFailed, RenderTimeout
from .images import fit_to_size, inspect_image, to_data_url
from .models import GeneratedMarkup, Viewport

logger = logging.getLogger(__name__)

TAILWIND_CDN = "https://cdn.tailwindcss.com"

# Text-bearing elements are forced upright regardless of what the generated CSS says.
NO_ROTATION_CSS = """
h1, h2, h3, h4, h5, h6, p, span, li, a, strong, em, b, i, label, blockquote, caption, button, figcaption, text {
  transform: none !important;
  rotate: 0deg !important;
  writing-mode: horizontal-tb !important;
}
"""

BASE_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width={{ width }}, initial-scale=1.0">
<title>Flyer</title>
{% if tailwind %}<script src="{{ tailwind_src }}"></script>{% endif %}
<style>
* { margin: 0; padding: 0; box-sizing: border-box; }
html, body {
  width: {{ width }}px;
  height: {{ height }}px;
  overflow: hidden;
  position: relative;
  font-family: 'Montserrat', 'Inter', sans-serif;
}
{% if background %}
body {
  background-image: url('{{ background }}');
  background-size: cover;
  background-position: center;
  background-repeat: no-repeat;
}
{% endif %}
#company-logo { max-width: 200px; max-height: 100px; object-fit: contain; }
.flyer-logo-fallback { position: absolute; top: 24px; left: 24px; z-index: 50; }
*, *::before, *::after { animation: none !important; transition: none !important; caret-color: transparent !important; }
</style>
<style>
{{ css }}
</style>
<style>
{{ no_rotation }}
</style>
</head>
<body>
{{ html }}
<script>
(function () {
  var pending = 0;
  window.__flyerAssetsReady = false;
  function settle() {
    pending -= 1;
    if (pending <= 0) { window.__flyerAssetsReady = true; }
  }
  function track(img) {
    if (img.complete) { return; }
    pending += 1;
    img.addEventListener('load', settle, { once: true });
    img.addEventListener('error', settle, { once: true });
  }
{% if logo %}
  var logo = document.getElementById('company-logo');
  if (!logo) {
    logo = document.createElement('img');
    logo.id = 'company-logo';
    logo.className = 'flyer-logo-fallback';
    logo.alt = 'logo';
    (document.querySelector('.flyer-container') || document.body).appendChild(logo);
  }
  if (logo.tagName === 'IMG') {
    logo.src = '{{ logo }}';
  } else {
    logo.style.backgroundImage = "url('{{ logo }}')";
    logo.style.backgroundSize = 'contain';
    logo.style.backgroundRepeat = 'no-repeat';
  }
{% endif %}
  Array.prototype.forEach.call(document.images, track);
{% if background %}
  var bg = new Image();
  pending += 1;
  bg.onload = settle;
  bg.onerror = settle;
  bg.src = '{{ background }}';
{% endif %}
  if (pending === 0) { window.__flyerAssetsReady = true; }
})();
</script>
</body>
</html>
""")


def build_document(
    markup: GeneratedMarkup,
    viewport: Viewport,
    background: Optional[bytes] = None,
    logo: Optional[bytes] = None,
    *,
    tailwind: bool = False,
) -> str:
    """Wrap generated markup in the base page. Assets are inlined as data URLs, never fetched."""
    return BASE_PAGE.render(
        width=viewport.width,
        height=viewport.height,
        tailwind=tailwind,
        tailwind_src=TAILWIND_CDN,
        background=to_data_url(background) if background else None,
        logo=to_data_url(logo) if logo else None,
        css=markup.css,
        html=markup.html,
        no_rotation=NO_ROTATION_CSS,
    )


def resolve_chromium_executable() -> Optional[str]:
    """Configured path, else a system Chromium on PATH, else Playwright's bundled build (None)."""
    if config.CHROMIUM_EXECUTABLE:
        return config.CHROMIUM_EXECUTABLE
    for name in ("chromium", "chromium-browser"):
        found = shutil.which(name)
        if found:
            return found
    return None


class BrowserPool:
    """Fixed-size pool of Chromium instances.

    Usage:
        async with pool.checkout() as browser:
            context = await browser.new_context(...)
            ...

    A browser is evicted (closed, replaced lazily) when it disconnects or when
    the work done with it raised.
    """

    def __init__(
        self,
        size: Optional[int] = None,
        *,
        launcher: Optional[Callable[[], Awaitable[Any]]] = None,
        executable_path: Optional[str] = None,
        launch_args: Optional[List[str]] = None,
    ):
        self.size = max(1, int(size or config.RENDER_CONCURRENCY))
        self._launcher = launcher
        self._executable_path = executable_path
        self._launch_args = launch_args or list(config.CHROMIUM_ARGS)
        self._idle: List[Any] = []
        self._slots = asyncio.Semaphore(self.size)
        self._lock = asyncio.Lock()
        self._playwright = None
        self._closed = False
        self.launched = 0
        self.evicted = 0

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    async def _launch(self) -> Any:
        try:
            if self._launcher is not None:
                browser = await self._launcher()
            else:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                browser = await self._playwright.chromium.launch(
                    headless=True,
                    args=self._launch_args,
                    executable_path=self._executable_path or resolve_chromium_executable(),
                )
        except Exception as e:
            logger.error(f"BrowserPool: failed to launch Chromium: {e}")
            raise BrowserLaunchFailure(f"Rendering engine could not start: {e}") from e
        self.launched += 1
        logger.info(f"BrowserPool: launched browser #{self.launched}")
        return browser

    async def _close_quietly(self, browser: Any) -> None:
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"BrowserPool: ignoring close error: {e}")

    async def acquire(self) -> Any:
        if self._closed:
            raise BrowserLaunchFailure("Browser pool is shut down")
        await self._slots.acquire()
        try:
            async with self._lock:
                while self._idle:
                    browser = self._idle.pop()
                    if browser.is_connected():
                        return browser
                    logger.warning("BrowserPool: discarding disconnected browser")
                    self.evicted += 1
                    await self._close_quietly(browser)
            return await self._launch()
        except BaseException:
            self._slots.release()
            raise

    async def release(self, browser: Any, healthy: bool = True) -> None:
        try:
            if healthy and not self._closed and browser.is_connected():
                for context in list(browser.contexts):
                    await context.close()
                async with self._lock:
                    self._idle.append(browser)
            else:
                self.evicted += 1
                logger.info("BrowserPool: evicting browser")
                await self._close_quietly(browser)
        except Exception as e:
            logger.warning(f"BrowserPool: release failed, evicting browser: {e}")
            self.evicted += 1
            await self._close_quietly(browser)
        finally:
            self._slots.release()

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[Any]:
        browser = await self.acquire()
        healthy = True
        try:
            yield browser
        except BaseException:
            healthy = False
            raise
        finally:
            await self.release(browser, healthy=healthy)

    async def warmup(self, count: int = 1) -> None:
        browsers = []
        try:
            for _ in range(min(count, self.size)):
                browsers.append(await self.acquire())
        finally:
            for browser in browsers:
                await self.release(browser)
        logger.info(f"BrowserPool warmed up with {self.idle_count} browsers")

    async def shutdown(self) -> None:
        self._closed = True
        async with self._lock:
            idle, self._idle = self._idle, []
        for browser in idle:
            await self._close_quietly(browser)
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("BrowserPool shutdown complete")


class Renderer:
    def __init__(
        self,
        pool: BrowserPool,
        *,
        render_timeout_s: Optional[float] = None,
        asset_timeout_s: Optional[float] = None,
        settle_ms: Optional[int] = None,
        tailwind: Optional[bool] = None,
    ):
        self.pool = pool
        self.render_timeout_s = render_timeout_s or config.RENDER_TIMEOUT_S
        self.asset_timeout_s = asset_timeout_s or config.ASSET_LOAD_TIMEOUT_S
        self.settle_ms = config.RENDER_SETTLE_MS if settle_ms is None else settle_ms
        self.tailwind = config.RENDER_TAILWIND_CDN if tailwind is None else tailwind

    @staticmethod
    def _check_asset(data: Optional[bytes], name: str) -> Optional[bytes]:
        if data is None:
            return None
        if inspect_image(data) is None:
            raise AssetMissing(f"{name} image is empty or not a decodable image")
        return data

    async def render(
        self,
        markup: GeneratedMarkup,
        viewport: Viewport,
        background: Optional[bytes] = None,
        logo: Optional[bytes] = None,
    ) -> bytes:
        background = self._check_asset(background, "Background")
        logo = self._check_asset(logo, "Logo")
        document = build_document(markup, viewport, background, logo, tailwind=self.tailwind)
        t0 = perf_counter()
        try:
            png = await asyncio.wait_for(self._capture(document, viewport), timeout=self.render_timeout_s)
        except asyncio.TimeoutError:
            raise RenderTimeout(f"Render exceeded {self.render_timeout_s:.0f}s")
        logger.info(f"render: captured {len(png)} bytes in {perf_counter()-t0:.2f}s")
        return fit_to_size(png, viewport.pixel_size)

    async def _capture(self, document: str, viewport: Viewport) -> bytes:
        async with self.pool.checkout() as browser:
            context = await browser.new_context(
                viewport={"width": viewport.width, "height": viewport.height},
                device_scale_factor=viewport.scale_factor,
            )
            try:
                page = await context.new_page()
                try:
                    await page.set_content(document, wait_until="load", timeout=self.render_timeout_s * 1000)
                    await page.wait_for_function(
                        "() => window.__flyerAssetsReady === true",
                        timeout=self.asset_timeout_s * 1000,
                    )
                except PlaywrightTimeoutError:
                    raise RenderTimeout("Timed out waiting for page assets to load")
                await page.evaluate("() => document.fonts ? document.fonts.ready.then(() => true) : true")
                # Let fonts apply before capturing
                await page.wait_for_timeout(self.settle_ms)
                return await page.screenshot(type="png", full_page=True, animations="disabled")
            except PlaywrightError as e:
                if isinstance(e, PlaywrightTimeoutError):
                    raise RenderTimeout(f"Render step timed out: {e}") from e
                raise RenderFailed(f"Browser error during render: {e}") from e
            finally:
                try:
                    await context.close()
                except Exception as e:
                    logger.debug(f"render: ignoring context close error: {e}")
