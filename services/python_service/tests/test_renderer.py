"""Tests for the browser pool and the renderer, driven by Playwright stand-ins."""

import asyncio
import os

import pytest

from conftest import FakeLauncher, png_bytes
from flyer_pipeline.errors import AssetMissing, BrowserLaunchFailure, RenderFailed, RenderTimeout
from flyer_pipeline.images import image_size
from flyer_pipeline.models import AspectRatio, GeneratedMarkup, Viewport
from flyer_pipeline.renderer import NO_ROTATION_CSS, BrowserPool, Renderer, build_document

MARKUP = GeneratedMarkup(html='<div class="flyer-container"><h1>Sale</h1></div>', css="h1 { rotate: 15deg; }")


def _renderer(launcher, size=1, **kwargs) -> Renderer:
    opts = {"render_timeout_s": 5, "asset_timeout_s": 1, "settle_ms": 0, "tailwind": False}
    opts.update(kwargs)
    return Renderer(BrowserPool(size, launcher=launcher), **opts)


class TestBuildDocument:

    def test_no_rotation_rule_follows_generated_css(self):
        doc = build_document(MARKUP, Viewport(width=100, height=100))
        assert doc.index("rotate: 15deg") < doc.index(NO_ROTATION_CSS.strip()[:20])

    def test_assets_are_inlined(self):
        doc = build_document(MARKUP, Viewport(width=100, height=100), background=png_bytes(), logo=png_bytes())
        assert "url('data:image/png;base64," in doc
        assert "company-logo" in doc
        assert "http://" not in doc.replace("http://www.w3.org", "")

    def test_asset_counter_settles_on_error(self):
        doc = build_document(MARKUP, Viewport(width=100, height=100), background=png_bytes())
        assert "addEventListener('error', settle" in doc
        assert "bg.onerror = settle" in doc

    def test_tailwind_is_optional(self):
        assert "cdn.tailwindcss.com" not in build_document(MARKUP, Viewport(width=10, height=10))
        assert "cdn.tailwindcss.com" in build_document(MARKUP, Viewport(width=10, height=10), tailwind=True)


class TestRenderer:

    def test_output_matches_viewport_pixels(self):
        renderer = _renderer(FakeLauncher())
        vp = Viewport.for_aspect_ratio(AspectRatio.SQUARE, 2)
        png = asyncio.run(renderer.render(MARKUP, vp))
        assert image_size(png) == (2160, 2160)

    def test_overflowing_screenshot_is_cropped(self):
        launcher = FakeLauncher(configure=lambda b: setattr(b, "extra_height", 37))
        renderer = _renderer(launcher)
        vp = Viewport(width=300, height=200, scale_factor=1)
        png = asyncio.run(renderer.render(MARKUP, vp))
        assert image_size(png) == (300, 200)

    def test_context_uses_deterministic_viewport(self):
        launcher = FakeLauncher()
        renderer = _renderer(launcher)
        asyncio.run(renderer.render(MARKUP, Viewport(width=320, height=50, scale_factor=2)))
        ctx = launcher.browsers[0].opened_contexts[0]
        assert ctx.viewport == {"width": 320, "height": 50}
        assert ctx.device_scale_factor == 2
        assert ctx.closed

    def test_undecodable_asset_is_rejected_before_checkout(self):
        launcher = FakeLauncher()
        renderer = _renderer(launcher)
        with pytest.raises(AssetMissing):
            asyncio.run(renderer.render(MARKUP, Viewport(width=10, height=10), background=b"not an image"))
        assert launcher.browsers == []

    def test_hanging_assets_time_out(self):
        renderer = _renderer(FakeLauncher(configure=lambda b: setattr(b, "assets_hang", True)))
        with pytest.raises(RenderTimeout):
            asyncio.run(renderer.render(MARKUP, Viewport(width=10, height=10)))

    def test_overall_render_timeout(self):
        launcher = FakeLauncher(configure=lambda b: setattr(b, "screenshot_delay", 1.0))
        renderer = _renderer(launcher, render_timeout_s=0.05)
        with pytest.raises(RenderTimeout):
            asyncio.run(renderer.render(MARKUP, Viewport(width=10, height=10)))

    def test_browser_crash_is_render_failed_and_evicts(self):
        launcher = FakeLauncher(configure=lambda b: setattr(b, "crash_on_content", True))
        renderer = _renderer(launcher)
        with pytest.raises(RenderFailed):
            asyncio.run(renderer.render(MARKUP, Viewport(width=10, height=10)))
        assert renderer.pool.evicted == 1
        assert launcher.browsers[0].closed

    def test_same_inputs_give_identical_pages_and_output(self):
        launcher = FakeLauncher()
        renderer = _renderer(launcher, size=2)
        vp = Viewport(width=240, height=120, scale_factor=2)
        bg, logo = png_bytes(20, 20), png_bytes(8, 8, (0, 0, 0))

        async def run():
            return await asyncio.gather(*(renderer.render(MARKUP, vp, bg, logo) for _ in range(2)))

        first, second = asyncio.run(run())
        assert first == second
        contexts = [c for b in launcher.browsers for c in b.opened_contexts]
        assert len(contexts) == 2
        assert {(c.viewport["width"], c.viewport["height"], c.device_scale_factor) for c in contexts} == {(240, 120, 2)}
        pages = [c.pages[0].content for c in contexts]
        assert pages[0] == pages[1] == build_document(MARKUP, vp, bg, logo)


class TestBrowserPool:

    def test_browsers_are_reused(self):
        launcher = FakeLauncher()
        renderer = _renderer(launcher)

        async def run():
            for _ in range(3):
                await renderer.render(MARKUP, Viewport(width=10, height=10))

        asyncio.run(run())
        assert len(launcher.browsers) == 1
        assert renderer.pool.idle_count == 1

    def test_launch_failure(self):
        pool = BrowserPool(1, launcher=FakeLauncher(fail=True))

        async def run():
            async with pool.checkout():
                pass

        with pytest.raises(BrowserLaunchFailure):
            asyncio.run(run())

    def test_release_on_cancellation(self):
        launcher = FakeLauncher()
        pool = BrowserPool(1, launcher=launcher)

        async def run():
            async def hold():
                async with pool.checkout():
                    await asyncio.sleep(10)

            task = asyncio.create_task(hold())
            await asyncio.sleep(0.01)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            # The single slot must be free again
            async with pool.checkout() as browser:
                return browser

        browser = asyncio.run(run())
        assert pool.evicted == 1
        assert browser is launcher.browsers[1]

    def test_disconnected_browser_is_replaced(self):
        launcher = FakeLauncher()
        pool = BrowserPool(1, launcher=launcher)

        async def run():
            async with pool.checkout() as first:
                pass
            first.connected = False
            async with pool.checkout() as second:
                return first, second

        first, second = asyncio.run(run())
        assert first is not second
        assert pool.evicted == 1

    def test_pool_size_bounds_concurrency(self):
        launcher = FakeLauncher()
        pool = BrowserPool(2, launcher=launcher)
        active = {"now": 0, "max": 0}

        async def use():
            async with pool.checkout():
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
                await asyncio.sleep(0.01)
                active["now"] -= 1

        async def run():
            await asyncio.gather(*(use() for _ in range(6)))

        asyncio.run(run())
        assert active["max"] == 2
        assert len(launcher.browsers) == 2

    def test_shutdown_closes_idle(self):
        launcher = FakeLauncher()
        pool = BrowserPool(2, launcher=launcher)

        async def run():
            await pool.warmup(2)
            await pool.shutdown()

        asyncio.run(run())
        assert len(launcher.browsers) == 2
        assert all(b.closed for b in launcher.browsers)
        assert pool.idle_count == 0


@pytest.mark.skipif(os.getenv("RUN_BROWSER_TESTS") != "1", reason="set RUN_BROWSER_TESTS=1 to render with Chromium")
class TestRealChromium:

    def test_same_markup_renders_identically(self):
        pytest.importorskip("playwright")
        markup = GeneratedMarkup(
            html='<div class="flyer-container" style="width:200px;height:200px;background:#123456">'
                 '<h1 style="color:#fff;font-family:sans-serif">Hello</h1></div>',
        )

        async def run():
            renderer = Renderer(BrowserPool(1), settle_ms=0, tailwind=False)
            try:
                vp = Viewport(width=200, height=200, scale_factor=2)
                return [await renderer.render(markup, vp) for _ in range(2)]
            finally:
                await renderer.pool.shutdown()

        first, second = asyncio.run(run())
        assert image_size(first) == (400, 400)
        assert first == second
