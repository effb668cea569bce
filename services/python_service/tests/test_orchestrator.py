"""Tests for batch fan-out: counts, isolation, concurrency ceilings, backgrounds and timeouts."""

import asyncio

import pytest

from conftest import FakeBackgrounds, FakeProvider, FakeRenderer, png_bytes
from flyer_pipeline.content import ContentGenerator
from flyer_pipeline.errors import (
    AllVariantsFailed,
    BrowserLaunchFailure,
    FailureKind,
    ProviderError,
    QuotaExceeded,
    RequestTimeout,
)
from flyer_pipeline.models import AspectRatio, ComposedPrompt, GenerationRequest, VariantState
from flyer_pipeline.orchestrator import VariationOrchestrator


def _orchestrator(provider=None, renderer=None, backgrounds=None, **kwargs):
    opts = {"llm_concurrency": 4, "render_concurrency": 2, "request_timeout_s": 5, "max_designs": 16,
            "scale_factor": 1}
    opts.update(kwargs)
    return VariationOrchestrator(
        ContentGenerator(provider or FakeProvider()),
        renderer or FakeRenderer(),
        backgrounds,
        **opts,
    )


def _composed(n: int) -> ComposedPrompt:
    return ComposedPrompt(text="Create a flyer for a coffee shop", variant_count=n)


class TestBatchCounts:

    @pytest.mark.parametrize("n", [1, 4, 16])
    def test_every_slot_reaches_a_terminal_state(self, n):
        batch = asyncio.run(_orchestrator().generate_batch(GenerationRequest(brief="x"), _composed(n)))
        assert batch.requested == n
        assert batch.succeeded_count + batch.failed_count == n
        assert all(v.is_terminal for v in batch.variants)
        assert len({v.id for v in batch.variants}) == n

    def test_preview_is_first_success(self):
        batch = asyncio.run(_orchestrator().generate_batch(GenerationRequest(brief="x"), _composed(3)))
        assert batch.preview is batch.variants[0]

    def test_images_match_aspect_ratio(self):
        request = GenerationRequest(brief="x", aspect_ratio=AspectRatio.FB_COVER)
        renderer = FakeRenderer()
        asyncio.run(_orchestrator(renderer=renderer).generate_batch(request, _composed(2)))
        assert {c["viewport"].pixel_size for c in renderer.calls} == {(820, 312)}


class TestFailureIsolation:

    def test_quota_on_second_slot_leaves_others_intact(self):
        # Slot index 1 gets the "minimal, elegant" style
        provider = FakeProvider(failures={"minimal, elegant": QuotaExceeded("limit")})
        batch = asyncio.run(_orchestrator(provider).generate_batch(GenerationRequest(brief="x"), _composed(4)))
        assert batch.succeeded_count == 3
        assert [v.index for v in batch.failed] == [1]
        assert batch.failed[0].failure_kind == FailureKind.QUOTA_EXCEEDED
        assert all(v.image for v in batch.succeeded)

    def test_no_retries(self):
        provider = FakeProvider(failures={"bold, high-contrast": ProviderError("boom")})
        asyncio.run(_orchestrator(provider).generate_batch(GenerationRequest(brief="x"), _composed(4)))
        assert len(provider.calls) == 4

    def test_all_quota_raises_quota_exceeded(self):
        provider = FakeProvider(failures={"coffee shop": QuotaExceeded("limit")})
        with pytest.raises(QuotaExceeded):
            asyncio.run(_orchestrator(provider).generate_batch(GenerationRequest(brief="x"), _composed(3)))

    def test_all_failed_carries_batch(self):
        provider = FakeProvider(text="no markup at all")
        with pytest.raises(AllVariantsFailed) as info:
            asyncio.run(_orchestrator(provider).generate_batch(GenerationRequest(brief="x"), _composed(2)))
        batch = info.value.batch
        assert batch.failed_count == 2
        assert {v.failure_kind for v in batch.failed} == {FailureKind.MALFORMED_RESPONSE}
        assert len(info.value.details["failures"]) == 2

    def test_unexpected_error_becomes_provider_error(self):
        renderer = FakeRenderer(fail_with=lambda n: RuntimeError("kaput") if n == 0 else None)
        batch = asyncio.run(
            _orchestrator(renderer=renderer).generate_batch(GenerationRequest(brief="x"), _composed(2))
        )
        assert batch.succeeded_count == 1
        assert batch.failed[0].failure_kind == FailureKind.PROVIDER_ERROR
        assert batch.failed[0].state == VariantState.FAILED

    def test_browser_launch_failure_is_fatal(self):
        renderer = FakeRenderer(
            delay=0.05, fail_with=lambda n: BrowserLaunchFailure("no chromium") if n == 0 else None
        )
        with pytest.raises(BrowserLaunchFailure):
            asyncio.run(
                _orchestrator(renderer=renderer, render_concurrency=4).generate_batch(
                    GenerationRequest(brief="x"), _composed(4)
                )
            )
        assert renderer.active == 0


class TestConcurrency:

    def test_ceilings_are_respected(self):
        provider = FakeProvider(delay=0.01)
        renderer = FakeRenderer(delay=0.01)
        orch = _orchestrator(provider, renderer, llm_concurrency=2, render_concurrency=1)
        asyncio.run(orch.generate_batch(GenerationRequest(brief="x"), _composed(8)))
        assert provider.max_active <= 2
        assert renderer.max_active == 1


class TestBackgrounds:

    def test_ai_background_failure_falls_back(self):
        billed = []

        async def bill():
            billed.append(1)

        renderer = FakeRenderer()
        orch = _orchestrator(renderer=renderer, backgrounds=FakeBackgrounds(error=ProviderError("down")))
        request = GenerationRequest(brief="x", generate_ai_background=True)
        batch = asyncio.run(orch.generate_batch(request, _composed(2), bill_background=bill))
        assert batch.succeeded_count == 2
        assert batch.background_used is False
        assert all(c["background"] is None for c in renderer.calls)
        assert billed == []

    def test_ai_background_is_used_and_billed_once(self):
        billed = []

        async def bill():
            billed.append(1)

        backgrounds = FakeBackgrounds()
        renderer = FakeRenderer()
        orch = _orchestrator(renderer=renderer, backgrounds=backgrounds)
        request = GenerationRequest(brief="x", generate_ai_background=True)
        batch = asyncio.run(orch.generate_batch(request, _composed(3), bill_background=bill))
        assert batch.background_used is True
        assert billed == [1]
        assert all(c["background"] == backgrounds.image for c in renderer.calls)

    def test_uploaded_background_wins(self):
        backgrounds = FakeBackgrounds()
        uploaded = png_bytes(20, 20, (1, 2, 3))
        renderer = FakeRenderer()
        orch = _orchestrator(renderer=renderer, backgrounds=backgrounds)
        request = GenerationRequest(brief="x", background_image=uploaded, generate_ai_background=True)
        asyncio.run(orch.generate_batch(request, _composed(1)))
        assert backgrounds.generated == 0
        assert renderer.calls[0]["background"] == uploaded

    def test_background_url_is_fetched(self, monkeypatch):
        monkeypatch.setattr("flyer_pipeline.config.BACKGROUND_URL_HOSTS", ["images.example.test"])
        backgrounds = FakeBackgrounds()
        orch = _orchestrator(backgrounds=backgrounds)
        request = GenerationRequest(brief="x", background_url="https://images.example.test/a.png")
        batch = asyncio.run(orch.generate_batch(request, _composed(1)))
        assert backgrounds.fetched == ["https://images.example.test/a.png"]
        assert batch.background_used

    def test_background_url_off_allowlist_is_never_fetched(self, monkeypatch):
        monkeypatch.setattr("flyer_pipeline.config.BACKGROUND_URL_HOSTS", ["images.example.test"])
        backgrounds = FakeBackgrounds()
        orch = _orchestrator(backgrounds=backgrounds)
        request = GenerationRequest(brief="x", background_url="http://127.0.0.1:8080/admin")
        batch = asyncio.run(orch.generate_batch(request, _composed(1)))
        assert backgrounds.fetched == []
        assert not batch.background_used
        assert batch.succeeded_count == 1


class TestCarousel:

    def test_one_slot_per_image(self):
        images = [png_bytes(10, 10, (i * 40, 0, 0)) for i in range(3)]
        provider = FakeProvider()
        renderer = FakeRenderer()
        request = GenerationRequest(brief="x", carousel_images=images)
        batch = asyncio.run(_orchestrator(provider, renderer).generate_batch(request, _composed(16)))
        assert batch.requested == 3
        assert sorted(c["background"] for c in renderer.calls) == sorted(images)
        # Each LLM call sees exactly its own image as reference
        assert all(sum(1 for p in call if p["type"] == "image_url") == 1 for call in provider.calls)

    def test_carousel_is_capped(self):
        images = [png_bytes(10, 10) for _ in range(5)]
        request = GenerationRequest(brief="x", carousel_images=images)
        batch = asyncio.run(_orchestrator(max_designs=2).generate_batch(request, _composed(1)))
        assert batch.requested == 2


class TestRequestTimeout:

    def test_timeout_cancels_in_flight_work(self):
        renderer = FakeRenderer(delay=2.0)
        orch = _orchestrator(renderer=renderer, request_timeout_s=0.1, render_concurrency=4)
        with pytest.raises(RequestTimeout):
            asyncio.run(orch.generate_batch(GenerationRequest(brief="x"), _composed(4)))
        assert renderer.active == 0
        assert renderer.cancelled == 4
