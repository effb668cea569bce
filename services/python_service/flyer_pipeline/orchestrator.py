"""Fan-out of one composed prompt into N independently generated and rendered variants."""

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from . import config
from .backgrounds import BackgroundImageService, is_allowed_background_url, size_hint_for
from .content import ContentGenerator, ReferenceImage
from .errors import (
    AllVariantsFailed,
    BrowserLaunchFailure,
    FailureKind,
    PipelineError,
    QuotaExceeded,
    RequestTimeout,
)
from .models import (
    ComposedPrompt,
    DesignVariant,
    GenerationBatch,
    GenerationRequest,
    Viewport,
)
from .prompts import background_prompt, style_for_slot, variant_prompt
from .renderer import Renderer

logger = logging.getLogger(__name__)

BillingHook = Callable[[], Awaitable[Any]]


class _Slot:
    """Inputs bound to a single variant."""

    def __init__(self, variant: DesignVariant, background: Optional[bytes], images: List[ReferenceImage]):
        self.variant = variant
        self.background = background
        self.images = images


class VariationOrchestrator:
    def __init__(
        self,
        content: ContentGenerator,
        renderer: Renderer,
        backgrounds: Optional[BackgroundImageService] = None,
        *,
        llm_concurrency: Optional[int] = None,
        render_concurrency: Optional[int] = None,
        request_timeout_s: Optional[float] = None,
        max_designs: Optional[int] = None,
        scale_factor: Optional[float] = None,
    ):
        self.content = content
        self.renderer = renderer
        self.backgrounds = backgrounds
        self.llm_concurrency = max(1, int(llm_concurrency or config.LLM_CONCURRENCY))
        self.render_concurrency = max(1, int(render_concurrency or config.RENDER_CONCURRENCY))
        self.request_timeout_s = request_timeout_s or config.REQUEST_TIMEOUT_S
        self.max_designs = max(1, int(max_designs or config.MAX_DESIGNS))
        self.scale_factor = scale_factor or config.RENDER_SCALE_FACTOR

    async def _prepare_background(self, request: GenerationRequest,
                                  bill_background: Optional[BillingHook]) -> Optional[bytes]:
        """Uploaded background wins; otherwise a supplied URL, otherwise an AI image when asked for.

        Any failure here means the batch proceeds without a background.
        """
        if request.background_image:
            return request.background_image
        if self.backgrounds is None:
            return None
        if request.background_url:
            if not is_allowed_background_url(request.background_url):
                logger.warning("orchestrator: background URL host not allowed, continuing without")
                return None
            try:
                return await self.backgrounds.fetch(request.background_url)
            except PipelineError as e:
                logger.warning(f"orchestrator: background URL unusable, continuing without: {e.message}")
                return None
        if not request.generate_ai_background:
            return None
        try:
            image = await self.backgrounds.generate_bytes(
                background_prompt(request.brief or "", request.brand),
                size_hint_for(request.aspect_ratio),
            )
        except PipelineError as e:
            logger.warning(f"orchestrator: AI background failed ({e.kind.value}), continuing without: {e.message}")
            return None
        if bill_background is not None:
            try:
                await bill_background()
            except PipelineError as e:
                logger.warning(f"orchestrator: background not billable ({e.kind.value}), discarding it")
                return None
        return image

    def _plan_slots(self, request: GenerationRequest, composed: ComposedPrompt,
                    background: Optional[bytes]) -> List[_Slot]:
        slots: List[_Slot] = []
        logo_ref = [ReferenceImage(data=request.logo, role="logo")] if request.logo else []
        if request.carousel_images:
            images = request.carousel_images[:self.max_designs]
            if len(request.carousel_images) > len(images):
                logger.info(f"orchestrator: carousel capped at {self.max_designs} of {len(request.carousel_images)} images")
            for i, image in enumerate(images):
                variant = DesignVariant(index=i, style=style_for_slot(i))
                slots.append(_Slot(variant, image, [ReferenceImage(data=image, role="background")] + logo_ref))
            return slots
        bg_ref = [ReferenceImage(data=background, role="background")] if background else []
        for i in range(max(1, min(self.max_designs, composed.variant_count))):
            variant = DesignVariant(index=i, style=style_for_slot(i))
            slots.append(_Slot(variant, background, bg_ref + logo_ref))
        return slots

    async def _run_slot(
        self,
        slot: _Slot,
        base_prompt: str,
        viewport: Viewport,
        logo: Optional[bytes],
        llm_gate: asyncio.Semaphore,
        render_gate: asyncio.Semaphore,
        batch_state: dict,
    ) -> None:
        variant = slot.variant
        t0 = perf_counter()
        try:
            variant.start_generating()
            async with llm_gate:
                markup = await self.content.generate(variant_prompt(base_prompt, variant.style), slot.images)
            variant.start_rendering(markup)
            async with render_gate:
                image = await self.renderer.render(markup, viewport, slot.background, logo)
            if batch_state["sealed"]:
                return
            variant.succeed(image)
            logger.info(f"variant {variant.id} (slot {variant.index}) succeeded in {perf_counter()-t0:.2f}s")
        except BrowserLaunchFailure:
            raise
        except PipelineError as e:
            logger.warning(f"variant {variant.id} (slot {variant.index}) failed: {e.kind.value}: {e.message}")
            variant.fail(e.kind, e.message)
        except Exception as e:
            logger.exception(f"variant {variant.id} (slot {variant.index}) failed unexpectedly")
            variant.fail(FailureKind.PROVIDER_ERROR, str(e) or e.__class__.__name__)

    async def _await_slots(self, tasks: Sequence[asyncio.Task], deadline: float) -> None:
        loop = asyncio.get_running_loop()
        pending = set(tasks)
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

    async def generate_batch(
        self,
        request: GenerationRequest,
        composed: ComposedPrompt,
        *,
        bill_background: Optional[BillingHook] = None,
    ) -> GenerationBatch:
        """Run every slot concurrently and return the batch with at least one success.

        Raises QuotaExceeded when every slot hit a quota limit, AllVariantsFailed
        for any other all-failed batch, RequestTimeout when the request budget
        runs out and BrowserLaunchFailure when rendering cannot start at all.
        """
        loop = asyncio.get_running_loop()
        t0 = perf_counter()
        deadline = loop.time() + self.request_timeout_s
        viewport = Viewport.for_aspect_ratio(request.aspect_ratio, self.scale_factor)

        background: Optional[bytes] = None
        if not request.carousel_images:
            try:
                background = await asyncio.wait_for(
                    self._prepare_background(request, bill_background), timeout=self.request_timeout_s
                )
            except asyncio.TimeoutError:
                raise RequestTimeout(f"Request exceeded {self.request_timeout_s:.0f}s")

        slots = self._plan_slots(request, composed, background)
        batch = GenerationBatch(
            requested=len(slots),
            variants=[s.variant for s in slots],
            background_used=background is not None,
        )
        logger.info(
            f"orchestrator: starting batch of {batch.requested} ({request.aspect_ratio.value}, "
            f"carousel={bool(request.carousel_images)}, background={batch.background_used})"
        )

        llm_gate = asyncio.Semaphore(self.llm_concurrency)
        render_gate = asyncio.Semaphore(self.render_concurrency)
        batch_state = {"sealed": False}
        tasks = [
            asyncio.create_task(
                self._run_slot(s, composed.text, viewport, request.logo, llm_gate, render_gate, batch_state)
            )
            for s in slots
        ]
        try:
            await self._await_slots(tasks, deadline)
        except asyncio.TimeoutError:
            batch_state["sealed"] = True
            await self._cancel(tasks)
            self._seal(batch, FailureKind.REQUEST_TIMEOUT, "Request timed out")
            batch.elapsed_s = perf_counter() - t0
            logger.error(f"orchestrator: batch timed out after {batch.elapsed_s:.2f}s "
                         f"({batch.succeeded_count}/{batch.requested} finished)")
            raise RequestTimeout(f"Request exceeded {self.request_timeout_s:.0f}s")
        except BrowserLaunchFailure:
            batch_state["sealed"] = True
            await self._cancel(tasks)
            self._seal(batch, FailureKind.BROWSER_LAUNCH_FAILURE, "Rendering engine unavailable")
            logger.error("orchestrator: browser launch failed, batch aborted")
            raise
        finally:
            # Covers cancellation of the caller as well; no slot outlives the batch.
            await self._cancel(tasks)

        batch.elapsed_s = perf_counter() - t0
        logger.info(
            f"orchestrator: batch done in {batch.elapsed_s:.2f}s: "
            f"{batch.succeeded_count} succeeded, {batch.failed_count} failed"
        )
        if batch.succeeded_count == 0:
            kinds = {v.failure_kind for v in batch.failed}
            if kinds == {FailureKind.QUOTA_EXCEEDED}:
                raise QuotaExceeded("API quota limit reached. Please try again later.")
            raise AllVariantsFailed(
                "Failed to generate any designs",
                batch=batch,
                failures=[{"id": v.id, "kind": v.failure_kind.value} for v in batch.failed],
            )
        return batch

    @staticmethod
    async def _cancel(tasks: Sequence[asyncio.Task]) -> None:
        live = [t for t in tasks if not t.done()]
        for task in live:
            task.cancel()
        if live:
            await asyncio.gather(*live, return_exceptions=True)

    @staticmethod
    def _seal(batch: GenerationBatch, kind: FailureKind, message: str) -> None:
        for variant in batch.variants:
            if not variant.is_terminal:
                variant.fail(kind, message)
