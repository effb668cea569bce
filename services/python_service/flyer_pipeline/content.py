"""Markup generation through a language-model provider.

The provider client is the only place that looks at SDK exceptions; it turns
them into ``QuotaExceeded`` or ``ProviderError``. Raw model text is turned into
markup by an ordered list of parser strategies, first success wins.
"""

import asyncio
import json
import logging
import re
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from . import config
from .errors import MalformedResponse, PipelineError, ProviderError, QuotaExceeded
from .images import to_data_url
from .models import GeneratedMarkup

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are an expert graphic designer. Return your response ONLY as a valid JSON object with "
    "'htmlContent' and 'cssStyles' properties. Never include explanations, notes, or any text outside "
    "the JSON structure. The JSON must be properly formatted and parseable."
)

OUTPUT_FORMAT = (
    "Return your response in the following JSON format:\n"
    "{\n"
    '  "htmlContent": "the complete HTML markup for the design",\n'
    '  "cssStyles": "any custom CSS styles needed to create advanced effects"\n'
    "}"
)

IMAGE_NOTES = {
    "background": (
        "IMPORTANT: Use the above image as the BACKGROUND of your design. Do not reference it with an img "
        "tag, it will be embedded for you. Use text colors that contrast well with the image and add "
        "overlays or semi-transparent elements where needed for readability."
    ),
    "logo": (
        "IMPORTANT: Use the above image as a LOGO in your design. Place exactly one "
        '<img id="company-logo" alt="logo"> placeholder where the logo should appear; the image source '
        "will be bound for you."
    ),
    "reference": "Use the above image as visual reference for this variation.",
}


class ReferenceImage(BaseModel):
    data: bytes
    role: str = "reference"  # background | logo | reference


def classify_provider_error(exc: BaseException) -> PipelineError:
    """Map an SDK exception onto the closed error set. Called once, at the client boundary."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, openai.RateLimitError):
        return QuotaExceeded(f"API quota limit reached: {exc}")
    if isinstance(exc, openai.APIStatusError):
        code = getattr(exc, "code", None)
        if exc.status_code == 429 or code in ("insufficient_quota", "rate_limit_exceeded"):
            return QuotaExceeded(f"API quota limit reached: {exc}")
        return ProviderError(f"Provider returned HTTP {exc.status_code}: {exc}")
    if isinstance(exc, (openai.APITimeoutError, asyncio.TimeoutError)):
        return ProviderError("Provider call timed out")
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(f"Provider connection failed: {exc}")
    return ProviderError(str(exc) or exc.__class__.__name__)


class LLMProvider:
    """Thin async wrapper over the OpenAI chat API with error classification."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        json_mode: Optional[bool] = None,
    ):
        if client is None and config.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        self._client = client
        self.model = model or config.CONTENT_MODEL
        self.temperature = config.CONTENT_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.CONTENT_MAX_TOKENS
        self.timeout_s = timeout_s or config.PROVIDER_TIMEOUT_S
        self.json_mode = config.CONTENT_JSON_MODE if json_mode is None else json_mode

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def complete(self, system: str, content: List[Dict[str, Any]]) -> str:
        if self._client is None:
            raise ProviderError("OpenAI client not configured")
        chat_args: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            "max_completion_tokens": self.max_tokens,
        }
        # Some models (e.g., gpt-5 family) only support default temperature; omit to avoid 400s
        if not str(self.model).strip().lower().startswith("gpt-5"):
            chat_args["temperature"] = float(self.temperature)
        if self.json_mode:
            chat_args["response_format"] = {"type": "json_object"}
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**chat_args), timeout=self.timeout_s
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        if not response.choices:
            raise ProviderError("Empty response from provider")
        return (response.choices[0].message.content or "").strip()


# Parser strategies

class ParseOutcome(BaseModel):
    markup: Optional[GeneratedMarkup] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.markup is not None


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>(.*?)</style>", re.DOTALL | re.IGNORECASE)
_HTML_RE = re.compile(r"<html[^>]*>.*</html>", re.DOTALL | re.IGNORECASE)
_BODY_RE = re.compile(r"<body[^>]*>(.*)</body>", re.DOTALL | re.IGNORECASE)
_FRAGMENT_RE = re.compile(r"<(div|section)\b.*", re.DOTALL | re.IGNORECASE)


def _from_json_text(text: str, strategy: str) -> ParseOutcome:
    try:
        obj = json.loads(text)
    except ValueError:
        return ParseOutcome(reason=f"{strategy}: invalid JSON")
    if not isinstance(obj, dict):
        return ParseOutcome(reason=f"{strategy}: JSON is not an object")
    html = obj.get("htmlContent")
    css = obj.get("cssStyles") or ""
    if not isinstance(html, str) or not html.strip():
        return ParseOutcome(reason=f"{strategy}: missing htmlContent")
    if not isinstance(css, str):
        css = ""
    return ParseOutcome(markup=GeneratedMarkup(html=html.strip(), css=css.strip(), strategy=strategy))


def _lift_styles(markup: str) -> Tuple[str, str]:
    css = "\n".join(s.strip() for s in _STYLE_RE.findall(markup))
    return _STYLE_RE.sub("", markup).strip(), css


def parse_whole_json(text: str) -> ParseOutcome:
    return _from_json_text(text.strip(), "whole_json")


def parse_fenced_json(text: str) -> ParseOutcome:
    m = _FENCE_RE.search(text)
    if not m:
        return ParseOutcome(reason="fenced_json: no code fence")
    return _from_json_text(m.group(1).strip(), "fenced_json")


def parse_embedded_json(text: str) -> ParseOutcome:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return ParseOutcome(reason="embedded_json: no braces")
    return _from_json_text(text[start:end + 1], "embedded_json")


def parse_html_document(text: str) -> ParseOutcome:
    m = _HTML_RE.search(text)
    if not m:
        return ParseOutcome(reason="html_document: no <html> element")
    document = m.group(0)
    _, css = _lift_styles(document)
    body = _BODY_RE.search(document)
    html = body.group(1) if body else re.sub(r"<head[^>]*>.*?</head>", "", document, flags=re.DOTALL | re.IGNORECASE)
    html, _ = _lift_styles(html)
    if not html:
        return ParseOutcome(reason="html_document: empty body")
    return ParseOutcome(markup=GeneratedMarkup(html=html, css=css, strategy="html_document"))


def parse_body_element(text: str) -> ParseOutcome:
    m = _BODY_RE.search(text)
    if not m:
        return ParseOutcome(reason="body_element: no <body> element")
    _, head_css = _lift_styles(text[:m.start()])
    html, css = _lift_styles(m.group(1))
    if not html:
        return ParseOutcome(reason="body_element: empty body")
    css = "\n".join(c for c in (head_css, css) if c)
    return ParseOutcome(markup=GeneratedMarkup(html=html, css=css, strategy="body_element"))


def parse_fragment(text: str) -> ParseOutcome:
    m = _FRAGMENT_RE.search(text)
    if not m:
        return ParseOutcome(reason="fragment: no <div> or <section>")
    _, head_css = _lift_styles(text[:m.start()])
    fragment = m.group(0)
    # Drop trailing prose after the last closing tag
    last_close = fragment.rfind(">")
    html, css = _lift_styles(fragment[:last_close + 1])
    css = "\n".join(c for c in (head_css, css) if c)
    return ParseOutcome(markup=GeneratedMarkup(html=html, css=css, strategy="fragment"))


DEFAULT_STRATEGIES: List[Callable[[str], ParseOutcome]] = [
    parse_whole_json,
    parse_fenced_json,
    parse_embedded_json,
    parse_html_document,
    parse_body_element,
    parse_fragment,
]


def parse_markup(text: str, strategies: Optional[Sequence[Callable[[str], ParseOutcome]]] = None) -> GeneratedMarkup:
    reasons: List[str] = []
    for strategy in strategies or DEFAULT_STRATEGIES:
        outcome = strategy(text or "")
        if outcome.ok:
            return outcome.markup
        reasons.append(outcome.reason)
    raise MalformedResponse("Could not extract markup from the provider response", reasons=reasons)


class ContentGenerator:
    def __init__(self, provider: LLMProvider, strategies: Optional[Sequence[Callable[[str], ParseOutcome]]] = None):
        self.provider = provider
        self.strategies = list(strategies or DEFAULT_STRATEGIES)

    def build_content(self, prompt: str, images: Sequence[ReferenceImage] = ()) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": f"{prompt}\n\n{OUTPUT_FORMAT}"}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": to_data_url(image.data)}})
            parts.append({"type": "text", "text": IMAGE_NOTES.get(image.role, IMAGE_NOTES["reference"])})
        return parts

    async def generate(self, prompt: str, images: Sequence[ReferenceImage] = ()) -> GeneratedMarkup:
        t0 = perf_counter()
        text = await self.provider.complete(SYSTEM_INSTRUCTION, self.build_content(prompt, images))
        logger.info(f"content: provider response length={len(text)} in {perf_counter()-t0:.2f}s")
        logger.debug(f"content: raw response head: {text[:200]!r}")
        markup = parse_markup(text, self.strategies)
        logger.info(f"content: parsed markup via {markup.strategy} (html={len(markup.html)}, css={len(markup.css)})")
        return markup
