import json
import logging
import re
import uuid
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Dict, List, Optional

import openai
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError

from flyer_pipeline import config
from flyer_pipeline.backgrounds import BackgroundImageService, is_allowed_background_url
from flyer_pipeline.catalog import DEFAULT_TEMPLATES, BrandKitRegistry, TemplateRegistry
from flyer_pipeline.content import ContentGenerator, LLMProvider
from flyer_pipeline.errors import InvalidRequest, PipelineError
from flyer_pipeline.images import decode_base64_image, inspect_image, to_data_url
from flyer_pipeline.ledger import CreditLedger
from flyer_pipeline.models import (
    AspectRatio,
    BrandAttributes,
    GenerationBatch,
    GenerationRequest,
    QualityTier,
    TemplateDescriptor,
)
from flyer_pipeline.orchestrator import VariationOrchestrator
from flyer_pipeline.prompts import compose
from flyer_pipeline.renderer import BrowserPool, Renderer
from flyer_pipeline.storage import ResultStorage

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

UPLOAD_CHUNK_KB = 256
# Ids that become path segments in storage keys
SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class Services:
    """Everything a request handler needs. Tests swap in their own instance on ``app.state``."""

    def __init__(
        self,
        *,
        ledger: CreditLedger,
        orchestrator: VariationOrchestrator,
        backgrounds: BackgroundImageService,
        storage: ResultStorage,
        brand_kits: BrandKitRegistry,
        templates: TemplateRegistry,
        pool: Optional[BrowserPool] = None,
    ):
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.backgrounds = backgrounds
        self.storage = storage
        self.brand_kits = brand_kits
        self.templates = templates
        self.pool = pool

    @classmethod
    def from_config(cls) -> "Services":
        if not config.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY not set; AI features disabled.")
        pool = BrowserPool(config.RENDER_CONCURRENCY)
        backgrounds = BackgroundImageService()
        orchestrator = VariationOrchestrator(
            ContentGenerator(LLMProvider()),
            Renderer(pool),
            backgrounds,
        )
        return cls(
            ledger=CreditLedger(),
            orchestrator=orchestrator,
            backgrounds=backgrounds,
            storage=ResultStorage(),
            brand_kits=BrandKitRegistry(),
            templates=TemplateRegistry(DEFAULT_TEMPLATES),
            pool=pool,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    if services.pool is not None and config.BROWSER_WARMUP:
        try:
            await services.pool.warmup(1)
        except PipelineError as e:
            # Requests will retry the launch and report it per request
            logger.error(f"Browser warmup failed: {e.message}")
    yield
    if services.pool is not None:
        await services.pool.shutdown()


app = FastAPI(title="Flyer AI Design Pipeline", version="1.0.0", lifespan=lifespan)
app.state.services = Services.from_config()

# CORS middleware: allow browser clients to call this API directly.
# Configure via CORS_ALLOW_ORIGINS env (comma-separated). Defaults are dev-friendly.
if not config.CORS_ALLOW_ORIGINS:
    allow_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "*",
    ]
else:
    allow_origins = [o.strip() for o in config.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
# If wildcard is present, set credentials False and pass ["*"] per Starlette rules
use_wildcard = "*" in allow_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if use_wildcard else allow_origins,
    allow_credentials=False if use_wildcard else True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Saved designs are served back from the local storage directory
try:
    config.STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    app.mount("/static", StaticFiles(directory=str(config.STORAGE_DIR)), name="static")
except OSError as _e:
    logger.warning(f"Static storage not mounted: {_e}")


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity is resolved upstream; this service trusts the forwarded user id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def _error_response(e: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=e.http_status, content=e.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Invalid request", "errors": jsonable_encoder(exc.errors())})


# Request parsing helpers

async def read_image_upload(upload: UploadFile, field: str) -> bytes:
    """Read an uploaded image in chunks, enforcing the size limit and checking it decodes."""
    ctype = (upload.content_type or "").lower()
    if ctype and not ctype.startswith("image/") and ctype != "application/octet-stream":
        logger.warning(f"Rejecting non-image upload for {field}: content_type={ctype!r}")
        raise HTTPException(status_code=415, detail=f"Unsupported Media Type for {field}: expected image/*")
    max_bytes = config.UPLOAD_MAX_MB * 1024 * 1024
    chunks: List[bytes] = []
    total = 0
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_KB * 1024)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            logger.warning(f"Upload {field} exceeded limit: {total} bytes > {max_bytes} bytes")
            raise HTTPException(status_code=413, detail=f"{field} is too large")
        chunks.append(chunk)
    data = b"".join(chunks)
    if not data:
        raise InvalidRequest(f"{field} is empty")
    if inspect_image(data) is None:
        raise HTTPException(status_code=415, detail=f"{field} is not a decodable image")
    return data


def _parse_json_field(raw: Optional[str], field: str) -> Optional[Dict[str, Any]]:
    if raw is None or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        raise InvalidRequest(f"{field} must be valid JSON")
    if not isinstance(value, dict):
        raise InvalidRequest(f"{field} must be a JSON object")
    return value


def _parse_enum(enum_cls, raw: Optional[str], field: str, default):
    if raw is None or not raw.strip():
        return default
    try:
        return enum_cls(raw.strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidRequest(f"Unsupported {field} '{raw}'. Expected one of: {allowed}")


def _parse_design_count(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        count = int(raw)
    except ValueError:
        raise InvalidRequest("design_count must be an integer")
    # Out-of-range counts are clamped into 1..MAX_DESIGNS by the composer
    return count


def _to_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in ("1", "true", "yes", "on")


def resolve_brand(
    services: Services,
    brand_kit_id: Optional[str],
    fonts: Optional[Dict[str, Any]],
    colors: Optional[Dict[str, Any]],
    brand_voice: Optional[str],
) -> Optional[BrandAttributes]:
    """Brand kit first, then explicit fonts/colors/voice override its fields."""
    fields: Dict[str, Any] = {}
    if brand_kit_id:
        kit = services.brand_kits.get(brand_kit_id)
        if kit is None:
            raise HTTPException(status_code=404, detail=f"Brand kit '{brand_kit_id}' not found")
        fields.update(kit.attributes.model_dump(exclude_none=True))
    if colors:
        for role in ("primary", "secondary", "accent"):
            if colors.get(role):
                fields[f"{role}_color"] = colors[role]
    if fonts:
        if fonts.get("heading"):
            fields["heading_font"] = fonts["heading"]
        if fonts.get("body"):
            fields["body_font"] = fonts["body"]
    if brand_voice and brand_voice.strip():
        fields["voice"] = brand_voice.strip()
    if not fields:
        return None
    try:
        return BrandAttributes(**fields)
    except ValidationError as e:
        raise InvalidRequest(f"Invalid brand attributes: {e.errors()[0].get('msg', 'invalid value')}")


def resolve_template(services: Services, template_id: Optional[str],
                     template_json: Optional[Dict[str, Any]]) -> Optional[TemplateDescriptor]:
    if template_id:
        template = services.templates.get(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail=f"Template '{template_id}' not found")
        return template
    if template_json:
        try:
            return TemplateDescriptor(
                id=template_json.get("id"),
                name=template_json.get("name") or "Custom",
                category=template_json.get("category") or "general",
                tags=list(template_json.get("tags") or []),
                description=template_json.get("description") or "",
                glass_morphism=bool(template_json.get("glassMorphism", False)),
                neon_effects=bool(template_json.get("neonEffects", False)),
            )
        except (ValidationError, TypeError) as e:
            raise InvalidRequest(f"Invalid template: {e}")
    return None


def _design_payload(batch: GenerationBatch, paid: int) -> List[Dict[str, Any]]:
    return [
        {"id": v.id, "imageBase64": to_data_url(v.image, "image/png"), "style": v.style}
        for v in batch.succeeded[:paid]
    ]


# Endpoints

@app.post("/api/generate-ai")
async def generate_ai(
    prompt: str = Form(""),
    background_image: Optional[UploadFile] = File(None),
    logo: Optional[UploadFile] = File(None),
    carousel_images: Optional[List[UploadFile]] = File(None),
    template_id: Optional[str] = Form(None),
    template: Optional[str] = Form(None),
    aspectRatio: Optional[str] = Form(None),
    design_count: Optional[str] = Form(None),
    quality_tier: Optional[str] = Form(None),
    generate_ai_background: Optional[str] = Form(None),
    background_url: Optional[str] = Form(None),
    brand_kit_id: Optional[str] = Form(None),
    fonts: Optional[str] = Form(None),
    colors: Optional[str] = Form(None),
    brand_voice: Optional[str] = Form(None),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Generate a batch of flyer designs and charge for the ones delivered."""
    t0 = perf_counter()
    try:
        # Validation happens before any credit or provider work
        aspect_ratio = _parse_enum(AspectRatio, aspectRatio, "aspect ratio", AspectRatio.SQUARE)
        tier = _parse_enum(QualityTier, quality_tier, "quality tier", QualityTier.BASIC)
        requested_count = _parse_design_count(design_count)
        brand = resolve_brand(
            services, brand_kit_id, _parse_json_field(fonts, "fonts"), _parse_json_field(colors, "colors"), brand_voice,
        )
        template_desc = resolve_template(services, template_id, _parse_json_field(template, "template"))
        supplied_url = (background_url or "").strip() or None
        if supplied_url and not is_allowed_background_url(supplied_url):
            raise InvalidRequest("background_url must be a data: URL or an https URL from an allowed image host")
        composed = compose(
            prompt,
            brand,
            template_desc,
            tier,
            aspect_ratio=aspect_ratio,
            requested_count=requested_count,
            max_designs=config.MAX_DESIGNS,
        )
        request = GenerationRequest(
            brief=prompt.strip() or (template_desc.description if template_desc else ""),
            aspect_ratio=aspect_ratio,
            requested_count=requested_count,
            quality_tier=tier,
            background_image=await read_image_upload(background_image, "background_image") if background_image else None,
            background_url=supplied_url,
            logo=await read_image_upload(logo, "logo") if logo else None,
            brand=brand,
            template=template_desc,
            carousel_images=[
                await read_image_upload(f, f"carousel_images[{i}]") for i, f in enumerate(carousel_images or [])
            ],
            generate_ai_background=_to_bool(generate_ai_background),
        )

        cost = config.CREDITS_PER_DESIGN
        bg_cost = config.BACKGROUND_COST_CREDITS
        wants_ai_background = (
            request.generate_ai_background
            and not request.carousel_images
            and not request.background_image
            and not request.background_url
        )
        # With an AI background the balance must cover it plus at least one design
        await services.ledger.preflight(user_id, cost + bg_cost if wants_ai_background else cost)
        logger.info(
            f"generate-ai: user={user_id} ratio={aspect_ratio.value} tier={tier.value} "
            f"count={composed.variant_count} carousel={len(request.carousel_images)}"
        )

        async def bill_background():
            return await services.ledger.debit(user_id, bg_cost, "AI background image", keep=cost)

        batch = await services.orchestrator.generate_batch(request, composed, bill_background=bill_background)

        charged = await services.ledger.charge(user_id, cost, batch.succeeded_count)
        paid = len(charged) if cost > 0 else batch.succeeded_count
        designs = _design_payload(batch, paid)
        balance = await services.ledger.balance(user_id)
        logger.info(
            f"generate-ai: delivered {len(designs)}/{batch.requested} designs in {perf_counter()-t0:.2f}s "
            f"(balance={balance})"
        )
        return {
            "designs": designs,
            "preview": designs[0] if designs else None,
            "requested": batch.requested,
            "succeeded": batch.succeeded_count,
            "failed": batch.failed_count,
            "withheld": batch.succeeded_count - paid,
            "failures": [{"id": v.id, "kind": v.failure_kind.value} for v in batch.failed],
            "backgroundUsed": batch.background_used,
            "credits": {"balance": balance, "used": sum(-t.amount for t in charged)},
        }
    except HTTPException:
        raise
    except PipelineError as e:
        log = logger.warning if e.http_status < 500 else logger.error
        log(f"generate-ai: {e.kind.value}: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.exception(f"Error in generate-ai: {e}")
        raise HTTPException(status_code=500, detail=str(e))


class BackgroundInput(BaseModel):
    prompt: str = ""
    imageSize: Optional[str] = None


@app.post("/api/generate-background")
async def generate_background(
    payload: BackgroundInput,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Generate a standalone background image. Billed only once an image exists."""
    try:
        if not payload.prompt.strip():
            raise InvalidRequest("Prompt is required")
        await services.ledger.preflight(user_id, config.BACKGROUND_COST_CREDITS)
        url = await services.backgrounds.generate(payload.prompt.strip(), payload.imageSize)
        await services.ledger.debit(user_id, config.BACKGROUND_COST_CREDITS, "AI background image")
        return {"imageUrl": url, "credits": {"balance": await services.ledger.balance(user_id)}}
    except HTTPException:
        raise
    except PipelineError as e:
        logger.warning(f"generate-background: {e.kind.value}: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.exception(f"Error in generate-background: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/credits")
async def get_credits(user_id: str = Depends(current_user), services: Services = Depends(get_services)):
    history = await services.ledger.history(user_id)
    return {
        "balance": await services.ledger.balance(user_id),
        "history": [t.model_dump(mode="json") for t in history],
    }


class AddCreditsInput(BaseModel):
    amount: int
    description: str = "Credits added"


@app.post("/api/credits/add")
async def add_credits(
    payload: AddCreditsInput,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    try:
        entry = await services.ledger.add(user_id, payload.amount, payload.description)
        return {
            "balance": await services.ledger.balance(user_id),
            "transaction": entry.model_dump(mode="json"),
        }
    except PipelineError as e:
        return _error_response(e)


class SaveDesignInput(BaseModel):
    imageBase64: str
    designId: Optional[str] = None


@app.post("/api/designs/save")
async def save_design(
    payload: SaveDesignInput,
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Persist one chosen design image and return where it can be fetched."""
    try:
        data = decode_base64_image(payload.imageBase64)
        if data is None:
            raise InvalidRequest("imageBase64 is not a valid image")
        design_id = payload.designId or uuid.uuid4().hex[:12]
        if not SAFE_ID.match(design_id):
            raise InvalidRequest("designId may only contain letters, digits, '-' and '_' (max 64)")
        if not SAFE_ID.match(user_id):
            raise InvalidRequest("User id cannot be used as a storage path")
        key = f"designs/{user_id}/{design_id}.png"
        url, mode = await services.storage.save(key, data, "image/png")
        logger.info(f"designs/save: stored {len(data)} bytes at {key} ({mode})")
        return {"id": design_id, "url": url, "storage": mode}
    except HTTPException:
        raise
    except PipelineError as e:
        return _error_response(e)
    except Exception as e:
        logger.exception(f"Error in designs/save: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/health")
async def health():
    """Health check endpoint"""
    services: Services = app.state.services
    pool = services.pool
    return {
        "status": "healthy",
        "service": "flyer-ai-pipeline",
        "content_provider_configured": services.orchestrator.content.provider.configured,
        "background_provider_configured": services.backgrounds.configured,
        "content_model": config.CONTENT_MODEL,
        "background_model": config.BACKGROUND_IMAGE_MODEL,
        "openai_sdk_version": getattr(openai, "__version__", "unknown"),
        "browser_pool": {
            "size": pool.size if pool else 0,
            "idle": pool.idle_count if pool else 0,
            "launched": pool.launched if pool else 0,
            "evicted": pool.evicted if pool else 0,
        },
        "storage_mode": config.STORAGE_MODE,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
