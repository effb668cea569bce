import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# OpenAI provider
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
CONTENT_MODEL = os.getenv("CONTENT_MODEL", "gpt-4o")
CONTENT_TEMPERATURE = float(os.getenv("CONTENT_TEMPERATURE", "0.6"))
CONTENT_MAX_TOKENS = int(os.getenv("CONTENT_MAX_TOKENS", "4096"))
# Ask the provider for a JSON object response (parser fallbacks still apply)
CONTENT_JSON_MODE = _flag("CONTENT_JSON_MODE", "true")
BACKGROUND_IMAGE_MODEL = os.getenv("BACKGROUND_IMAGE_MODEL", "gpt-image-1")
# Hosts a client-supplied background_url may point at (https only); data: URLs are always accepted
BACKGROUND_URL_HOSTS = [
    h.strip().lower()
    for h in os.getenv("BACKGROUND_URL_HOSTS", "oaidalleapiprodscus.blob.core.windows.net").split(",")
    if h.strip()
]

# Credits
CREDITS_PER_DESIGN = int(os.getenv("CREDITS_PER_DESIGN", "1"))
BACKGROUND_COST_CREDITS = int(os.getenv("BACKGROUND_COST_CREDITS", "1"))
INITIAL_CREDITS = int(os.getenv("INITIAL_CREDITS", "10"))

# Batch sizing and concurrency ceilings
MAX_DESIGNS = int(os.getenv("MAX_DESIGNS", "16"))
DEFAULT_DESIGN_COUNT = int(os.getenv("DEFAULT_DESIGN_COUNT", "4"))
LLM_CONCURRENCY = int(os.getenv("LLM_CONCURRENCY", "4"))
RENDER_CONCURRENCY = int(os.getenv("RENDER_CONCURRENCY", "2"))  # also the browser pool size

# Time budgets
PROVIDER_TIMEOUT_S = float(os.getenv("PROVIDER_TIMEOUT_S", "45"))
BACKGROUND_TIMEOUT_S = float(os.getenv("BACKGROUND_TIMEOUT_S", "60"))
RENDER_TIMEOUT_S = float(os.getenv("RENDER_TIMEOUT_S", "30"))
ASSET_LOAD_TIMEOUT_S = float(os.getenv("ASSET_LOAD_TIMEOUT_S", "10"))
RENDER_SETTLE_MS = int(os.getenv("RENDER_SETTLE_MS", "500"))
REQUEST_TIMEOUT_S = float(os.getenv("REQUEST_TIMEOUT_S", "90"))

# Rendering engine
RENDER_SCALE_FACTOR = float(os.getenv("RENDER_SCALE_FACTOR", "2"))
RENDER_TAILWIND_CDN = _flag("RENDER_TAILWIND_CDN", "true")
CHROMIUM_EXECUTABLE = os.getenv("CHROMIUM_EXECUTABLE", "").strip() or None
# Launch one browser at startup so the first request does not pay for it
BROWSER_WARMUP = _flag("BROWSER_WARMUP", "true")
CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

# Uploads
UPLOAD_MAX_MB = int(os.getenv("UPLOAD_MAX_MB", "20"))

# Result storage: 's3' (MinIO) or 'local' static directory
STORAGE_MODE = os.getenv("STORAGE_MODE", "local").lower()
STORAGE_DIR = Path(
    os.getenv("STORAGE_DIR", str(Path(__file__).resolve().parent.parent / "storage")).strip()
).resolve()
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8010").rstrip("/")
S3_ENDPOINT = os.getenv("S3_ENDPOINT", "http://localhost:9000")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "minio")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "minio123")
S3_BUCKET_OUTPUTS = os.getenv("S3_BUCKET_OUTPUTS", "outputs")

CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
