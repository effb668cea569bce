"""Image byte helpers shared by the request parser, renderer and storage sink."""

import base64
import binascii
import io
import re
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

_FMT_TO_MIME = {
    "JPEG": "image/jpeg",
    "JPG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
}

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,([A-Za-z0-9+/=\s]+)$", re.DOTALL)


def normalize_hex_color(c: Optional[str]) -> Optional[str]:
    """Normalize a CSS hex color string to #rrggbb. Returns None if invalid.
    Accepts #rgb or #rrggbb (case-insensitive), with or without leading '#'."""
    if not isinstance(c, str):
        return None
    s = c.strip()
    if s.startswith('#'):
        s = s[1:]
    # Allow 3 or 6 hex digits
    if len(s) == 3 and all(ch in '0123456789abcdefABCDEF' for ch in s):
        s = ''.join(ch * 2 for ch in s)
    if len(s) == 6 and all(ch in '0123456789abcdefABCDEF' for ch in s):
        return '#' + s.lower()
    return None


def inspect_image(data: Optional[bytes]) -> Optional[Tuple[str, int, int]]:
    """Return (mime, width, height) when the bytes decode as a raster image, else None."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.verify()
        # verify() leaves the image unusable; reopen for the size
        with Image.open(io.BytesIO(data)) as im:
            fmt = (im.format or "").upper()
            width, height = im.size
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        return None
    mime = _FMT_TO_MIME.get(fmt)
    if mime is None:
        return None
    return mime, width, height


def image_size(data: bytes) -> Tuple[int, int]:
    with Image.open(io.BytesIO(data)) as im:
        return im.size


def to_data_url(data: bytes, mime: Optional[str] = None) -> str:
    if mime is None:
        info = inspect_image(data)
        mime = info[0] if info else "image/png"
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{b64}"


def decode_data_url(url: str) -> Optional[bytes]:
    """Decode a base64 image data URL. Returns None when the URL is not one."""
    m = _DATA_URL_RE.match((url or "").strip())
    if not m:
        return None
    try:
        return base64.b64decode(m.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None


def decode_base64_image(value: str) -> Optional[bytes]:
    """Accept either a data URL or bare base64 and return the image bytes."""
    if not value:
        return None
    raw = decode_data_url(value)
    if raw is None:
        try:
            raw = base64.b64decode(value.strip(), validate=True)
        except (binascii.Error, ValueError):
            return None
    return raw if inspect_image(raw) else None


def fit_to_size(png: bytes, size: Tuple[int, int]) -> bytes:
    """Crop (or pad) a screenshot so it is exactly ``size`` pixels, top-left anchored."""
    with Image.open(io.BytesIO(png)) as im:
        if im.size == tuple(size):
            return png
        canvas = Image.new("RGB", size, (255, 255, 255))
        canvas.paste(im.convert("RGB").crop((0, 0, min(im.width, size[0]), min(im.height, size[1]))), (0, 0))
        out = io.BytesIO()
        canvas.save(out, format="PNG")
        return out.getvalue()
