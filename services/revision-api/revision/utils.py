import io
import base64
import logging
from typing import List, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


def open_image(data: bytes) -> Optional[Image.Image]:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        return img
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def detect_mime_type(data: bytes, default: str = "image/jpeg") -> str:
    img = open_image(data)
    if img is None or img.format is None:
        return default
    return _MIME_BY_FORMAT.get(img.format, default)


def to_data_url(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{detect_mime_type(data)};base64,{encoded}"


def decode_base64_image(image_base64: str) -> bytes:
    # Accept both data URLs and raw base64
    if "base64," in image_base64:
        image_base64 = image_base64.split("base64,", 1)[1]
    return base64.b64decode(image_base64)


def _hex_from_rgb(rgb: np.ndarray) -> str:
    r, g, b = [int(x) for x in rgb.tolist()]
    return f"#{r:02x}{g:02x}{b:02x}"


def dominant_colors_hex(image: Image.Image, count: int = 3) -> List[str]:
    """
    Approximate dominant colors by quantizing RGB into 32-level buckets and
    taking the median of the most populated ones. Returns hex strings like
    #rrggbb, most common first.
    """
    im_np = np.array(image.convert("RGB")).reshape(-1, 3)
    if im_np.size == 0:
        return []
    buckets = (im_np // 32).astype(np.int32)
    keys = buckets[:, 0] * 64 + buckets[:, 1] * 8 + buckets[:, 2]
    values, counts = np.unique(keys, return_counts=True)
    order = np.argsort(-counts)[:count]
    colors = []
    for idx in order:
        members = im_np[keys == values[idx]]
        colors.append(_hex_from_rgb(np.median(members, axis=0)))
    return colors


def probe_image_bytes() -> bytes:
    """Smallest valid PNG, used for availability probes."""
    buffer = io.BytesIO()
    Image.new("RGB", (1, 1), (255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()
