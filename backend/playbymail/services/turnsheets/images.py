import base64
import io
import logging
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from playbymail.errors import ExtractionFailed


logger = logging.getLogger(__name__)

MAX_OCR_DIMENSION = 2000
MIME_BY_FORMAT = {
    'PNG': 'image/png',
    'JPEG': 'image/jpeg',
    'GIF': 'image/gif',
    'WEBP': 'image/webp',
    'TIFF': 'image/tiff',
    'BMP': 'image/bmp',
}


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ExtractionFailed(f'unreadable image: {exc}', transient=False) from exc
    return image


def detect_mime(data: bytes) -> str:
    image = _open(data)
    return MIME_BY_FORMAT.get(image.format or '', 'image/png')


def optimize_for_ocr(data: bytes) -> Tuple[bytes, str]:
    """Grayscale, contrast-stretch and downscale a scan, re-encoded as PNG."""
    image = _open(data)
    image = ImageOps.exif_transpose(image)
    image = ImageOps.autocontrast(image.convert('L'))
    image.thumbnail((MAX_OCR_DIMENSION, MAX_OCR_DIMENSION))
    out = io.BytesIO()
    image.save(out, format='PNG', optimize=True)
    optimized = out.getvalue()
    logger.debug(f"[ocr-image] original_bytes={len(data)} optimized_bytes={len(optimized)} size={image.size}")
    return optimized, 'image/png'


def to_data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
