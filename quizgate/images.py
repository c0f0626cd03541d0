# quizgate/images.py
import io
import base64
import logging

from PIL import Image

from .errors import ImageOptimizationError
from .tokens import estimate_image_bytes, strip_data_url

logger = logging.getLogger(__name__)

OPTIMIZE_ABOVE_BYTES = 100_000


def needs_optimization(image: str, max_bytes: int = OPTIMIZE_ABOVE_BYTES) -> bool:
    return estimate_image_bytes(image) > max_bytes


def optimize_image(image: str, max_width: int = 800, quality: int = 70) -> str:
    """
    Shrink a base64 image (data URL or bare) and return a JPEG data URL.

    The aspect ratio is kept; images narrower than ``max_width`` are only
    re-encoded.
    """
    try:
        raw = base64.b64decode(strip_data_url(image), validate=False)
        with Image.open(io.BytesIO(raw)) as source:
            raster = source.convert('RGB')
            width, height = raster.size
            if width > max_width:
                new_size = (max_width, max(1, round(height * max_width / width)))
                raster = raster.resize(new_size, Image.Resampling.LANCZOS)
            out = io.BytesIO()
            raster.save(out, format='JPEG', quality=max(1, min(quality, 95)), optimize=True, progressive=True)
            raster.close()
    except Exception as e:
        raise ImageOptimizationError(f'Failed to optimize image: {e}') from e

    optimized = out.getvalue()
    logger.info('[IMAGE-OPT] %.1f KB -> %.1f KB (%dx%d source)', len(raw) / 1024, len(optimized) / 1024, width, height)
    return 'data:image/jpeg;base64,' + base64.b64encode(optimized).decode('ascii')


def shrink_if_needed(image: str, **options) -> str:
    """Optimize oversized images; on failure keep the original."""
    if not image or not needs_optimization(image):
        return image
    try:
        return optimize_image(image, **options)
    except ImageOptimizationError as e:
        logger.warning('[IMAGE-OPT] %s; using original image', e)
        return image
