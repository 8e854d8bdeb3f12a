"""
Selfie image optimization.
Attendance selfies are downscaled and re-encoded as JPEG before storage.
"""
import io

import structlog
from PIL import Image, UnidentifiedImageError

from ..config import settings

logger = structlog.get_logger(__name__)


def optimize_selfie_bytes(image_bytes: bytes) -> bytes:
    """
    Shrink a selfie for storage.

    Returns the original bytes when optimization is disabled, the payload is
    not a readable image, or re-encoding would not make it smaller.
    """
    if not settings.selfie_optimize_enabled or not image_bytes:
        return image_bytes

    original_size = len(image_bytes)
    max_dim = settings.selfie_max_dim

    try:
        img = Image.open(io.BytesIO(image_bytes))

        if img.mode in ("RGBA", "LA", "P"):
            # Flatten transparency onto white
            rgb_img = Image.new("RGB", img.size, (255, 255, 255))
            if img.mode == "P":
                img = img.convert("RGBA")
            rgb_img.paste(img, mask=img.split()[-1])
            img = rgb_img
        elif img.mode != "RGB":
            img = img.convert("RGB")

        width, height = img.size
        if max(width, height) > max_dim:
            if width > height:
                new_size = (max_dim, int((height * max_dim) / width))
            else:
                new_size = (int((width * max_dim) / height), max_dim)
            img = img.resize(new_size, Image.Resampling.LANCZOS)

        output = io.BytesIO()
        img.save(output, format="JPEG", quality=settings.selfie_jpeg_quality, optimize=True)
        optimized_bytes = output.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning("selfie_optimization_failed", error=str(e), original_size=original_size)
        return image_bytes

    if len(optimized_bytes) >= original_size:
        return image_bytes

    logger.info(
        "selfie_optimized",
        original_size=original_size,
        optimized_size=len(optimized_bytes),
        original_dimensions=f"{width}x{height}",
        optimized_dimensions=f"{img.width}x{img.height}",
    )
    return optimized_bytes
