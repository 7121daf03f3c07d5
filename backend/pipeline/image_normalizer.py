# pipeline/image_normalizer.py
# ============================================================================
# APPRAISAL FULFILLMENT - IMAGE NORMALIZATION
# ============================================================================
# Customer photos arrive as JPEG, PNG, WebP or HEIC. Everything leaves as a
# bounded, orientation-corrected, metadata-free progressive JPEG.
# ============================================================================

import io

import pillow_heif
import structlog
from PIL import Image, ImageOps

# ISO-BMFF brands written by phones and cameras for HEIF/HEIC stills.
HEIF_BRANDS = frozenset({
    b"heic", b"heix", b"hevc", b"hevx",
    b"heim", b"heis", b"hevm", b"hevs",
    b"mif1", b"msf1",
})


def is_heif(data: bytes) -> bool:
    """Detect a HEIF container by its ftyp box at byte offset 4."""
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in HEIF_BRANDS


class ImageNormalizer:
    """CPU-bound; callers run it in an executor."""

    def __init__(self, max_dimension: int = 2000, quality: int = 85):
        self.max_dimension = max_dimension
        self.quality = quality
        self._logger = structlog.get_logger().bind(component="image_normalizer")

    def transcode_heif(self, data: bytes) -> bytes:
        heif_file = pillow_heif.open_heif(data, convert_hdr_to_8bit=True)
        image = heif_file.to_pillow()
        output = io.BytesIO()
        image.convert("RGB").save(output, format="JPEG", quality=95)
        self._logger.info("heif_transcoded", width=image.width, height=image.height)
        return output.getvalue()

    def normalize(self, data: bytes) -> bytes:
        if is_heif(data):
            data = self.transcode_heif(data)

        with Image.open(io.BytesIO(data)) as source:
            image = ImageOps.exif_transpose(source)
            if image.mode != "RGB":
                image = image.convert("RGB")
            # thumbnail() keeps aspect ratio and never enlarges.
            image.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)

            output = io.BytesIO()
            image.save(
                output,
                format="JPEG",
                quality=self.quality,
                progressive=True,
                optimize=True,
            )
        return output.getvalue()
