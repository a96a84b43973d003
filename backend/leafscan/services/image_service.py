"""
LeafScan Backend — Image Normalization Service
================================================

What:  Turns an untrusted uploaded image into a bounded JPEG for inference.
How:   Pillow decodes the bytes, applies EXIF orientation, fits the image
       inside a square box without upscaling, and re-encodes at a fixed
       JPEG quality.
Who:   Called by DiagnosisService before the inference call.
When:  Once per admitted request, after the size check.

Validation order (cheapest first):
    1. Declared Content-Length (route, before reading the body)
    2. Decoded byte length (validate_size)
    3. Header pixel count (normalize, before any pixel data is decoded)
    4. Pixel decode (normalize); JPEG is decoded at a reduced scale close to
       the output box. Anything Pillow cannot load is a DecodeError,
       including truncated files and decompression bombs

Why the pixel check: a few hundred KB of PNG can describe an image whose
decoded RGB buffer is hundreds of MB. The byte ceiling does not bound that;
the pixel ceiling does.

Phone cameras store portrait shots as landscape pixels plus an EXIF
Orientation tag. The tag is lost on re-encode, so the pixels are rotated
first or the model sees the plant sideways.
"""

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from leafscan.exceptions import DecodeError, InputError, PayloadTooLargeError

logger = logging.getLogger(__name__)

OUTPUT_MEDIA_TYPE = "image/jpeg"

# 50 megapixels: above any phone camera, far below Pillow's bomb threshold
DEFAULT_MAX_PIXELS = 50_000_000

# data:image/png;base64,....  (the media type is informational only)
_DATA_URI_RE = re.compile(r"^data:(?P<media>image/[\w.+-]+)?(?:;[\w=.-]+)*;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class ImageAsset:
    """Raw uploaded bytes plus the media type the client declared."""

    data: bytes
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class NormalizedImage:
    """Re-encoded JPEG bounded in both dimensions."""

    data: bytes
    width: int
    height: int
    media_type: str = OUTPUT_MEDIA_TYPE

    @property
    def size(self) -> int:
        return len(self.data)

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def decode_base64_image(value: str, media_type: Optional[str] = None) -> ImageAsset:
    """
    Decode a data URI or bare base64 string into an ImageAsset.

    Whitespace (line-wrapped base64) is tolerated; any other non-alphabet
    character is an InputError.

    Raises:
        InputError: empty string or malformed base64
    """
    text = value.strip()
    match = _DATA_URI_RE.match(text)
    if match:
        media_type = media_type or match.group("media")
        text = text[match.end():]

    text = re.sub(r"\s+", "", text)
    if not text:
        raise InputError(message="No se recibió ninguna imagen.", field="image")

    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputError(
            message="Imagen Base64 inválida.",
            field="image",
            context={"error": str(e)},
        )

    return ImageAsset(data=data, media_type=(media_type or "application/octet-stream").lower())


class ImageService:
    """
    Size validation and normalization of uploaded images.

    Args:
        max_input_bytes: Ceiling on decoded input bytes
        max_dimension:   Both output dimensions are <= this
        jpeg_quality:    Fixed output encoding quality
        max_pixels:      Ceiling on width*height of the decoded source image
    """

    def __init__(
        self,
        max_input_bytes: int = 1_572_864,
        max_dimension: int = 1024,
        jpeg_quality: int = 80,
        max_pixels: int = DEFAULT_MAX_PIXELS,
    ):
        self.max_input_bytes = max_input_bytes
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.max_pixels = max_pixels

    @property
    def output_byte_ceiling(self) -> int:
        """Raw RGB size of a full bound-sized frame; encoded output stays below it."""
        return self.max_dimension * self.max_dimension * 3

    def validate_size(self, data: bytes, content_length: Optional[int] = None) -> None:
        """
        Reject empty or oversized payloads before any decoding work.

        Raises:
            InputError: empty payload
            PayloadTooLargeError: more than max_input_bytes
        """
        if content_length and content_length > self.max_input_bytes:
            raise PayloadTooLargeError(
                max_bytes=self.max_input_bytes,
                actual_bytes=content_length,
                context={"source": "content-length"},
            )
        if not data:
            raise InputError(message="La imagen está vacía.", field="image")
        if len(data) > self.max_input_bytes:
            raise PayloadTooLargeError(max_bytes=self.max_input_bytes, actual_bytes=len(data))

    def normalize(self, asset: ImageAsset) -> NormalizedImage:
        """
        Decode, orient, bound and re-encode the image.

        Synchronous and CPU bound; async callers run it in a worker thread.

        Raises:
            DecodeError: bytes are not a decodable raster image
        """
        try:
            with Image.open(io.BytesIO(asset.data)) as src:
                self._check_pixels(src, asset)
                if src.format == "JPEG":
                    # Decode at 1/2, 1/4 or 1/8 scale, never below the output box
                    src.draft("RGB", (self.max_dimension, self.max_dimension))
                src.load()
                image = ImageOps.exif_transpose(src)
                image = self._to_rgb(image)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.info("Rejected undecodable image (%d bytes): %s", asset.size, e)
            raise DecodeError(context={"error": str(e), "declared_type": asset.media_type})

        source_size = image.size
        # thumbnail() only ever shrinks and keeps the aspect ratio
        image.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)

        out = io.BytesIO()
        image.save(out, format="JPEG", quality=self.jpeg_quality, optimize=True)
        data = out.getvalue()

        logger.info(
            "Normalized image %dx%d (%d bytes) -> %dx%d (%d bytes)",
            source_size[0],
            source_size[1],
            asset.size,
            image.width,
            image.height,
            len(data),
        )
        return NormalizedImage(data=data, width=image.width, height=image.height)

    def _check_pixels(self, src: Image.Image, asset: ImageAsset) -> None:
        """Reject on the header dimensions, before pixel data is decoded."""
        pixels = src.width * src.height
        if pixels > self.max_pixels:
            logger.info(
                "Rejected image with %dx%d pixels (limit %d)", src.width, src.height, self.max_pixels
            )
            raise DecodeError(
                message="La imagen tiene demasiados píxeles.",
                context={"pixels": pixels, "max_pixels": self.max_pixels, "declared_type": asset.media_type},
            )

    @staticmethod
    def _to_rgb(image: Image.Image) -> Image.Image:
        """JPEG has no alpha; flatten transparent images against white."""
        if image.mode == "RGB":
            return image
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            return background
        return image.convert("RGB")
