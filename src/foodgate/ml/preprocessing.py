"""Image preprocessing pipeline.

Decodes a raw or base64 image payload, applies EXIF orientation, converts to
RGB, resizes to cover the model's square input, center-crops, and normalizes
into an NCHW float32 tensor.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from foodgate.errors import DecodeError, InvalidInputError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# MobileNetV2 ImageNet normalization
IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)

DEFAULT_INPUT_SIZE: int = 224

_DATA_URL_MARKER = ";base64,"

ImageInput = bytes | bytearray | memoryview | str


@dataclass(frozen=True)
class PreprocessedImage:
    """A model-ready tensor plus the decoded image's original dimensions."""

    data: NDArray[np.float32]
    shape: tuple[int, ...]
    original_size: tuple[int, int]


class ImagePreprocessor:
    """Turns image payloads into normalized NCHW tensors.

    Stateless apart from its limits, so one instance can be shared across
    threads.
    """

    def __init__(
        self,
        *,
        max_image_pixels: int = 16_777_216,
        max_file_size: int = 20_971_520,
    ) -> None:
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size
        self._mean = np.asarray(IMAGENET_MEAN, dtype=np.float32).reshape(3, 1, 1)
        self._std = np.asarray(IMAGENET_STD, dtype=np.float32).reshape(3, 1, 1)

    def preprocess(self, image: ImageInput, target_size: int = DEFAULT_INPUT_SIZE) -> PreprocessedImage:
        """Decode and convert an image payload into a ``(1, 3, S, S)`` tensor.

        Args:
            image: Encoded image bytes, or a base64 string (a ``data:`` URL
                prefix is accepted).
            target_size: Side length of the square model input.

        Raises:
            InvalidInputError: If the payload is empty, too large, or not
                bytes/str.
            DecodeError: If the payload is not a decodable image.
        """
        decoded = self.decode_image(image)
        original_size = decoded.size

        resized = ImageOps.fit(
            decoded,
            (target_size, target_size),
            method=Image.Resampling.BILINEAR,
            centering=(0.5, 0.5),
        )
        pixels = np.asarray(resized, dtype=np.float32) / 255.0

        # HWC -> CHW, then normalize per channel
        chw = pixels.transpose(2, 0, 1)
        normalized = (chw - self._mean) / self._std
        tensor = np.ascontiguousarray(normalized[np.newaxis, ...], dtype=np.float32)

        return PreprocessedImage(
            data=tensor,
            shape=tuple(tensor.shape),
            original_size=original_size,
        )

    def decode_image(self, image: ImageInput) -> Image.Image:
        """Decode an image payload into an RGB PIL image with EXIF orientation applied."""
        raw = self._to_bytes(image)
        if len(raw) > self._max_file_size:
            raise InvalidInputError(f"Image payload is {len(raw)} bytes, limit is {self._max_file_size}")

        try:
            with Image.open(io.BytesIO(raw)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise InvalidInputError(
                        f"Image is {width}x{height} pixels, limit is {self._max_image_pixels}"
                    )
                img.load()
                oriented = ImageOps.exif_transpose(img)
                return oriented.convert("RGB")
        except InvalidInputError:
            raise
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError, SyntaxError, ValueError) as exc:
            logger.debug("Failed to decode image: %s", exc)
            raise DecodeError(f"Invalid image data: {exc}") from exc

    @staticmethod
    def _to_bytes(image: ImageInput) -> bytes:
        if isinstance(image, str):
            payload = image.strip()
            if payload.startswith("data:") and _DATA_URL_MARKER in payload:
                payload = payload.split(_DATA_URL_MARKER, 1)[1]
            # MIME-wrapped base64 carries a newline every 76 characters
            payload = "".join(payload.split())
            if not payload:
                raise InvalidInputError("Image payload is empty")
            try:
                raw = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise DecodeError(f"Invalid base64 image data: {exc}") from exc
        elif isinstance(image, (bytes, bytearray, memoryview)):
            raw = bytes(image)
        else:
            raise InvalidInputError(f"Unsupported image type: {type(image).__name__}. Expected bytes or str.")

        if not raw:
            raise InvalidInputError("Image payload is empty")
        return raw
