"""Image decoding and input tensor preparation."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from interviz.errors import ImageDecodeError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

# Used when the model leaves a spatial dimension dynamic.
DEFAULT_INPUT_SIZE = 224


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    Raises:
        ImageDecodeError: If the bytes are not an image or exceed ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    width, height = image.size
    if max_pixels is not None and width * height > max_pixels:
        raise ImageDecodeError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")

    try:
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except OSError as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc


def _dim(value: object) -> int:
    return value if isinstance(value, int) and value > 0 else DEFAULT_INPUT_SIZE


def prepare_image_input(image: Image.Image, input_shape: Sequence[object]) -> NDArray[np.float32]:
    """Resize and normalize ``image`` into a single-item float32 batch in [0, 1].

    ``input_shape`` is the model's 4-D input shape. A channel axis of 3 in
    position 1 selects NCHW; anything else is treated as NHWC. Dynamic
    dimensions (``None`` or symbolic names) fall back to 224.
    """
    if len(input_shape) != 4:
        raise ValueError(f"Expected a 4-D image input, got shape {list(input_shape)}")

    channels_first = input_shape[1] == 3
    if channels_first:
        height, width = _dim(input_shape[2]), _dim(input_shape[3])
    else:
        height, width = _dim(input_shape[1]), _dim(input_shape[2])

    resized = image.convert("RGB").resize((width, height), Image.BILINEAR)
    tensor = np.asarray(resized, dtype=np.float32) / 255.0
    if channels_first:
        tensor = np.transpose(tensor, (2, 0, 1))
    return np.expand_dims(tensor, axis=0)
