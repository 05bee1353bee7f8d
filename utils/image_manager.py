"""
Image utilities for captured frames and registry-bound face images.
"""
import base64
import binascii
import re
import cv2
import numpy as np
from typing import Tuple, Union

from .config import FACE_IMAGE_MAX_SIDE, FACE_IMAGE_JPEG_QUALITY

DATA_URI_PATTERN = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,", re.IGNORECASE)

_ENCODE_EXTENSIONS = {
    "jpeg": ".jpg",
    "png": ".png",
}


def strip_data_uri_prefix(payload: str) -> str:
    """
    Remove a leading ``data:image/...;base64,`` prefix.

    The registry expects raw base64; browser canvases and our own frame
    encoder both produce data URIs.
    """
    return DATA_URI_PATTERN.sub("", payload.strip(), count=1)


def load_image(source: Union[str, bytes]) -> np.ndarray:
    """
    Load an image from raw bytes, a base64 string or a data URI.

    Returns:
        numpy array of the image in BGR format

    Raises:
        ValueError: If image cannot be loaded
    """
    if isinstance(source, str):
        try:
            img_bytes = base64.b64decode(strip_data_uri_prefix(source), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 image payload")
        return _bytes_to_image(img_bytes)

    elif isinstance(source, bytes):
        return _bytes_to_image(source)

    else:
        raise ValueError(f"Unsupported image source type: {type(source)}")


def _bytes_to_image(img_bytes: bytes) -> np.ndarray:
    """Convert bytes to OpenCV image."""
    if not img_bytes:
        raise ValueError("Empty image payload")
    nparr = np.frombuffer(img_bytes, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Could not decode image from bytes")
    return img


def encode_data_uri(image: np.ndarray, image_format: str = "jpeg", quality: int = 90) -> str:
    """
    Encode a BGR frame as a ``data:image/<format>;base64,`` URI.

    Raises:
        ValueError: If OpenCV cannot encode the frame
    """
    extension = _ENCODE_EXTENSIONS.get(image_format)
    if extension is None:
        raise ValueError(f"Unsupported image format: {image_format}")

    params = [int(cv2.IMWRITE_JPEG_QUALITY), quality] if image_format == "jpeg" else []
    ok, buffer = cv2.imencode(extension, image, params)
    if not ok:
        raise ValueError(f"Could not encode frame as {image_format}")

    encoded = base64.b64encode(buffer.tobytes()).decode("ascii")
    return f"data:image/{image_format};base64,{encoded}"


def resize_image(image: np.ndarray, max_side: int = FACE_IMAGE_MAX_SIDE) -> np.ndarray:
    """
    Downscale an image so its longest side is at most `max_side`.

    Returns the original image when it is already within limits.
    """
    h, w = image.shape[:2]
    longest = max(h, w)
    if longest <= max_side:
        return image

    scale = max_side / longest
    new_w, new_h = max(int(w * scale), 1), max(int(h * scale), 1)
    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)


def prepare_registry_image(
    payload: str,
    max_side: int = FACE_IMAGE_MAX_SIDE,
    quality: int = FACE_IMAGE_JPEG_QUALITY,
) -> Tuple[str, Tuple[int, int]]:
    """
    Turn a captured frame payload into the raw base64 JPEG sent to the registry.

    Strips any data-URI prefix, decodes, downscales and re-encodes the image.

    Returns:
        (raw base64 string, (width, height)) of the prepared image

    Raises:
        ValueError: If the payload is empty or not a decodable image
    """
    image = load_image(payload)
    image = resize_image(image, max_side)
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("Could not re-encode face image")

    h, w = image.shape[:2]
    return base64.b64encode(buffer.tobytes()).decode("ascii"), (w, h)
