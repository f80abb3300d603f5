import cv2
import numpy as np
from typing import Optional, Tuple

from remet.core.logging import get_logger
from remet.schemas.scan_schema import BoundingBox


logger = get_logger(__name__)


def decode_image_bytes(data: bytes) -> Optional[np.ndarray]:
    """
    Decodes encoded image bytes (JPEG, PNG, HEIC-converted, ...) into an
    OpenCV image array, in memory only.

    Args:
        data (bytes): Raw file contents of the selected photo.

    Returns:
        Optional[np.ndarray]: The decoded image in BGR format, or None if decoding fails.
    """
    if not data:
        return None

    # Convert bytes to a 1D NumPy array of unsigned 8-bit integers
    np_arr = np.frombuffer(data, np.uint8)

    # Decode the 1D array into a 3D OpenCV image matrix (H, W, Channels)
    image = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)

    if image is None:
        logger.warning(f"Could not decode {len(data)} bytes as an image")

    return image


def convert_and_resize(
    image: np.ndarray,
    target_size: Tuple[int, int],
    to_rgb: bool = True
) -> np.ndarray:
    """
    Resizes the image and optionally converts the color space from BGR to RGB.

    Args:
        image (np.ndarray): The input OpenCV image (BGR).
        target_size (Tuple[int, int]): The desired (width, height) output size.
        to_rgb (bool): If True, converts the image to RGB color space.

    Returns:
        np.ndarray: The processed image matrix.
    """
    w, h = target_size[0], target_size[1]
    resized_image = cv2.resize(image, (w, h), interpolation=cv2.INTER_AREA)

    if to_rgb:
        return cv2.cvtColor(resized_image, cv2.COLOR_BGR2RGB)

    return resized_image


def prepare_tensor_for_onnx(
    image: np.ndarray,
    mean: float = 0.5,
    std: float = 0.5
) -> np.ndarray:
    """
    Normalizes the image and transposes dimensions for ONNX Runtime inference.

    Standard ONNX models require inputs in NCHW format (Batch, Channels, Height, Width)
    and normalized pixel values.

    Args:
        image (np.ndarray): The RGB image array of shape (Height, Width, Channels).
        mean (float): The mean value for normalization.
        std (float): The standard deviation for normalization.

    Returns:
        np.ndarray: A 4D tensor of shape (1, Channels, Height, Width) ready for inference.
    """
    # Scale pixel values from [0, 255] to [0.0, 1.0]
    normalized_img = image.astype(np.float32) / 255.0

    normalized_img = (normalized_img - mean) / std

    # HWC -> CHW, then add the batch dimension
    chw_image = np.transpose(normalized_img, (2, 0, 1))
    return np.expand_dims(chw_image, axis=0)


def crop_face(
    image: np.ndarray,
    bounding_box: BoundingBox,
    padding: float = 0.3
) -> Optional[np.ndarray]:
    """
    Cuts a face out of a full frame, with some context around it.

    Encoders trained on loosely cropped faces recognize better with padding,
    so the box grows by `padding` times its size on each side before the cut.

    Args:
        image (np.ndarray): Full BGR frame of shape (H, W, 3).
        bounding_box (BoundingBox): Normalized, top-left origin face box.
        padding (float): Relative margin added on every side.

    Returns:
        Optional[np.ndarray]: A copy of the crop, or None if the box is empty.
    """
    img_height, img_width = image.shape[:2]
    x1, y1, x2, y2 = bounding_box.padded(padding).to_pixels(img_width, img_height)

    if x2 <= x1 or y2 <= y1:
        return None

    # Copy so the crop does not keep the whole frame alive
    return image[y1:y2, x1:x2].copy()
