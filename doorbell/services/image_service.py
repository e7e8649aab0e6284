"""
Image Processing Service
Utilities for image handling
"""
from datetime import datetime
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from doorbell import config


def bytes_to_image(image_bytes: bytes) -> np.ndarray:
    """Convert uploaded bytes to OpenCV image"""
    nparr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Failed to decode image")
    return img


def draw_bounding_box(image: np.ndarray, bbox: tuple, color: tuple = (0, 255, 0), thickness: int = 2,
                      label: Optional[str] = None) -> np.ndarray:
    """Draw a bounding box on an image
    Args:
        image: OpenCV image (BGR format)
        bbox: (x, y, w, h) bounding box coordinates
        color: BGR color tuple (default: green)
        thickness: Line thickness
        label: Optional text drawn above the box
    Returns:
        Image with bounding box drawn
    """
    x, y, w, h = bbox
    cv2.rectangle(image, (x, y), (x + w, y + h), color, thickness)

    if label:
        font = cv2.FONT_HERSHEY_SIMPLEX
        font_scale = 0.6
        text_thickness = 2
        (text_width, text_height), baseline = cv2.getTextSize(label, font, font_scale, text_thickness)

        # Above the box, or at the top edge if too close
        text_x = x
        text_y = max(y - 5, text_height + 5)

        cv2.rectangle(image,
                      (text_x, text_y - text_height - 5),
                      (text_x + text_width + 5, text_y + baseline),
                      color, -1)
        cv2.putText(image, label, (text_x + 2, text_y - 2),
                    font, font_scale, (0, 0, 0), text_thickness, cv2.LINE_AA)

    return image


def crop_with_context(image: np.ndarray, bbox: tuple, padding: float = config.SNAPSHOT_PADDING) -> np.ndarray:
    """Face crop widened by a fraction of the box size for context"""
    height, width = image.shape[:2]
    x, y, w, h = bbox
    pad = int(max(w, h) * padding)
    x1 = max(0, x - pad)
    y1 = max(0, y - pad)
    x2 = min(width, x + w + pad)
    y2 = min(height, y + h + pad)
    crop = image[y1:y2, x1:x2]
    if crop.size == 0:
        return image.copy()
    return crop.copy()


def save_image(image: np.ndarray, prefix: str, directory: Path = None, bbox: Optional[tuple] = None,
               label: Optional[str] = None) -> str:
    """Save image and return path
    Args:
        image: OpenCV image (BGR format)
        prefix: File name prefix (person or event kind)
        directory: Target directory, defaults to config.IMAGES_DIR
        bbox: Optional (x, y, w, h) bounding box to draw on image
        label: Optional text for the bounding box
    """
    img_to_save = image.copy()
    if bbox is not None:
        img_to_save = draw_bounding_box(img_to_save, bbox, label=label)

    directory = Path(directory or config.IMAGES_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    filepath = directory / f"{prefix}_{timestamp}.jpg"

    if not cv2.imwrite(str(filepath), img_to_save, [cv2.IMWRITE_JPEG_QUALITY, 95]):
        raise OSError(f"Failed to write image {filepath}")
    return str(filepath)


def save_snapshot(image: np.ndarray, bbox: tuple, prefix: str, directory: Path = None,
                  label: Optional[str] = None) -> str:
    """Save the face region of a detection frame"""
    x, y, w, h = bbox
    height, width = image.shape[:2]
    pad = int(max(w, h) * config.SNAPSHOT_PADDING)
    crop = crop_with_context(image, bbox)
    # Box coordinates relative to the crop
    local_bbox = (x - max(0, x - pad), y - max(0, y - pad), w, h)
    if w >= width and h >= height:
        local_bbox = None
    return save_image(crop, prefix, directory=directory, bbox=local_bbox, label=label)
