"""Best-shot thumbnail helpers operating on frames decoded by the caller."""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image

from castscan.types import CropBox


def extract_best_shot(frame: np.ndarray, crop: CropBox) -> np.ndarray:
    """Cut ``crop`` out of an HxWxC frame array."""
    if frame.ndim < 2:
        raise ValueError(f"Expected an image array, got shape {frame.shape}")
    rows, cols = crop.as_slices()
    region = frame[rows, cols]
    if region.size == 0:
        raise ValueError(f"Crop {crop} is empty for frame of shape {frame.shape}")
    return region


def render_thumbnail(
    frame: np.ndarray,
    crop: CropBox,
    size: Tuple[int, int] = (320, 320),
) -> Image.Image:
    """Return an RGB thumbnail of the best-shot region, bounded by ``size``."""
    region = extract_best_shot(frame, crop)
    image = Image.fromarray(np.ascontiguousarray(region).astype(np.uint8))
    image = image.convert("RGB")
    image.thumbnail(size, Image.LANCZOS)
    return image


def save_thumbnail(
    frame: np.ndarray,
    crop: CropBox,
    dest_path: Path,
    size: Tuple[int, int] = (320, 320),
) -> Path:
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    render_thumbnail(frame, crop, size).save(dest_path, optimize=True, quality=85)
    return dest_path
