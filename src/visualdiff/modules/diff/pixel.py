"""
Pixel-level image comparison.

Images are decoded with imageio, normalised to 8-bit RGBA, and compared on a
canvas large enough for both; area covered by only one image counts as
mismatch. The rendered diff shows the head image faded towards white with
every mismatching pixel painted in the highlight colour.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import cv2
import imageio.v3 as iio
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComparisonResult:
    """Outcome of comparing two images."""

    distance: float
    """Percentage (0-100) of canvas pixels that differ."""
    diff_image: bytes
    """PNG-encoded visualisation of the differences."""
    width: int
    height: int


class ImageComparator(Protocol):
    """Anything able to compare two encoded images."""

    async def compare(self, image_a: bytes, image_b: bytes) -> ComparisonResult: ...


class PixelDiffer:
    """Exact per-pixel comparator backed by numpy."""

    def __init__(
        self,
        *,
        highlight_color: tuple[int, int, int] = (255, 0, 255),
        fade_alpha: float = 0.3,
    ) -> None:
        self._highlight = np.array(highlight_color, dtype=np.uint8)
        self._fade_alpha = fade_alpha

    async def compare(self, image_a: bytes, image_b: bytes) -> ComparisonResult:
        return await asyncio.to_thread(self.compare_sync, image_a, image_b)

    def compare_sync(self, image_a: bytes, image_b: bytes) -> ComparisonResult:
        first = self._decode(image_a)
        second = self._decode(image_b)
        height = max(first.shape[0], second.shape[0])
        width = max(first.shape[1], second.shape[1])
        canvas_a, present_a = self._place(first, height, width)
        canvas_b, present_b = self._place(second, height, width)

        mismatch = np.any(canvas_a != canvas_b, axis=-1) | (present_a != present_b)
        total = height * width
        distance = float(mismatch.sum()) * 100.0 / total if total else 0.0
        diff = self._render(canvas_a, mismatch)
        encoded = iio.imwrite("<bytes>", diff, extension=".png")
        logger.debug("Compared %dx%d images; distance=%.4f", width, height, distance)
        return ComparisonResult(distance=distance, diff_image=encoded, width=width, height=height)

    def _decode(self, data: bytes) -> np.ndarray:
        image = iio.imread(data, index=0)
        if image.dtype == np.uint16:
            image = (image // 257).astype(np.uint8)
        elif image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        channels = image.shape[-1]
        if channels in (1, 2):
            rgba = cv2.cvtColor(np.ascontiguousarray(image[..., 0]), cv2.COLOR_GRAY2RGBA)
            if channels == 2:
                rgba[..., 3] = image[..., 1]
            return rgba
        if channels == 3:
            return cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)
        return image[..., :4]

    @staticmethod
    def _place(image: np.ndarray, height: int, width: int) -> tuple[np.ndarray, np.ndarray]:
        canvas = np.zeros((height, width, 4), dtype=np.uint8)
        present = np.zeros((height, width), dtype=bool)
        h, w = image.shape[:2]
        canvas[:h, :w] = image
        present[:h, :w] = True
        return canvas, present

    def _render(self, canvas: np.ndarray, mismatch: np.ndarray) -> np.ndarray:
        rgb = np.ascontiguousarray(canvas[..., :3])
        white = np.full_like(rgb, 255)
        faded = cv2.addWeighted(rgb, self._fade_alpha, white, 1.0 - self._fade_alpha, 0.0)
        faded[mismatch] = self._highlight
        return faded


__all__ = ["ComparisonResult", "ImageComparator", "PixelDiffer"]
