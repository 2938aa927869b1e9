"""
RGBA pixel grids backed by numpy, plus the OpenCV load/save helpers that
normalize any readable image into the fixed 4-channel layout the matcher
expects.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

import cv2
import numpy as np


@dataclass(frozen=True)
class Pixel:
    red: int
    green: int
    blue: int
    alpha: int = 255

    @property
    def rgba(self) -> int:
        """Channels packed into one 32-bit value, red in the low byte."""
        return (
            (self.alpha & 0xFF) << 24
            | (self.blue & 0xFF) << 16
            | (self.green & 0xFF) << 8
            | (self.red & 0xFF)
        )

    @classmethod
    def from_rgba(cls, value: int) -> "Pixel":
        return cls(
            value & 0xFF,
            (value >> 8) & 0xFF,
            (value >> 16) & 0xFF,
            (value >> 24) & 0xFF,
        )

    def as_array(self) -> np.ndarray:
        return np.array(
            [self.red, self.green, self.blue, self.alpha], dtype=np.uint8
        )


MASK_BACKGROUND = Pixel(0, 0, 0, 255)
HIGHLIGHT = Pixel(255, 0, 0, 255)


class PixelGrid:
    """Row-major RGBA raster. Read-only unless created through ``copy()``."""

    def __init__(self, data: np.ndarray, writable: bool = False):
        if data.ndim != 3 or data.shape[2] != 4 or data.dtype != np.uint8:
            raise ValueError(
                f"PixelGrid expects an (H, W, 4) uint8 array, got "
                f"{data.shape} {data.dtype}"
            )
        if writable and not data.flags.writeable:
            data = data.copy()
        # Own view, so the caller's array keeps its flags.
        self._data = data.view()
        self._data.flags.writeable = writable

    @classmethod
    def from_array(cls, array: np.ndarray, writable: bool = False) -> "PixelGrid":
        return cls(_to_rgba(np.asarray(array)).copy(), writable=writable)

    @classmethod
    def solid(cls, width: int, height: int, pixel: Pixel) -> "PixelGrid":
        data = np.empty((height, width, 4), dtype=np.uint8)
        data[:] = pixel.as_array()
        return cls(data)

    @property
    def width(self) -> int:
        return int(self._data.shape[1])

    @property
    def height(self) -> int:
        return int(self._data.shape[0])

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def writable(self) -> bool:
        return bool(self._data.flags.writeable)

    @property
    def rgb(self) -> np.ndarray:
        return self._data[:, :, :3].astype(np.int32)

    def get_pixel(self, row: int, col: int) -> Pixel:
        r, g, b, a = (int(v) for v in self._data[row, col])
        return Pixel(r, g, b, a)

    def set_pixel(self, row: int, col: int, pixel: Pixel) -> None:
        if not self.writable:
            raise ValueError("PixelGrid is read-only; use copy() to draw on it")
        self._data[row, col] = pixel.as_array()

    def copy(self) -> "PixelGrid":
        return PixelGrid(self._data.copy(), writable=True)

    def background_mask(self, sentinel: Pixel = MASK_BACKGROUND) -> np.ndarray:
        """Boolean (H, W) array, True where the pixel equals ``sentinel``."""
        return np.all(self._data == sentinel.as_array(), axis=2)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelGrid):
            return NotImplemented
        return np.array_equal(self._data, other._data)

    def __repr__(self) -> str:
        return f"PixelGrid(width={self.width}, height={self.height})"


def _to_rgba(img: np.ndarray) -> np.ndarray:
    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    elif img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 2:
        img = np.stack([img] * 3, axis=-1)
    channels = img.shape[2]
    if channels == 1:
        img = np.concatenate([img] * 3, axis=-1)
        channels = 3
    if channels == 2:
        gray, alpha = img[:, :, 0], img[:, :, 1]
        return np.ascontiguousarray(np.stack([gray, gray, gray, alpha], axis=-1))
    if channels == 3:
        alpha = np.full(img.shape[:2] + (1,), 255, dtype=np.uint8)
        return np.ascontiguousarray(np.concatenate([img, alpha], axis=-1))
    if channels == 4:
        return np.ascontiguousarray(img)
    raise ValueError(f"Unsupported channel count: {channels}")


def load_pixel_grid(path: str) -> PixelGrid:
    if not os.path.exists(path):
        raise RuntimeError(f"Failed to load image: {path}")
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise RuntimeError(f"Failed to load image: {path}")
    if img.ndim == 3 and img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    elif img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    return PixelGrid(_to_rgba(img))


def save_pixel_grid(grid: PixelGrid, path: str) -> None:
    bgra = cv2.cvtColor(grid.data, cv2.COLOR_RGBA2BGRA)
    try:
        ok = cv2.imwrite(path, bgra)
    except cv2.error as exc:
        raise RuntimeError(f"Failed to write image: {path}") from exc
    if not ok:
        raise RuntimeError(f"Failed to write image: {path}")
