"""Sobel edge detection on the luma plane of the main image."""

from __future__ import annotations

import math
from typing import Any, Mapping

import numpy as np
from scipy.ndimage import correlate1d

from .stage import CompletedRequest, PostProcessingStage, StreamInfo, register_stage
from .tf import MAIN_STREAM

NAME = "sobel_cv"
_BLUR = np.array([1, 2, 1], dtype=np.int64)


def _binomial(size: int) -> np.ndarray:
    return np.array([math.comb(size - 1, k) for k in range(size)], dtype=np.int64)


def _sobel_kernels(ksize: int) -> tuple[np.ndarray, np.ndarray]:
    """Derivative and smoothing kernels for a first derivative of the given size."""
    derivative = np.array([-1, 0, 1], dtype=np.int64)
    if ksize == -1:
        return derivative, np.array([3, 10, 3], dtype=np.int64)
    if ksize == 1:
        return derivative, np.array([1], dtype=np.int64)
    if ksize < 1 or ksize > 31 or ksize % 2 == 0:
        raise ValueError(f"sobel_filter: unsupported kernel size {ksize}")
    return np.convolve(derivative, _binomial(ksize - 2)), _binomial(ksize)


def _byte_view(buffer) -> np.ndarray:
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.uint8 or not buffer.flags.c_contiguous:
            raise ValueError("buffer must be a contiguous uint8 array")
        return buffer.reshape(-1)
    return np.frombuffer(buffer, dtype=np.uint8)


def sobel_filter(buffer, info: StreamInfo, ksize: int = 3) -> None:
    """Replace a YUV420 image in place by its greyscale edge magnitude."""
    derivative, smoothing = _sobel_kernels(ksize)
    flat = _byte_view(buffer)
    y_size = info.stride * info.height
    if info.stride < info.width or flat.size < y_size + y_size // 2:
        raise ValueError("sobel_filter: buffer too small for the stream")

    flat[y_size : y_size + y_size // 2] = 128
    luma = flat[:y_size].reshape(info.height, info.stride)[:, : info.width]

    # 3x3 Gaussian blur with reflected borders, rounded back to 8 bits.
    image = luma.astype(np.int64)
    blurred = correlate1d(image, _BLUR, axis=0, mode="mirror")
    blurred = correlate1d(blurred, _BLUR, axis=1, mode="mirror")
    blurred = (blurred + 8) // 16

    grad_x = correlate1d(blurred, derivative, axis=1, mode="mirror")
    grad_x = correlate1d(grad_x, smoothing, axis=0, mode="mirror")
    grad_y = correlate1d(blurred, derivative, axis=0, mode="mirror")
    grad_y = correlate1d(grad_y, smoothing, axis=1, mode="mirror")

    # Saturate to 16 bits, then take magnitudes saturated to 8 bits.
    mag_x = np.minimum(np.abs(np.clip(grad_x, -32768, 32767)), 255)
    mag_y = np.minimum(np.abs(np.clip(grad_y, -32768, 32767)), 255)
    combined = np.rint(0.5 * mag_x + 0.5 * mag_y)
    luma[...] = np.clip(combined, 0, 255).astype(np.uint8)


@register_stage(NAME)
class SobelCvStage(PostProcessingStage):
    """Turns the main image into an edge map."""

    def __init__(self) -> None:
        self.ksize = 3
        self.main_info: StreamInfo | None = None

    def name(self) -> str:
        return NAME

    def read(self, params: Mapping[str, Any]) -> None:
        self.ksize = int(params.get("ksize", 3))

    def configure(self, main_info: StreamInfo | None = None) -> None:
        if main_info is None or main_info.pixel_format != "YUV420":
            raise RuntimeError("SobelCvStage: only YUV420 format supported")
        self.main_info = main_info

    def process(self, request: CompletedRequest) -> bool:
        if self.main_info is None:
            raise RuntimeError("SobelCvStage: not configured")
        sobel_filter(request.buffers[MAIN_STREAM], self.main_info, self.ksize)
        return False