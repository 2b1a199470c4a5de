"""Image segmentation results and the stage that produces them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np

from .stage import CompletedRequest, StreamInfo, register_stage
from .tf import MAIN_STREAM, TfStage, read_labels_file

logger = logging.getLogger(__name__)

WIDTH = 257
HEIGHT = 257
NAME = "segmentation_tf"
RESULT_KEY = "segmentation.result"


@dataclass
class Segmentation:
    """A map giving the category index of every pixel."""

    width: int
    height: int
    labels: list[str] = field(default_factory=list)
    segmentation: np.ndarray = field(
        default_factory=lambda: np.zeros(0, dtype=np.uint8)
    )


def segment(output, num_categories: int) -> tuple[np.ndarray, list[int]]:
    """Pick the most confident category for every pixel.

    output holds num_categories scores per pixel. Returns the per-pixel
    category indices and a histogram of how many pixels each category got.
    """
    if num_categories <= 0:
        raise ValueError("segment: need at least one category")
    scores = np.asarray(output).ravel()
    if scores.size % num_categories:
        raise ValueError("segment: output size is not a multiple of the categories")
    indices = scores.reshape(-1, num_categories).argmax(axis=1)
    histogram = np.bincount(indices, minlength=num_categories)
    return (indices % 256).astype(np.uint8), [int(n) for n in histogram]


def largest_categories(
    histogram: Sequence[int], labels: Sequence[str], threshold: int
) -> list[tuple[str, int]]:
    """Labels and pixel counts of the categories with at least threshold pixels,
    most common first."""
    ranked = sorted(enumerate(histogram), key=lambda item: -item[1])
    result = []
    for index, count in ranked:
        if count < threshold:
            break
        result.append((labels[index], count))
    return result


def _byte_view(buffer) -> np.ndarray:
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.uint8 or not buffer.flags.c_contiguous:
            raise ValueError("buffer must be a contiguous uint8 array")
        return buffer.reshape(-1)
    return np.frombuffer(buffer, dtype=np.uint8)


def draw_segmentation(buffer, segmentation, num_labels: int, info: StreamInfo) -> None:
    """Draw the map in greyscale into the bottom right corner of a YUV420 buffer."""
    if num_labels <= 0:
        raise ValueError("draw_segmentation: need at least one label")
    seg = np.asarray(segmentation, dtype=np.uint8).ravel()
    if seg.size != WIDTH * HEIGHT:
        raise ValueError("draw_segmentation: unexpected segmentation size")
    if info.width < WIDTH or info.height < HEIGHT or info.stride < info.width:
        raise ValueError("draw_segmentation: image too small for the segmentation")

    flat = _byte_view(buffer)
    y_size = info.height * info.stride
    uv_size = (info.height // 2) * (info.stride // 2)
    if flat.size < y_size + 2 * uv_size:
        raise ValueError("draw_segmentation: buffer too small for the stream")

    y_offset = info.height - HEIGHT
    x_offset = info.width - WIDTH
    scale = 255 // num_labels
    shaded = ((scale * seg.astype(np.int64)) & 0xFF).astype(np.uint8)
    luma = flat[:y_size].reshape(info.height, info.stride)
    luma[y_offset : y_offset + HEIGHT, x_offset : x_offset + WIDTH] = shaded.reshape(
        HEIGHT, WIDTH
    )

    # Neutral chroma makes the drawn region grey.
    y_offset //= 2
    x_offset //= 2
    for start in (y_size, y_size + uv_size):
        plane = flat[start : start + uv_size].reshape(info.height // 2, info.stride // 2)
        plane[y_offset : y_offset + HEIGHT // 2, x_offset : x_offset + WIDTH // 2] = 128


@register_stage(NAME)
class SegmentationTfStage(TfStage):
    """Segments the low resolution image and optionally draws the result."""

    def __init__(self, loader=None) -> None:
        super().__init__(WIDTH, HEIGHT, loader)
        self.draw = True
        self.threshold = 5000
        self.labels: list[str] = []
        self.segmentation = np.zeros(WIDTH * HEIGHT, dtype=np.uint8)

    def name(self) -> str:
        return NAME

    def read_extras(self, params: Mapping[str, Any]) -> None:
        self.draw = bool(int(params.get("draw", 1)))
        self.threshold = int(params.get("threshold", 5000))
        self.labels = read_labels_file(str(params.get("labels_file", "")))

        shapes = self.interpreter.output_shapes
        shape = tuple(shapes[0]) if shapes else ()
        if (
            len(shape) != 4
            or shape[1] != HEIGHT
            or shape[2] != WIDTH
            or shape[3] != len(self.labels)
        ):
            raise RuntimeError("SegmentationTfStage: Unexpected output tensor size")

    def check_configuration(self) -> None:
        if self.main_info is None and self.draw:
            raise RuntimeError("SegmentationTfStage: Main stream is required for drawing")

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        segmentation, histogram = segment(outputs[0], len(self.labels))
        if segmentation.size != WIDTH * HEIGHT:
            raise RuntimeError("SegmentationTfStage: Unexpected output tensor size")
        self.segmentation = segmentation
        if self.config.verbose:
            largest = largest_categories(histogram, self.labels, self.threshold)
            logger.info(", ".join(f"{label} ({count})" for label, count in largest))

    def apply_results(self, request: CompletedRequest) -> None:
        request.post_process_metadata[RESULT_KEY] = Segmentation(
            WIDTH, HEIGHT, list(self.labels), self.segmentation.copy()
        )
        if self.draw:
            draw_segmentation(
                request.buffers[MAIN_STREAM],
                self.segmentation,
                len(self.labels),
                self.main_info,
            )