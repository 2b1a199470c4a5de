"""Pose estimation from a network's heatmaps, and drawing of the estimated pose."""

from __future__ import annotations

import math
from enum import IntEnum
from typing import Any, Mapping, Sequence

import numpy as np

from .stage import CompletedRequest, PostProcessingStage, StreamInfo, register_stage
from .tf import MAIN_STREAM, TfStage

FEATURE_SIZE = 17
HEATMAP_DIMS = 9
INPUT_SIZE = 257
ESTIMATION_NAME = "pose_estimation_tf"
PLOT_NAME = "plot_pose_cv"

LOCATIONS_KEY = "pose_estimation.locations"
CONFIDENCES_KEY = "pose_estimation.confidences"

_COLOUR = 255
_RADIUS = 5
_THICKNESS = 2


class Feature(IntEnum):
    """Body keypoints, in the order the network reports them."""

    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


_SKELETON = (
    (Feature.LEFT_SHOULDER, Feature.RIGHT_SHOULDER),
    (Feature.LEFT_SHOULDER, Feature.LEFT_ELBOW),
    (Feature.LEFT_SHOULDER, Feature.LEFT_HIP),
    (Feature.RIGHT_SHOULDER, Feature.RIGHT_ELBOW),
    (Feature.RIGHT_SHOULDER, Feature.RIGHT_HIP),
    (Feature.LEFT_ELBOW, Feature.LEFT_WRIST),
    (Feature.RIGHT_ELBOW, Feature.RIGHT_WRIST),
    (Feature.LEFT_HIP, Feature.RIGHT_HIP),
    (Feature.LEFT_HIP, Feature.LEFT_KNEE),
    (Feature.LEFT_KNEE, Feature.LEFT_ANKLE),
    (Feature.RIGHT_KNEE, Feature.RIGHT_HIP),
    (Feature.RIGHT_KNEE, Feature.RIGHT_ANKLE),
)


def estimate_pose(
    heatmaps, offsets, main_info: StreamInfo
) -> tuple[list[tuple[int, int]], list[float]]:
    """Locate each keypoint in main image coordinates.

    heatmaps holds 9x9x17 scores and offsets 9x9x34 refinements (y then x).
    Returns the (x, y) location and the confidence of every feature.
    """
    cells = HEATMAP_DIMS * HEATMAP_DIMS
    heat = np.asarray(heatmaps, dtype=np.float32).ravel()
    offs = np.asarray(offsets, dtype=np.float32).ravel()
    if heat.size != cells * FEATURE_SIZE:
        raise ValueError("estimate_pose: unexpected heatmap size")
    if offs.size != cells * FEATURE_SIZE * 2:
        raise ValueError("estimate_pose: unexpected offsets size")
    heat = heat.reshape(cells, FEATURE_SIZE)
    offs = offs.reshape(cells, FEATURE_SIZE * 2)

    # argmax takes the first maximum, as a strict "greater than" scan does.
    best = heat.argmax(axis=0)
    confidences = [float(heat[cell, i]) for i, cell in enumerate(best)]

    locations = []
    for i, cell in enumerate(best):
        y, x = divmod(int(cell), HEATMAP_DIMS)
        base_y = y * main_info.height // (HEATMAP_DIMS - 1)
        base_x = x * main_info.width // (HEATMAP_DIMS - 1)
        loc_y = int(np.float32(base_y) + offs[cell, i])
        loc_x = int(np.float32(base_x) + offs[cell, i + FEATURE_SIZE])
        locations.append((loc_x, loc_y))
    return locations, confidences


def _paint(image: np.ndarray, left: float, right: float, top: float, bottom: float):
    """Return the clipped window of image and its pixel coordinates, or None."""
    height, width = image.shape
    x0 = max(int(math.floor(left)), 0)
    x1 = min(int(math.ceil(right)), width - 1)
    y0 = max(int(math.floor(top)), 0)
    y1 = min(int(math.ceil(bottom)), height - 1)
    if x0 > x1 or y0 > y1:
        return None
    yy, xx = np.mgrid[y0 : y1 + 1, x0 : x1 + 1]
    return image[y0 : y1 + 1, x0 : x1 + 1], xx.astype(np.float64), yy.astype(np.float64)


def _draw_line(image: np.ndarray, start, end, thickness: int) -> None:
    half = thickness / 2
    (sx, sy), (ex, ey) = start, end
    window = _paint(
        image, min(sx, ex) - half, max(sx, ex) + half, min(sy, ey) - half, max(sy, ey) + half
    )
    if window is None:
        return
    region, xx, yy = window
    dx, dy = ex - sx, ey - sy
    len2 = dx * dx + dy * dy
    if len2:
        t = np.clip(((xx - sx) * dx + (yy - sy) * dy) / len2, 0.0, 1.0)
    else:
        t = np.zeros_like(xx)
    dist2 = (xx - (sx + t * dx)) ** 2 + (yy - (sy + t * dy)) ** 2
    region[dist2 <= half * half] = _COLOUR


def _draw_circle(image: np.ndarray, centre, radius: int, thickness: int) -> None:
    half = thickness / 2
    cx, cy = centre
    reach = radius + half
    window = _paint(image, cx - reach, cx + reach, cy - reach, cy + reach)
    if window is None:
        return
    region, xx, yy = window
    dist = np.hypot(xx - cx, yy - cy)
    region[np.abs(dist - radius) <= half] = _COLOUR


def draw_features(
    image: np.ndarray,
    locations: Sequence[tuple[int, int]],
    confidences: Sequence[float],
    threshold: float,
) -> np.ndarray:
    """Draw the pose onto a greyscale image in place and return it.

    Features below the threshold are ringed; limbs whose two ends are both
    above it are drawn as lines.
    """
    if len(locations) < FEATURE_SIZE or len(confidences) < FEATURE_SIZE:
        raise ValueError(f"draw_features: need {FEATURE_SIZE} locations and confidences")
    if image.ndim != 2:
        raise ValueError("draw_features: expected a two-dimensional image")

    for location, confidence in zip(locations[:FEATURE_SIZE], confidences[:FEATURE_SIZE]):
        if confidence < threshold:
            _draw_circle(image, location, _RADIUS, _THICKNESS)

    for a, b in _SKELETON:
        if confidences[a] > threshold and confidences[b] > threshold:
            _draw_line(image, locations[a], locations[b], _THICKNESS)
    return image


def _luma_plane(buffer, info: StreamInfo) -> np.ndarray:
    """A writable height x width view of the Y plane of a YUV420 buffer."""
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.uint8 or not buffer.flags.c_contiguous:
            raise ValueError("buffer must be a contiguous uint8 array")
        flat = buffer.reshape(-1)
    else:
        flat = np.frombuffer(buffer, dtype=np.uint8)
    size = info.height * info.stride
    if info.stride < info.width or flat.size < size:
        raise ValueError("buffer too small for the stream")
    return flat[:size].reshape(info.height, info.stride)[:, : info.width]


@register_stage(ESTIMATION_NAME)
class PoseEstimationTfStage(TfStage):
    """Estimates a single body pose from the low resolution image."""

    def __init__(self, loader=None) -> None:
        super().__init__(INPUT_SIZE, INPUT_SIZE, loader)
        self.confidences: list[float] = []
        self.locations: list[tuple[int, int]] = []

    def name(self) -> str:
        return ESTIMATION_NAME

    def read_extras(self, params: Mapping[str, Any]) -> None:
        # Nothing to read, but a mismatch here usually means the wrong model.
        shapes = self.interpreter.output_shapes
        expected = (1, HEATMAP_DIMS, HEATMAP_DIMS, FEATURE_SIZE)
        if not shapes or tuple(shapes[0])[:4] != expected:
            raise RuntimeError("PoseEstimationTfStage: Unexpected output dimensions")

    def check_configuration(self) -> None:
        if self.main_info is None:
            raise RuntimeError("PoseEstimationTfStage: Main stream is required")

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        self.locations, self.confidences = estimate_pose(
            outputs[0], outputs[1], self.main_info
        )

    def apply_results(self, request: CompletedRequest) -> None:
        request.post_process_metadata[LOCATIONS_KEY] = [list(self.locations)]
        request.post_process_metadata[CONFIDENCES_KEY] = [list(self.confidences)]


@register_stage(PLOT_NAME)
class PlotPoseCvStage(PostProcessingStage):
    """Draws estimated poses onto the main image."""

    def __init__(self) -> None:
        self.confidence_threshold = -1.0
        self.main_info: StreamInfo | None = None

    def name(self) -> str:
        return PLOT_NAME

    def read(self, params: Mapping[str, Any]) -> None:
        self.confidence_threshold = float(params.get("confidence_threshold", -1.0))

    def configure(self, main_info: StreamInfo | None = None) -> None:
        self.main_info = main_info

    def process(self, request: CompletedRequest) -> bool:
        if self.main_info is None:
            return False
        metadata = request.post_process_metadata
        all_locations = metadata.get(LOCATIONS_KEY, [])
        all_confidences = metadata.get(CONFIDENCES_KEY, [])
        for locations, confidences in zip(all_locations, all_confidences):
            if locations and confidences:
                image = _luma_plane(request.buffers[MAIN_STREAM], self.main_info)
                draw_features(image, locations, confidences, self.confidence_threshold)
        return False