"""Object detection results and the stage that produces them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np

from .stage import CompletedRequest, StreamInfo, register_stage
from .tf import TfStage, read_labels_file

logger = logging.getLogger(__name__)

WIDTH = 300
HEIGHT = 300
NAME = "object_detect_tf"


@dataclass(frozen=True)
class Rectangle:
    """An axis-aligned rectangle with its top left corner at (x, y)."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    def area(self) -> int:
        return self.width * self.height

    def bounded_to(self, other: Rectangle) -> Rectangle:
        """The intersection with other, with zero size if they do not meet."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))


@dataclass
class Detection:
    """One detected object."""

    category: int
    name: str
    confidence: float
    box: Rectangle

    def __str__(self) -> str:
        box = self.box
        return (
            f"{self.name}[{self.category}] ({format(self.confidence, '.2g')}) "
            f"@ {box.x},{box.y} {box.width}x{box.height}"
        )


def _clamp(value, high: int) -> int:
    return min(max(int(value), 0), high)


def interpret_detections(
    boxes,
    classes,
    scores,
    labels: Sequence[str],
    lores_info: StreamInfo,
    main_info: StreamInfo,
    confidence_threshold: float = 0.5,
    overlap_threshold: float = 0.5,
) -> list[Detection]:
    """Turn network outputs into detections in main image coordinates.

    Boxes are (top, left, bottom, right) fractions of the network's input,
    which is a centre crop of the low resolution image. Detections of the
    same category that overlap are merged, keeping the more confident one.
    """
    if lores_info.width < WIDTH or lores_info.height < HEIGHT:
        raise ValueError("interpret_detections: low resolution image too small")
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    classes = np.asarray(classes, dtype=np.float32).ravel()
    scores = np.asarray(scores, dtype=np.float32).ravel()
    width, height = np.float32(WIDTH), np.float32(HEIGHT)

    results: list[Detection] = []
    for box, category, score in zip(boxes, classes, scores):
        if score < confidence_threshold:
            continue
        top, left, bottom, right = box
        y = _clamp(height * top, HEIGHT)
        x = _clamp(width * left, WIDTH)
        h = _clamp(height * bottom - np.float32(y), HEIGHT)
        w = _clamp(width * right - np.float32(x), WIDTH)
        # Undo the centre crop from the lores image...
        y += (lores_info.height - HEIGHT) // 2
        x += (lores_info.width - WIDTH) // 2
        # ...then the scaling from main to lores.
        y = y * main_info.height // lores_info.height
        x = x * main_info.width // lores_info.width
        h = h * main_info.height // lores_info.height
        w = w * main_info.width // lores_info.width

        c = int(category)
        detection = Detection(c, labels[c], float(score), Rectangle(x, y, w, h))

        overlapped = False
        for index, previous in enumerate(results):
            if previous.category != c:
                continue
            overlap = previous.box.bounded_to(detection.box).area()
            if (
                overlap > overlap_threshold * previous.box.area()
                or overlap > overlap_threshold * detection.box.area()
            ):
                if detection.confidence > previous.confidence:
                    results[index] = detection
                overlapped = True
                break
        if not overlapped:
            results.append(detection)
    return results


@register_stage(NAME)
class ObjectDetectTfStage(TfStage):
    """Detects objects in the low resolution image and reports them as metadata."""

    def __init__(self, loader=None) -> None:
        super().__init__(WIDTH, HEIGHT, loader)
        self.confidence_threshold = 0.5
        self.overlap_threshold = 0.5
        self.labels: list[str] = []
        self.results: list[Detection] = []

    def name(self) -> str:
        return NAME

    def read_extras(self, params: Mapping[str, Any]) -> None:
        self.confidence_threshold = float(params.get("confidence_threshold", 0.5))
        self.overlap_threshold = float(params.get("overlap_threshold", 0.5))
        self.labels = read_labels_file(
            str(params.get("labels_file", "")), skip_first=True
        )
        if self.config.verbose:
            logger.info("Read %d labels", len(self.labels))

        # A mismatch here usually means the wrong model was loaded.
        shapes = self.interpreter.output_shapes
        if not shapes or tuple(shapes[0]) != (1, 10, 4):
            raise RuntimeError("ObjectDetectTfStage: unexpected output dimensions")

    def check_configuration(self) -> None:
        if self.main_info is None:
            raise RuntimeError("ObjectDetectTfStage: Main stream is required")

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        boxes, classes, scores = outputs[0], outputs[1], outputs[2]
        self.results = interpret_detections(
            boxes,
            classes,
            scores,
            self.labels,
            self.lores_info,
            self.main_info,
            self.confidence_threshold,
            self.overlap_threshold,
        )
        if self.config.verbose:
            for detection in self.results:
                logger.info("%s", detection)

    def apply_results(self, request: CompletedRequest) -> None:
        request.post_process_metadata["object_detect.results"] = list(self.results)