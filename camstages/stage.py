"""Post-processing stage base class, stream descriptions and shared helpers."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence, TypeVar

import numpy as np


class ColourSpace(Enum):
    """Colour spaces a stream may be tagged with."""

    RAW = "raw"
    SRGB = "srgb"
    SYCC = "sycc"
    SMPTE170M = "smpte170m"
    REC709 = "rec709"
    REC2020 = "rec2020"


@dataclass
class StreamInfo:
    """Geometry and format of an image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: str = "YUV420"
    colour_space: ColourSpace | None = None


@dataclass
class CompletedRequest:
    """A captured frame: its buffers by stream name and attached metadata."""

    sequence: int = 0
    buffers: dict[str, Any] = field(default_factory=dict)
    post_process_metadata: dict[str, Any] = field(default_factory=dict)


class PostProcessingStage(ABC):
    """Base class for stages that examine or modify each completed request.

    The default lifecycle methods record where the stage is in its lifecycle:
    the parameters it was given, the use case it was configured for, and
    whether it is configured and running.
    """

    params: Mapping[str, Any] = MappingProxyType({})
    use_case: str | None = None
    configured: bool = False
    running: bool = False

    @abstractmethod
    def name(self) -> str:
        """The name the stage is registered under."""

    def read(self, params: Mapping[str, Any]) -> None:
        """Read the stage's parameters."""
        self.params = MappingProxyType(dict(params))

    def adjust_config(self, use_case: str, config: Any) -> None:
        """Adjust the camera configuration before it is applied."""
        self.use_case = use_case

    def configure(self) -> None:
        """Called once the camera configuration is known."""
        self.configured = True

    def start(self) -> None:
        """Called when the camera starts."""
        self.running = True

    @abstractmethod
    def process(self, request: CompletedRequest) -> bool:
        """Handle a request; return True if it is to be dropped."""

    def stop(self) -> None:
        """Called when the camera stops."""
        self.running = False

    def teardown(self) -> None:
        """Called when the camera configuration is released."""
        self.running = False
        self.configured = False


def _as_bytes(src) -> np.ndarray:
    if isinstance(src, (bytes, bytearray, memoryview)):
        return np.frombuffer(src, dtype=np.uint8)
    return np.asarray(src, dtype=np.uint8).ravel()


def yuv420_to_rgb(src, src_info: StreamInfo, dst_info: StreamInfo) -> np.ndarray:
    """Convert a YUV420 image to packed RGB, cropping from the centre.

    Returns a flat uint8 array of dst_info.height * dst_info.stride bytes.
    """
    if src_info.width < dst_info.width or src_info.height < dst_info.height:
        raise ValueError("yuv420_to_rgb: destination larger than source")
    if dst_info.stride < 3 * dst_info.width:
        raise ValueError("yuv420_to_rgb: destination stride too small")

    data = _as_bytes(src)
    off_x = ((src_info.width - dst_info.width) // 2) & ~1
    off_y = ((src_info.height - dst_info.height) // 2) & ~1
    stride = src_info.stride
    y_size = src_info.height * stride
    u_size = (src_info.height // 2) * (stride // 2)

    rows = np.arange(dst_info.height) + off_y
    cols = np.arange(dst_info.width) + off_x
    luma = data[rows[:, None] * stride + cols[None, :]].astype(np.float64)
    chroma_index = (
        y_size + (rows // 2)[:, None] * (stride // 2) + (cols // 2)[None, :]
    )
    u = data[chroma_index].astype(np.float64) - 128
    v = data[chroma_index + u_size].astype(np.float64) - 128

    red = luma + 1.402 * v
    green = luma - 0.345 * u - 0.714 * v
    blue = luma + 1.771 * u
    rgb = np.stack([red, green, blue], axis=-1)
    rgb = np.clip(np.trunc(rgb), 0, 255).astype(np.uint8)

    out = np.zeros(dst_info.height * dst_info.stride, dtype=np.uint8)
    view = out.reshape(dst_info.height, dst_info.stride)
    view[:, : 3 * dst_info.width] = rgb.reshape(dst_info.height, 3 * dst_info.width)
    return out


_STAGES: dict[str, Callable[..., PostProcessingStage]] = {}

_F = TypeVar("_F", bound=Callable[..., PostProcessingStage])


def register_stage(name: str) -> Callable[[_F], _F]:
    """Decorator registering a stage class or factory under name."""

    def decorator(factory: _F) -> _F:
        _STAGES[name] = factory
        return factory

    return decorator


def get_post_processing_stages() -> Mapping[str, Callable[..., PostProcessingStage]]:
    """A read-only view of the registered stages."""
    return MappingProxyType(_STAGES)


def execution_time(f: Callable[..., Any], *args: Any, **kwargs: Any) -> timedelta:
    """Call f with the given arguments and return how long it took."""
    start = time.perf_counter()
    f(*args, **kwargs)
    return timedelta(seconds=time.perf_counter() - start)


def get_json_array(
    params: Mapping[str, Any], key: str, default: Sequence[Any] = ()
) -> list[Any]:
    """Read a list under key, padded out with the tail of default."""
    values = list(params[key]) if key in params else []
    values.extend(default[len(values):])
    return values