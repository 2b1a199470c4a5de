"""Base class for stages that run a neural network on the low resolution stream."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from .stage import (
    CompletedRequest,
    PostProcessingStage,
    StreamInfo,
    execution_time,
    yuv420_to_rgb,
)

logger = logging.getLogger(__name__)

LORES_STREAM = "lores"
MAIN_STREAM = "main"


@dataclass
class TfConfig:
    """Settings shared by all network-driven stages."""

    number_of_threads: int = 3
    refresh_rate: int = 5
    model_file: str = ""
    verbose: bool = False
    normalisation_offset: float = 127.5
    normalisation_scale: float = 127.5

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TfConfig:
        """Build a configuration from stage parameters, applying defaults."""
        return cls(
            number_of_threads=int(params.get("number_of_threads", 2)),
            refresh_rate=int(params.get("refresh_rate", 5)),
            model_file=str(params.get("model_file", "")),
            verbose=bool(int(params.get("verbose", 0))),
            normalisation_offset=float(params.get("normalisation_offset", 127.5)),
            normalisation_scale=float(params.get("normalisation_scale", 127.5)),
        )


def read_labels_file(path: str, skip_first: bool = False) -> list[str]:
    """Read one label per line, optionally discarding the first line."""
    try:
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
    except OSError as exc:
        raise RuntimeError(f"Failed to load labels file {path!r}") from exc
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines[1:] if skip_first else lines


class TfStage(PostProcessingStage):
    """A stage that feeds the low resolution image to a network asynchronously.

    The network is supplied by ``loader``, a callable taking the model file
    name and the thread count (None for the default) and returning an
    interpreter, or None if the model cannot be loaded. An interpreter has:

    * ``input_dtype``: numpy dtype of the input tensor (uint8 or float32);
    * ``input_bytes``: size of the input tensor in bytes;
    * ``output_shapes``: the shapes of the output tensors;
    * ``invoke(tensor)``: runs the network, returning the output arrays.

    Derived classes provide ``name`` and override ``read_extras``,
    ``check_configuration``, ``interpret_outputs`` and ``apply_results``.
    """

    def __init__(
        self,
        tf_w: int,
        tf_h: int,
        loader: Callable[[str, int | None], Any] | None = None,
    ) -> None:
        if tf_w <= 0 or tf_h <= 0:
            raise ValueError("TfStage: Bad TFLite input dimensions")
        self.tf_w = tf_w
        self.tf_h = tf_h
        self.config = TfConfig()
        self.interpreter: Any = None
        self.lores_info: StreamInfo | None = None
        self.main_info: StreamInfo | None = None
        self._loader = loader
        self._executor: ThreadPoolExecutor | None = None
        self._future: Future | None = None
        self._future_lock = threading.Lock()
        self._output_lock = threading.Lock()

    def read(self, params: Mapping[str, Any]) -> None:
        self.config = TfConfig.from_params(params)
        self._initialise()
        self.read_extras(params)

    def _initialise(self) -> None:
        if self._loader is None:
            raise RuntimeError("TfStage: no model loader provided")
        threads = self.config.number_of_threads
        interpreter = self._loader(
            self.config.model_file, None if threads == -1 else threads
        )
        if interpreter is None:
            raise RuntimeError("TfStage: Failed to load model")
        logger.info("TfStage: Loaded model %s", self.config.model_file)

        dtype = np.dtype(interpreter.input_dtype)
        if dtype == np.uint8:
            itemsize = 1
        elif dtype == np.float32:
            itemsize = 4
        else:
            raise RuntimeError("TfStage: Input tensor data type not supported")
        # Assume the network wants RGB input.
        if self.tf_w * self.tf_h * 3 * itemsize != interpreter.input_bytes:
            raise RuntimeError("TfStage: Input tensor size mismatch")
        self.interpreter = interpreter

    def read_extras(self, params: Mapping[str, Any]) -> None:
        """Read stage-specific parameters and check the model's outputs."""

    def configure(
        self, lores_info: StreamInfo | None = None, main_info: StreamInfo | None = None
    ) -> None:
        self.lores_info = lores_info
        if lores_info is not None:
            if self.config.verbose:
                logger.info(
                    "TfStage: Low resolution stream is %dx%d",
                    lores_info.width,
                    lores_info.height,
                )
            if self.tf_w > lores_info.width or self.tf_h > lores_info.height:
                logger.error("TfStage: WARNING: Low resolution image too small")
                self.lores_info = None
        elif self.config.verbose:
            logger.info("TfStage: no low resolution stream")

        self.main_info = main_info
        if main_info is not None:
            if self.config.verbose:
                logger.info(
                    "TfStage: Main stream is %dx%d", main_info.width, main_info.height
                )
        elif self.config.verbose:
            logger.info("TfStage: No main stream")

        self.check_configuration()

    def check_configuration(self) -> None:
        """Check the stream configuration, raising if it is unusable."""

    def process(self, request: CompletedRequest) -> bool:
        if self.lores_info is None:
            return False

        with self._future_lock:
            rate = self.config.refresh_rate
            idle = self._future is None or self._future.done()
            if rate and request.sequence % rate == 0 and idle:
                # Take a private copy so the buffer can be recycled straight away.
                lores = np.array(request.buffers[LORES_STREAM], dtype=np.uint8).ravel()
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(max_workers=1)
                self._future = self._executor.submit(self._timed_inference, lores)

        with self._output_lock:
            self.apply_results(request)
        return False

    def _timed_inference(self, lores_image: np.ndarray) -> None:
        elapsed = execution_time(self.run_inference, lores_image)
        if self.config.verbose:
            logger.info(
                "TfStage: Inference time: %.0f us", elapsed.total_seconds() * 1e6
            )

    def run_inference(self, lores_image) -> None:
        """Convert the lores image, run the network and interpret its outputs."""
        if self.interpreter is None:
            raise RuntimeError("TfStage: model not loaded")
        if self.lores_info is None:
            raise RuntimeError("TfStage: no usable low resolution stream")
        tf_info = StreamInfo(width=self.tf_w, height=self.tf_h, stride=self.tf_w * 3)
        rgb = yuv420_to_rgb(lores_image, self.lores_info, tf_info)
        rgb = rgb.reshape(1, self.tf_h, self.tf_w, 3)

        dtype = np.dtype(self.interpreter.input_dtype)
        if dtype == np.float32:
            tensor = (
                rgb.astype(np.float32) - np.float32(self.config.normalisation_offset)
            ) / np.float32(self.config.normalisation_scale)
        else:
            tensor = rgb

        outputs = self.interpreter.invoke(tensor)
        if outputs is None:
            raise RuntimeError("TfStage: Failed to invoke TFLite")
        arrays = [np.asarray(output) for output in outputs]
        with self._output_lock:
            self.interpret_outputs(arrays)

    def interpret_outputs(self, outputs: Sequence[np.ndarray]) -> None:
        """Turn the network's outputs into results for apply_results."""

    def apply_results(self, request: CompletedRequest) -> None:
        """Attach the latest results to the request."""

    def stop(self) -> None:
        """Wait for any inference in flight, re-raising its error."""
        with self._future_lock:
            future = self._future
        if future is not None:
            future.result()

    def teardown(self) -> None:
        with self._future_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)