# camstages

Post-processing stages for camera frames in planar YUV420 layout, together
with the small pieces of maths and image handling they rely on.

## What is inside

- `camstages.pwl`: piecewise linear functions (`Pwl`, `Point`, `Interval`,
  `PerpType`). It covers evaluation (`eval`, `find_span`), inversion to the
  closest point (`invert`), composition (`compose`), walking the knots of one
  or two functions (`map`, `map2`, `combine`), domain extension
  (`match_domain`), lookup-table generation (`generate_lut`) and scaling with
  `*=`.
- `camstages.stage`: the `PostProcessingStage` base class with its lifecycle
  (`read`, `adjust_config`, `configure`, `start`, `process`, `stop`,
  `teardown`). It also holds the stream descriptions (`StreamInfo`,
  `ColourSpace`, `CompletedRequest`), the stage registry (`register_stage`,
  `get_post_processing_stages`) and helpers: `yuv420_to_rgb`, which crops from
  the centre of the frame, `execution_time` and `get_json_array`.
- `camstages.tf`: `TfStage`, a base for stages that run a neural network on
  the `"lores"` stream in a background thread and attach the results to each
  request. It also provides `TfConfig` (built from parameters with
  `TfConfig.from_params`) and `read_labels_file`.
- `camstages.detection`: object detection results (`Detection`, `Rectangle`),
  `interpret_detections`, which maps boxes into main image coordinates and
  merges overlapping boxes of the same category, and `ObjectDetectTfStage`
  (`"object_detect_tf"`).
- `camstages.pose`: the `Feature` keypoints, `estimate_pose` from heatmaps
  and offsets, `draw_features` for skeleton overlays on a greyscale image,
  `PoseEstimationTfStage` (`"pose_estimation_tf"`) and `PlotPoseCvStage`
  (`"plot_pose_cv"`).
- `camstages.segmentation`: per-pixel category maps (`Segmentation`,
  `segment`, `largest_categories`, `draw_segmentation`) and
  `SegmentationTfStage` (`"segmentation_tf"`).
- `camstages.sobel`: `sobel_filter`, which replaces a YUV420 frame in place
  with its greyscale edge magnitude, and `SobelCvStage` (`"sobel_cv"`).

Stage classes register themselves under their names when their module is
imported. `get_post_processing_stages()` returns a read-only mapping from
those names to the classes.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
from camstages.pwl import Pwl, Point

curve = Pwl([Point(0, 0), Point(128, 200), Point(255, 255)])
print(curve.eval(64))          # 100.0
lut = curve.generate_lut()     # 256 entries
```

```python
import numpy as np
from camstages.stage import StreamInfo, yuv420_to_rgb

src = StreamInfo(width=640, height=480, stride=640)
dst = StreamInfo(width=300, height=300, stride=900)
frame = np.full(640 * 480 * 3 // 2, 128, dtype=np.uint8)
rgb = yuv420_to_rgb(frame, src, dst)   # flat array of 300 * 900 bytes
```

## Running a network stage

`TfStage` and the stages built on it do not load models themselves. You pass
them a `loader` callable. It receives the model file name and the thread count
(`None` when `number_of_threads` is `-1`) and returns an interpreter object
with these members:

- `input_dtype`: `uint8` or `float32`
- `input_bytes`: the size of the input tensor in bytes
- `output_shapes`: the shapes of the output tensors
- `invoke(tensor)`: runs the network and returns the output arrays

Frames are passed in `CompletedRequest.buffers` under the keys `"lores"` and
`"main"`.

## What this package does not do

- It has no inference runtime and no bundled models. The interpreter must come
  from your own `loader`.
- It does not capture frames and does not drive a camera.
- It has no preview window or display output, and it provides no command-line
  program. It is a library for applications that process frames themselves.