import numpy as np
import pytest

from camstages.detection import (
    Detection,
    ObjectDetectTfStage,
    Rectangle,
    interpret_detections,
)
from camstages.stage import CompletedRequest, StreamInfo, get_post_processing_stages

SQUARE = StreamInfo(width=300, height=300, stride=300)
LABELS = ["person", "bicycle", "car"]


def detect(boxes, classes, scores, lores=SQUARE, main=SQUARE, **kwargs):
    return interpret_detections(boxes, classes, scores, LABELS, lores, main, **kwargs)


class FakeInterpreter:
    input_dtype = np.uint8
    input_bytes = 300 * 300 * 3

    def __init__(self, output_shapes=((1, 10, 4),)):
        self.output_shapes = list(output_shapes)

    def invoke(self, tensor):
        return []


def make_stage(tmp_path, output_shapes=((1, 10, 4),), **params):
    labels = tmp_path / "labels.txt"
    labels.write_text("???\nperson\nbicycle\n")
    stage = ObjectDetectTfStage(lambda path, threads: FakeInterpreter(output_shapes))
    stage.read({"labels_file": str(labels), **params})
    return stage


def test_rectangle_area():
    assert Rectangle(1, 2, 3, 4).area() == 3 * 4


def test_bounded_to_overlap_is_symmetric():
    a = Rectangle(0, 0, 10, 10)
    b = Rectangle(5, 5, 10, 10)
    assert a.bounded_to(b) == b.bounded_to(a)
    assert a.bounded_to(b) == Rectangle(5, 5, 5, 5)


def test_bounded_to_disjoint_is_empty():
    result = Rectangle(0, 0, 2, 2).bounded_to(Rectangle(10, 10, 2, 2))
    assert result.area() == 0


def test_bounded_to_self():
    r = Rectangle(3, 4, 5, 6)
    assert r.bounded_to(r) == r


def test_detection_str():
    detection = Detection(1, "cat", 0.75, Rectangle(10, 20, 30, 40))
    assert str(detection) == "cat[1] (0.75) @ 10,20 30x40"


def test_detection_str_two_significant_digits():
    detection = Detection(0, "dog", 0.123, Rectangle(1, 2, 3, 4))
    assert "(0.12)" in str(detection)


def test_worked_example_scaled_to_main():
    main = StreamInfo(width=600, height=600, stride=600)
    results = detect([[0.25, 0.5, 0.75, 1.0]], [2], [0.75], main=main)
    assert len(results) == 1
    assert results[0].box == Rectangle(300, 150, 300, 300)
    assert results[0].name == "car"
    assert results[0].category == 2
    assert results[0].confidence == 0.75


def test_box_is_clamped_to_frame():
    results = detect([[-0.5, -0.5, 2.0, 2.0]], [0], [0.9])
    assert results[0].box == Rectangle(0, 0, SQUARE.width, SQUARE.height)


def test_centre_crop_offset():
    lores = StreamInfo(width=400, height=300, stride=400)
    plain = detect([[0.0, 0.0, 0.5, 0.5]], [0], [0.9])
    cropped = detect([[0.0, 0.0, 0.5, 0.5]], [0], [0.9], lores=lores, main=lores)
    assert cropped[0].box.x == 50
    assert cropped[0].box.width == plain[0].box.width


def test_below_threshold_dropped():
    assert detect([[0.0, 0.0, 0.5, 0.5]], [0], [0.25]) == []
    assert len(detect([[0.0, 0.0, 0.5, 0.5]], [0], [0.25], confidence_threshold=0.125)) == 1


def test_overlapping_same_category_keeps_more_confident():
    box = [0.0, 0.0, 0.5, 0.5]
    results = detect([box, box], [1, 1], [0.625, 0.875])
    assert len(results) == 1
    assert results[0].confidence == 0.875


def test_overlapping_less_confident_is_discarded():
    box = [0.0, 0.0, 0.5, 0.5]
    results = detect([box, box], [1, 1], [0.875, 0.625])
    assert [d.confidence for d in results] == [0.875]


def test_overlapping_different_categories_both_kept():
    box = [0.0, 0.0, 0.5, 0.5]
    results = detect([box, box], [0, 1], [0.875, 0.875])
    assert [d.name for d in results] == ["person", "bicycle"]


def test_separate_boxes_same_category_both_kept():
    boxes = [[0.0, 0.0, 0.25, 0.25], [0.5, 0.5, 0.75, 0.75]]
    results = detect(boxes, [0, 0], [0.875, 0.875])
    assert len(results) == 2
    assert results[0].box.bounded_to(results[1].box).area() == 0


def test_small_lores_rejected():
    small = StreamInfo(width=200, height=200, stride=200)
    with pytest.raises(ValueError):
        detect([[0.0, 0.0, 0.5, 0.5]], [0], [0.9], lores=small)


def test_stage_registered():
    stages = get_post_processing_stages()
    assert stages["object_detect_tf"] is ObjectDetectTfStage
    assert ObjectDetectTfStage().name() == "object_detect_tf"


def test_read_extras_reads_labels_and_thresholds(tmp_path):
    stage = make_stage(tmp_path, confidence_threshold=0.25, overlap_threshold=0.75)
    assert stage.labels == ["person", "bicycle"]
    assert stage.confidence_threshold == 0.25
    assert stage.overlap_threshold == 0.75


def test_read_extras_default_thresholds(tmp_path):
    stage = make_stage(tmp_path)
    assert (stage.confidence_threshold, stage.overlap_threshold) == (0.5, 0.5)


def test_read_extras_rejects_wrong_outputs(tmp_path):
    with pytest.raises(RuntimeError, match="unexpected output dimensions"):
        make_stage(tmp_path, output_shapes=((1, 20, 4),))


def test_read_extras_missing_labels(tmp_path):
    stage = ObjectDetectTfStage(lambda path, threads: FakeInterpreter())
    with pytest.raises(RuntimeError):
        stage.read({"labels_file": str(tmp_path / "none.txt")})


def test_main_stream_required(tmp_path):
    stage = make_stage(tmp_path)
    with pytest.raises(RuntimeError, match="Main stream is required"):
        stage.configure(SQUARE, None)


def test_interpret_and_apply_results(tmp_path):
    stage = make_stage(tmp_path)
    stage.configure(SQUARE, SQUARE)
    boxes = np.zeros((1, 10, 4), dtype=np.float32)
    boxes[0, 0] = [0.0, 0.0, 0.5, 0.5]
    classes = np.zeros((1, 10), dtype=np.float32)
    classes[0, 0] = 1
    scores = np.zeros((1, 10), dtype=np.float32)
    scores[0, 0] = 0.875
    stage.interpret_outputs([boxes, classes, scores])

    request = CompletedRequest(sequence=3)
    stage.apply_results(request)
    results = request.post_process_metadata["object_detect.results"]
    assert len(results) == 1
    assert results[0].name == "bicycle"
    assert results[0].confidence == 0.875
    assert results is not stage.results
    assert results == stage.results