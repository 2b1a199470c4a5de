from datetime import timedelta

import numpy as np
import pytest

from camstages.stage import (
    CompletedRequest,
    PostProcessingStage,
    StreamInfo,
    execution_time,
    get_json_array,
    get_post_processing_stages,
    register_stage,
    yuv420_to_rgb,
)


def make_yuv(y_plane, u_value=128, v_value=128, u_plane=None, v_plane=None):
    y_plane = np.asarray(y_plane, dtype=np.uint8)
    h, w = y_plane.shape
    if u_plane is None:
        u_plane = np.full((h // 2, w // 2), u_value, dtype=np.uint8)
    if v_plane is None:
        v_plane = np.full((h // 2, w // 2), v_value, dtype=np.uint8)
    data = np.concatenate(
        [y_plane.ravel(), np.asarray(u_plane, np.uint8).ravel(), np.asarray(v_plane, np.uint8).ravel()]
    )
    return data.tobytes(), StreamInfo(width=w, height=h, stride=w)


def as_rgb(out, info):
    return out.reshape(info.height, info.stride)[:, : 3 * info.width].reshape(
        info.height, info.width, 3
    )


def test_neutral_chroma_gives_grey():
    y_plane = np.arange(64, dtype=np.uint8).reshape(8, 8) * 3
    src, src_info = make_yuv(y_plane)
    dst_info = StreamInfo(width=8, height=8, stride=24)
    rgb = as_rgb(yuv420_to_rgb(src, src_info, dst_info), dst_info)
    for channel in range(3):
        assert np.array_equal(rgb[:, :, channel], y_plane)


def test_centre_crop():
    y_plane = np.arange(48, dtype=np.uint8).reshape(6, 8)
    src, src_info = make_yuv(y_plane)
    dst_info = StreamInfo(width=4, height=2, stride=12)
    rgb = as_rgb(yuv420_to_rgb(src, src_info, dst_info), dst_info)
    assert np.array_equal(rgb[:, :, 0], y_plane[2:4, 2:6])


def test_odd_sizes_and_padding():
    y_plane = (np.arange(36, dtype=np.uint8).reshape(6, 6) * 5)
    src, src_info = make_yuv(y_plane)
    dst_info = StreamInfo(width=5, height=3, stride=20)
    out = yuv420_to_rgb(src, src_info, dst_info)
    assert out.shape == (dst_info.height * dst_info.stride,)
    rgb = as_rgb(out, dst_info)
    assert np.array_equal(rgb[:, :, 1], y_plane[0:3, 0:5])
    padding = out.reshape(3, 20)[:, 15:]
    assert not padding.any()


def test_chroma_shared_within_2x2_blocks():
    y_plane = np.full((4, 8), 128, dtype=np.uint8)
    v_plane = np.array([[10, 60, 200, 250], [30, 90, 150, 220]], dtype=np.uint8)
    src, src_info = make_yuv(y_plane, v_plane=v_plane)
    dst_info = StreamInfo(width=8, height=4, stride=24)
    red = as_rgb(yuv420_to_rgb(src, src_info, dst_info), dst_info)[:, :, 0]
    for by in range(2):
        block_rows = red[2 * by : 2 * by + 2]
        for bx in range(4):
            block = block_rows[:, 2 * bx : 2 * bx + 2]
            assert (block == block[0, 0]).all()
    assert red[0, 0] < red[0, 6]


def test_results_are_clamped():
    dark, info = make_yuv(np.zeros((2, 4)), u_value=0, v_value=0)
    dst_info = StreamInfo(width=4, height=2, stride=12)
    rgb = as_rgb(yuv420_to_rgb(dark, info, dst_info), dst_info)
    assert (rgb[:, :, 0] == 0).all()
    assert (rgb[:, :, 2] == 0).all()
    assert (rgb[:, :, 1] > 0).all()

    bright, info = make_yuv(np.full((2, 4), 255), u_value=255, v_value=255)
    rgb = as_rgb(yuv420_to_rgb(bright, info, dst_info), dst_info)
    assert (rgb[:, :, 0] == 255).all()
    assert (rgb[:, :, 2] == 255).all()
    assert (rgb[:, :, 1] < 255).all()


def test_destination_larger_than_source_rejected():
    src, src_info = make_yuv(np.zeros((2, 4)))
    with pytest.raises(ValueError):
        yuv420_to_rgb(src, src_info, StreamInfo(width=8, height=2, stride=24))


def test_registry():
    @register_stage("test_registry_stage")
    class DummyStage(PostProcessingStage):
        def name(self):
            return "test_registry_stage"

        def process(self, request):
            return False

    stages = get_post_processing_stages()
    assert stages["test_registry_stage"] is DummyStage
    stage = stages["test_registry_stage"]()
    assert stage.name() == "test_registry_stage"
    assert stage.process(CompletedRequest()) is False
    with pytest.raises(TypeError):
        stages["other"] = DummyStage


def test_base_class_is_abstract():
    with pytest.raises(TypeError):
        PostProcessingStage()


def test_default_hooks_do_nothing_to_request():
    class PassStage(PostProcessingStage):
        def name(self):
            return "pass"

        def process(self, request):
            return False

    stage = PassStage()
    stage.read({"anything": 1})
    stage.adjust_config("video", None)
    stage.configure()
    stage.start()
    request = CompletedRequest(sequence=3)
    assert stage.process(request) is False
    stage.stop()
    stage.teardown()
    assert request.post_process_metadata == {}


def test_execution_time_calls_function():
    calls = []
    elapsed = execution_time(calls.append, "frame")
    assert calls == ["frame"]
    assert isinstance(elapsed, timedelta)
    assert elapsed >= timedelta(0)


def test_get_json_array_pads_with_default():
    assert get_json_array({"a": [1, 2]}, "a", [7, 8, 9]) == [1, 2, 9]


def test_get_json_array_missing_key_uses_default():
    assert get_json_array({}, "a", [7, 8]) == [7, 8]
    assert get_json_array({}, "a") == []


def test_get_json_array_longer_than_default():
    assert get_json_array({"a": [1, 2, 3]}, "a", [7]) == [1, 2, 3]