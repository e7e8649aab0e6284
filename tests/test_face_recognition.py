import numpy as np
import pytest

from conftest import flat_frame, noise_frame
from doorbell.errors import EmptyInput, ModelUnavailable
from doorbell.face_recognition import (
    ArcFaceExtractor,
    FakeExtractor,
    aggregate_descriptors,
    create_extractor,
    estimate_sharpness,
    select_face,
)


class TestAggregate:
    def test_mean_of_descriptors(self):
        result = aggregate_descriptors([[1.0, 0.0], [0.0, 1.0]])
        assert np.allclose(result, [0.5, 0.5])

    def test_single_descriptor_is_identity(self):
        d = np.array([0.3, -0.2, 0.9])
        assert np.array_equal(aggregate_descriptors([d]), d)

    def test_order_does_not_matter(self):
        rng = np.random.default_rng(7)
        descriptors = [rng.normal(size=16) for _ in range(5)]
        forward = aggregate_descriptors(descriptors)
        backward = aggregate_descriptors(list(reversed(descriptors)))
        assert np.allclose(forward, backward)

    def test_identical_samples_aggregate_to_themselves(self):
        d = np.array([0.1, 0.2, 0.3])
        assert np.allclose(aggregate_descriptors([d, d, d]), d)

    def test_empty_input_rejected(self):
        with pytest.raises(EmptyInput):
            aggregate_descriptors([])

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValueError):
            aggregate_descriptors([[1.0, 0.0], [1.0, 0.0, 0.0]])


class TestSelectFace:
    def test_no_boxes(self):
        assert select_face([]) is None

    def test_largest_wins(self):
        assert select_face([(0, 0, 10, 10), (50, 50, 30, 30)]) == (50, 50, 30, 30)

    def test_equal_area_prefers_top_then_left(self):
        boxes = [(40, 20, 10, 10), (10, 20, 10, 10), (60, 5, 10, 10)]
        assert select_face(boxes) == (60, 5, 10, 10)
        assert select_face(boxes[:2]) == (10, 20, 10, 10)


class TestSharpness:
    def test_flat_frame_scores_zero(self):
        assert estimate_sharpness(flat_frame()) == 0.0

    def test_noise_is_sharper_than_blur(self):
        import cv2

        sharp = noise_frame(1)
        blurred = cv2.GaussianBlur(sharp, (15, 15), 5)
        assert estimate_sharpness(sharp) > estimate_sharpness(blurred)
        assert 0.0 <= estimate_sharpness(blurred) < 1.0

    def test_empty_image(self):
        assert estimate_sharpness(np.zeros((0, 0, 3), dtype=np.uint8)) == 0.0


class TestFakeExtractor:
    def test_same_frame_same_descriptor(self):
        extractor = FakeExtractor()
        a = extractor.extract(noise_frame(3))
        b = extractor.extract(noise_frame(3))
        assert np.array_equal(a.descriptor, b.descriptor)
        assert np.isclose(np.linalg.norm(a.descriptor), 1.0)
        assert a.descriptor.shape == (128,)

    def test_different_frames_differ(self):
        extractor = FakeExtractor()
        a = extractor.extract(noise_frame(3))
        b = extractor.extract(noise_frame(4))
        assert not np.allclose(a.descriptor, b.descriptor)

    def test_flat_frame_has_no_face(self):
        assert FakeExtractor().extract(flat_frame()) is None

    def test_script_consumed_in_order(self):
        extractor = FakeExtractor(script=[[1.0, 0.0], None, RuntimeError("boom")])
        frame = noise_frame()
        assert list(extractor.extract(frame).descriptor) == [1.0, 0.0]
        assert extractor.extract(frame) is None
        with pytest.raises(RuntimeError):
            extractor.extract(frame)
        # Exhausted script reads as no face
        assert extractor.extract(frame) is None
        assert extractor.calls == 4

    def test_not_ready_raises_model_unavailable(self):
        extractor = FakeExtractor(ready=False)
        assert not extractor.is_ready()
        with pytest.raises(ModelUnavailable):
            extractor.extract(noise_frame())
        extractor.initialize()
        assert extractor.is_ready()

    def test_failing_initialize(self):
        extractor = FakeExtractor(fail_initialize=True)
        assert not extractor.is_ready()
        with pytest.raises(ModelUnavailable):
            extractor.initialize()


class TestArcFaceExtractor:
    def test_missing_model_reports_unavailable(self, tmp_path):
        extractor = ArcFaceExtractor(model_path=tmp_path / "missing.onnx")
        with pytest.raises(ModelUnavailable):
            extractor.initialize()
        assert not extractor.is_ready()

    def test_extract_before_initialize(self, tmp_path):
        extractor = ArcFaceExtractor(model_path=tmp_path / "missing.onnx")
        with pytest.raises(ModelUnavailable):
            extractor.extract(noise_frame())

    def test_crop_face_is_model_sized(self, tmp_path):
        extractor = ArcFaceExtractor(model_path=tmp_path / "missing.onnx")
        crop = extractor.crop_face(noise_frame(size=(200, 200)), (50, 50, 80, 80))
        assert crop.shape == (112, 112, 3)
        assert extractor.crop_face(noise_frame(), (0, 0, 2, 2)) is None

    def test_preprocess_layout(self, tmp_path):
        extractor = ArcFaceExtractor(model_path=tmp_path / "missing.onnx")
        tensor = extractor.preprocess_face(np.full((112, 112, 3), 255, dtype=np.uint8))
        assert tensor.shape == (1, 3, 112, 112)
        assert np.allclose(tensor, 1.0)


class TestCreateExtractor:
    def test_backends(self):
        assert isinstance(create_extractor("fake"), FakeExtractor)
        assert isinstance(create_extractor("arcface"), ArcFaceExtractor)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_extractor("dlib")
